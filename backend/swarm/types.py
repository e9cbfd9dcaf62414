"""Data model shared by every node of the cluster.

Tasks, results, oracle payloads and persisted node snapshots are Pydantic
models so they serialize straight into the persistence gateway. Tasks,
results and node configuration are frozen; a node's context is mutable but
its history and log fields are only ever appended to.
"""

import time
from enum import StrEnum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from config import settings

# Capacity of a node's error history; the oldest entry is evicted first.
ERROR_HISTORY_LIMIT = 20
# Identical trailing failures that constitute an error loop.
ERROR_LOOP_THRESHOLD = 3
# Capacity of a monitor's event ring buffer.
MONITOR_EVENT_LIMIT = 100


class NodeStatus(StrEnum):
    """Lifecycle states of a node.

    ``idle`` -> ``running`` -> one of ``completed | failed | error_loop``.
    Any state may move to ``terminated``, which is absorbing.
    """

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR_LOOP = "error_loop"
    TERMINATED = "terminated"


class NodeKind(StrEnum):
    COORDINATOR = "coordinator"
    WORKER = "worker"


class MonitorEventType(StrEnum):
    ERROR_DETECTED = "error_detected"
    LOOP_DETECTED = "loop_detected"
    TIMEOUT = "timeout"
    TERMINATED = "terminated"
    RECREATED = "recreated"


# States from which a node accepts a new task.
ACCEPTING_STATUSES = frozenset({NodeStatus.IDLE, NodeStatus.COMPLETED, NodeStatus.FAILED})
# States in which a coordinator may reuse an existing worker.
AVAILABLE_STATUSES = frozenset({NodeStatus.IDLE, NodeStatus.COMPLETED})


def generate_node_id(kind: NodeKind) -> str:
    """Return a fresh node id such as ``worker_3f9a0c2b71de``."""
    return f"{kind.value}_{uuid4().hex[:12]}"


def generate_task_id() -> str:
    return f"task_{uuid4().hex[:12]}"


# -----------------------------------------------------------------------------
# Tasks and results
# -----------------------------------------------------------------------------


class Task(BaseModel):
    """A unit of work handed to a node.

    Attributes:
        id: Unique task identifier.
        description: Natural-language description of the work.
        context: Explicit instruction payload. For dispatched subtasks this is
            exactly ``{instruction, step, total_steps}``.
        parent_task_id: Id of the task this one was decomposed from.
        created_at: Unix timestamp of creation.
        deadline: Optional Unix timestamp by which the task should finish.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_task_id)
    description: str = ""
    context: dict[str, Any] | None = None
    parent_task_id: str | None = None
    created_at: float = Field(default_factory=time.time)
    deadline: float | None = None


class TaskResult(BaseModel):
    """Outcome of a task. A retry produces a new result rather than mutating one."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    success: bool
    output: Any = None
    error: str | None = None
    completed_at: float = Field(default_factory=time.time)
    self_test_passed: bool | None = None


# -----------------------------------------------------------------------------
# Oracle payloads
# -----------------------------------------------------------------------------


class SubTaskSpec(BaseModel):
    """One item of an oracle decomposition.

    ``priority`` and ``dependencies`` are informational; dispatch order is the
    order in which the oracle returned the items.
    """

    id: str
    description: str
    priority: int = Field(default=5, ge=1, le=10)
    dependencies: list[str] = Field(default_factory=list)


class ExecutionOutcome(BaseModel):
    success: bool
    output: str
    reasoning: str | None = None


class SelfTestVerdict(BaseModel):
    passed: bool
    feedback: str = ""


# -----------------------------------------------------------------------------
# Node context
# -----------------------------------------------------------------------------


class ConversationEntry(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: float = Field(default_factory=time.time)


class ExecutionLogEntry(BaseModel):
    action: str
    result: str
    timestamp: float = Field(default_factory=time.time)


class TaskState(BaseModel):
    """Task bookkeeping of a node. ``completed_tasks`` holds unique ids."""

    current_task_id: str | None = None
    task_history: list[str] = Field(default_factory=list)
    completed_tasks: list[str] = Field(default_factory=list)


class AgentContext(BaseModel):
    """Private working memory of a node. Never forwarded to children."""

    conversation_history: list[ConversationEntry] = Field(default_factory=list)
    task_state: TaskState = Field(default_factory=TaskState)
    execution_log: list[ExecutionLogEntry] = Field(default_factory=list)
    custom_data: dict[str, Any] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# Node configuration and snapshots
# -----------------------------------------------------------------------------


class NodeConfig(BaseModel):
    """Durable configuration of a node; survives recreation unchanged.

    Attributes:
        name: Human-readable node name.
        description: Role/capability summary.
        max_retries: Retry budget recorded for the node.
        timeout_seconds: Maximum age of a running task before the watchdog
            terminates the node.
        monitor_enabled: Whether ``initialize`` starts the node's watchdog.
        monitor_interval_seconds: Seconds between watchdog check rounds.
        oracle_timeout_seconds: Bound applied to each oracle call.
        template: Name of the guidance template the node works under, if any.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    max_retries: int = Field(default_factory=lambda: settings.node_max_retries)
    timeout_seconds: float = Field(default_factory=lambda: settings.node_timeout_seconds)
    monitor_enabled: bool = Field(default_factory=lambda: settings.monitor_enabled)
    monitor_interval_seconds: float = Field(
        default_factory=lambda: settings.monitor_interval_seconds
    )
    oracle_timeout_seconds: float = Field(
        default_factory=lambda: settings.oracle_timeout_seconds
    )
    template: str | None = None


class MonitorEvent(BaseModel):
    type: MonitorEventType
    agent_id: str
    timestamp: float = Field(default_factory=time.time)
    details: dict[str, Any] = Field(default_factory=dict)


class NodeState(BaseModel):
    """Persisted snapshot of a node, keyed by node id in the gateway."""

    id: str
    name: str
    kind: NodeKind
    description: str = ""
    parent_id: str | None = None
    children_ids: list[str] = Field(default_factory=list)
    status: NodeStatus
    current_task: Task | None = None
    context: AgentContext = Field(default_factory=AgentContext)
    error_count: int = 0
    error_history: list[str] = Field(default_factory=list)
    last_error: str | None = None
    config: NodeConfig
    created_at: float
    updated_at: float
    terminated_at: float | None = None
    terminate_reason: str | None = None
    last_result: TaskResult | None = None
