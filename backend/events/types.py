"""Event type definitions for the agent cluster event system.

Every meaningful control-plane change (node lifecycle, task dispatch,
watchdog observations) produces a ClusterEvent that is mirrored onto the
EventBus for external listeners.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types emitted by the cluster.

    Events are categorized by:
    - Node lifecycle: creation, status transitions, termination, recreation
    - Task flow: task start/completion, decomposition plan, aggregation
    - Watchdog: monitor observations mirrored from each node's Monitor
    - Observability: LLM call metrics
    """

    # Node lifecycle
    NODE_SPAWNED = "node_spawned"
    NODE_STATUS_CHANGED = "node_status_changed"
    NODE_TERMINATED = "node_terminated"
    NODE_RECREATED = "node_recreated"

    # Task flow
    TASK_STARTED = "task_started"
    TASK_COMPLETE = "task_complete"
    DECOMPOSITION_PLAN = "decomposition_plan"
    SUBTASK_DISPATCHED = "subtask_dispatched"
    AGGREGATION_COMPLETE = "aggregation_complete"

    # Watchdog
    MONITOR_EVENT = "monitor_event"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"

    # Sentinel sent to subscribers when a cluster stream closes
    CLUSTER_CLOSED = "cluster_closed"


class ClusterEvent(BaseModel):
    """An event emitted by a node of the cluster.

    Attributes:
        type: The category of event.
        timestamp: Unix timestamp when the event occurred.
        cluster_id: Which cluster (runtime) produced the event.
        node_id: Which node produced the event, if any.
        node_name: Human-readable node name.
        data: Event-specific payload.

    Payload schemas by event type:

    NODE_STATUS_CHANGED:
        - old_status: str
        - new_status: str

    TASK_COMPLETE:
        - task_id: str
        - success: bool
        - self_test_passed: bool | None

    DECOMPOSITION_PLAN:
        - task_id: str
        - subtasks: list of {id, description, step}

    MONITOR_EVENT:
        - monitor_type: str - error_detected, loop_detected, timeout, ...
        - details: dict
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    cluster_id: str
    node_id: str | None = None
    node_name: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
