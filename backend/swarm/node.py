"""Tree-node abstraction shared by coordinators and workers.

An AgentNode owns its identity, status state machine, bounded error history,
private context, and its Monitor. Role-specific behavior lives in
``_run_task``; everything around it (state transitions, error recording,
persistence, parent notification) is handled here so that every exit path
of ``execute_task`` ends in exactly one of ``completed``, ``failed`` or
``error_loop``, unless the node is terminated meanwhile, in which case the
task reports a failure.

Lifecycle:
    idle -> running -> completed | failed | error_loop
    any state -> terminated (absorbing)

Tree:
    Parents own their children in an id -> node mapping. Children only keep
    their parent's id, so there is no reference cycle. Workers are leaves.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any, ClassVar, Literal, TypeVar

import structlog

from config import settings
from events.bus import EventBus
from events.types import ClusterEvent, EventType
from swarm.errors import (
    InvalidTreeOperationError,
    OracleFailureError,
    OracleTimeoutError,
    PersistenceFailureError,
)
from swarm.monitor import Monitor
from swarm.types import (
    ACCEPTING_STATUSES,
    ERROR_HISTORY_LIMIT,
    ERROR_LOOP_THRESHOLD,
    AgentContext,
    ConversationEntry,
    ExecutionLogEntry,
    MonitorEvent,
    MonitorEventType,
    NodeConfig,
    NodeKind,
    NodeState,
    NodeStatus,
    Task,
    TaskResult,
    generate_node_id,
)

if TYPE_CHECKING:
    from models.database import PersistenceGateway
    from swarm.oracle import ReasoningOracle

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RECREATE_REASON = "Recreating due to error loop"


def child_result_key(parent_id: str, child_id: str) -> str:
    """Key under which a child reports its latest result to its parent."""
    return f"{parent_id}_child_result_{child_id}"


class AgentNode:
    """Base class for every node of the cluster.

    Subclasses set ``kind`` and implement ``_run_task``. Collaborators are
    injected at construction; a node never reaches for globals.

    Attributes:
        config: Durable configuration, copied unchanged on recreation.
        children: Owned child nodes keyed by id, in insertion order.
        current_task: Task being (or last) executed.
        context: Private working memory; never forwarded to children.
        error_history: Most recent error messages, oldest first.
        monitor: The watchdog owned by this node.
    """

    kind: ClassVar[NodeKind]

    def __init__(
        self,
        config: NodeConfig,
        *,
        store: PersistenceGateway,
        oracle: ReasoningOracle,
        parent_id: str | None = None,
        event_bus: EventBus | None = None,
        cluster_id: str | None = None,
    ) -> None:
        self._id = generate_node_id(self.kind)
        self._parent_id = parent_id
        self.config = config
        self.store = store
        self.oracle = oracle
        self.event_bus = event_bus
        self.cluster_id = cluster_id or settings.cluster_id

        self._status = NodeStatus.IDLE
        self.children: dict[str, AgentNode] = {}
        self.current_task: Task | None = None
        self.task_started_at: float | None = None
        self.last_result: TaskResult | None = None
        self.context = AgentContext()

        self.error_history: list[str] = []
        self.error_count = 0
        self.last_error: str | None = None

        self.created_at = time.time()
        self.updated_at = self.created_at
        self.terminated_at: float | None = None
        self.terminate_reason: str | None = None

        self.monitor = Monitor(self, interval_seconds=config.monitor_interval_seconds)
        self._log = logger.bind(node_id=self._id, node_name=config.name, kind=self.kind.value)

    # -----------------------------------------------------------------
    # Identity
    # -----------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def parent_id(self) -> str | None:
        return self._parent_id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def status(self) -> NodeStatus:
        return self._status

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._id} {self._status.value}>"

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def initialize(self) -> None:
        """Persist the initial record, go idle, and start the monitor if enabled."""
        self._set_status(NodeStatus.IDLE)
        await self.save_state()
        if self.config.monitor_enabled and self._status is not NodeStatus.TERMINATED:
            self.monitor.start()
        self.publish(EventType.NODE_SPAWNED, parent_id=self._parent_id)
        self._log.info("node_initialized", parent_id=self._parent_id)

    async def execute_task(self, task: Task) -> TaskResult:
        """Run ``task`` and return its result. Never raises.

        Only idle, completed and failed nodes accept work; any other state
        yields a failure result without touching status or error history.
        A node terminated while the task runs reports the task as failed.
        """
        if self._status not in ACCEPTING_STATUSES:
            self._log.warning("task_rejected", task_id=task.id, status=self._status.value)
            return TaskResult(
                task_id=task.id,
                success=False,
                error=f"Node {self._id} cannot accept a task while {self._status.value}",
                self_test_passed=False,
            )

        self.current_task = task
        self.task_started_at = time.time()
        task_state = self.context.task_state
        task_state.current_task_id = task.id
        task_state.task_history.append(task.id)
        await self.update_status(NodeStatus.RUNNING)
        self.publish(EventType.TASK_STARTED, task_id=task.id, description=task.description)
        self._log.info("task_started", task_id=task.id)

        try:
            result = await self._run_task(task)
            outcome = NodeStatus.COMPLETED
        except Exception as e:
            message = str(e) or type(e).__name__
            await self.add_execution_log("error", f"Error: {message}")
            await self.record_error(message)
            outcome = (
                NodeStatus.ERROR_LOOP
                if self.is_in_error_loop(ERROR_LOOP_THRESHOLD)
                else NodeStatus.FAILED
            )
            result = TaskResult(
                task_id=task.id,
                success=False,
                error=message,
                self_test_passed=False,
            )
            self._log.warning(
                "task_failed",
                task_id=task.id,
                error_type=type(e).__name__,
                error=message,
                outcome=outcome.value,
            )

        if self._status is NodeStatus.TERMINATED:
            result = self.terminated_result(task)
            self._log.warning("task_abandoned", task_id=task.id, reason=self.terminate_reason)

        self.last_result = result
        self.task_started_at = None
        completed_tasks = self.context.task_state.completed_tasks
        if result.success and task.id not in completed_tasks:
            completed_tasks.append(task.id)
        self._set_status(outcome)
        await self.save_state()
        await self.report_result(result)

        self.publish(
            EventType.TASK_COMPLETE,
            task_id=task.id,
            success=result.success,
            self_test_passed=result.self_test_passed,
            error=result.error,
        )
        self._log.info(
            "task_finished",
            task_id=task.id,
            success=result.success,
            status=self._status.value,
        )
        return result

    async def _run_task(self, task: Task) -> TaskResult:
        """Perform kind-specific work. Raising marks the task as failed."""
        raise NotImplementedError

    def terminated_result(self, task: Task) -> TaskResult:
        """Failure result for a task whose node was terminated mid-flight."""
        return TaskResult(
            task_id=task.id,
            success=False,
            error=f"Node {self._id} terminated: {self.terminate_reason}",
            self_test_passed=False,
        )

    async def terminate(self, reason: str = "unknown") -> None:
        """Terminate this node and, before returning, all of its descendants.

        Repeated calls are no-ops.
        """
        if self._status is NodeStatus.TERMINATED:
            return

        self._set_status(NodeStatus.TERMINATED)
        self.terminated_at = time.time()
        self.terminate_reason = reason

        for child in list(self.children.values()):
            await child.terminate(f"Parent {self._id} terminated: {reason}")

        await self.monitor.stop()
        self.monitor.report_event(
            MonitorEvent(
                type=MonitorEventType.TERMINATED,
                agent_id=self._id,
                details={"reason": reason},
            )
        )
        await self.save_state()
        self.publish(EventType.NODE_TERMINATED, reason=reason)
        self._log.info("node_terminated", reason=reason)

    async def recreate(self) -> AgentNode:
        """Terminate this node and return an initialized replacement.

        The replacement has the same kind, parent and configuration but a
        fresh id and empty history. The caller relinks it into the tree.
        """
        await self.terminate(RECREATE_REASON)

        replacement = type(self)(self.config, **self._clone_kwargs())
        await replacement.initialize()
        replacement.monitor.report_event(
            MonitorEvent(
                type=MonitorEventType.RECREATED,
                agent_id=replacement.id,
                details={"previous_id": self._id},
            )
        )
        self.publish(EventType.NODE_RECREATED, replacement_id=replacement.id)
        self._log.info("node_recreated", replacement_id=replacement.id)
        return replacement

    def _clone_kwargs(self) -> dict[str, Any]:
        """Constructor keyword arguments for a replacement of this node."""
        return {
            "store": self.store,
            "oracle": self.oracle,
            "parent_id": self._parent_id,
            "event_bus": self.event_bus,
            "cluster_id": self.cluster_id,
        }

    # -----------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------

    def _set_status(self, status: NodeStatus) -> bool:
        """Apply a transition in memory. Leaving ``terminated`` is refused."""
        old = self._status
        if old is NodeStatus.TERMINATED and status is not NodeStatus.TERMINATED:
            self._log.debug("status_transition_ignored", requested=status.value)
            return False

        self._status = status
        self.updated_at = time.time()
        if old is not status:
            self.publish(EventType.NODE_STATUS_CHANGED, old_status=old.value, new_status=status.value)
        return True

    async def update_status(self, status: NodeStatus) -> None:
        """Apply a transition and persist it."""
        if self._set_status(status):
            await self.save_state()

    # -----------------------------------------------------------------
    # Errors
    # -----------------------------------------------------------------

    async def record_error(self, message: str) -> None:
        """Append to the bounded error history and notify the monitor."""
        self.error_count += 1
        self.last_error = message
        self.error_history.append(message)
        if len(self.error_history) > ERROR_HISTORY_LIMIT:
            del self.error_history[: len(self.error_history) - ERROR_HISTORY_LIMIT]
        self.updated_at = time.time()

        self.monitor.report_event(
            MonitorEvent(
                type=MonitorEventType.ERROR_DETECTED,
                agent_id=self._id,
                details={"error": message, "error_count": self.error_count},
            )
        )
        await self.save_state()

    def is_in_error_loop(self, threshold: int = ERROR_LOOP_THRESHOLD) -> bool:
        """True iff the trailing ``threshold`` errors are identical."""
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        if len(self.error_history) < threshold:
            return False
        return len(set(self.error_history[-threshold:])) == 1

    # -----------------------------------------------------------------
    # Oracle access
    # -----------------------------------------------------------------

    async def call_oracle(self, operation: str, call: Awaitable[T]) -> T:
        """Await an oracle call bounded by ``config.oracle_timeout_seconds``.

        Raises:
            OracleTimeoutError: If the bound is exceeded.
            OracleFailureError: If the oracle fails in any other way.
        """
        timeout = self.config.oracle_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except TimeoutError as e:
            self._log.warning("oracle_timeout", operation=operation, timeout_seconds=timeout)
            raise OracleTimeoutError(operation, timeout) from e
        except OracleFailureError:
            raise
        except Exception as e:
            self._log.warning(
                "oracle_failed",
                operation=operation,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise OracleFailureError(f"Oracle {operation} failed: {e}") from e

    # -----------------------------------------------------------------
    # Tree
    # -----------------------------------------------------------------

    def _ensure_can_own(self, child: AgentNode) -> None:
        if self.kind is NodeKind.WORKER:
            raise InvalidTreeOperationError(f"Worker {self._id} cannot own children")
        if self._status is NodeStatus.TERMINATED:
            raise InvalidTreeOperationError(f"Terminated node {self._id} cannot adopt {child.id}")
        if child.parent_id != self._id:
            raise InvalidTreeOperationError(
                f"Node {child.id} has parent {child.parent_id}, expected {self._id}"
            )
        if child.id in self.children:
            raise InvalidTreeOperationError(f"Node {child.id} is already a child of {self._id}")

    async def add_child(self, child: AgentNode) -> None:
        self._ensure_can_own(child)
        self.children[child.id] = child
        self.updated_at = time.time()
        await self.save_state()

    async def remove_child(self, child_id: str) -> bool:
        """Terminate and detach a child. Returns False for unknown ids."""
        child = self.children.pop(child_id, None)
        if child is None:
            return False
        await child.terminate("Removed by parent")
        self.updated_at = time.time()
        await self.save_state()
        return True

    async def replace_child(self, old_id: str, new_child: AgentNode) -> None:
        """Put ``new_child`` in ``old_id``'s slot, keeping dispatch order."""
        if old_id not in self.children:
            raise InvalidTreeOperationError(f"Node {old_id} is not a child of {self._id}")
        self._ensure_can_own(new_child)
        self.children = {
            (new_child.id if key == old_id else key): (new_child if key == old_id else node)
            for key, node in self.children.items()
        }
        self.updated_at = time.time()
        await self.save_state()

    def get_child(self, child_id: str) -> AgentNode | None:
        return self.children.get(child_id)

    def get_all_descendants(self) -> list[AgentNode]:
        """All descendants, depth first, in child order."""
        descendants: list[AgentNode] = []
        for child in self.children.values():
            descendants.append(child)
            descendants.extend(child.get_all_descendants())
        return descendants

    # -----------------------------------------------------------------
    # Context
    # -----------------------------------------------------------------

    async def add_conversation_entry(
        self,
        role: Literal["user", "assistant", "system"],
        content: str,
    ) -> None:
        entry = ConversationEntry(role=role, content=content)
        self.context.conversation_history.append(entry)
        await self._persist(
            "append_conversation",
            self.store.append_conversation(self._id, entry.model_dump(mode="json")),
        )

    async def add_execution_log(self, action: str, result: str) -> None:
        entry = ExecutionLogEntry(action=action, result=result)
        self.context.execution_log.append(entry)
        await self._persist(
            "append_execution_log",
            self.store.append_execution_log(self._id, entry.model_dump(mode="json")),
        )

    async def update_task_state(self, **changes: Any) -> None:
        """Merge ``changes`` into the task state and persist."""
        self.context.task_state = self.context.task_state.model_copy(update=changes)
        await self.save_state()

    async def set_custom_data(self, key: str, value: Any) -> None:
        self.context.custom_data[key] = value
        await self.save_state()

    def get_custom_data(self, key: str) -> Any:
        return self.context.custom_data.get(key)

    # -----------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------

    def get_state(self) -> NodeState:
        return NodeState(
            id=self._id,
            name=self.name,
            kind=self.kind,
            description=self.config.description,
            parent_id=self._parent_id,
            children_ids=list(self.children),
            status=self._status,
            current_task=self.current_task,
            context=self.context,
            error_count=self.error_count,
            error_history=list(self.error_history),
            last_error=self.last_error,
            config=self.config,
            created_at=self.created_at,
            updated_at=self.updated_at,
            terminated_at=self.terminated_at,
            terminate_reason=self.terminate_reason,
            last_result=self.last_result,
        )

    async def load_state(self, state: NodeState) -> None:
        """Restore mutable fields from a snapshot and persist.

        Identity (id, name, kind, parent_id, created_at) is never overwritten,
        and a terminated node stays terminated.
        """
        self.config = state.config.model_copy(update={"name": self.name})
        self.context = state.context.model_copy(deep=True)
        self.current_task = state.current_task
        self.error_count = state.error_count
        self.error_history = list(state.error_history[-ERROR_HISTORY_LIMIT:])
        self.last_error = state.last_error
        self.last_result = state.last_result
        self.terminated_at = state.terminated_at
        self.terminate_reason = state.terminate_reason
        self._set_status(state.status)
        self.updated_at = time.time()
        await self.save_state()

    async def save_state(self) -> None:
        await self._persist("put", self.store.put(self._id, self.get_state().model_dump(mode="json")))

    async def report_result(self, result: TaskResult) -> None:
        """Fire-and-forget notification of ``result`` to the parent, if any."""
        if self._parent_id is None:
            return
        await self.add_execution_log("report_to_parent", f"Reporting result to parent {self._parent_id}")
        record = {
            "child_id": self._id,
            "parent_id": self._parent_id,
            "result": result.model_dump(mode="json"),
            "state": self.get_state().model_dump(mode="json"),
            "reported_at": time.time(),
        }
        await self._persist("put", self.store.put(child_result_key(self._parent_id, self._id), record))

    async def _persist(self, operation: str, call: Awaitable[None]) -> None:
        """Await a gateway write; failures are logged and swallowed."""
        try:
            await call
        except PersistenceFailureError as e:
            self._log.error("node_state_persist_failed", operation=operation, error=str(e))

    # -----------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------

    def publish(self, event_type: EventType, **data: Any) -> None:
        """Mirror an event onto the cluster event bus, if one is attached."""
        if self.event_bus is None:
            return
        self.event_bus.publish_nowait(
            ClusterEvent(
                type=event_type,
                cluster_id=self.cluster_id,
                node_id=self._id,
                node_name=self.name,
                data=data,
            )
        )
