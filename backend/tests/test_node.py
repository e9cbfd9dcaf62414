"""Tests for swarm/node.py -- the shared AgentNode behavior.

Covers error history and loop detection, the task acceptance gate,
termination and recreation, tree operations, persistence (including
swallowed store failures), oracle call bounding, and context helpers.
"""

import asyncio
from typing import Any

import pytest

from events.bus import EventBus
from events.types import EventType
from models.database import InMemoryNodeStore
from swarm.errors import (
    InvalidTreeOperationError,
    OracleFailureError,
    OracleTimeoutError,
    PersistenceFailureError,
)
from swarm.node import RECREATE_REASON, child_result_key
from swarm.types import (
    ERROR_HISTORY_LIMIT,
    ExecutionOutcome,
    MonitorEventType,
    NodeConfig,
    NodeKind,
    NodeStatus,
    Task,
)
from swarm.worker import WorkerNode

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FailingStore(InMemoryNodeStore):
    """Store whose writes always fail."""

    async def put(self, key: str, record: dict[str, Any]) -> None:
        raise PersistenceFailureError(f"disk full while writing {key}")

    async def append_execution_log(self, key: str, entry: dict[str, Any]) -> None:
        raise PersistenceFailureError("disk full")

    async def append_conversation(self, key: str, entry: dict[str, Any]) -> None:
        raise PersistenceFailureError("disk full")


async def _slow(seconds: float) -> str:
    await asyncio.sleep(seconds)
    return "late"


async def _broken() -> str:
    raise ConnectionError("connection reset")


# =========================================================================
# Error history and loop detection
# =========================================================================


class TestErrorLoopDetection:
    """is_in_error_loop looks only at the trailing errors."""

    async def test_three_identical_errors_form_a_loop(self, make_worker: Any) -> None:
        worker = await make_worker()
        for _ in range(3):
            await worker.record_error("X")
        assert worker.is_in_error_loop(3) is True

    async def test_mixed_trailing_errors_do_not_form_a_loop(self, make_worker: Any) -> None:
        worker = await make_worker()
        for message in ("X", "Y", "X"):
            await worker.record_error(message)
        assert worker.is_in_error_loop(3) is False

    async def test_only_the_tail_matters(self, make_worker: Any) -> None:
        worker = await make_worker()
        for message in ("A", "B", "X", "X", "X"):
            await worker.record_error(message)
        assert worker.is_in_error_loop(3) is True

    async def test_too_few_errors(self, make_worker: Any) -> None:
        worker = await make_worker()
        await worker.record_error("X")
        await worker.record_error("X")
        assert worker.is_in_error_loop(3) is False

    async def test_threshold_of_one(self, make_worker: Any) -> None:
        worker = await make_worker()
        assert worker.is_in_error_loop(1) is False
        await worker.record_error("X")
        assert worker.is_in_error_loop(1) is True

    async def test_threshold_below_one_rejected(self, make_worker: Any) -> None:
        worker = await make_worker()
        with pytest.raises(ValueError):
            worker.is_in_error_loop(0)


class TestErrorHistory:
    """The error history is bounded; counters are not."""

    async def test_history_keeps_most_recent_entries(self, make_worker: Any) -> None:
        worker = await make_worker()
        for i in range(ERROR_HISTORY_LIMIT + 5):
            await worker.record_error(f"error {i}")

        assert len(worker.error_history) == ERROR_HISTORY_LIMIT
        assert worker.error_history[0] == "error 5"
        assert worker.error_history[-1] == f"error {ERROR_HISTORY_LIMIT + 4}"
        assert worker.error_count == ERROR_HISTORY_LIMIT + 5
        assert worker.last_error == f"error {ERROR_HISTORY_LIMIT + 4}"

    async def test_record_error_reports_to_monitor(self, make_worker: Any) -> None:
        worker = await make_worker()
        await worker.record_error("X")

        events = worker.monitor.get_event_history()
        assert events[-1].type == MonitorEventType.ERROR_DETECTED
        assert events[-1].details == {"error": "X", "error_count": 1}

    async def test_repeated_failures_end_in_error_loop(
        self, make_worker: Any, oracle: Any
    ) -> None:
        oracle.outcomes = [ExecutionOutcome(success=False, output="boom")] * 3
        worker = await make_worker()

        statuses = []
        for _ in range(3):
            result = await worker.execute_task(Task(description="do it"))
            assert result.success is False
            assert result.self_test_passed is False
            statuses.append(worker.status)

        assert statuses == [NodeStatus.FAILED, NodeStatus.FAILED, NodeStatus.ERROR_LOOP]
        assert worker.error_history == ["boom", "boom", "boom"]


# =========================================================================
# Task acceptance
# =========================================================================


class TestExecuteTaskGate:
    """Only idle, completed and failed nodes accept work."""

    @pytest.mark.parametrize(
        "status",
        [NodeStatus.RUNNING, NodeStatus.ERROR_LOOP],
    )
    async def test_busy_or_looping_node_rejects_task(
        self, make_worker: Any, oracle: Any, status: NodeStatus
    ) -> None:
        worker = await make_worker()
        await worker.update_status(status)

        result = await worker.execute_task(Task(description="do it"))

        assert result.success is False
        assert result.error is not None
        assert worker.status == status
        assert worker.error_count == 0
        assert oracle.execute_calls == []

    async def test_terminated_node_rejects_task(self, make_worker: Any) -> None:
        worker = await make_worker()
        await worker.terminate("done")

        result = await worker.execute_task(Task(description="do it"))

        assert result.success is False
        assert worker.status == NodeStatus.TERMINATED
        assert worker.error_history == []

    async def test_failed_node_accepts_task(self, make_worker: Any, oracle: Any) -> None:
        oracle.outcomes = [ExecutionOutcome(success=False, output="boom")]
        worker = await make_worker()
        await worker.execute_task(Task(description="first"))
        assert worker.status == NodeStatus.FAILED

        result = await worker.execute_task(Task(description="second"))

        assert result.success is True
        assert worker.status == NodeStatus.COMPLETED

    async def test_task_state_bookkeeping(self, make_worker: Any) -> None:
        worker = await make_worker()
        task = Task(description="do it")
        await worker.execute_task(task)

        state = worker.context.task_state
        assert state.current_task_id == task.id
        assert state.task_history == [task.id]
        assert state.completed_tasks == [task.id]
        assert worker.task_started_at is None


# =========================================================================
# Termination and recreation
# =========================================================================


class TestTerminate:
    """Termination is absorbing, cascading and idempotent."""

    async def test_terminate_records_reason(self, make_worker: Any) -> None:
        worker = await make_worker()
        await worker.terminate("manual stop")

        assert worker.status == NodeStatus.TERMINATED
        assert worker.terminate_reason == "manual stop"
        assert worker.terminated_at is not None
        assert worker.monitor.get_event_history()[-1].type == MonitorEventType.TERMINATED

    async def test_terminate_is_idempotent(
        self, make_worker: Any, event_bus: EventBus
    ) -> None:
        worker = await make_worker()
        await worker.terminate("first")
        await worker.terminate("second")

        assert worker.terminate_reason == "first"
        terminated = [
            e for e in event_bus.get_event_history(worker.cluster_id)
            if e.type == EventType.NODE_TERMINATED
        ]
        assert len(terminated) == 1

    async def test_terminated_is_absorbing(self, make_worker: Any) -> None:
        worker = await make_worker()
        await worker.terminate("stop")
        await worker.update_status(NodeStatus.IDLE)
        assert worker.status == NodeStatus.TERMINATED

    async def test_terminate_cascades_to_descendants(
        self, make_coordinator: Any, make_worker: Any
    ) -> None:
        root = await make_coordinator()
        branch = await make_coordinator(parent_id=root.id)
        await root.add_child(branch)
        leaf = await make_worker(parent_id=branch.id)
        await branch.add_child(leaf)

        await root.terminate("shutdown")

        assert branch.status == NodeStatus.TERMINATED
        assert leaf.status == NodeStatus.TERMINATED
        assert branch.terminate_reason == f"Parent {root.id} terminated: shutdown"
        assert leaf.terminate_reason.startswith(f"Parent {branch.id} terminated:")


class TestRecreate:
    """Recreation replaces a node with a fresh one of the same shape."""

    async def test_recreate_returns_fresh_node(self, make_worker: Any) -> None:
        worker = await make_worker(parent_id="coordinator_parent")
        for _ in range(3):
            await worker.record_error("X")

        replacement = await worker.recreate()

        assert isinstance(replacement, WorkerNode)
        assert replacement.id != worker.id
        assert replacement.config == worker.config
        assert replacement.parent_id == "coordinator_parent"
        assert replacement.status == NodeStatus.IDLE
        assert replacement.error_history == []
        assert replacement.error_count == 0

    async def test_recreate_terminates_original(self, make_worker: Any) -> None:
        worker = await make_worker()
        await worker.recreate()
        assert worker.status == NodeStatus.TERMINATED
        assert worker.terminate_reason == RECREATE_REASON

    async def test_replacement_monitor_records_recreation(self, make_worker: Any) -> None:
        worker = await make_worker()
        replacement = await worker.recreate()

        event = replacement.monitor.get_event_history()[-1]
        assert event.type == MonitorEventType.RECREATED
        assert event.details == {"previous_id": worker.id}


# =========================================================================
# Tree operations
# =========================================================================


class TestTreeOperations:
    """Only coordinators own children, and only their own."""

    async def test_worker_cannot_own_children(self, make_worker: Any) -> None:
        parent = await make_worker()
        child = await make_worker(parent_id=parent.id)
        with pytest.raises(InvalidTreeOperationError):
            await parent.add_child(child)

    async def test_child_must_name_parent(
        self, make_coordinator: Any, make_worker: Any
    ) -> None:
        coordinator = await make_coordinator()
        stranger = await make_worker(parent_id="coordinator_other")
        with pytest.raises(InvalidTreeOperationError):
            await coordinator.add_child(stranger)

    async def test_duplicate_child_rejected(
        self, make_coordinator: Any, make_worker: Any
    ) -> None:
        coordinator = await make_coordinator()
        child = await make_worker(parent_id=coordinator.id)
        await coordinator.add_child(child)
        with pytest.raises(InvalidTreeOperationError):
            await coordinator.add_child(child)

    async def test_terminated_owner_rejects_children(
        self, make_coordinator: Any, make_worker: Any
    ) -> None:
        coordinator = await make_coordinator()
        await coordinator.terminate("gone")
        late = await make_worker(parent_id=coordinator.id)

        with pytest.raises(InvalidTreeOperationError, match="Terminated"):
            await coordinator.add_child(late)
        assert coordinator.children == {}

    async def test_remove_child(self, make_coordinator: Any, make_worker: Any) -> None:
        coordinator = await make_coordinator()
        child = await make_worker(parent_id=coordinator.id)
        await coordinator.add_child(child)

        assert await coordinator.remove_child(child.id) is True
        assert coordinator.get_child(child.id) is None
        assert child.status == NodeStatus.TERMINATED
        assert await coordinator.remove_child("worker_missing") is False

    async def test_replace_child_keeps_order(
        self, make_coordinator: Any, make_worker: Any
    ) -> None:
        coordinator = await make_coordinator()
        first = await make_worker(parent_id=coordinator.id)
        second = await make_worker(parent_id=coordinator.id)
        third = await make_worker(parent_id=coordinator.id)
        for child in (first, second, third):
            await coordinator.add_child(child)

        replacement = await second.recreate()
        await coordinator.replace_child(second.id, replacement)

        assert list(coordinator.children) == [first.id, replacement.id, third.id]

    async def test_replace_unknown_child_rejected(
        self, make_coordinator: Any, make_worker: Any
    ) -> None:
        coordinator = await make_coordinator()
        child = await make_worker(parent_id=coordinator.id)
        with pytest.raises(InvalidTreeOperationError):
            await coordinator.replace_child("worker_missing", child)

    async def test_get_all_descendants_depth_first(
        self, make_coordinator: Any, make_worker: Any
    ) -> None:
        root = await make_coordinator()
        branch = await make_coordinator(parent_id=root.id)
        await root.add_child(branch)
        leaf = await make_worker(parent_id=branch.id)
        await branch.add_child(leaf)
        sibling = await make_worker(parent_id=root.id)
        await root.add_child(sibling)

        assert root.get_all_descendants() == [branch, leaf, sibling]


# =========================================================================
# Persistence
# =========================================================================


class TestPersistence:
    """Snapshots, child result records and failure handling."""

    async def test_initialize_saves_snapshot(
        self, make_worker: Any, store: InMemoryNodeStore
    ) -> None:
        worker = await make_worker()
        record = await store.get(worker.id)
        assert record is not None
        assert record["id"] == worker.id
        assert record["kind"] == NodeKind.WORKER.value
        assert record["status"] == NodeStatus.IDLE.value

    async def test_child_reports_result_to_parent_key(
        self, make_worker: Any, store: InMemoryNodeStore
    ) -> None:
        worker = await make_worker(parent_id="coordinator_parent")
        task = Task(description="do it")
        await worker.execute_task(task)

        record = await store.get(child_result_key("coordinator_parent", worker.id))
        assert record is not None
        assert record["child_id"] == worker.id
        assert record["result"]["task_id"] == task.id
        assert record["result"]["success"] is True

    async def test_root_does_not_report(
        self, make_worker: Any, store: InMemoryNodeStore
    ) -> None:
        worker = await make_worker()
        await worker.execute_task(Task(description="do it"))
        assert [key for key in await store.list_keys() if "_child_result_" in key] == []

    async def test_store_failures_are_swallowed(self, make_worker: Any) -> None:
        worker = await make_worker(store=FailingStore())

        result = await worker.execute_task(Task(description="do it"))

        assert result.success is True
        assert worker.status == NodeStatus.COMPLETED

    async def test_load_state_keeps_identity(self, make_worker: Any) -> None:
        source = await make_worker()
        await source.record_error("X")
        await source.set_custom_data("notes", {"k": 1})
        snapshot = source.get_state()

        target = await make_worker()
        await target.load_state(snapshot)

        assert target.id != source.id
        assert target.error_history == ["X"]
        assert target.error_count == 1
        assert target.get_custom_data("notes") == {"k": 1}

    async def test_load_state_cannot_revive_terminated_node(self, make_worker: Any) -> None:
        source = await make_worker()
        target = await make_worker()
        await target.terminate("gone")

        await target.load_state(source.get_state())

        assert target.status == NodeStatus.TERMINATED

    async def test_execution_log_is_appended_to_store(
        self, make_worker: Any, store: InMemoryNodeStore
    ) -> None:
        worker = await make_worker()
        await worker.add_execution_log("heartbeat", "ok")
        await worker.add_conversation_entry("user", "hello")

        execution = await store.get_log(worker.id, "execution")
        conversation = await store.get_log(worker.id, "conversation")
        assert execution[-1]["action"] == "heartbeat"
        assert conversation[-1]["content"] == "hello"


# =========================================================================
# Oracle call bounding
# =========================================================================


class TestCallOracle:
    """call_oracle maps timeouts and crashes to oracle errors."""

    async def test_returns_value(self, make_worker: Any) -> None:
        worker = await make_worker()
        assert await worker.call_oracle("execute", _slow(0)) == "late"

    async def test_timeout(self, make_worker: Any, node_config: NodeConfig) -> None:
        worker = await make_worker(
            config=node_config.model_copy(update={"oracle_timeout_seconds": 0.01})
        )
        with pytest.raises(OracleTimeoutError) as exc_info:
            await worker.call_oracle("execute", _slow(1))
        assert exc_info.value.operation == "execute"
        assert isinstance(exc_info.value, OracleFailureError)

    async def test_other_errors_become_oracle_failures(self, make_worker: Any) -> None:
        worker = await make_worker()
        with pytest.raises(OracleFailureError, match="connection reset"):
            await worker.call_oracle("decompose", _broken())


# =========================================================================
# Events
# =========================================================================


class TestNodeEvents:
    """Nodes mirror lifecycle changes onto the event bus."""

    async def test_spawn_and_status_events(
        self, make_worker: Any, event_bus: EventBus
    ) -> None:
        worker = await make_worker()
        await worker.execute_task(Task(description="do it"))

        types = [e.type for e in event_bus.get_event_history(worker.cluster_id)]
        assert EventType.NODE_SPAWNED in types
        assert EventType.TASK_STARTED in types
        assert EventType.TASK_COMPLETE in types
        assert types.index(EventType.TASK_STARTED) < types.index(EventType.TASK_COMPLETE)
