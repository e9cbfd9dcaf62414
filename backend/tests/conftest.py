"""Shared test fixtures for backend tests.

Provides an in-memory persistence store, a scripted reasoning oracle, a
fresh EventBus, and node factories so tests never touch a real database
file or LLM API unless they ask for one.
"""

import asyncio
import sys
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from swarm.node import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.bus import EventBus, reset_event_bus  # noqa: E402
from models.database import InMemoryNodeStore  # noqa: E402
from swarm.coordinator import CoordinatorNode  # noqa: E402
from swarm.oracle import fallback_decomposition  # noqa: E402
from swarm.runtime import ClusterRuntime  # noqa: E402
from swarm.types import (  # noqa: E402
    ExecutionOutcome,
    NodeConfig,
    SelfTestVerdict,
    SubTaskSpec,
)
from swarm.worker import WorkerNode  # noqa: E402

TEST_CLUSTER_ID = "test-cluster"

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> InMemoryNodeStore:
    return InMemoryNodeStore()


# ---------------------------------------------------------------------------
# Scripted Oracle
# ---------------------------------------------------------------------------

ScriptItem = Any  # a response model, or an Exception instance to raise


class ScriptedOracle:
    """ReasoningOracle that replays scripted answers and records every call.

    Each operation pops its next answer from a queue; an Exception in the
    queue is raised instead of returned. Empty queues fall back to a
    successful default. Operations listed in ``hang`` never return, which
    lets tests drive the per-call oracle timeout; ``delays`` slows an
    operation down by a fixed number of seconds.

    Args:
        subtasks: Answer for every decompose call (list or Exception).
            Defaults to the analyze/execute/verify plan.
        outcomes: Queue of execute answers.
        verdicts: Queue of self_test answers.
        hang: Operation names that block forever.
        delays: Seconds each named operation sleeps before answering.
    """

    def __init__(
        self,
        subtasks: list[SubTaskSpec] | Exception | None = None,
        outcomes: list[ScriptItem] | None = None,
        verdicts: list[ScriptItem] | None = None,
        hang: set[str] | None = None,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.subtasks = subtasks
        self.outcomes = list(outcomes or [])
        self.verdicts = list(verdicts or [])
        self.hang = hang or set()
        self.delays = delays or {}
        self.decompose_calls: list[str] = []
        self.execute_calls: list[tuple[str, dict[str, Any] | None]] = []
        self.execute_guidance: list[str | None] = []
        self.self_test_calls: list[tuple[str, str]] = []

    async def _maybe_hang(self, operation: str) -> None:
        if operation in self.hang:
            await asyncio.sleep(3600)
        if operation in self.delays:
            await asyncio.sleep(self.delays[operation])

    @staticmethod
    def _next(queue: list[ScriptItem], default: Any) -> Any:
        item = queue.pop(0) if queue else default
        if isinstance(item, Exception):
            raise item
        return item

    async def decompose(self, task_text: str) -> list[SubTaskSpec]:
        self.decompose_calls.append(task_text)
        await self._maybe_hang("decompose")
        if isinstance(self.subtasks, Exception):
            raise self.subtasks
        if self.subtasks is None:
            return fallback_decomposition(task_text)
        return list(self.subtasks)

    async def execute(
        self,
        instruction: str,
        context: dict[str, Any] | None = None,
        guidance: str | None = None,
    ) -> ExecutionOutcome:
        self.execute_calls.append((instruction, context))
        self.execute_guidance.append(guidance)
        await self._maybe_hang("execute")
        return self._next(
            self.outcomes,
            ExecutionOutcome(success=True, output=f"done: {instruction}"),
        )

    async def self_test(self, task_text: str, produced_output: str) -> SelfTestVerdict:
        self.self_test_calls.append((task_text, produced_output))
        await self._maybe_hang("self_test")
        return self._next(self.verdicts, SelfTestVerdict(passed=True, feedback="looks right"))


@pytest.fixture()
def oracle() -> ScriptedOracle:
    return ScriptedOracle()


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def node_config() -> NodeConfig:
    """Node configuration with the watchdog disabled and short oracle bound."""
    return NodeConfig(
        name="test-node",
        monitor_enabled=False,
        monitor_interval_seconds=0.01,
        timeout_seconds=60,
        oracle_timeout_seconds=0.2,
    )


NodeFactory = Callable[..., Awaitable[Any]]


@pytest.fixture()
def make_worker(
    store: InMemoryNodeStore,
    oracle: ScriptedOracle,
    event_bus: EventBus,
    node_config: NodeConfig,
) -> NodeFactory:
    """Return a factory for initialized workers sharing the test collaborators."""

    async def factory(
        config: NodeConfig | None = None,
        parent_id: str | None = None,
        **overrides: Any,
    ) -> WorkerNode:
        worker = WorkerNode(
            config or node_config.model_copy(update={"name": "worker-test"}),
            store=overrides.get("store", store),
            oracle=overrides.get("oracle", oracle),
            parent_id=parent_id,
            event_bus=event_bus,
            cluster_id=TEST_CLUSTER_ID,
        )
        await worker.initialize()
        return worker

    return factory


@pytest.fixture()
def make_coordinator(
    store: InMemoryNodeStore,
    oracle: ScriptedOracle,
    event_bus: EventBus,
    node_config: NodeConfig,
) -> NodeFactory:
    """Return a factory for initialized coordinators whose workers skip the watchdog."""

    async def factory(
        config: NodeConfig | None = None,
        parent_id: str | None = None,
        **overrides: Any,
    ) -> CoordinatorNode:
        coordinator = CoordinatorNode(
            config or node_config.model_copy(update={"name": "coordinator-test"}),
            worker_config=node_config.model_copy(update={"name": "worker"}),
            store=overrides.get("store", store),
            oracle=overrides.get("oracle", oracle),
            parent_id=parent_id,
            event_bus=event_bus,
            cluster_id=TEST_CLUSTER_ID,
        )
        await coordinator.initialize()
        return coordinator

    return factory


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


@pytest.fixture()
async def runtime(
    store: InMemoryNodeStore,
    oracle: ScriptedOracle,
    event_bus: EventBus,
) -> AsyncGenerator[ClusterRuntime, None]:
    """A started ClusterRuntime wired to the in-memory collaborators."""
    cluster = ClusterRuntime(
        store=store,
        oracle=oracle,
        event_bus=event_bus,
        cluster_id=TEST_CLUSTER_ID,
    )
    await cluster.start()
    yield cluster
    await cluster.close()
