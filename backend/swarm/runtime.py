"""Process-scoped cluster runtime.

ClusterRuntime owns the collaborators every node needs (persistence store,
reasoning oracle, event bus) and the root coordinators built on them. It has
an explicit ``start()``/``close()`` lifecycle instead of module-level
singletons; the FastAPI lifespan and the command-line entry point each create
one.

Usage:
    >>> runtime = ClusterRuntime(store=InMemoryNodeStore(), oracle=OfflineOracle())
    >>> await runtime.start()
    >>> root = await runtime.create_root_node(NodeConfig(name="root"))
    >>> result = await root.execute_task(Task(description="build X"))
    >>> await runtime.close()
"""

from __future__ import annotations

from typing import Any

import structlog

from config import settings
from events.bus import EventBus, get_event_bus
from models.database import PersistenceGateway, SqliteNodeStore
from swarm.coordinator import CoordinatorNode
from swarm.llm import LLMClient
from swarm.node import AgentNode
from swarm.oracle import ReasoningOracle, create_oracle
from swarm.types import ACCEPTING_STATUSES, NodeConfig, NodeStatus, Task, TaskResult

logger = structlog.get_logger(__name__)

SHUTDOWN_REASON = "Cluster shutdown"


def default_root_config() -> NodeConfig:
    return NodeConfig(
        name="root",
        description="Root coordinator",
        timeout_seconds=settings.node_timeout_seconds,
    )


class ClusterRuntime:
    """Holds the cluster's collaborators and its root coordinators.

    Attributes:
        store: Persistence gateway shared by every node.
        oracle: Reasoning oracle shared by every node.
        event_bus: Bus that node events are mirrored onto.
        cluster_id: Key for this cluster's events.
        roots: Root coordinators keyed by id, in creation order.
    """

    def __init__(
        self,
        store: PersistenceGateway | None = None,
        oracle: ReasoningOracle | None = None,
        event_bus: EventBus | None = None,
        cluster_id: str | None = None,
    ) -> None:
        self.cluster_id = cluster_id or settings.cluster_id
        self.event_bus = event_bus if event_bus is not None else get_event_bus()
        self.store = store if store is not None else SqliteNodeStore(settings.database_path)
        self.oracle = oracle if oracle is not None else create_oracle(
            LLMClient(event_bus=self.event_bus, cluster_id=self.cluster_id)
        )
        self.roots: dict[str, CoordinatorNode] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def _node_kwargs(self) -> dict[str, Any]:
        return {
            "store": self.store,
            "oracle": self.oracle,
            "event_bus": self.event_bus,
            "cluster_id": self.cluster_id,
        }

    async def start(self) -> None:
        """Initialize the persistence store. Idempotent."""
        if self._started:
            return
        await self.store.init()
        self._started = True
        logger.info(
            "cluster_runtime_started",
            cluster_id=self.cluster_id,
            oracle=type(self.oracle).__name__,
            store=type(self.store).__name__,
        )

    async def close(self) -> None:
        """Terminate every root (and so every node) and close the event stream."""
        for root in list(self.roots.values()):
            await root.terminate(SHUTDOWN_REASON)
        await self.event_bus.close_cluster(self.cluster_id)
        self._started = False
        logger.info("cluster_runtime_closed", cluster_id=self.cluster_id, root_count=len(self.roots))

    # -----------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------

    async def create_root_node(
        self,
        config: NodeConfig | None = None,
        worker_config: NodeConfig | None = None,
    ) -> CoordinatorNode:
        """Build, register and initialize a parentless coordinator."""
        await self.start()
        root = CoordinatorNode(
            config or default_root_config(),
            worker_config=worker_config,
            **self._node_kwargs(),
        )
        self.roots[root.id] = root
        await root.initialize()
        return root

    async def acquire_root(self) -> CoordinatorNode:
        """Return a root that can accept a task.

        Drops terminated roots first, then reuses the first idle/completed/failed
        root, recreates a root stuck in ``error_loop``, and otherwise builds a
        new one.
        """
        self.prune_terminated_roots()

        for root in self.roots.values():
            if root.status in ACCEPTING_STATUSES:
                return root

        for root_id, root in list(self.roots.items()):
            if root.status is NodeStatus.ERROR_LOOP:
                replacement = await root.recreate()
                del self.roots[root_id]
                self.roots[replacement.id] = replacement
                logger.info("root_recreated", previous_id=root_id, root_id=replacement.id)
                return replacement

        return await self.create_root_node()

    def prune_terminated_roots(self) -> list[str]:
        """Forget terminated roots and their trees. Returns the dropped ids.

        Their persisted records stay in the store.
        """
        dropped = [
            root_id
            for root_id, root in self.roots.items()
            if root.status is NodeStatus.TERMINATED
        ]
        for root_id in dropped:
            del self.roots[root_id]
        if dropped:
            logger.info("terminated_roots_pruned", root_ids=dropped, remaining=len(self.roots))
        return dropped

    async def submit_task(
        self,
        description: str,
        context: dict[str, Any] | None = None,
    ) -> tuple[CoordinatorNode, TaskResult]:
        """Run one user-level task on an available root coordinator."""
        root = await self.acquire_root()
        task = Task(description=description, context=context)
        logger.info("task_submitted", task_id=task.id, root_id=root.id)
        result = await root.execute_task(task)
        return root, result

    def list_nodes(self) -> list[AgentNode]:
        """Every live-tree node: each root followed by its descendants."""
        nodes: list[AgentNode] = []
        for root in self.roots.values():
            nodes.append(root)
            nodes.extend(root.get_all_descendants())
        return nodes

    def get_node(self, node_id: str) -> AgentNode | None:
        for node in self.list_nodes():
            if node.id == node_id:
                return node
        return None


async def create_root_node(
    config: NodeConfig | None = None,
    runtime: ClusterRuntime | None = None,
) -> CoordinatorNode:
    """Create and initialize a root coordinator on ``runtime`` (a new one if omitted)."""
    runtime = runtime or ClusterRuntime()
    return await runtime.create_root_node(config)
