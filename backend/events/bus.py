"""In-process pub/sub bus for cluster events.

Nodes and their watchdogs publish ClusterEvents here; the HTTP API and tests
subscribe per cluster. The whole cluster runs on one event loop, so delivery
is a plain ``put_nowait`` onto each subscriber queue.
"""

import asyncio
from collections import defaultdict

import structlog

from events.types import ClusterEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Pub/sub event bus keyed by cluster id.

    Every published event is kept in a bounded per-cluster history so late
    subscribers (and the HTTP API) can replay what already happened.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("default")
        >>> bus.publish_nowait(ClusterEvent(
        ...     type=EventType.NODE_SPAWNED,
        ...     cluster_id="default",
        ...     node_id="worker_1a2b3c",
        ... ))
        >>> event = await queue.get()

    Attributes:
        _subscribers: Mapping of cluster_id to subscriber queues
        _history: Mapping of cluster_id to retained events
    """

    MAX_HISTORY_PER_CLUSTER = 5000

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[ClusterEvent]]] = defaultdict(list)
        self._history: dict[str, list[ClusterEvent]] = defaultdict(list)
        logger.info("event_bus_initialized")

    def subscribe(self, cluster_id: str) -> asyncio.Queue[ClusterEvent]:
        """Register a new subscriber queue for a cluster's events."""
        queue: asyncio.Queue[ClusterEvent] = asyncio.Queue()
        self._subscribers[cluster_id].append(queue)
        logger.info(
            "subscriber_added",
            cluster_id=cluster_id,
            subscriber_count=len(self._subscribers[cluster_id]),
        )
        return queue

    def unsubscribe(self, cluster_id: str, queue: asyncio.Queue[ClusterEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        queues = self._subscribers.get(cluster_id)
        if not queues:
            return
        try:
            queues.remove(queue)
        except ValueError:
            logger.warning("unsubscribe_queue_not_found", cluster_id=cluster_id)
            return
        if not queues:
            del self._subscribers[cluster_id]

    def publish_nowait(self, event: ClusterEvent) -> None:
        """Record an event and deliver it to every subscriber of its cluster."""
        if event.type != EventType.CLUSTER_CLOSED:
            history = self._history[event.cluster_id]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_CLUSTER:
                del history[: len(history) - self.MAX_HISTORY_PER_CLUSTER]

        for queue in list(self._subscribers.get(event.cluster_id, [])):
            queue.put_nowait(event)

        logger.debug(
            "event_published",
            cluster_id=event.cluster_id,
            event_type=event.type.value,
            node_id=event.node_id,
        )

    async def publish(self, event: ClusterEvent) -> None:
        """Async alias of ``publish_nowait`` for use inside coroutines."""
        self.publish_nowait(event)

    def get_event_history(self, cluster_id: str) -> list[ClusterEvent]:
        """Return a copy of the retained events for a cluster."""
        return list(self._history.get(cluster_id, []))

    def clear_event_history(self, cluster_id: str) -> None:
        self._history.pop(cluster_id, None)

    def get_subscriber_count(self, cluster_id: str) -> int:
        return len(self._subscribers.get(cluster_id, []))

    async def close_cluster(self, cluster_id: str) -> None:
        """Send the closing sentinel to all subscribers and drop them."""
        sentinel = ClusterEvent(type=EventType.CLUSTER_CLOSED, cluster_id=cluster_id)
        for queue in self._subscribers.pop(cluster_id, []):
            queue.put_nowait(sentinel)
        logger.info("cluster_stream_closed", cluster_id=cluster_id)


# -----------------------------------------------------------------------------
# Process-wide accessor
# -----------------------------------------------------------------------------

_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Return the process-wide EventBus, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide EventBus (used by tests)."""
    global _event_bus
    _event_bus = None
