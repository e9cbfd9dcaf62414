"""Per-node watchdog.

A Monitor is owned by exactly one node and shares its lifetime. While
started it runs three checks every ``monitor_interval_seconds``:

1. loop check: the node's trailing errors form an error loop, so emit
   ``loop_detected`` and force the node into ``error_loop``;
2. timeout check: the node's running task is older than its configured
   timeout, so emit ``timeout`` and terminate the node;
3. health check: the node already sits in ``error_loop``, so re-emit
   ``loop_detected`` for external listeners.

The monitor never raises. It only observes and triggers node-level
transitions; the parent coordinator performs the actual recreation.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import TYPE_CHECKING, Any

import structlog

from events.types import EventType
from swarm.types import (
    ERROR_LOOP_THRESHOLD,
    MONITOR_EVENT_LIMIT,
    MonitorEvent,
    MonitorEventType,
    NodeStatus,
)

if TYPE_CHECKING:
    from swarm.node import AgentNode

logger = structlog.get_logger(__name__)

TIMEOUT_REASON = "Task timeout"


class Monitor:
    """Watchdog for a single AgentNode.

    Attributes:
        node: The watched node.
        interval_seconds: Seconds between check rounds.
        threshold: Identical trailing errors that count as a loop.
    """

    def __init__(
        self,
        node: AgentNode,
        interval_seconds: float,
        threshold: int = ERROR_LOOP_THRESHOLD,
    ) -> None:
        self.node = node
        self.interval_seconds = interval_seconds
        self.threshold = threshold
        self._events: deque[MonitorEvent] = deque(maxlen=MONITOR_EVENT_LIMIT)
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Begin periodic checks. Calling start on a running monitor is a no-op."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"monitor_{self.node.id}")
        logger.info(
            "monitor_started",
            node_id=self.node.id,
            interval_seconds=self.interval_seconds,
        )

    async def stop(self) -> None:
        """Cancel periodic checks. ``report_event`` keeps recording afterwards."""
        if not self._running and self._task is None:
            return
        self._running = False
        task, self._task = self._task, None

        # A check may stop its own monitor (timeout -> terminate); the loop
        # exits on its own once the flag is cleared.
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("monitor_stopped", node_id=self.node.id)

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    return
                await self.run_checks()
            except asyncio.CancelledError:
                return
            except Exception as e:
                logger.error("monitor_check_failed", node_id=self.node.id, error=str(e))

    async def run_checks(self) -> None:
        """Run one round of loop, timeout and health checks, in that order."""
        await self._check_error_loop()
        await self._check_timeout()
        self._check_health()

    async def _check_error_loop(self) -> None:
        if not self.node.is_in_error_loop(self.threshold):
            return
        self.report_event(
            MonitorEvent(
                type=MonitorEventType.LOOP_DETECTED,
                agent_id=self.node.id,
                details={
                    "error_history": list(self.node.error_history),
                    "threshold": self.threshold,
                },
            )
        )
        logger.error("error_loop_detected", node_id=self.node.id, parent_id=self.node.parent_id)
        await self.node.update_status(NodeStatus.ERROR_LOOP)

    async def _check_timeout(self) -> None:
        node = self.node
        started_at = node.task_started_at
        if node.status is not NodeStatus.RUNNING or node.current_task is None or started_at is None:
            return

        elapsed = time.time() - started_at
        if elapsed <= node.config.timeout_seconds:
            return

        self.report_event(
            MonitorEvent(
                type=MonitorEventType.TIMEOUT,
                agent_id=node.id,
                details={
                    "task_id": node.current_task.id,
                    "elapsed_seconds": round(elapsed, 3),
                    "timeout_seconds": node.config.timeout_seconds,
                },
            )
        )
        logger.error(
            "task_timeout",
            node_id=node.id,
            task_id=node.current_task.id,
            elapsed_seconds=round(elapsed, 3),
        )
        await node.terminate(TIMEOUT_REASON)

    def _check_health(self) -> None:
        if self.node.status is NodeStatus.ERROR_LOOP:
            self.report_event(
                MonitorEvent(
                    type=MonitorEventType.LOOP_DETECTED,
                    agent_id=self.node.id,
                    details={"reason": "Node status is error_loop"},
                )
            )

    def report_event(self, event: MonitorEvent) -> None:
        """Record an event in the ring buffer and mirror it onto the event bus."""
        self._events.append(event)

        if event.type is MonitorEventType.ERROR_DETECTED:
            error_count = event.details.get("error_count", 0)
            if error_count >= self.threshold - 1:
                logger.warning(
                    "error_loop_threshold_approaching",
                    node_id=self.node.id,
                    error_count=error_count,
                    threshold=self.threshold,
                )

        self.node.publish(
            EventType.MONITOR_EVENT,
            monitor_type=event.type.value,
            details=event.details,
        )
        logger.debug("monitor_event_reported", node_id=event.agent_id, event_type=event.type.value)

    def get_stats(self) -> dict[str, Any]:
        counts = {event_type: 0 for event_type in MonitorEventType}
        for event in self._events:
            counts[event.type] += 1
        return {
            "total_events": len(self._events),
            "error_events": counts[MonitorEventType.ERROR_DETECTED],
            "loop_events": counts[MonitorEventType.LOOP_DETECTED],
            "timeout_events": counts[MonitorEventType.TIMEOUT],
            "is_running": self._running,
        }

    def get_event_history(self) -> list[MonitorEvent]:
        return list(self._events)

    def clear_history(self) -> None:
        self._events.clear()
