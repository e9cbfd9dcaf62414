"""Event system for the agent cluster.

This package mirrors control-plane activity (node lifecycle, task flow and
watchdog observations) onto an in-process pub/sub bus so that the HTTP API
and other listeners can observe a running cluster.

Key Components:
    - EventType: Enum of all event types in the system
    - ClusterEvent: Pydantic model for events flowing through the system
    - EventBus: Pub/sub implementation with per-cluster history
    - LLMMetrics: Token and latency metrics for individual LLM calls

Usage:
    >>> from events import ClusterEvent, EventType, get_event_bus
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("default")
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    ClusterEvent,
    EventType,
    LLMMetrics,
)

__all__ = [
    # Event types
    "EventType",
    "ClusterEvent",
    "LLMMetrics",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
