"""Event system for job observability.

This package provides the event infrastructure that reports what a running
code-agent job is doing. The event system is based on an async pub/sub
pattern using asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - AgentEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution
    - LLMMetrics: Token and latency metrics for individual LLM calls

Usage:
    >>> from events import EventType, AgentEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("run_123")
    >>> await bus.publish(AgentEvent(
    ...     type=EventType.JOB_STARTED,
    ...     run_id="run_123",
    ...     data={"project_id": "p1", "attempt": 1},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    AgentEvent,
    EventType,
    LLMMetrics,
)

__all__ = [
    # Event types
    "EventType",
    "AgentEvent",
    "LLMMetrics",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
