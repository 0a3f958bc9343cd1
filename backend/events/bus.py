"""Async event bus for job pub/sub communication.

This module provides an EventBus class that enables asynchronous
publish/subscribe communication between running jobs and whoever
observes them (the job runner, the CLI, tests).

The event bus supports:
- Multiple subscribers per run
- Async event delivery via asyncio.Queue
- Run lifecycle management (close run terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import AgentEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for job events.

    The EventBus manages subscriptions per run id, allowing multiple
    consumers to receive events for the same run. Events are delivered
    via asyncio.Queue for non-blocking consumption.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately, so a consumer attaching after the job
        started still sees its first steps.

    Thread Safety:
        The subscription registry is guarded by a threading.Lock so the
        bus can be shared by jobs running on different event loops.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("run_123")
        >>> await bus.publish(AgentEvent(
        ...     type=EventType.STEP_STARTED,
        ...     run_id="run_123",
        ...     data={"step_id": "get-sandbox-id"},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("run_123", queue)
        >>> await bus.close_run("run_123")
    """

    # Maximum number of events to retain per run for replay on reconnect.
    MAX_HISTORY_PER_RUN = 5000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[AgentEvent]] = defaultdict(list)
        self._event_history: dict[str, list[AgentEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.debug("event_bus_initialized")

    def subscribe(self, run_id: str) -> asyncio.Queue[AgentEvent]:
        """Subscribe to events for a run.

        If there are buffered events for this run (events that were
        published before any subscriber connected), they are delivered
        immediately to the new subscriber.

        Args:
            run_id: The run to subscribe to

        Returns:
            An asyncio.Queue that will receive AgentEvent objects
            as they are published for this run
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        buffered_events: list[AgentEvent] = []

        with self._lock:
            self._subscribers[run_id].append(queue)
            subscriber_count = len(self._subscribers[run_id])

            if run_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(run_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.debug(
            "subscriber_added",
            run_id=run_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        """Unsubscribe a queue from run events.

        If the queue is not registered, this is a no-op.

        Args:
            run_id: The run to unsubscribe from
            queue: The queue to remove
        """
        with self._lock:
            queues = self._subscribers.get(run_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", run_id=run_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[run_id]

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to all subscribers for its run.

        If there are no subscribers, the event is buffered until a
        subscriber connects. All published events are also stored in the
        run's event history.

        Args:
            event: The AgentEvent to publish
        """
        with self._lock:
            if event.type != EventType.RUN_CLOSED:
                history = self._event_history[event.run_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_RUN:
                    self._event_history[event.run_id] = history[-self.MAX_HISTORY_PER_RUN:]

            subscribers = list(self._subscribers.get(event.run_id, []))

            if not subscribers:
                self._event_buffer[event.run_id].append(event)
                return

        # Bounded wait so a stalled consumer cannot block the job
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    run_id=event.run_id,
                    event_type=event.type.value,
                )
            except Exception:
                logger.warning(
                    "event_delivery_failed",
                    run_id=event.run_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            run_id=event.run_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, run_id: str) -> list[AgentEvent]:
        """Get all stored events for a run in chronological order."""
        with self._lock:
            return list(self._event_history.get(run_id, []))

    async def close_run(self, run_id: str) -> None:
        """Close a run and notify all subscribers.

        Puts a RUN_CLOSED sentinel into each subscriber queue so consumers
        can break out of their read loops, then removes all subscribers and
        clears buffered events. Event history is preserved.

        Args:
            run_id: The run to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(run_id, [])
            buffer_count = len(self._event_buffer.pop(run_id, []))

        for queue in queues_to_signal:
            await queue.put(
                AgentEvent(
                    type=EventType.RUN_CLOSED,
                    run_id=run_id,
                    data={"reason": "run_closed"},
                )
            )

        logger.debug(
            "run_closed",
            run_id=run_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=buffer_count,
        )

    def get_subscriber_count(self, run_id: str) -> int:
        """Get the number of subscribers for a run."""
        with self._lock:
            return len(self._subscribers.get(run_id, []))

    def clear_event_history(self, run_id: str) -> None:
        """Clear stored event history for a run."""
        with self._lock:
            self._event_history.pop(run_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.

    Returns:
        The global EventBus instance
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            # Double-check locking pattern
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
