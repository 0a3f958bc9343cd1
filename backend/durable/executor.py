"""Durable step execution with per-run memoization.

A job is written as ordinary async code that wraps every side effect and
every nondeterministic call (model inference, sandbox commands, database
writes) in ``await step.run(name, fn)``. The first time a step completes its
JSON-serializable result is recorded; when the job is retried with the same
run id, completed steps return their recorded result without calling ``fn``.

Step ids:
    The first ``run("terminal", ...)`` of a run has id ``terminal``, the
    second ``terminal:1``, and so on. A replay makes the same calls in the
    same order, so it produces the same ids.
"""

import json
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from durable.store import StepStore
from events.bus import EventBus
from events.types import AgentEvent, EventType

logger = structlog.get_logger()

T = TypeVar("T")


class StepSerializationError(TypeError):
    """Raised when a step returns a value that cannot be recorded as JSON."""


class StepExecutor:
    """Runs named steps at most once per run id.

    One executor instance belongs to one attempt of one job run. It is not
    safe to share between concurrently running jobs.

    Attributes:
        run_id: Identifier of the job run, stable across retries.
        store: Where completed step outputs are recorded.
        event_bus: Optional bus for STEP_* events.
    """

    def __init__(
        self,
        run_id: str,
        store: StepStore,
        event_bus: EventBus | None = None,
    ) -> None:
        self.run_id = run_id
        self.store = store
        self.event_bus = event_bus
        self._occurrences: dict[str, int] = defaultdict(int)
        self.executed: list[str] = []
        self.memoized: list[str] = []

    def _next_step_id(self, name: str) -> str:
        count = self._occurrences[name]
        self._occurrences[name] = count + 1
        return name if count == 0 else f"{name}:{count}"

    async def run(self, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run a named step, or return its recorded result on replay.

        Args:
            name: Step name; repeated names within a run get numbered ids.
            fn: Zero-argument coroutine function doing the work.

        Returns:
            The step's result. On replay this is the JSON-decoded recorded
            value, so tuples come back as lists.

        Raises:
            StepSerializationError: If the result is not JSON-serializable.
            Exception: Whatever ``fn`` raises; nothing is recorded then.
        """
        step_id = self._next_step_id(name)

        found, recorded = await self.store.get(self.run_id, step_id)
        if found:
            self.memoized.append(step_id)
            logger.debug("step_memoized", run_id=self.run_id, step_id=step_id)
            await self._emit(EventType.STEP_MEMOIZED, step_id)
            return recorded

        await self._emit(EventType.STEP_STARTED, step_id)
        logger.debug("step_started", run_id=self.run_id, step_id=step_id)

        result = await fn()

        try:
            encoded = json.dumps(result)
        except (TypeError, ValueError) as e:
            raise StepSerializationError(
                f"Step '{step_id}' returned a non-serializable value: {e}"
            ) from e

        await self.store.save(self.run_id, step_id, encoded)
        self.executed.append(step_id)

        logger.info("step_complete", run_id=self.run_id, step_id=step_id)
        await self._emit(EventType.STEP_COMPLETE, step_id)
        return result

    async def _emit(self, event_type: EventType, step_id: str) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            AgentEvent(
                type=event_type,
                run_id=self.run_id,
                data={"step_id": step_id},
            )
        )