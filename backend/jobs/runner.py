"""Job runtime for code-agent runs.

This module provides the JobRunner, which runs jobs with bounded retries and
keeps a registry of submitted runs. Every attempt gets a fresh StepExecutor
for the same run id, so steps completed by an earlier attempt are replayed
from the StepStore instead of being executed again.

Usage:
    >>> runner = JobRunner(job, step_store, event_bus)
    >>> output = await runner.run(JobTrigger(project_id="p1", value="Add a footer"))
    >>>
    >>> run_id = await runner.submit(trigger)
    >>> info = runner.get_job(run_id)
    >>> output = await runner.wait(run_id)
    >>> await runner.cleanup_all()
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Literal

import structlog

from config import settings
from durable.executor import StepExecutor
from durable.store import StepStore
from events.bus import EventBus
from events.types import AgentEvent, EventType
from jobs.code_agent import CodeAgentJob
from models.schemas import JobOutput, JobTrigger

logger = structlog.get_logger()

JobStatus = Literal["queued", "running", "complete", "failed"]


class JobFailedError(RuntimeError):
    """Raised when a job run fails on every attempt."""

    def __init__(self, run_id: str, attempts: int, message: str) -> None:
        self.run_id = run_id
        self.attempts = attempts
        super().__init__(f"Job {run_id} failed after {attempts} attempt(s): {message}")


@dataclass
class JobInfo:
    """Information about a job run.

    Attributes:
        run_id: Identifier of the run, stable across retries
        trigger: The event that started the job
        status: Current status (queued, running, complete, failed)
        attempts: Attempts started so far
        error: Last error message, if any
        output: Job output once complete
        created_at: Unix timestamp when the run was registered
        completed_at: Unix timestamp when the run finished
    """

    run_id: str
    trigger: JobTrigger
    status: JobStatus = "queued"
    attempts: int = 0
    error: str | None = None
    output: JobOutput | None = None
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None


class JobRunner:
    """Runs code-agent jobs with retry-with-replay.

    Thread Safety:
        The registry and task map are guarded by an asyncio.Lock.

    Attributes:
        job: The job pipeline to run
        step_store: Where step outputs are memoized
        event_bus: Optional bus for job lifecycle events
        max_attempts: Attempts per run before giving up
        retry_delay: Base delay between attempts in seconds
        max_retained_runs: Finished runs kept for get_job/wait; older ones are
            forgotten together with their event history
    """

    def __init__(
        self,
        job: CodeAgentJob,
        step_store: StepStore,
        event_bus: EventBus | None = None,
        max_attempts: int | None = None,
        retry_delay: float = 1.0,
        max_retained_runs: int | None = None,
    ) -> None:
        self.job = job
        self.step_store = step_store
        self.event_bus = event_bus
        self.max_attempts = max_attempts or settings.job_max_attempts
        self.retry_delay = retry_delay
        self.max_retained_runs = max_retained_runs or settings.max_retained_runs
        self._jobs: dict[str, JobInfo] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    def _generate_run_id(self) -> str:
        return f"run_{uuid.uuid4().hex[:12]}"

    async def _register(self, trigger: JobTrigger, run_id: str | None) -> JobInfo:
        async with self._lock:
            run_id = run_id or self._generate_run_id()
            info = self._jobs.get(run_id)
            if info is None:
                info = JobInfo(run_id=run_id, trigger=trigger)
                self._jobs[run_id] = info
            return info

    async def run(self, trigger: JobTrigger, run_id: str | None = None) -> JobOutput:
        """Run a job to completion, retrying failed attempts.

        Args:
            trigger: The job trigger.
            run_id: Existing run id to resume; a new one is generated if None.

        Returns:
            The job output.

        Raises:
            JobFailedError: If every attempt fails (chained to the last error).
        """
        info = await self._register(trigger, run_id)
        run_id = info.run_id
        info.status = "running"
        last_error: Exception | None = None

        try:
            for attempt in range(1, self.max_attempts + 1):
                info.attempts = attempt
                step = StepExecutor(run_id, self.step_store, self.event_bus)
                logger.info(
                    "job_started",
                    run_id=run_id,
                    project_id=trigger.project_id,
                    attempt=attempt,
                )
                await self._publish(
                    EventType.JOB_STARTED,
                    run_id,
                    {"project_id": trigger.project_id, "attempt": attempt},
                )

                try:
                    output = await self.job.run(trigger, step)
                except asyncio.CancelledError:
                    info.status = "failed"
                    info.error = "cancelled"
                    info.completed_at = time.time()
                    raise
                except Exception as e:
                    last_error = e
                    info.error = str(e)
                    logger.error(
                        "job_attempt_failed",
                        run_id=run_id,
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        memoized_steps=len(step.memoized),
                        executed_steps=len(step.executed),
                    )
                    if attempt < self.max_attempts:
                        await self._publish(
                            EventType.JOB_RETRY,
                            run_id,
                            {"attempt": attempt, "error": str(e)},
                        )
                        await asyncio.sleep(
                            min(self.retry_delay * (2 ** (attempt - 1)), 8.0)
                        )
                    continue

                info.status = "complete"
                info.output = output
                info.error = None
                info.completed_at = time.time()
                logger.info(
                    "job_complete",
                    run_id=run_id,
                    attempts=attempt,
                    replayed_steps=len(step.memoized),
                )
                await self._publish(
                    EventType.JOB_COMPLETE,
                    run_id,
                    {
                        "url": output.url,
                        "files": sorted(output.files),
                        "is_error": not output.summary or not output.files,
                    },
                )
                return output

            info.status = "failed"
            info.completed_at = time.time()
            await self._publish(
                EventType.JOB_FAILED,
                run_id,
                {"attempts": self.max_attempts, "error": info.error},
            )
            raise JobFailedError(
                run_id, self.max_attempts, info.error or "unknown error"
            ) from last_error
        finally:
            if self.event_bus is not None:
                await self.event_bus.close_run(run_id)
            await self._evict_finished_runs()

    async def _evict_finished_runs(self) -> None:
        """Forget the oldest finished runs beyond ``max_retained_runs``."""
        async with self._lock:
            finished = sorted(
                (info for info in self._jobs.values() if info.status in ("complete", "failed")),
                key=lambda info: info.completed_at or info.created_at,
            )
            evicted = finished[: max(0, len(finished) - self.max_retained_runs)]
            for info in evicted:
                del self._jobs[info.run_id]

        for info in evicted:
            if self.event_bus is not None:
                self.event_bus.clear_event_history(info.run_id)
            logger.debug("run_evicted", run_id=info.run_id, status=info.status)

    async def submit(self, trigger: JobTrigger, run_id: str | None = None) -> str:
        """Schedule a job as a background task and return its run id."""
        info = await self._register(trigger, run_id)
        run_id = info.run_id

        async with self._lock:
            task = asyncio.create_task(
                self._run_in_background(trigger, run_id), name=f"job_{run_id}"
            )
            self._tasks[run_id] = task

            def _remove_task(t: asyncio.Task[None], rid: str = run_id) -> None:
                self._tasks.pop(rid, None)

            task.add_done_callback(_remove_task)

        logger.info("job_submitted", run_id=run_id, project_id=trigger.project_id)
        return run_id

    async def _run_in_background(self, trigger: JobTrigger, run_id: str) -> None:
        try:
            await self.run(trigger, run_id)
        except JobFailedError as e:
            # Outcome is recorded on the JobInfo for get_job/wait
            logger.error("background_job_failed", run_id=run_id, error=str(e))

    def get_job(self, run_id: str) -> JobInfo | None:
        """Get information about a job run, or None if unknown."""
        return self._jobs.get(run_id)

    async def wait(self, run_id: str) -> JobOutput:
        """Wait for a submitted job and return its output.

        Raises:
            KeyError: If the run id is unknown.
            JobFailedError: If the job failed.
        """
        info = self._jobs.get(run_id)
        if info is None:
            raise KeyError(run_id)

        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)

        if info.status == "complete" and info.output is not None:
            return info.output
        raise JobFailedError(run_id, info.attempts, info.error or info.status)

    async def cleanup_all(self) -> None:
        """Cancel all outstanding job tasks and drop retained event history."""
        async with self._lock:
            tasks = list(self._tasks.items())
            self._tasks.clear()
            run_ids = list(self._jobs)

        logger.info("cleanup_all_start", task_count=len(tasks))
        for run_id, task in tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("cleanup_task_cancel_failed", run_id=run_id, error=str(e))

        if self.event_bus is not None:
            for run_id in run_ids:
                self.event_bus.clear_event_history(run_id)

    async def _publish(self, event_type: EventType, run_id: str, data: dict) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(AgentEvent(type=event_type, run_id=run_id, data=data))
