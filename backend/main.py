"""Command-line entry point for the code-agent worker.

Runs one code-agent job for a project and prints the job output as JSON.
Passing an existing ``--run-id`` resumes that run: steps it already
completed are replayed from the step store.

Usage:
    python main.py --project-id proj_123 "Add a footer with a copyright notice"
    python main.py --project-id proj_123 --run-id run_abc123 "Add a footer"
"""

import argparse
import asyncio
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

import structlog
from pydantic import ValidationError

from agents.utils import LLMClient
from config import configure_logging, settings
from durable.store import StepStore
from events import get_event_bus
from jobs.code_agent import CodeAgentJob
from jobs.history import record_request
from jobs.runner import JobFailedError, JobRunner
from models.database import MessageStore
from models.schemas import JobTrigger
from sandbox import SandboxProvisioner

configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def job_runner() -> AsyncGenerator[JobRunner, None]:
    """Initialize stores and services, and cancel leftover jobs on exit."""
    logger.info(
        "worker_starting",
        database_path=settings.database_path,
        sandbox_template=settings.sandbox_template,
        code_agent_model=settings.code_agent_model,
    )

    message_store = MessageStore(settings.database_path)
    await message_store.init()
    step_store = StepStore(settings.database_path)
    await step_store.init()

    event_bus = get_event_bus()
    job = CodeAgentJob(
        provisioner=SandboxProvisioner(),
        message_store=message_store,
        llm_client=LLMClient(event_bus=event_bus),
        event_bus=event_bus,
    )
    runner = JobRunner(job, step_store, event_bus)
    reaper = await job.provisioner.start_reap_loop()
    try:
        yield runner
    finally:
        reaper.cancel()
        with suppress(asyncio.CancelledError):
            await reaper
        await runner.cleanup_all()
        logger.info("worker_stopped")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one code-agent job and print its output as JSON."
    )
    parser.add_argument("--project-id", required=True, help="Project to continue")
    parser.add_argument("--run-id", default=None, help="Resume an existing run")
    parser.add_argument("value", help="The natural-language request")
    return parser.parse_args(argv)


async def run_job(args: argparse.Namespace) -> int:
    try:
        trigger = JobTrigger(project_id=args.project_id, value=args.value)
    except ValidationError as e:
        print(e, file=sys.stderr)
        return 2

    async with job_runner() as runner:
        # A new run starts a new request; a resumed run already recorded it
        if args.run_id is None:
            await record_request(runner.job.message_store, trigger)
        try:
            output = await runner.run(trigger, run_id=args.run_id)
        except JobFailedError as e:
            logger.error("job_failed", run_id=e.run_id, attempts=e.attempts, error=str(e))
            print(str(e), file=sys.stderr)
            return 1

    print(output.model_dump_json(indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    return asyncio.run(run_job(parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
