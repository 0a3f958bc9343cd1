"""Outcome classification and persistence of a finished job."""

import structlog

from agents.state import AgentState
from durable.executor import StepExecutor
from models.database import MessageStore
from models.schemas import Fragment

logger = structlog.get_logger()

ERROR_MESSAGE = "Something went wrong. please try again."


def is_error_result(summary: str, files: dict[str, str]) -> bool:
    """A run failed if it never produced a summary or never wrote a file."""
    return not summary or not files


async def persist_result(
    store: MessageStore,
    step: StepExecutor,
    project_id: str,
    state: AgentState,
    sandbox_url: str,
    title: str,
    content: str,
) -> list[str]:
    """Persist the job outcome as the ``save-result`` step.

    An ERROR message precedes the RESULT message when the outcome is
    classified as an error. The RESULT always carries the fragment.

    Returns:
        Ids of the persisted messages, in insertion order.
    """
    is_error = is_error_result(state.summary, state.files)
    fragment = Fragment(
        sandbox_url=sandbox_url,
        title=title,
        files=dict(state.files),
    )

    async def save() -> list[str]:
        messages = await store.save_result(
            project_id=project_id,
            content=content,
            fragment=fragment,
            error_content=ERROR_MESSAGE if is_error else None,
        )
        return [message.id for message in messages]

    message_ids = await step.run("save-result", save)
    if is_error:
        logger.warning(
            "job_result_classified_as_error",
            run_id=step.run_id,
            has_summary=bool(state.summary),
            files=len(state.files),
        )
    return message_ids
