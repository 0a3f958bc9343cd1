"""Conversation history replayed to the code agent at job start."""

from typing import Any

import structlog

from models.database import MessageStore
from models.schemas import ConversationMessage, JobTrigger, MessageRole, MessageType

logger = structlog.get_logger()


async def record_request(store: MessageStore, trigger: JobTrigger) -> ConversationMessage:
    """Persist a trigger's request as the project's newest USER message.

    Called once by the enqueueing side, before the job starts, so later runs
    for the project see the request in their history.
    """
    message = await store.create_message(
        project_id=trigger.project_id,
        content=trigger.value,
        role=MessageRole.USER,
        type=MessageType.RESULT,
    )
    logger.info("request_recorded", project_id=trigger.project_id, message_id=message.id)
    return message


async def load_recent_messages(
    store: MessageStore,
    project_id: str,
    limit: int,
) -> list[dict[str, Any]]:
    """Load a project's last ``limit`` messages as chronological agent messages.

    ASSISTANT messages map to the ``assistant`` role, everything else to
    ``user``. Store errors propagate.
    """
    recent = await store.list_recent(project_id, limit)
    return [
        {
            "role": "assistant" if message.role == MessageRole.ASSISTANT else "user",
            "content": message.content,
        }
        for message in reversed(recent)
    ]
