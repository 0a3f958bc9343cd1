"""Models module for Pydantic schemas and message persistence.

This module exposes the records the code-agent job reads and writes.
"""

from models.database import MessageStore
from models.schemas import (
    ConversationMessage,
    Fragment,
    JobOutput,
    JobTrigger,
    MessageRole,
    MessageType,
)

__all__ = [
    "ConversationMessage",
    "Fragment",
    "JobOutput",
    "JobTrigger",
    "MessageRole",
    "MessageStore",
    "MessageType",
]
