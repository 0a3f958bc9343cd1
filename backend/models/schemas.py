"""Pydantic schemas for job triggers, persisted records and job output.

All models use Pydantic v2. Field names are snake_case in Python and accept
the camelCase aliases used by the enqueueing side (``projectId``,
``sandboxUrl``).
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(StrEnum):
    """Author of a persisted conversation message."""

    USER = "USER"
    ASSISTANT = "ASSISTANT"


class MessageType(StrEnum):
    """Kind of a persisted conversation message."""

    RESULT = "RESULT"
    ERROR = "ERROR"


class JobTrigger(BaseModel):
    """Event that starts one code-agent job run."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    project_id: str = Field(
        alias="projectId",
        min_length=1,
        description="Project whose conversation the job continues",
    )
    value: str = Field(
        min_length=1,
        max_length=10000,
        description="The natural-language request",
        examples=["Add a footer with copyright notice"],
    )


class Fragment(BaseModel):
    """Generated artifact linked to a RESULT message."""

    model_config = ConfigDict(populate_by_name=True)

    sandbox_url: str = Field(alias="sandboxUrl")
    title: str
    files: dict[str, str] = Field(default_factory=dict)


class ConversationMessage(BaseModel):
    """A persisted conversation message."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    project_id: str = Field(alias="projectId")
    role: MessageRole
    content: str
    type: MessageType
    created_at: float = Field(alias="createdAt")
    fragment: Fragment | None = None


class JobOutput(BaseModel):
    """Externally observable result of a job run."""

    url: str
    title: str
    files: dict[str, str] = Field(default_factory=dict)
    summary: str = ""
