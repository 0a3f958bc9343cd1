"""SQLite-based message persistence using aiosqlite.

This module provides the MessageStore class for persisting conversation
messages and their generated fragments. Unlike best-effort bookkeeping,
these writes are the job's result: errors propagate to the caller so the
job runtime can retry the step.

Tables:
    messages: Conversation messages (id, project, role, content, type, timestamp).
    fragments: Generated artifacts, one per RESULT message at most.

Usage:
    >>> from models.database import MessageStore
    >>> store = MessageStore("./data/worker.db")
    >>> await store.init()
    >>> await store.create_message(
    ...     project_id="p1",
    ...     content="Add a footer",
    ...     role=MessageRole.USER,
    ...     type=MessageType.RESULT,
    ... )
"""

import json
import time
import uuid
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import (
    ConversationMessage,
    Fragment,
    MessageRole,
    MessageType,
)

logger = structlog.get_logger(__name__)


class MessageStore:
    """Async SQLite store for conversation messages and fragments.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the message store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    type TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS fragments (
                    id TEXT PRIMARY KEY,
                    message_id TEXT NOT NULL UNIQUE,
                    sandbox_url TEXT NOT NULL,
                    title TEXT NOT NULL,
                    files TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    FOREIGN KEY (message_id) REFERENCES messages(id)
                )
            """)
            # Index for the recent-history query
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_project_created
                ON messages(project_id, created_at DESC)
            """)
            await db.commit()
        logger.info("message_store_initialized", db_path=self.db_path)

    async def create_message(
        self,
        project_id: str,
        content: str,
        role: MessageRole,
        type: MessageType,
        fragment: Fragment | None = None,
    ) -> ConversationMessage:
        """Insert a message, and its fragment if given, in one transaction.

        Args:
            project_id: Project the message belongs to.
            content: Message text.
            role: USER or ASSISTANT.
            type: RESULT or ERROR.
            fragment: Optional generated artifact to attach.

        Returns:
            The persisted ConversationMessage.
        """
        message = ConversationMessage(
            id=f"msg_{uuid.uuid4().hex[:12]}",
            project_id=project_id,
            role=role,
            content=content,
            type=type,
            created_at=time.time(),
            fragment=fragment,
        )

        async with aiosqlite.connect(self.db_path) as db:
            await self._insert_message(db, message)
            await db.commit()

        logger.debug(
            "message_created",
            message_id=message.id,
            project_id=project_id,
            type=type.value,
            has_fragment=fragment is not None,
        )
        return message

    async def save_result(
        self,
        project_id: str,
        content: str,
        fragment: Fragment,
        error_content: str | None = None,
    ) -> list[ConversationMessage]:
        """Persist a job's outcome: an optional ERROR message, then the RESULT.

        Both messages and the fragment are written in a single transaction,
        so a failure leaves no partial result behind.

        Returns:
            The persisted messages in insertion order.
        """
        now = time.time()
        messages: list[ConversationMessage] = []
        if error_content is not None:
            messages.append(
                ConversationMessage(
                    id=f"msg_{uuid.uuid4().hex[:12]}",
                    project_id=project_id,
                    role=MessageRole.ASSISTANT,
                    content=error_content,
                    type=MessageType.ERROR,
                    created_at=now,
                )
            )
        messages.append(
            ConversationMessage(
                id=f"msg_{uuid.uuid4().hex[:12]}",
                project_id=project_id,
                role=MessageRole.ASSISTANT,
                content=content,
                type=MessageType.RESULT,
                created_at=now,
                fragment=fragment,
            )
        )

        async with aiosqlite.connect(self.db_path) as db:
            for message in messages:
                await self._insert_message(db, message)
            await db.commit()

        logger.info(
            "result_saved",
            project_id=project_id,
            message_ids=[m.id for m in messages],
            is_error=error_content is not None,
        )
        return messages

    async def list_recent(
        self,
        project_id: str,
        limit: int,
    ) -> list[ConversationMessage]:
        """List a project's most recent messages, newest first.

        Args:
            project_id: The project to look up.
            limit: Maximum number of messages to return.

        Returns:
            Messages ordered by creation time, newest first, with fragments.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT m.*, f.sandbox_url, f.title, f.files
                FROM messages m
                LEFT JOIN fragments f ON f.message_id = m.id
                WHERE m.project_id = ?
                ORDER BY m.created_at DESC, m.rowid DESC
                LIMIT ?
                """,
                (project_id, limit),
            )
            rows = await cursor.fetchall()
        return [self._row_to_message(dict(row)) for row in rows]

    async def get_fragment(self, message_id: str) -> Fragment | None:
        """Return the fragment attached to a message, or None."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT sandbox_url, title, files FROM fragments WHERE message_id = ?",
                (message_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return Fragment(
            sandbox_url=row["sandbox_url"],
            title=row["title"],
            files=json.loads(row["files"]),
        )

    @staticmethod
    async def _insert_message(
        db: aiosqlite.Connection,
        message: ConversationMessage,
    ) -> None:
        await db.execute(
            """
            INSERT INTO messages (id, project_id, role, content, type, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.project_id,
                message.role.value,
                message.content,
                message.type.value,
                message.created_at,
            ),
        )
        if message.fragment is not None:
            await db.execute(
                """
                INSERT INTO fragments
                    (id, message_id, sandbox_url, title, files, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    f"frag_{uuid.uuid4().hex[:12]}",
                    message.id,
                    message.fragment.sandbox_url,
                    message.fragment.title,
                    json.dumps(message.fragment.files),
                    message.created_at,
                ),
            )

    @staticmethod
    def _row_to_message(row: dict[str, Any]) -> ConversationMessage:
        fragment = None
        if row.get("sandbox_url") is not None:
            fragment = Fragment(
                sandbox_url=row["sandbox_url"],
                title=row["title"],
                files=json.loads(row["files"]),
            )
        return ConversationMessage(
            id=row["id"],
            project_id=row["project_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            type=MessageType(row["type"]),
            created_at=row["created_at"],
            fragment=fragment,
        )
