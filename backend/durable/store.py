"""SQLite-backed memo table for durable job steps.

Each completed step of a job run is recorded as one row keyed by
``(run_id, step_id)`` holding the step's JSON-encoded output. A retried or
resumed run reads these rows back instead of executing the step again.

Errors propagate: a step whose record could not be written must not be
reported as complete.
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


class StepStore:
    """Async SQLite store of completed step outputs.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create the step table if it does not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS step_runs (
                    run_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    output TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (run_id, step_id)
                )
            """)
            await db.commit()
        logger.info("step_store_initialized", db_path=self.db_path)

    async def get(self, run_id: str, step_id: str) -> tuple[bool, Any]:
        """Look up a recorded step output.

        Returns:
            ``(True, output)`` if the step completed before, else ``(False, None)``.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT output FROM step_runs WHERE run_id = ? AND step_id = ?",
                (run_id, step_id),
            )
            row = await cursor.fetchone()
        if row is None:
            return False, None
        return True, json.loads(row[0])

    async def save(self, run_id: str, step_id: str, encoded_output: str) -> None:
        """Record a step output that is already JSON-encoded.

        INSERT OR IGNORE keeps the first recorded output if two writers race.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO step_runs (run_id, step_id, output, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (run_id, step_id, encoded_output, time.time()),
            )
            await db.commit()

    async def list_step_ids(self, run_id: str) -> list[str]:
        """Return the ids of completed steps of a run in completion order."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT step_id FROM step_runs WHERE run_id = ? ORDER BY created_at, rowid",
                (run_id,),
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def clear_run(self, run_id: str) -> int:
        """Delete all step records of a run.

        Returns:
            Number of rows removed.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM step_runs WHERE run_id = ?",
                (run_id,),
            )
            await db.commit()
            deleted = cursor.rowcount
        logger.info("step_run_cleared", run_id=run_id, deleted_count=deleted)
        return deleted
