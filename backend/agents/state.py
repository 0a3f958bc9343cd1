"""Shared state accumulated by the code agent over one job run."""

from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()


@dataclass
class AgentState:
    """Summary and generated files shared between iterations and tools.

    ``files`` only grows (a later write may replace a path's content).
    ``summary`` is empty until the termination marker is seen and never
    changes afterwards.

    Attributes:
        summary: Full text of the message that carried the task summary.
        files: Mapping of file path to content for every successful write.
    """

    summary: str = ""
    files: dict[str, str] = field(default_factory=dict)

    def record_summary(self, text: str) -> bool:
        """Set the summary unless one is already recorded.

        Returns:
            True if the summary was written, False if it was already set.
        """
        if self.summary:
            logger.info(
                "summary_already_recorded",
                ignored_preview=text[:80],
            )
            return False
        self.summary = text
        return True

    def commit_files(self, files: dict[str, str]) -> None:
        """Replace the file map with a known-good cumulative map."""
        self.files = dict(files)
