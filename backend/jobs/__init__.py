"""Code-agent job pipeline and runtime.

This module exports the job pipeline, history loading, result persistence
and the JobRunner that runs jobs with retry-with-replay.
"""

from jobs.code_agent import JOB_OUTPUT_TITLE, CodeAgentJob
from jobs.history import load_recent_messages, record_request
from jobs.persist import ERROR_MESSAGE, is_error_result, persist_result
from jobs.runner import JobFailedError, JobInfo, JobRunner

__all__ = [
    "CodeAgentJob",
    "ERROR_MESSAGE",
    "JOB_OUTPUT_TITLE",
    "JobFailedError",
    "JobInfo",
    "JobRunner",
    "is_error_result",
    "load_recent_messages",
    "persist_result",
    "record_request",
]
