"""Durable step execution for job runs.

This module provides the StepExecutor that memoizes named steps per run id
and the StepStore that records their outputs in SQLite.
"""

from durable.executor import StepExecutor, StepSerializationError
from durable.store import StepStore

__all__ = ["StepExecutor", "StepSerializationError", "StepStore"]
