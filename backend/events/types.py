"""Event type definitions for the job event stream.

This module defines all event types emitted while a code-agent job runs.
Every meaningful state change (step, tool call, iteration, job outcome)
produces an event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the worker.

    Events are categorized by:
    - Job lifecycle: start, retry, completion and failure
    - Durable steps: execution and replay of memoized steps
    - Agent network: iterations, tool calls and termination
    - Workspace: file writes and command output in the sandbox
    - Observability: LLM call metrics
    """

    # Job lifecycle
    JOB_STARTED = "job_started"
    JOB_RETRY = "job_retry"
    JOB_COMPLETE = "job_complete"
    JOB_FAILED = "job_failed"
    RUN_CLOSED = "run_closed"

    # Durable steps
    STEP_STARTED = "step_started"
    STEP_COMPLETE = "step_complete"
    STEP_MEMOIZED = "step_memoized"

    # Agent network
    AGENT_ITERATION = "agent_iteration"
    AGENT_TOOL_CALL = "agent_tool_call"
    AGENT_TOOL_RESULT = "agent_tool_result"
    AGENT_TERMINATED = "agent_terminated"

    # Workspace
    FILE_CHANGED = "file_changed"
    COMMAND_OUTPUT = "command_output"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"


class AgentEvent(BaseModel):
    """An event emitted during job execution.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - run_id: Which job run this event belongs to
    - agent_id: Which agent produced this event (if applicable)
    - data: Event-specific payload

    Payload schemas by event type:

    JOB_STARTED:
        - project_id: str - Project the job works on
        - attempt: int - 1-based attempt number

    JOB_RETRY:
        - attempt: int - The attempt that failed
        - error: str - Why it failed

    JOB_COMPLETE:
        - url: str - Preview URL of the sandbox
        - files: list - Paths of generated files
        - is_error: bool - Whether the outcome was classified as an error

    STEP_STARTED / STEP_COMPLETE / STEP_MEMOIZED:
        - step_id: str - Unique step id within the run

    AGENT_ITERATION:
        - iteration: int - 1-based iteration number

    AGENT_TOOL_CALL:
        - tool: str - Tool name being called
        - args: dict - Arguments passed to the tool (long values truncated)

    AGENT_TOOL_RESULT:
        - tool: str - Tool that was called
        - result: str - Result returned from the tool
        - success: bool - Whether the tool call succeeded

    AGENT_TERMINATED:
        - iterations: int - Iterations executed
        - has_summary: bool - Whether a termination marker was seen

    FILE_CHANGED:
        - path: str - File path as given by the agent
        - sandbox_id: str - Which sandbox the file is in

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - input_tokens: int - Input token count
        - output_tokens: int - Output token count
        - latency_ms: int - Latency in milliseconds
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    agent_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "agent_tool_call",
                    "timestamp": 1699876543.123,
                    "run_id": "run_abc123",
                    "agent_id": "code-agent",
                    "data": {
                        "tool": "terminal",
                        "args": {"command": "npm install zod --yes"},
                    },
                }
            ]
        }
    }


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier (e.g., "mistral/mistral-large-latest")
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
