"""Tool definitions and sandbox dispatch for the code agent.

This module defines the three tools the code agent can call (terminal,
createOrUpdateFiles, readFiles) and the ToolExecutor that runs each call
inside a durable step against the job's sandbox.

Failures the agent can react to come back as text results. The only
sandbox failure that escapes a tool is SandboxUnavailableError: once the
sandbox is gone no tool call can succeed, so the job fails and is retried.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any

import structlog

from agents.state import AgentState
from agents.utils import ToolCallData
from durable.executor import StepExecutor
from events.bus import EventBus
from events.types import AgentEvent, EventType
from sandbox.docker_sandbox import SandboxProvisioner, SandboxUnavailableError

logger = structlog.get_logger()


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "terminal",
        "description": "Use the terminal to run commands",
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Shell command, e.g. 'npm install zod --yes'",
                },
            },
            "required": ["command"],
        },
    },
    {
        "name": "createOrUpdateFiles",
        "description": "Create or update files in the sandbox",
        "parameters": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "path": {"type": "string"},
                            "content": {"type": "string"},
                        },
                        "required": ["path", "content"],
                    },
                },
            },
            "required": ["files"],
        },
    },
    {
        "name": "readFiles",
        "description": "Read files from the sandbox",
        "parameters": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {"type": "string"},
                },
            },
            "required": ["files"],
        },
    },
]

_TOOL_NAMES = frozenset(tool["name"] for tool in TOOL_DEFINITIONS)

# Keep tool payloads bounded so a single call cannot flood model context.
MAX_TOOL_RESULT_CHARS = 20_000
MAX_EVENT_RESULT_CHARS = 2_000


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


def get_tool_definitions_for_llm() -> list[dict[str, Any]]:
    """Get tool definitions formatted for LLM function calling."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in TOOL_DEFINITIONS
    ]


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        tool_call_id: ID of the tool call this result corresponds to
        content: The result text sent back to the model
        success: Whether the tool execution succeeded
    """

    tool_call_id: str
    content: str
    success: bool


def truncate_text(text: str, max_chars: int = MAX_TOOL_RESULT_CHARS) -> str:
    """Trim large text payloads while preserving a clear truncation marker."""
    if len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return (
        f"{text[:max_chars]}\n"
        f"... [truncated {omitted} characters to protect context window]"
    )


def _summarize_args_for_event(args: Any) -> dict[str, Any]:
    """Create a lightweight args payload for event emission."""
    if not isinstance(args, dict):
        return {"raw": str(args)[:500]}

    summarized: dict[str, Any] = {}
    for key, value in args.items():
        if isinstance(value, str) and len(value) > 500:
            summarized[key] = f"{value[:500]}... [truncated]"
        elif key == "files" and isinstance(value, list):
            summarized[key] = [
                item.get("path") if isinstance(item, dict) else item
                for item in value
            ]
        else:
            summarized[key] = value
    return summarized


def validate_tool_args(tool_name: str, args: Any) -> dict[str, Any]:
    """Validate and normalize tool arguments.

    Raises:
        ToolArgumentError: On unknown tools, wrong types or missing fields.
    """
    if tool_name not in _TOOL_NAMES:
        raise ToolArgumentError(f"Unknown tool: {tool_name}")
    if not isinstance(args, dict):
        raise ToolArgumentError(
            f"Invalid arguments for {tool_name}: expected an object"
        )

    if tool_name == "terminal":
        command = args.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ToolArgumentError("Missing required arguments: command")
        return {"command": command}

    files = args.get("files")
    if not isinstance(files, list):
        raise ToolArgumentError("Invalid type for 'files': expected array")

    if tool_name == "readFiles":
        if not all(isinstance(path, str) and path for path in files):
            raise ToolArgumentError("Invalid 'files': expected array of paths")
        return {"files": list(files)}

    normalized: list[dict[str, str]] = []
    for item in files:
        if not isinstance(item, dict):
            raise ToolArgumentError("Invalid 'files': expected array of objects")
        path = item.get("path")
        content = item.get("content")
        if not isinstance(path, str) or not path.strip():
            raise ToolArgumentError("Invalid 'files': every file needs a path")
        if not isinstance(content, str):
            raise ToolArgumentError(
                f"Invalid type for 'content' of {path}: expected string"
            )
        normalized.append({"path": path.strip(), "content": content})
    return {"files": normalized}


class ToolExecutor:
    """Executes tool calls against the job's sandbox as durable steps.

    Each tool runs inside ``step.run(<tool name>, ...)`` so a retried job
    replays completed tool calls instead of repeating their side effects.
    Written files are committed to the AgentState only when the write step
    returns a file map.

    Attributes:
        provisioner: Used to resolve the sandbox on every call.
        sandbox_id: The job's sandbox.
        step: Durable step executor of the current run.
        state: Shared agent state receiving committed files.
        event_bus: Optional bus for tool and file events.
    """

    def __init__(
        self,
        provisioner: SandboxProvisioner,
        sandbox_id: str,
        step: StepExecutor,
        state: AgentState,
        event_bus: EventBus | None = None,
    ) -> None:
        self.provisioner = provisioner
        self.sandbox_id = sandbox_id
        self.step = step
        self.state = state
        self.event_bus = event_bus
        self._background_tasks: set[asyncio.Task[None]] = set()

    @property
    def run_id(self) -> str:
        return self.step.run_id

    async def execute(
        self,
        tool_call: ToolCallData,
        agent_id: str | None = None,
    ) -> ToolResult:
        """Execute one tool call.

        Args:
            tool_call: The call requested by the model.
            agent_id: Optional agent ID for event emission.

        Returns:
            ToolResult whose content is already truncated for the model.

        Raises:
            SandboxUnavailableError: If the sandbox can no longer be resolved.
        """
        start_time = time.time()
        await self._publish(
            EventType.AGENT_TOOL_CALL,
            agent_id,
            {
                "tool": tool_call.name,
                "args": _summarize_args_for_event(tool_call.args),
                "tool_call_id": tool_call.id,
            },
        )

        try:
            args = validate_tool_args(tool_call.name, tool_call.args)
        except ToolArgumentError as e:
            logger.warning(
                "tool_arguments_invalid",
                tool_name=tool_call.name,
                run_id=self.run_id,
                error=str(e),
            )
            content, success = f"Error: {e}", False
        else:
            content, success = await self._dispatch_tool(tool_call.name, args)

        content = truncate_text(content)
        duration_ms = int((time.time() - start_time) * 1000)

        await self._publish(
            EventType.AGENT_TOOL_RESULT,
            agent_id,
            {
                "tool": tool_call.name,
                "result": content[:MAX_EVENT_RESULT_CHARS],
                "success": success,
                "tool_call_id": tool_call.id,
                "duration_ms": duration_ms,
            },
        )
        logger.debug(
            "tool_executed",
            tool_name=tool_call.name,
            sandbox_id=self.sandbox_id,
            success=success,
            duration_ms=duration_ms,
        )
        return ToolResult(tool_call_id=tool_call.id, content=content, success=success)

    async def _dispatch_tool(self, tool_name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Route a validated call to its handler."""
        if tool_name == "terminal":
            return await self._execute_terminal(args["command"])
        elif tool_name == "createOrUpdateFiles":
            return await self._execute_write_files(args["files"])
        elif tool_name == "readFiles":
            return await self._execute_read_files(args["files"])
        raise ToolArgumentError(f"Unknown tool: {tool_name}")

    async def _execute_terminal(self, command: str) -> tuple[str, bool]:
        async def run_command() -> str:
            loop = asyncio.get_running_loop()
            stdout: list[str] = []
            stderr: list[str] = []

            def on_stdout(chunk: str) -> None:
                stdout.append(chunk)
                self._emit_command_output(loop, "stdout", chunk)

            def on_stderr(chunk: str) -> None:
                stderr.append(chunk)
                self._emit_command_output(loop, "stderr", chunk)

            sandbox = await self.provisioner.resolve(self.sandbox_id)
            try:
                result = await sandbox.execute(
                    command, on_stdout=on_stdout, on_stderr=on_stderr
                )
            except SandboxUnavailableError:
                raise
            except Exception as e:
                logger.warning(
                    "terminal_command_failed",
                    run_id=self.run_id,
                    command=command[:50],
                    error=str(e),
                )
                return (
                    f"command failed: {e} \n"
                    f"stdout: {''.join(stdout)}\n"
                    f"stderr: {''.join(stderr)}"
                )
            return result.stdout

        output = await self.step.run("terminal", run_command)
        return output, not output.startswith("command failed:")

    async def _execute_write_files(self, files: list[dict[str, str]]) -> tuple[str, bool]:
        async def write_files() -> dict[str, str] | str:
            updated = dict(self.state.files)
            sandbox = await self.provisioner.resolve(self.sandbox_id)
            try:
                for item in files:
                    await sandbox.write_file(item["path"], item["content"])
                    updated[item["path"]] = item["content"]
            except SandboxUnavailableError:
                raise
            except Exception as e:
                logger.warning(
                    "write_files_failed",
                    run_id=self.run_id,
                    paths=[item["path"] for item in files],
                    error=str(e),
                )
                return f"Error: {e}"
            return updated

        result = await self.step.run("createOrUpdateFiles", write_files)
        if not isinstance(result, dict):
            return result, False

        self.state.commit_files(result)
        for item in files:
            await self._publish(
                EventType.FILE_CHANGED,
                None,
                {"path": item["path"], "sandbox_id": self.sandbox_id},
            )
        written = ", ".join(item["path"] for item in files)
        return f"Successfully wrote {len(files)} file(s): {written}", True

    async def _execute_read_files(self, paths: list[str]) -> tuple[str, bool]:
        async def read_files() -> str:
            sandbox = await self.provisioner.resolve(self.sandbox_id)
            try:
                contents = []
                for path in paths:
                    content = await sandbox.read_file(path)
                    contents.append({"path": path, "content": content})
            except SandboxUnavailableError:
                raise
            except Exception as e:
                logger.warning(
                    "read_files_failed",
                    run_id=self.run_id,
                    paths=paths,
                    error=str(e),
                )
                return f"Error: {e}"
            return json.dumps(contents)

        output = await self.step.run("readFiles", read_files)
        return output, not output.startswith("Error:")

    def _emit_command_output(
        self,
        loop: asyncio.AbstractEventLoop,
        stream: str,
        chunk: str,
    ) -> None:
        """Schedule a COMMAND_OUTPUT event; callable from executor threads."""
        if self.event_bus is None:
            return
        loop.call_soon_threadsafe(self._schedule_output_event, stream, chunk)

    def _schedule_output_event(self, stream: str, chunk: str) -> None:
        task = asyncio.create_task(
            self._publish(
                EventType.COMMAND_OUTPUT,
                None,
                {"stream": stream, "chunk": chunk[:MAX_EVENT_RESULT_CHARS]},
            )
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _publish(
        self,
        event_type: EventType,
        agent_id: str | None,
        data: dict[str, Any],
    ) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            AgentEvent(
                type=event_type,
                run_id=self.run_id,
                agent_id=agent_id,
                data=data,
            )
        )
