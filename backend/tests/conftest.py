"""Shared test fixtures for backend tests.

Provides mock sandboxes and provisioners, real SQLite stores in tmp_path,
LLM response factories and scripted LLM clients, so tests never touch real
Docker containers or LLM APIs.
"""

import sys
from collections import defaultdict
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.utils import LLMResponse, MockLLMClient, ToolCallData  # noqa: E402
from durable.executor import StepExecutor  # noqa: E402
from durable.store import StepStore  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import AgentEvent, LLMMetrics  # noqa: E402
from models.database import MessageStore  # noqa: E402
from sandbox.docker_sandbox import CommandResult  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# SQLite stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_path(tmp_path: Any) -> str:
    return str(tmp_path / "worker.db")


@pytest.fixture()
async def message_store(db_path: str) -> MessageStore:
    store = MessageStore(db_path)
    await store.init()
    return store


@pytest.fixture()
async def step_store(db_path: str) -> StepStore:
    store = StepStore(db_path)
    await store.init()
    return store


@pytest.fixture()
def step(step_store: StepStore) -> StepExecutor:
    """A step executor for run ``run_test``."""
    return StepExecutor("run_test", step_store)


# ---------------------------------------------------------------------------
# Mock Sandbox / Provisioner
# ---------------------------------------------------------------------------


def make_mock_sandbox(files: dict[str, str] | None = None) -> MagicMock:
    """Create a mock SandboxHandle backed by an in-memory file map.

    ``sandbox.files`` holds what was written; ``read_file`` raises
    FileNotFoundError for unknown paths like the real handle.
    """
    sandbox = MagicMock()
    sandbox.sandbox_id = "sbx-test123"
    sandbox.files = dict(files or {})

    async def write_file(path: str, content: str) -> None:
        sandbox.files[path] = content

    async def read_file(path: str) -> str:
        if path not in sandbox.files:
            raise FileNotFoundError(f"File not found: {path}")
        return sandbox.files[path]

    sandbox.write_file = AsyncMock(side_effect=write_file)
    sandbox.read_file = AsyncMock(side_effect=read_file)
    sandbox.execute = AsyncMock(return_value=CommandResult(
        stdout="OK", stderr="", exit_code=0,
    ))
    sandbox.exposed_endpoint = AsyncMock(return_value="http://localhost:49153")
    return sandbox


def make_mock_provisioner(sandbox: MagicMock | None = None) -> MagicMock:
    """Create a mock SandboxProvisioner that always resolves ``sandbox``."""
    provisioner = MagicMock()
    provisioner.workdir = "/home/user"
    provisioner.preview_port = 3000
    provisioner.acquire = AsyncMock(return_value="sbx-test123")
    provisioner.resolve = AsyncMock(return_value=sandbox or make_mock_sandbox())
    provisioner.reap_expired = AsyncMock(return_value=0)
    return provisioner


@pytest.fixture()
def mock_sandbox() -> MagicMock:
    return make_mock_sandbox()


@pytest.fixture()
def mock_provisioner(mock_sandbox: MagicMock) -> MagicMock:
    return make_mock_provisioner(mock_sandbox)


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


async def collect_events(event_bus: EventBus, run_id: str) -> list[AgentEvent]:
    """Subscribe to a run and drain all buffered events."""
    queue = event_bus.subscribe(run_id)
    events: list[AgentEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# RoutingMockLLMClient
# ---------------------------------------------------------------------------


class RoutingMockLLMClient(MockLLMClient):
    """Mock LLM that routes responses by agent_id.

    A job shares one client between the code agent and the two generators,
    so scripts are kept per agent.

    Args:
        response_map: Dict mapping agent_id -> list of LLMResponses.
                      Use ``"default"`` for calls without a matching agent_id.
    """

    def __init__(
        self,
        response_map: dict[str, list[LLMResponse]],
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._response_map: dict[str, list[LLMResponse]] = {
            k: list(v) for k, v in response_map.items()
        }
        self._indexes: dict[str, int] = defaultdict(int)

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        self.call_history.append({
            "agent_id": agent_id,
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "model": model,
        })
        key = agent_id if agent_id in self._response_map else "default"
        idx = self._indexes[key]
        self._indexes[key] = idx + 1
        responses = self._response_map[key]
        if idx >= len(responses):
            raise IndexError(f"No more mock responses for {key}")
        return responses[idx]

    def calls_for(self, agent_id: str) -> list[dict[str, Any]]:
        return [c for c in self.call_history if c["agent_id"] == agent_id]
