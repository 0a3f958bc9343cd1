"""Code agent network LangGraph implementation.

The network drives a single coding agent until it reports completion or
runs out of iterations:

    START -> route -> [code_agent -> route -> ...] -> finish -> END

One iteration is one code-agent turn: model inference, then the requested
tool calls one at a time, repeated until the model answers without tool
calls. After every turn the response hook looks at the last assistant text;
if it carries ``<task_summary>`` that text becomes the shared summary and
the next routing decision terminates the network.

Model inference runs as the durable step ``code-agent`` so a retried job
sees exactly the same model output and re-issues the same tool calls.

Events emitted:
- AGENT_ITERATION: At the start of each code-agent turn
- AGENT_TOOL_CALL / AGENT_TOOL_RESULT / FILE_CHANGED: From the ToolExecutor
- AGENT_TERMINATED: When routing ends the network
"""

import operator
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.state import AgentState
from agents.tools import ToolExecutor, get_tool_definitions_for_llm
from agents.utils import (
    LLMClient,
    LLMResponse,
    contains_task_summary,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    last_assistant_text_message_content,
)
from config import settings
from durable.executor import StepExecutor
from events.bus import EventBus
from events.types import AgentEvent, EventType

logger = structlog.get_logger()

CODE_AGENT_ID = "code-agent"
TOOL_LIMIT_MESSAGE = "Error: tool call limit for this turn reached; call skipped"


class NetworkStatus(StrEnum):
    """Lifecycle of an agent network run."""

    RUNNING = "running"
    TERMINATED = "terminated"


class NetworkState(TypedDict):
    """State flowing through the network graph.

    The summary and the file map are not part of the graph state: tools
    mutate them while a turn is in flight, so they live in the AgentState
    the network and its tools share.

    Attributes:
        messages: Conversation so far, appended to by every turn
        iteration: Number of code-agent turns executed
        status: RUNNING until routing terminates the network
    """

    messages: Annotated[list[dict[str, Any]], operator.add]
    iteration: int
    status: NetworkStatus


@dataclass
class NetworkResult:
    """Outcome of a network run."""

    iterations: int
    messages: list[dict[str, Any]]
    state: AgentState


class CodeAgent:
    """The coding agent: one ``run_turn`` call is one network iteration.

    Attributes:
        llm_client: Client for model calls
        tool_executor: Runs tool calls against the sandbox
        step: Durable step executor of the current run
        state: Shared agent state updated by the response hook
        model: Model identifier for inference
        max_tool_calls: Cap on tool calls within one turn
    """

    def __init__(
        self,
        llm_client: LLMClient,
        tool_executor: ToolExecutor,
        step: StepExecutor,
        state: AgentState,
        model: str | None = None,
        max_tool_calls: int | None = None,
        temperature: float = 0.1,
    ) -> None:
        self.llm_client = llm_client
        self.tool_executor = tool_executor
        self.step = step
        self.state = state
        self.model = model or settings.code_agent_model
        self.max_tool_calls = max_tool_calls or settings.max_tool_calls_per_turn
        self.temperature = temperature
        self._tools = get_tool_definitions_for_llm()

    async def _infer(self, messages: list[dict[str, Any]]) -> LLMResponse:
        async def call_model() -> dict[str, Any]:
            response = await self.llm_client.call(
                messages=messages,
                tools=self._tools,
                model=self.model,
                temperature=self.temperature,
                run_id=self.step.run_id,
                agent_id=CODE_AGENT_ID,
            )
            return response.to_dict()

        recorded = await self.step.run(CODE_AGENT_ID, call_model)
        return LLMResponse.from_dict(recorded)

    async def run_turn(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Run one agent turn.

        Args:
            messages: Conversation context for the model.

        Returns:
            The messages produced by this turn (assistant and tool messages).
        """
        turn_messages: list[dict[str, Any]] = []
        tool_calls_made = 0
        limit_reached = False

        while not limit_reached:
            response = await self._infer(messages + turn_messages)

            if not response.tool_calls:
                turn_messages.append({"role": "assistant", "content": response.content})
                break

            turn_messages.append(
                format_assistant_message_with_tools(response.content, response.tool_calls)
            )
            for tool_call in response.tool_calls:
                # Every tool call id needs a tool message, even skipped ones
                if tool_calls_made >= self.max_tool_calls:
                    limit_reached = True
                    turn_messages.append(
                        format_tool_result_for_llm(tool_call.id, TOOL_LIMIT_MESSAGE)
                    )
                    continue
                result = await self.tool_executor.execute(tool_call, agent_id=CODE_AGENT_ID)
                tool_calls_made += 1
                turn_messages.append(format_tool_result_for_llm(tool_call.id, result.content))

            if tool_calls_made >= self.max_tool_calls:
                limit_reached = True

        if limit_reached:
            logger.warning(
                "tool_call_limit_reached",
                run_id=self.step.run_id,
                max_tool_calls=self.max_tool_calls,
            )

        self.on_response(turn_messages)
        return turn_messages

    def on_response(self, turn_messages: list[dict[str, Any]]) -> None:
        """Record the task summary if the turn's last assistant text has one."""
        text = last_assistant_text_message_content(turn_messages)
        if contains_task_summary(text):
            if self.state.record_summary(text):
                logger.info("task_summary_recorded", run_id=self.step.run_id)


class AgentNetwork:
    """Routes between the code agent and termination.

    Usage:
        >>> network = AgentNetwork(code_agent, state, run_id="run_1")
        >>> result = await network.run([system_message, user_message])
        >>> result.state.summary
    """

    def __init__(
        self,
        code_agent: CodeAgent,
        state: AgentState,
        run_id: str,
        max_iterations: int | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.code_agent = code_agent
        self.state = state
        self.run_id = run_id
        self.max_iterations = max_iterations or settings.max_network_iterations
        self.event_bus = event_bus
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(NetworkState)

        graph.add_node("code_agent", self._code_agent_node)
        graph.add_node("finish", self._finish_node)

        routes = {"code_agent": "code_agent", "finish": "finish"}
        graph.add_conditional_edges(START, self._route, routes)
        graph.add_conditional_edges("code_agent", self._route, routes)
        graph.add_edge("finish", END)

        return graph.compile()

    def _route(self, state: NetworkState) -> str:
        """Pick the next node: terminate on a summary or at the iteration cap."""
        if self.state.summary:
            return "finish"
        if state["iteration"] >= self.max_iterations:
            logger.warning(
                "max_iterations_reached",
                run_id=self.run_id,
                iterations=state["iteration"],
            )
            return "finish"
        return "code_agent"

    async def _code_agent_node(self, state: NetworkState) -> dict[str, Any]:
        iteration = state["iteration"] + 1
        logger.info("agent_iteration", run_id=self.run_id, iteration=iteration)
        await self._publish(EventType.AGENT_ITERATION, {"iteration": iteration})

        new_messages = await self.code_agent.run_turn(state["messages"])
        return {"messages": new_messages, "iteration": iteration}

    async def _finish_node(self, state: NetworkState) -> dict[str, Any]:
        logger.info(
            "agent_network_terminated",
            run_id=self.run_id,
            iterations=state["iteration"],
            has_summary=bool(self.state.summary),
            files=len(self.state.files),
        )
        await self._publish(
            EventType.AGENT_TERMINATED,
            {"iterations": state["iteration"], "has_summary": bool(self.state.summary)},
        )
        return {"status": NetworkStatus.TERMINATED}

    async def run(self, initial_messages: list[dict[str, Any]]) -> NetworkResult:
        """Run the network to termination.

        Args:
            initial_messages: System prompt, history and the user request.

        Returns:
            NetworkResult with the iteration count, full message list and
            the shared state.
        """
        initial_state: NetworkState = {
            "messages": list(initial_messages),
            "iteration": 0,
            "status": NetworkStatus.RUNNING,
        }
        # Each iteration is one graph step, plus the finish node
        final_state = await self._compiled_graph.ainvoke(
            initial_state,
            config={"recursion_limit": self.max_iterations + 5},
        )
        return NetworkResult(
            iterations=final_state["iteration"],
            messages=final_state["messages"],
            state=self.state,
        )

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            AgentEvent(
                type=event_type,
                run_id=self.run_id,
                agent_id=CODE_AGENT_ID,
                data=data,
            )
        )
