"""Agent tools, prompts, LLM integration, and the code agent network.

This module exports the key components needed for agent execution:
- Tool definitions and executor for sandbox operations
- System prompts for the code agent and generators
- LLM client utilities with retry logic
- The LangGraph agent network and the secondary generators
"""

from agents.generators import (
    RESPONSE_FALLBACK,
    TITLE_FALLBACK,
    SecondaryGenerator,
    fragment_title_generator,
    response_generator,
)
from agents.network import AgentNetwork, CodeAgent, NetworkResult, NetworkStatus
from agents.prompts import (
    CODE_AGENT_PROMPT,
    FRAGMENT_TITLE_PROMPT,
    RESPONSE_PROMPT,
    build_code_agent_prompt,
)
from agents.state import AgentState
from agents.tools import (
    TOOL_DEFINITIONS,
    ToolArgumentError,
    ToolExecutor,
    ToolResult,
    get_tool_definitions_for_llm,
)
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    last_assistant_text_message_content,
    parse_agent_output,
)

__all__ = [
    "AgentNetwork",
    "AgentState",
    "CODE_AGENT_PROMPT",
    "CodeAgent",
    "FRAGMENT_TITLE_PROMPT",
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "NetworkResult",
    "NetworkStatus",
    "RESPONSE_FALLBACK",
    "RESPONSE_PROMPT",
    "SecondaryGenerator",
    "TITLE_FALLBACK",
    "TOOL_DEFINITIONS",
    "ToolArgumentError",
    "ToolCallData",
    "ToolExecutor",
    "ToolResult",
    "build_code_agent_prompt",
    "fragment_title_generator",
    "get_tool_definitions_for_llm",
    "last_assistant_text_message_content",
    "parse_agent_output",
    "response_generator",
]
