"""Single-turn generators that run on the final task summary.

Two generators run after the network terminates: one produces the fragment
title, the other the user-facing reply. Each is a plain model call (system
prompt plus the summary text, no tools) recorded as a durable step.
"""

from dataclasses import dataclass

import structlog

from agents.prompts import FRAGMENT_TITLE_PROMPT, RESPONSE_PROMPT
from agents.utils import LLMClient, parse_agent_output
from config import settings
from durable.executor import StepExecutor

logger = structlog.get_logger()

TITLE_FALLBACK = "Fragment"
RESPONSE_FALLBACK = "Here you go"


@dataclass
class SecondaryGenerator:
    """A named single-turn agent.

    Attributes:
        name: Agent name, also used as the durable step name.
        system_prompt: Instructions for the model.
        model: LiteLLM model identifier.
        fallback: Text used when the output is empty after extraction.
    """

    name: str
    system_prompt: str
    model: str
    fallback: str

    async def generate(
        self,
        llm_client: LLMClient,
        step: StepExecutor,
        summary: str,
    ) -> str:
        """Run the generator on the summary and return the extracted text.

        The raw model output is what the step records; the marker is stripped
        and ``fallback`` substituted on every run, so replays agree.
        """

        async def call_model() -> str:
            response = await llm_client.call(
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": summary},
                ],
                model=self.model,
                run_id=step.run_id,
                agent_id=self.name,
            )
            return response.content

        output = await step.run(self.name, call_model)
        text = parse_agent_output(output, self.fallback)
        logger.debug("generator_output", generator=self.name, preview=text[:80])
        return text


def fragment_title_generator() -> SecondaryGenerator:
    return SecondaryGenerator(
        name="fragment-title-generator",
        system_prompt=FRAGMENT_TITLE_PROMPT,
        model=settings.title_generator_model,
        fallback=TITLE_FALLBACK,
    )


def response_generator() -> SecondaryGenerator:
    return SecondaryGenerator(
        name="response-generator",
        system_prompt=RESPONSE_PROMPT,
        model=settings.response_generator_model,
        fallback=RESPONSE_FALLBACK,
    )
