"""The code-agent job: one user request in, one persisted result out.

Pipeline (step names in quotes are durable steps):

1. "get-sandbox-id": provision a sandbox from the template image
2. "get-previous-messages": load the project's recent conversation
3. Agent network run ("code-agent" inference and tool steps)
4. "fragment-title-generator" and "response-generator" on the summary
5. "get-sandbox-url": resolve the preview endpoint
6. "save-result": classify and persist the outcome

Everything nondeterministic happens inside a step, so running the job again
with the same run id replays completed work and continues where it failed.
"""

from typing import Any

import structlog

from agents.generators import fragment_title_generator, response_generator
from agents.network import AgentNetwork, CodeAgent
from agents.prompts import build_code_agent_prompt
from agents.state import AgentState
from agents.tools import ToolExecutor
from agents.utils import LLMClient
from config import settings
from durable.executor import StepExecutor
from events.bus import EventBus
from jobs.history import load_recent_messages
from jobs.persist import persist_result
from models.database import MessageStore
from models.schemas import JobOutput, JobTrigger
from sandbox.docker_sandbox import SandboxProvisioner

logger = structlog.get_logger()

JOB_OUTPUT_TITLE = "Fragment"


class CodeAgentJob:
    """Runs the code-agent pipeline for one trigger.

    Attributes:
        provisioner: Creates and resolves sandboxes
        message_store: Conversation persistence
        llm_client: Client shared by the code agent and the generators
        event_bus: Optional bus for job events
        template: Sandbox template image
    """

    def __init__(
        self,
        provisioner: SandboxProvisioner,
        message_store: MessageStore,
        llm_client: LLMClient,
        event_bus: EventBus | None = None,
        template: str | None = None,
    ) -> None:
        self.provisioner = provisioner
        self.message_store = message_store
        self.llm_client = llm_client
        self.event_bus = event_bus
        self.template = template or settings.sandbox_template

    async def run(self, trigger: JobTrigger, step: StepExecutor) -> JobOutput:
        """Execute the pipeline within the given step executor."""
        log = logger.bind(run_id=step.run_id, project_id=trigger.project_id)

        sandbox_id: str = await step.run(
            "get-sandbox-id",
            lambda: self.provisioner.acquire(
                self.template, settings.sandbox_timeout_seconds
            ),
        )
        previous_messages: list[dict[str, Any]] = await step.run(
            "get-previous-messages",
            lambda: load_recent_messages(
                self.message_store, trigger.project_id, settings.history_limit
            ),
        )
        log.info(
            "job_context_ready",
            sandbox_id=sandbox_id,
            history_messages=len(previous_messages),
        )

        state = AgentState()
        tool_executor = ToolExecutor(
            provisioner=self.provisioner,
            sandbox_id=sandbox_id,
            step=step,
            state=state,
            event_bus=self.event_bus,
        )
        code_agent = CodeAgent(
            llm_client=self.llm_client,
            tool_executor=tool_executor,
            step=step,
            state=state,
        )
        network = AgentNetwork(
            code_agent=code_agent,
            state=state,
            run_id=step.run_id,
            event_bus=self.event_bus,
        )

        system_prompt = build_code_agent_prompt(
            self.provisioner.workdir, self.provisioner.preview_port
        )
        request = {"role": "user", "content": trigger.value}
        # A request recorded before the job is already the newest history entry
        if previous_messages and previous_messages[-1] == request:
            previous_messages = previous_messages[:-1]
        result = await network.run(
            [{"role": "system", "content": system_prompt}, *previous_messages, request]
        )
        log.info(
            "agent_network_finished",
            iterations=result.iterations,
            has_summary=bool(state.summary),
            files=sorted(state.files),
        )

        title = await fragment_title_generator().generate(
            self.llm_client, step, state.summary
        )
        content = await response_generator().generate(
            self.llm_client, step, state.summary
        )

        async def get_sandbox_url() -> str:
            sandbox = await self.provisioner.resolve(sandbox_id)
            return await sandbox.exposed_endpoint(self.provisioner.preview_port)

        sandbox_url: str = await step.run("get-sandbox-url", get_sandbox_url)

        await persist_result(
            store=self.message_store,
            step=step,
            project_id=trigger.project_id,
            state=state,
            sandbox_url=sandbox_url,
            title=title,
            content=content,
        )

        return JobOutput(
            url=sandbox_url,
            title=JOB_OUTPUT_TITLE,
            files=state.files,
            summary=state.summary,
        )
