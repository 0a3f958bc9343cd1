"""Tests for jobs/ -- history loading, result persistence, the code-agent
pipeline end to end, and the JobRunner's retry-with-replay.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agents.generators import (
    RESPONSE_FALLBACK,
    TITLE_FALLBACK,
    SecondaryGenerator,
    fragment_title_generator,
)
from agents.state import AgentState
from durable.executor import StepExecutor
from durable.store import StepStore
from events.bus import EventBus
from events.types import EventType
from jobs.code_agent import JOB_OUTPUT_TITLE, CodeAgentJob
from jobs.history import load_recent_messages, record_request
from jobs.persist import ERROR_MESSAGE, is_error_result, persist_result
from jobs.runner import JobFailedError, JobRunner
from models.database import MessageStore
from models.schemas import JobOutput, JobTrigger, MessageRole, MessageType
from sandbox.docker_sandbox import SandboxUnavailableError
from tests.conftest import (
    RoutingMockLLMClient,
    make_llm_response,
    make_mock_provisioner,
    make_mock_sandbox,
    make_tool_call,
)

SUMMARY = "<task_summary>\nAdded a footer component.\n</task_summary>"


def _footer_script() -> dict[str, list]:
    """Code agent writes footer.tsx, then reports completion in iteration 2."""
    return {
        "code-agent": [
            make_llm_response(tool_calls=[make_tool_call(
                "createOrUpdateFiles",
                {"files": [{"path": "app/footer.tsx", "content": "export function Footer() {}"}]},
            )]),
            make_llm_response("Footer written, checking layout next."),
            make_llm_response(SUMMARY),
        ],
        "fragment-title-generator": [make_llm_response("  Footer Component  ")],
        "response-generator": [make_llm_response("I added a footer to your app.")],
    }


def _make_job(
    message_store: MessageStore,
    llm: RoutingMockLLMClient,
    sandbox: MagicMock | None = None,
    event_bus: EventBus | None = None,
) -> CodeAgentJob:
    return CodeAgentJob(
        provisioner=make_mock_provisioner(sandbox or make_mock_sandbox()),
        message_store=message_store,
        llm_client=llm,
        event_bus=event_bus,
        template="vibe-nextjs-sandbox:test",
    )


# =========================================================================
# History
# =========================================================================


class TestLoadRecentMessages:
    """Last N messages, chronological, mapped to agent roles."""

    async def test_recorded_request_is_a_user_message(
        self, message_store: MessageStore
    ) -> None:
        message = await record_request(
            message_store, JobTrigger(projectId="p1", value="add a footer")
        )

        assert message.role == MessageRole.USER
        assert message.type == MessageType.RESULT
        assert await load_recent_messages(message_store, "p1", 5) == [
            {"role": "user", "content": "add a footer"}
        ]

    async def test_returns_last_n_in_chronological_order(
        self, message_store: MessageStore
    ) -> None:
        for i in range(7):
            role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
            await message_store.create_message("p1", f"m{i}", role, MessageType.RESULT)

        messages = await load_recent_messages(message_store, "p1", 5)

        assert [m["content"] for m in messages] == ["m2", "m3", "m4", "m5", "m6"]
        assert [m["role"] for m in messages] == [
            "user", "assistant", "user", "assistant", "user",
        ]

    async def test_other_projects_excluded(self, message_store: MessageStore) -> None:
        await message_store.create_message("p2", "other", MessageRole.USER, MessageType.RESULT)
        assert await load_recent_messages(message_store, "p1", 5) == []

    async def test_error_messages_from_assistant_keep_role(
        self, message_store: MessageStore
    ) -> None:
        await message_store.create_message(
            "p1", ERROR_MESSAGE, MessageRole.ASSISTANT, MessageType.ERROR
        )
        messages = await load_recent_messages(message_store, "p1", 5)
        assert messages == [{"role": "assistant", "content": ERROR_MESSAGE}]


# =========================================================================
# Generators
# =========================================================================


class TestSecondaryGenerator:
    """Output extraction uses each generator's own fallback."""

    async def test_marker_stripped(self, step: StepExecutor) -> None:
        llm = RoutingMockLLMClient({
            "fragment-title-generator": [make_llm_response("<task_summary> Footer </task_summary>")],
        })
        title = await fragment_title_generator().generate(llm, step, SUMMARY)
        assert title == "Footer"
        assert step.executed == ["fragment-title-generator"]

    async def test_empty_output_uses_generator_fallback(self, step: StepExecutor) -> None:
        generator = SecondaryGenerator(
            name="tagline-generator",
            system_prompt="Write a tagline.",
            model="groq/test",
            fallback="Untitled",
        )
        llm = RoutingMockLLMClient({"tagline-generator": [make_llm_response("   ")]})

        assert await generator.generate(llm, step, SUMMARY) == "Untitled"


# =========================================================================
# Persistence
# =========================================================================


class TestIsErrorResult:
    def test_success_needs_summary_and_files(self) -> None:
        assert not is_error_result(SUMMARY, {"a.tsx": "x"})

    def test_missing_summary(self) -> None:
        assert is_error_result("", {"a.tsx": "x"})

    def test_missing_files(self) -> None:
        assert is_error_result(SUMMARY, {})


class TestPersistResult:
    """save-result writes an optional ERROR and then the RESULT."""

    async def test_success_writes_single_result(
        self, message_store: MessageStore, step: StepExecutor
    ) -> None:
        state = AgentState(summary=SUMMARY, files={"app/footer.tsx": "x"})

        ids = await persist_result(
            message_store, step, "p1", state,
            sandbox_url="http://localhost:49153",
            title="Footer",
            content="Added it.",
        )

        messages = await message_store.list_recent("p1", 10)
        assert [m.id for m in messages] == ids
        result = messages[0]
        assert result.type == MessageType.RESULT
        assert result.role == MessageRole.ASSISTANT
        assert result.content == "Added it."
        assert result.fragment is not None
        assert result.fragment.title == "Footer"
        assert result.fragment.files == {"app/footer.tsx": "x"}
        assert result.fragment.sandbox_url == "http://localhost:49153"
        assert step.executed == ["save-result"]

    async def test_error_precedes_result(
        self, message_store: MessageStore, step: StepExecutor
    ) -> None:
        state = AgentState(summary="", files={})

        await persist_result(
            message_store, step, "p1", state,
            sandbox_url="http://localhost:49153",
            title="Fragment",
            content="Here you go",
        )

        newest_first = await message_store.list_recent("p1", 10)
        chronological = list(reversed(newest_first))
        assert [m.type for m in chronological] == [MessageType.ERROR, MessageType.RESULT]
        assert chronological[0].content == ERROR_MESSAGE
        assert chronological[0].fragment is None
        assert chronological[1].content == "Here you go"
        assert chronological[1].fragment.title == "Fragment"
        assert chronological[1].fragment.files == {}

    async def test_replayed_save_does_not_duplicate(
        self, message_store: MessageStore, step_store: StepStore
    ) -> None:
        state = AgentState(summary=SUMMARY, files={"a.tsx": "x"})
        for _ in range(2):
            await persist_result(
                message_store, StepExecutor("run_p", step_store), "p1", state,
                sandbox_url="http://localhost:1", title="T", content="R",
            )
        assert len(await message_store.list_recent("p1", 10)) == 1


# =========================================================================
# Code-agent job
# =========================================================================


class TestCodeAgentJob:
    """The pipeline end to end with mocked sandbox and model."""

    async def test_footer_request(
        self, message_store: MessageStore, step: StepExecutor
    ) -> None:
        sandbox = make_mock_sandbox()
        llm = RoutingMockLLMClient(_footer_script())
        job = _make_job(message_store, llm, sandbox)

        output = await job.run(JobTrigger(projectId="p1", value="add a footer"), step)

        assert output == JobOutput(
            url="http://localhost:49153",
            title=JOB_OUTPUT_TITLE,
            files={"app/footer.tsx": "export function Footer() {}"},
            summary=SUMMARY,
        )
        # Two iterations, not the cap of five
        assert len(llm.calls_for("code-agent")) == 3
        assert sandbox.files == {"app/footer.tsx": "export function Footer() {}"}
        job.provisioner.acquire.assert_awaited_once_with("vibe-nextjs-sandbox:test", 1800)
        sandbox.exposed_endpoint.assert_awaited_once_with(3000)

        messages = await message_store.list_recent("p1", 10)
        assert len(messages) == 1
        assert messages[0].content == "I added a footer to your app."
        assert messages[0].fragment.title == "Footer Component"

        assert step.executed == [
            "get-sandbox-id",
            "get-previous-messages",
            "code-agent",
            "createOrUpdateFiles",
            "code-agent:1",
            "code-agent:2",
            "fragment-title-generator",
            "response-generator",
            "get-sandbox-url",
            "save-result",
        ]

    async def test_history_and_request_form_initial_context(
        self, message_store: MessageStore, step: StepExecutor
    ) -> None:
        await message_store.create_message(
            "p1", "build a landing page", MessageRole.USER, MessageType.RESULT
        )
        await message_store.create_message(
            "p1", "Here is your landing page.", MessageRole.ASSISTANT, MessageType.RESULT
        )
        llm = RoutingMockLLMClient(_footer_script())
        job = _make_job(message_store, llm)

        await job.run(JobTrigger(projectId="p1", value="add a footer"), step)

        first = llm.calls_for("code-agent")[0]["messages"]
        assert first[0]["role"] == "system"
        assert "<task_summary>" in first[0]["content"]
        assert first[1:] == [
            {"role": "user", "content": "build a landing page"},
            {"role": "assistant", "content": "Here is your landing page."},
            {"role": "user", "content": "add a footer"},
        ]

    async def test_follow_up_run_sees_earlier_request(
        self, message_store: MessageStore, step_store: StepStore
    ) -> None:
        script = _footer_script()
        script["code-agent"].append(make_llm_response(SUMMARY))
        script["fragment-title-generator"].append(make_llm_response("Blue Footer"))
        script["response-generator"].append(make_llm_response("The footer is blue now."))
        llm = RoutingMockLLMClient(script)
        job = _make_job(message_store, llm)

        for run_id, value in (("run_1", "add a footer"), ("run_2", "make it blue")):
            trigger = JobTrigger(projectId="p1", value=value)
            await record_request(message_store, trigger)
            await job.run(trigger, StepExecutor(run_id, step_store))

        first_run = llm.calls_for("code-agent")[0]["messages"]
        assert first_run[1:] == [{"role": "user", "content": "add a footer"}]
        second_run = llm.calls_for("code-agent")[3]["messages"]
        assert second_run[1:] == [
            {"role": "user", "content": "add a footer"},
            {"role": "assistant", "content": "I added a footer to your app."},
            {"role": "user", "content": "make it blue"},
        ]

    async def test_generators_receive_summary(
        self, message_store: MessageStore, step: StepExecutor
    ) -> None:
        llm = RoutingMockLLMClient(_footer_script())
        await _make_job(message_store, llm).run(
            JobTrigger(projectId="p1", value="add a footer"), step
        )

        for name in ("fragment-title-generator", "response-generator"):
            call = llm.calls_for(name)[0]
            assert call["messages"][1] == {"role": "user", "content": SUMMARY}
            assert call["tools"] is None

    async def test_no_summary_persists_error(
        self, message_store: MessageStore, step: StepExecutor
    ) -> None:
        llm = RoutingMockLLMClient({
            "code-agent": [make_llm_response(f"thinking {i}") for i in range(5)],
            "fragment-title-generator": [make_llm_response("")],
            "response-generator": [make_llm_response("")],
        })

        output = await _make_job(message_store, llm).run(
            JobTrigger(projectId="p1", value="add a footer"), step
        )

        assert output.summary == ""
        assert output.files == {}
        assert len(llm.calls_for("code-agent")) == 5
        chronological = list(reversed(await message_store.list_recent("p1", 10)))
        assert [m.type for m in chronological] == [MessageType.ERROR, MessageType.RESULT]
        assert chronological[1].content == RESPONSE_FALLBACK
        assert chronological[1].fragment.title == TITLE_FALLBACK


# =========================================================================
# JobRunner
# =========================================================================


class TestJobRunner:
    """Retries replay completed steps; the last failure is JobFailedError."""

    async def test_run_completes_and_emits_events(
        self, message_store: MessageStore, step_store: StepStore, event_bus: EventBus
    ) -> None:
        llm = RoutingMockLLMClient(_footer_script())
        runner = JobRunner(
            _make_job(message_store, llm, event_bus=event_bus),
            step_store,
            event_bus,
            retry_delay=0,
        )

        output = await runner.run(JobTrigger(projectId="p1", value="add a footer"), "run_1")

        assert output.summary == SUMMARY
        info = runner.get_job("run_1")
        assert info.status == "complete"
        assert info.attempts == 1
        types = [e.type for e in event_bus.get_event_history("run_1")]
        assert types[0] == EventType.JOB_STARTED
        assert EventType.JOB_COMPLETE in types

    async def test_retry_replays_completed_steps(
        self, message_store: MessageStore, step_store: StepStore, event_bus: EventBus
    ) -> None:
        sandbox = make_mock_sandbox()
        llm = RoutingMockLLMClient(_footer_script())
        job = _make_job(message_store, llm, sandbox, event_bus=event_bus)
        # The preview lookup fails once, after all agent work is done
        sandbox.exposed_endpoint = AsyncMock(
            side_effect=[RuntimeError("docker hiccup"), "http://localhost:49153"]
        )
        runner = JobRunner(job, step_store, event_bus, max_attempts=2, retry_delay=0)

        output = await runner.run(JobTrigger(projectId="p1", value="add a footer"), "run_2")

        assert output.url == "http://localhost:49153"
        assert runner.get_job("run_2").attempts == 2
        job.provisioner.acquire.assert_awaited_once()
        assert sandbox.write_file.await_count == 1
        assert len(llm.calls_for("code-agent")) == 3
        assert len(await message_store.list_recent("p1", 10)) == 1
        types = [e.type for e in event_bus.get_event_history("run_2")]
        assert types.count(EventType.JOB_STARTED) == 2
        assert EventType.JOB_RETRY in types
        assert EventType.STEP_MEMOIZED in types

    async def test_exhausted_attempts_raise_job_failed(
        self, message_store: MessageStore, step_store: StepStore
    ) -> None:
        sandbox = make_mock_sandbox()
        job = _make_job(message_store, RoutingMockLLMClient(_footer_script()), sandbox)
        job.provisioner.resolve = AsyncMock(
            side_effect=SandboxUnavailableError("Sandbox 'sbx-test123' has expired")
        )
        runner = JobRunner(job, step_store, max_attempts=2, retry_delay=0)

        with pytest.raises(JobFailedError) as exc_info:
            await runner.run(JobTrigger(projectId="p1", value="add a footer"), "run_3")

        assert isinstance(exc_info.value.__cause__, SandboxUnavailableError)
        assert exc_info.value.attempts == 2
        assert runner.get_job("run_3").status == "failed"
        assert await message_store.list_recent("p1", 10) == []

    async def test_submit_and_wait(
        self, message_store: MessageStore, step_store: StepStore
    ) -> None:
        runner = JobRunner(
            _make_job(message_store, RoutingMockLLMClient(_footer_script())),
            step_store,
            retry_delay=0,
        )

        run_id = await runner.submit(JobTrigger(projectId="p1", value="add a footer"))
        assert runner.get_job(run_id).status in ("queued", "running")

        output = await runner.wait(run_id)
        assert output.files == {"app/footer.tsx": "export function Footer() {}"}
        assert runner.get_job(run_id).status == "complete"

    async def test_wait_on_failed_job_raises(
        self, message_store: MessageStore, step_store: StepStore
    ) -> None:
        job = _make_job(message_store, RoutingMockLLMClient({"code-agent": []}))
        job.provisioner.acquire = AsyncMock(side_effect=RuntimeError("no docker"))
        runner = JobRunner(job, step_store, max_attempts=1, retry_delay=0)

        run_id = await runner.submit(JobTrigger(projectId="p1", value="add a footer"))

        with pytest.raises(JobFailedError):
            await runner.wait(run_id)
        assert runner.get_job(run_id).error == "no docker"

    async def test_wait_unknown_run(self, step_store: StepStore) -> None:
        runner = JobRunner(MagicMock(), step_store)
        with pytest.raises(KeyError):
            await runner.wait("run_missing")

    async def test_cleanup_cancels_running_jobs(self, step_store: StepStore) -> None:
        job = MagicMock()
        started = asyncio.Event()

        async def hang(trigger, step):
            started.set()
            await asyncio.sleep(3600)

        job.run = AsyncMock(side_effect=hang)
        runner = JobRunner(job, step_store, retry_delay=0)

        run_id = await runner.submit(JobTrigger(projectId="p1", value="add a footer"))
        await started.wait()
        await runner.cleanup_all()

        assert runner.get_job(run_id).status == "failed"
        assert runner.get_job(run_id).error == "cancelled"

    async def test_finished_runs_beyond_retention_are_forgotten(
        self, step_store: StepStore, event_bus: EventBus
    ) -> None:
        job = MagicMock()
        job.run = AsyncMock(return_value=JobOutput(url="http://localhost:1", title="Fragment"))
        runner = JobRunner(job, step_store, event_bus, retry_delay=0, max_retained_runs=1)
        trigger = JobTrigger(projectId="p1", value="add a footer")

        await runner.run(trigger, "run_a")
        assert event_bus.get_event_history("run_a") != []
        await runner.run(trigger, "run_b")

        assert runner.get_job("run_a") is None
        assert event_bus.get_event_history("run_a") == []
        assert runner.get_job("run_b").status == "complete"
        assert [e.type for e in event_bus.get_event_history("run_b")] == [
            EventType.JOB_STARTED,
            EventType.JOB_COMPLETE,
        ]

    async def test_cleanup_all_drops_event_history(
        self, step_store: StepStore, event_bus: EventBus
    ) -> None:
        job = MagicMock()
        job.run = AsyncMock(return_value=JobOutput(url="http://localhost:1", title="Fragment"))
        runner = JobRunner(job, step_store, event_bus, retry_delay=0)

        await runner.run(JobTrigger(projectId="p1", value="add a footer"), "run_c")
        await runner.cleanup_all()

        assert event_bus.get_event_history("run_c") == []
