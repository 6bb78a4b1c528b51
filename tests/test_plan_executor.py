import pytest

from stepflow.plan_executor import RunOptions, dedupe_text
from stepflow.schemas import MultiStepCommand, Plan, SingleStepCommand, Step, StepResult
from tests.fakes import FakeBackend, FakeReasoner, basic_registry, image_ok, text_message, tool_call_message


def _image_backends(gemini=None, openai=None):
    return {
        "image": {
            "gemini": FakeBackend("gemini", gemini or []),
            "openai": FakeBackend("openai", openai or []),
        }
    }


def test_run_options_skip_transcription_ack():
    options = RunOptions.from_request(audio_already_transcribed=True, skip_ack_tools=["search_web"])
    assert options.skip_ack_tools == frozenset({"search_web", "transcribe_audio"})


def test_dedupe_text_drops_repeated_lines_and_failures():
    results = [
        StepResult(success=True, text="Found 3 cafes\nOpen late"),
        StepResult(success=False, text="ignored", error="x"),
        StepResult(success=True, text="Open late\nBook a table"),
    ]
    assert dedupe_text(results) == "Found 3 cafes\nOpen late\nBook a table"


@pytest.mark.asyncio
async def test_failed_step_does_not_stop_later_steps(orchestrator_factory):
    backends = _image_backends(gemini=[{"success": False, "error": "quota"}], openai=[image_ok()])
    orch, channel = orchestrator_factory(backends=backends, registry=basic_registry())
    plan = Plan(
        steps=[
            Step(step_number=1, tool="create_image", parameters={"prompt": "a cat"}, action="draw a cat"),
            Step(step_number=2, tool="teleport", action="go to the moon"),
            Step(step_number=3, tool="search_web", parameters={"query": "cafes"}, action="find cafes"),
        ]
    )

    report = await orch.run_plan("c1", plan, RunOptions(quoted_message_id="q1"))

    assert [o.state for o in report.outcomes] == ["SUCCEEDED", "FAILED", "SUCCEEDED"]
    assert report.steps_attempted == 3
    assert report.steps_succeeded == 2
    assert report.text == "results for cafes"
    assert channel.texts() == [
        "Creating an image with Gemini...",
        "Gemini: quota",
        "Creating an image with OpenAI...",
        "Working on it...",
        "Step 2 (teleport) failed: Unknown tool: teleport",
        "Searching the web...",
        "results for cafes",
    ]
    assert channel.kinds().count("image") == 1
    assert report.outcomes[0].result.provider_used == "openai"

    stored = await orch.store.get("c1")
    assert isinstance(stored, MultiStepCommand)
    assert stored.plan == plan
    assert [r.success for r in stored.step_results] == [True, False, True]


@pytest.mark.asyncio
async def test_free_text_step_gets_context_digest(orchestrator_factory):
    reasoner = FakeReasoner([text_message("Sent it")])
    orch, channel = orchestrator_factory(reasoner=reasoner, registry=basic_registry())
    plan = Plan(
        steps=[
            Step(step_number=1, tool="search_web", parameters={"query": "cafes"}, action="find cafes"),
            Step(step_number=2, action="summarize for the group"),
        ]
    )

    await orch.run_plan("c1", plan)

    instruction = reasoner.calls[0]["messages"][1]["content"]
    assert instruction == (
        "CONTEXT from previous steps:\nStep 1: results for cafes\n\nCURRENT TASK: summarize for the group"
    )
    assert channel.texts()[-1] == "Sent it"


@pytest.mark.asyncio
async def test_run_single_records_command_with_provider(orchestrator_factory):
    orch, channel = orchestrator_factory(backends=_image_backends(openai=[image_ok()]))

    result = await orch.run_command("c1", "create_image", {"prompt": "a cat", "provider": "openai"})

    assert result.success
    assert channel.kinds() == ["text", "image"]
    stored = await orch.store.get("c1")
    assert isinstance(stored, SingleStepCommand)
    assert stored.args == {"prompt": "a cat", "provider": "openai"}
    assert stored.result["provider_used"] == "openai"
    assert "tool_calls" not in stored.result


@pytest.mark.asyncio
async def test_run_single_failure_message(orchestrator_factory):
    orch, channel = orchestrator_factory(backends=_image_backends(gemini=[{"success": False, "error": "quota"}]))

    result = await orch.run_command("c1", "create_image", {"prompt": "a cat", "provider": "gemini"})

    assert not result.success
    assert channel.texts()[-1] == "create_image failed: Gemini: quota"


@pytest.mark.asyncio
async def test_free_text_command_records_the_chosen_tool(orchestrator_factory):
    reasoner = FakeReasoner([tool_call_message("search_web", {"query": "news"}), text_message("")])
    orch, channel = orchestrator_factory(reasoner=reasoner, registry=basic_registry())

    await orch.run_command("c1", None, instruction="what's new today")

    stored = await orch.store.get("c1")
    assert stored.tool == "search_web"
    assert stored.args == {"query": "news"}
    assert channel.texts() == ["Searching the web...", "results for news"]


@pytest.mark.asyncio
async def test_non_persisted_tools_keep_previous_command(orchestrator_factory):
    orch, _ = orchestrator_factory(registry=basic_registry())
    await orch.run_command("c1", "search_web", {"query": "cafes"})
    await orch.run_command("c1", "get_chat_history", {})

    stored = await orch.store.get("c1")
    assert stored.tool == "search_web"


@pytest.mark.asyncio
async def test_all_successful_steps_are_delivered_in_order(orchestrator_factory):
    orch, channel = orchestrator_factory(registry=basic_registry())
    delivered = []
    send = orch.sender.send_step_results

    async def spy(conversation_id, result, step_number=None, quoted_message_id=None):
        delivered.append(step_number)
        return await send(conversation_id, result, step_number, quoted_message_id)

    orch.sender.send_step_results = spy
    plan = Plan(
        steps=[
            Step(step_number=1, tool="search_web", parameters={"query": "a"}),
            Step(step_number=2, tool="search_web", parameters={"query": "b"}),
            Step(step_number=3, tool="send_location", parameters={"place": "park"}),
        ]
    )

    report = await orch.run_plan("c1", plan)

    assert delivered == [1, 2, 3]
    assert report.steps_succeeded == 3
    stored = await orch.store.get("c1")
    assert len(stored.plan.steps) == 3


@pytest.mark.asyncio
async def test_tool_step_after_others_is_shaped_by_the_digest(orchestrator_factory):
    calls = []
    reasoner = FakeReasoner([tool_call_message("search_web", {"query": "menus of results for cafes"}), text_message("")])
    orch, channel = orchestrator_factory(reasoner=reasoner, registry=basic_registry(calls))
    plan = Plan(
        steps=[
            Step(step_number=1, tool="search_web", parameters={"query": "cafes"}, action="find cafes"),
            Step(step_number=2, tool="search_web", parameters={"query": "menus"}, action="compare menus"),
        ]
    )

    report = await orch.run_plan("c1", plan)

    # the first step has nothing to learn from and runs as planned
    assert calls == [("search_web", {"query": "cafes"}), ("search_web", {"query": "menus of results for cafes"})]
    assert reasoner.calls[0]["messages"][1]["content"] == (
        "CONTEXT from previous steps:\nStep 1: results for cafes\n\nCURRENT TASK: compare menus"
        "\n\nTool: search_web\nParameters: query: menus"
    )
    assert report.steps_succeeded == 2
    assert channel.texts() == [
        "Searching the web...",
        "results for cafes",
        "Searching the web...",
        "results for menus of results for cafes",
    ]
