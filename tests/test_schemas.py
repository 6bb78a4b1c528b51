import pytest
from pydantic import ValidationError

from stepflow.errors import MalformedCommandError
from stepflow.schemas import (
    MultiStepCommand,
    Plan,
    PlanRequest,
    RetryRequest,
    SingleStepCommand,
    Step,
    StepResult,
    parse_last_command,
)


def test_plan_requires_dense_one_based_numbers():
    with pytest.raises(ValidationError):
        Plan(steps=[Step(step_number=1, tool="a"), Step(step_number=3, tool="b")])
    with pytest.raises(ValidationError):
        Plan(steps=[Step(step_number=2, tool="a")])


def test_step_accepts_camel_case_and_blank_tool():
    step = Step.model_validate({"stepNumber": 2, "tool": "  ", "parameters": None, "action": "say hi"})
    assert step.step_number == 2
    assert step.tool is None
    assert step.parameters == {}
    assert step.label() == "say hi"


def test_renumbered_builds_new_plan_without_touching_steps():
    original = Plan(steps=[Step(step_number=1, tool="a"), Step(step_number=2, tool="b"), Step(step_number=3, tool="c")])
    subset = Plan.renumbered([original.steps[0], original.steps[2]])
    assert [s.step_number for s in subset.steps] == [1, 2]
    assert [s.tool for s in subset.steps] == ["a", "c"]
    assert original.steps[2].step_number == 3


def test_plan_request_numbers_missing_steps():
    body = PlanRequest.model_validate({"plan": {"steps": [{"tool": "create_image"}, {"action": "send it"}]}})
    assert [s.step_number for s in body.plan.steps] == [1, 2]


def test_step_result_asset_kinds():
    result = StepResult.model_validate(
        {
            "success": True,
            "imageUrl": "https://x/a.png",
            "poll": {"question": "Q?", "options": ["a", "b"]},
            "latitude": 32.1,
            "longitude": 34.8,
        }
    )
    assert result.asset_kinds() == ["image", "poll", "location"]
    assert result.latitude == "32.1"
    assert result.has_structured_output()
    assert not StepResult(success=True, text="hi").has_structured_output()


def test_retry_request_none_provider_is_absent():
    assert RetryRequest(provider_override="none").provider_override is None
    assert RetryRequest(provider_override="openai").provider_override == "openai"
    assert RetryRequest(modifications="   ").modifications is None


def test_parse_flat_single_command():
    command = parse_last_command({"tool": "create_image", "args": {"prompt": "a cat", "provider": "openai"}})
    assert isinstance(command, SingleStepCommand)
    assert command.args == {"prompt": "a cat", "provider": "openai"}
    assert command.result == {}


def test_parse_tool_args_wrapper_with_nested_result():
    command = parse_last_command(
        {"tool": "openai_image", "toolArgs": {"prompt": "a dog", "result": {"imageUrl": "u", "provider": "openai"}}}
    )
    assert isinstance(command, SingleStepCommand)
    assert command.args == {"prompt": "a dog"}
    assert command.result["provider"] == "openai"


def test_parse_legacy_multi_step_assigns_step_numbers():
    command = parse_last_command(
        {
            "tool": "multi_step",
            "plan": {"steps": [{"tool": "create_image", "action": "draw"}, {"tool": "send_location", "action": "pin"}]},
        }
    )
    assert isinstance(command, MultiStepCommand)
    assert [s.step_number for s in command.plan.steps] == [1, 2]


def test_parse_plan_nested_under_tool_args():
    command = parse_last_command(
        {"tool": "agent", "toolArgs": {"isMultiStep": True, "plan": {"steps": [{"tool": "search_web"}]}}}
    )
    assert isinstance(command, MultiStepCommand)
    assert command.plan.steps[0].tool == "search_web"


def test_parse_multi_step_without_plan_is_malformed():
    with pytest.raises(MalformedCommandError):
        parse_last_command({"tool": "multi_step", "isMultiStep": True})
    with pytest.raises(MalformedCommandError):
        parse_last_command({"isMultiStep": True, "plan": {"steps": []}})


def test_parse_tagged_command_round_trip():
    command = MultiStepCommand(
        plan=Plan(steps=[Step(step_number=1, tool="create_image", parameters={"prompt": "x"})]),
        step_results=[StepResult(success=True, image_url="u")],
    )
    restored = parse_last_command(command.model_dump(mode="json"))
    assert restored == command
