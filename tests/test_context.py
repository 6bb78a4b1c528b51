from stepflow.context import build_digest, build_step_prompt
from stepflow.schemas import Poll, Step, StepOutcome, StepResult


def _outcome(n, **result):
    return StepOutcome(step_number=n, state="SUCCEEDED", result=StepResult(success=True, **result))


def test_digest_marks_assets_and_truncates_text():
    outcomes = [
        _outcome(1, text="x" * 300),
        _outcome(2, image_url="u", video_url="v", audio_url="a"),
        _outcome(3, poll=Poll(question="Lunch?", options=["a", "b"]), latitude="1.5", longitude="2.5"),
    ]
    lines = build_digest(outcomes).split("\n")
    assert lines[0] == "Step 1: " + "x" * 200
    assert lines[1] == "Step 2: [Created image] [Created video] [Created audio]"
    assert lines[2] == 'Step 3: [Created poll: "Lunch?"] [Sent location]'


def test_digest_notes_failed_steps():
    failed = StepOutcome(
        step_number=2,
        state="FAILED",
        result=StepResult(success=False, error="Gemini: quota exceeded\nOpenAI: timeout"),
    )
    assert build_digest([failed]) == "Step 2: [Failed: Gemini: quota exceeded]"


def test_first_step_prompt_is_action_plus_parameters():
    step = Step(step_number=1, tool="create_image", parameters={"prompt": "a cat", "size": [1, 2]}, action="draw a cat")
    assert build_step_prompt(step, []) == 'draw a cat\n\nTool: create_image\nParameters: prompt: a cat, size: [1, 2]'


def test_later_step_prompt_carries_context():
    step = Step(step_number=2, action="send it to the group")
    prompt = build_step_prompt(step, [_outcome(1, text="found three cafes")])
    assert prompt == "CONTEXT from previous steps:\nStep 1: found three cafes\n\nCURRENT TASK: send it to the group"
