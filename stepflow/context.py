import json
from typing import Any, Iterable

from .schemas import Step, StepOutcome

FAILED_EXCERPT_CHARS = 80


def _param_text(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def summarize_outcome(outcome: StepOutcome, excerpt_chars: int = 200) -> str:
    summary = f"Step {outcome.step_number}:"
    result = outcome.result
    if result is None:
        return summary
    if not result.success:
        error = (result.error or "unknown error").strip().splitlines()[0]
        return f"{summary} [Failed: {error[:FAILED_EXCERPT_CHARS]}]"
    if result.text:
        summary += f" {result.text[:excerpt_chars]}"
    if result.image_url:
        summary += " [Created image]"
    if result.video_url:
        summary += " [Created video]"
    if result.audio_url:
        summary += " [Created audio]"
    if result.poll:
        summary += f' [Created poll: "{result.poll.question}"]'
    if result.has_location():
        summary += " [Sent location]"
    return summary


def build_digest(outcomes: Iterable[StepOutcome], excerpt_chars: int = 200) -> str:
    return "\n".join(summarize_outcome(outcome, excerpt_chars) for outcome in outcomes)


def build_step_prompt(step: Step, prior: Iterable[StepOutcome], excerpt_chars: int = 200) -> str:
    """Instruction for one step: prior-step digest, the step's action, then planner-chosen tool/parameters."""
    prior = list(prior)
    prompt = step.action
    if prior:
        prompt = f"CONTEXT from previous steps:\n{build_digest(prior, excerpt_chars)}\n\nCURRENT TASK: {step.action}"
    if step.tool and step.parameters:
        params = ", ".join(f"{key}: {_param_text(value)}" for key, value in step.parameters.items())
        prompt = f"{prompt}\n\nTool: {step.tool}\nParameters: {params}"
    return prompt
