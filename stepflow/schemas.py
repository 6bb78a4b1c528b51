from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import MalformedCommandError


StepState = Literal["PENDING", "ACK_SENT", "EXECUTING", "SUCCEEDED", "FAILED"]

_CAMEL = {"alias_generator": to_camel, "populate_by_name": True}


class Step(BaseModel):
    step_number: int = Field(ge=1)
    tool: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    action: str = ""

    model_config = {**_CAMEL, "frozen": True}

    @field_validator("tool", mode="before")
    @classmethod
    def blank_tool_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("parameters", mode="before")
    @classmethod
    def none_parameters(cls, value: Any) -> Any:
        return value or {}

    def label(self) -> str:
        if self.tool:
            return self.tool
        return (self.action or "unknown")[:30]


class Plan(BaseModel):
    steps: List[Step]

    model_config = {**_CAMEL, "frozen": True}

    @model_validator(mode="after")
    def dense_step_numbers(self) -> "Plan":
        numbers = [step.step_number for step in self.steps]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError(f"step numbers must be dense and 1-based, got {numbers}")
        return self

    @classmethod
    def renumbered(cls, steps: Iterable[Step]) -> "Plan":
        return cls(steps=[step.model_copy(update={"step_number": idx}) for idx, step in enumerate(steps, start=1)])

    def describe(self) -> str:
        return ", ".join(f"{step.step_number}. {step.label()}" for step in self.steps)


class Poll(BaseModel):
    question: str
    options: List[str] = Field(default_factory=list)


class ProviderAttempt(BaseModel):
    provider: str
    message: str


class ToolCall(BaseModel):
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class StepResult(BaseModel):
    success: bool
    text: Optional[str] = None
    image_url: Optional[str] = None
    image_caption: Optional[str] = None
    video_url: Optional[str] = None
    video_caption: Optional[str] = None
    audio_url: Optional[str] = None
    poll: Optional[Poll] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    location_info: Optional[str] = None
    tools_used: List[str] = Field(default_factory=list)
    iterations: int = 0
    error: Optional[str] = None
    provider_used: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)

    model_config = {**_CAMEL, "extra": "ignore"}

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def coords_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value

    def has_location(self) -> bool:
        return bool(self.latitude and self.longitude)

    def asset_kinds(self) -> List[str]:
        kinds = []
        if self.image_url:
            kinds.append("image")
        if self.video_url:
            kinds.append("video")
        if self.audio_url:
            kinds.append("audio")
        if self.poll:
            kinds.append("poll")
        if self.has_location():
            kinds.append("location")
        return kinds

    def has_structured_output(self) -> bool:
        return bool(self.asset_kinds()) or bool(self.location_info)


class SingleStepCommand(BaseModel):
    kind: Literal["single"] = "single"
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: Dict[str, Any] = Field(default_factory=dict)


class MultiStepCommand(BaseModel):
    kind: Literal["multi"] = "multi"
    plan: Plan
    step_results: List[StepResult] = Field(default_factory=list)


LastCommand = Annotated[Union[SingleStepCommand, MultiStepCommand], Field(discriminator="kind")]
_last_command_adapter: TypeAdapter = TypeAdapter(LastCommand)


class RetryRequest(BaseModel):
    modifications: Optional[str] = None
    provider_override: Optional[str] = None
    step_numbers: Optional[List[int]] = None
    step_tools: Optional[List[str]] = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("provider_override", mode="before")
    @classmethod
    def none_means_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("", "none"):
            return None
        return value

    @field_validator("modifications", mode="before")
    @classmethod
    def strip_modifications(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value


class StepOutcome(BaseModel):
    step_number: int
    tool: Optional[str] = None
    state: StepState = "PENDING"
    result: Optional[StepResult] = None


class PlanRunReport(BaseModel):
    plan: Plan
    outcomes: List[StepOutcome] = Field(default_factory=list)
    text: str = ""

    @property
    def steps_attempted(self) -> int:
        return sum(1 for o in self.outcomes if o.state in ("SUCCEEDED", "FAILED"))

    @property
    def steps_succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.state == "SUCCEEDED")

    def step_results(self) -> List[StepResult]:
        return [o.result for o in self.outcomes if o.result is not None]

    def summary(self) -> Dict[str, Any]:
        return {
            "steps_attempted": self.steps_attempted,
            "steps_succeeded": self.steps_succeeded,
            "total_steps": len(self.plan.steps),
            "text": self.text,
            "outcomes": [o.model_dump(exclude_none=True) for o in self.outcomes],
        }


def _legacy_plan(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    wrapper = raw.get("toolArgs") or raw.get("tool_args") or raw.get("args") or {}
    plan = raw.get("plan")
    if plan is None and isinstance(wrapper, dict):
        plan = wrapper.get("plan")
    return plan if isinstance(plan, dict) else None


def _is_multi_step(raw: Dict[str, Any]) -> bool:
    if raw.get("kind") == "multi" or raw.get("tool") == "multi_step":
        return True
    if raw.get("isMultiStep") is True or raw.get("is_multi_step") is True:
        return True
    wrapper = raw.get("toolArgs") or raw.get("tool_args") or raw.get("args") or {}
    return isinstance(wrapper, dict) and wrapper.get("isMultiStep") is True


def parse_last_command(raw: Dict[str, Any]) -> Union[SingleStepCommand, MultiStepCommand]:
    """Resolve every stored LastCommand shape into the tagged variant."""
    if not isinstance(raw, dict):
        raise MalformedCommandError("stored command is not an object")
    if raw.get("kind") in ("single", "multi"):
        try:
            return _last_command_adapter.validate_python(raw)
        except ValueError as exc:
            raise MalformedCommandError(f"stored command is invalid: {exc}") from exc

    if _is_multi_step(raw):
        plan = _legacy_plan(raw)
        steps = (plan or {}).get("steps")
        if not isinstance(steps, list) or not steps:
            raise MalformedCommandError("could not restore the plan of the previous multi-step command")
        numbered = []
        for idx, step in enumerate(steps, start=1):
            if not isinstance(step, dict):
                raise MalformedCommandError(f"plan step {idx} is not an object")
            numbered.append({**step, "stepNumber": idx, "step_number": idx})
        results = raw.get("stepResults") or raw.get("step_results") or []
        try:
            return MultiStepCommand(
                plan=Plan.renumbered(Step.model_validate(s) for s in numbered),
                step_results=[StepResult.model_validate(r) for r in results if isinstance(r, dict)],
            )
        except ValueError as exc:
            raise MalformedCommandError(f"stored plan is invalid: {exc}") from exc

    tool = raw.get("tool")
    if not tool or not isinstance(tool, str):
        raise MalformedCommandError("stored command has no tool")
    wrapper = raw.get("toolArgs") or raw.get("tool_args") or raw.get("args") or {}
    if not isinstance(wrapper, dict):
        wrapper = {}
    args = {k: v for k, v in wrapper.items() if k != "result"}
    result = raw.get("result") or wrapper.get("result") or {}
    return SingleStepCommand(tool=tool, args=args, result=result if isinstance(result, dict) else {})


class RunRequestOptions(BaseModel):
    quoted_message_id: Optional[str] = None
    user_text: str = ""
    audio_already_transcribed: bool = False
    skip_ack_tools: List[str] = Field(default_factory=list)


class PlanRequest(RunRequestOptions):
    plan: Plan

    @model_validator(mode="before")
    @classmethod
    def number_steps(cls, data: Any) -> Any:
        """Planners may omit step numbers; fill them in by position."""
        if not isinstance(data, dict):
            return data
        plan = data.get("plan")
        if plan is None and isinstance(data.get("steps"), list):
            plan = {"steps": data["steps"]}
        if isinstance(plan, dict) and isinstance(plan.get("steps"), list):
            steps = []
            for idx, step in enumerate(plan["steps"], start=1):
                if isinstance(step, dict) and not (step.get("step_number") or step.get("stepNumber")):
                    step = {**step, "step_number": idx}
                steps.append(step)
            data = {**data, "plan": {**plan, "steps": steps}}
        return data


class CommandRequest(RunRequestOptions):
    tool: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)
    instruction: str = ""

    @model_validator(mode="after")
    def tool_or_instruction(self) -> "CommandRequest":
        if not self.tool and not self.instruction.strip():
            raise ValueError("either tool or instruction is required")
        return self


class RetryCommandRequest(RetryRequest, RunRequestOptions):
    pass
