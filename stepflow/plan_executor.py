import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

from .acks import AckEmitter
from .command_store import LastCommandStore
from .config import AppSettings
from .context import build_step_prompt
from .errors import format_step_error
from .result_sender import ResultSender
from .schemas import (
    MultiStepCommand,
    Plan,
    PlanRunReport,
    SingleStepCommand,
    Step,
    StepOutcome,
    StepResult,
    StepState,
)
from .step_executor import StepExecutor, StepInput
from .tool_registry import ToolContext

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class RunOptions:
    quoted_message_id: Optional[str] = None
    user_text: str = ""
    skip_ack_tools: FrozenSet[str] = frozenset()

    @classmethod
    def from_request(
        cls,
        quoted_message_id: Optional[str] = None,
        user_text: str = "",
        audio_already_transcribed: bool = False,
        skip_ack_tools: Optional[List[str]] = None,
    ) -> "RunOptions":
        skip = set(skip_ack_tools or [])
        if audio_already_transcribed:
            skip.add("transcribe_audio")
        return cls(quoted_message_id=quoted_message_id, user_text=user_text, skip_ack_tools=frozenset(skip))


def dedupe_text(results: List[StepResult]) -> str:
    seen = set()
    lines: List[str] = []
    for result in results:
        if not result.success or not result.text:
            continue
        for line in result.text.splitlines():
            key = line.strip()
            if not key or key in seen:
                continue
            seen.add(key)
            lines.append(line.rstrip())
    return "\n".join(lines)


class PlanExecutor:
    """Runs plans strictly in order; a failed step never stops the ones after it."""

    def __init__(
        self,
        executor: StepExecutor,
        acks: AckEmitter,
        sender: ResultSender,
        store: LastCommandStore,
        settings: AppSettings,
    ) -> None:
        self.executor = executor
        self.acks = acks
        self.sender = sender
        self.store = store
        self.settings = settings

    def _context(self, conversation_id: str, options: RunOptions, instruction: str, tool: Optional[str]) -> ToolContext:
        return ToolContext(
            conversation_id=conversation_id,
            quoted_message_id=options.quoted_message_id,
            user_text=options.user_text,
            instruction=instruction,
            skip_ack_tools=options.skip_ack_tools,
            expected_tool=tool,
        )

    async def run(self, plan: Plan, conversation_id: str, options: Optional[RunOptions] = None) -> PlanRunReport:
        options = options or RunOptions()
        outcomes: List[StepOutcome] = []
        logger.info("Running plan for %s: %s", conversation_id, plan.describe())

        for step in plan.steps:
            outcome = await self._run_step(step, list(outcomes), conversation_id, options)
            outcomes.append(outcome)

        report = PlanRunReport(plan=plan, outcomes=outcomes)
        report.text = dedupe_text(report.step_results())
        logger.info(
            "Plan for %s finished: %s/%s steps succeeded",
            conversation_id,
            report.steps_succeeded,
            len(plan.steps),
        )
        await self._record(
            conversation_id, MultiStepCommand(plan=plan, step_results=report.step_results())
        )
        return report

    async def _run_step(
        self, step: Step, prior: List[StepOutcome], conversation_id: str, options: RunOptions
    ) -> StepOutcome:
        state: StepState = "PENDING"
        result: Optional[StepResult] = None
        label = step.label()
        try:
            instruction = build_step_prompt(step, prior, self.settings.context_excerpt_chars)
            if step.tool:
                await self.acks.send_tool_ack(
                    conversation_id,
                    [{"name": step.tool, "args": dict(step.parameters)}],
                    options.quoted_message_id,
                    options.skip_ack_tools,
                )
                state = "ACK_SENT"
            state = "EXECUTING"
            context = self._context(conversation_id, options, instruction, step.tool)
            result = await self.executor.execute(
                StepInput(step=step, instruction=instruction, context=context, prior_steps=len(prior))
            )
            if result.success:
                state = "SUCCEEDED"
                await self.sender.send_step_results(
                    conversation_id, result, step.step_number, options.quoted_message_id
                )
            else:
                state = "FAILED"
                await self._send_error(conversation_id, step.step_number, label, result.error, options)
        except Exception as exc:
            logger.exception("Step %s (%s) crashed in state %s", step.step_number, label, state)
            if state != "SUCCEEDED":
                result = StepResult(success=False, error=str(exc) or exc.__class__.__name__, tools_used=[label])
                state = "FAILED"
                await self._send_error(conversation_id, step.step_number, label, result.error, options)
        logger.info("Step %s (%s) %s", step.step_number, label, state.lower())
        return StepOutcome(step_number=step.step_number, tool=step.tool, state=state, result=result)

    async def run_single(
        self,
        conversation_id: str,
        tool: Optional[str],
        args: Optional[Dict[str, Any]] = None,
        options: Optional[RunOptions] = None,
        instruction: str = "",
    ) -> StepResult:
        """Single-step top-level path: ack, execute, deliver, then remember the command."""
        options = options or RunOptions()
        args = dict(args or {})
        step = Step(step_number=1, tool=tool, parameters=args, action=instruction or options.user_text)
        prompt = build_step_prompt(step, [], self.settings.context_excerpt_chars)
        try:
            if tool:
                await self.acks.send_tool_ack(
                    conversation_id, [{"name": tool, "args": args}], options.quoted_message_id, options.skip_ack_tools
                )
            context = self._context(conversation_id, options, prompt, tool)
            result = await self.executor.execute(StepInput(step=step, instruction=prompt, context=context))
            if result.success:
                await self.sender.send_step_results(conversation_id, result, None, options.quoted_message_id)
            else:
                label = tool or (result.tools_used[0] if result.tools_used else None)
                await self._send_error(conversation_id, None, label, result.error, options)
        except Exception as exc:
            logger.exception("Single-step command %s crashed", tool)
            result = StepResult(success=False, error=str(exc) or exc.__class__.__name__, tools_used=[tool] if tool else [])
            await self._send_error(conversation_id, None, tool, result.error, options)

        recorded_tool, recorded_args = tool, args
        if not recorded_tool and result.tool_calls:
            recorded_tool, recorded_args = result.tool_calls[0].name, dict(result.tool_calls[0].args)
        if recorded_tool and recorded_tool not in self.settings.non_persisted_tools:
            await self._record(
                conversation_id,
                SingleStepCommand(
                    tool=recorded_tool,
                    args=recorded_args,
                    result=result.model_dump(mode="json", exclude_none=True, exclude={"tool_calls"}),
                ),
            )
        return result

    async def _send_error(
        self,
        conversation_id: str,
        step_number: Optional[int],
        tool: Optional[str],
        error: Optional[str],
        options: RunOptions,
    ) -> None:
        text = format_step_error(step_number, tool, error or "unknown error")
        try:
            resp = await self.sender.channel.send_text(
                conversation_id, text, options.quoted_message_id, self.settings.messaging.send_delay_ms
            )
        except Exception as exc:
            logger.warning("Failed to send step error to %s: %s", conversation_id, exc)
            return
        if isinstance(resp, dict) and resp.get("error"):
            logger.warning("Failed to send step error to %s: %s", conversation_id, resp)

    async def _record(self, conversation_id: str, command: Any) -> None:
        try:
            await self.store.record(conversation_id, command)
        except Exception:
            logger.exception("Could not record last command for %s", conversation_id)
