import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from .acks import AckEmitter
from .command_store import LastCommandStore
from .config import AppSettings
from .errors import NoMatchingStepsError, NoPreviousCommandError, ToolValidationError
from .plan_executor import PlanExecutor, RunOptions
from .providers import infer_provider_from_tool, normalize_provider
from .schemas import (
    MultiStepCommand,
    Plan,
    PlanRunReport,
    RetryRequest,
    SingleStepCommand,
    Step,
    StepResult,
)

logger = logging.getLogger("uvicorn.error")

# Creative prompt keys first, then the primary text argument of plain tools.
PROMPT_KEYS = ("prompt", "text", "edit_instruction", "topic", "query", "message", "question")
CREATION_FAMILIES = ("image", "video", "edit", "edit_video")

Command = Union[SingleStepCommand, MultiStepCommand]


def append_modifications(
    args: Dict[str, Any],
    modifications: Optional[str],
    declared: Iterable[str] = (),
    tool: Optional[str] = None,
) -> Dict[str, Any]:
    """Return a copy of ``args`` with the modifications appended to the first prompt-like value.

    When no prompt-like value is present the modifications fill the first prompt-like parameter
    the tool declares. A tool that declares none cannot take modifications.
    """
    updated = dict(args)
    if not modifications:
        return updated
    for key in PROMPT_KEYS:
        if updated.get(key):
            updated[key] = f"{updated[key]} {modifications}"
            return updated
    declared = set(declared)
    for key in PROMPT_KEYS:
        if key in declared:
            updated[key] = modifications
            return updated
    raise ToolValidationError(f"Cannot apply modifications to {tool or 'this command'}", tool=tool)


def _tool_matches(step_tool: Optional[str], requested: str) -> bool:
    if not step_tool or not requested:
        return False
    return step_tool == requested or requested in step_tool or step_tool in requested


def select_steps(
    plan: Plan, step_numbers: Optional[List[int]] = None, step_tools: Optional[List[str]] = None
) -> List[Step]:
    """Pick the steps a retry reruns. Step numbers win over tool names; neither means every step."""
    numbers = set(step_numbers or [])
    tools = [t for t in (step_tools or []) if t]
    if numbers:
        selected = [step for step in plan.steps if step.step_number in numbers]
    elif tools:
        selected = [step for step in plan.steps if any(_tool_matches(step.tool, t) for t in tools)]
    else:
        return list(plan.steps)
    if not selected:
        available = plan.describe()
        raise NoMatchingStepsError(f"No matching steps. Available steps: {available}")
    return selected


class RetryLedger:
    def __init__(
        self,
        store: LastCommandStore,
        plan_executor: PlanExecutor,
        acks: AckEmitter,
        settings: AppSettings,
    ) -> None:
        self.store = store
        self.plan_executor = plan_executor
        self.acks = acks
        self.settings = settings

    async def record_command(self, conversation_id: str, command: Command) -> None:
        await self.store.record(conversation_id, command)

    async def get_last_command(self, conversation_id: str) -> Optional[Command]:
        return await self.store.get(conversation_id)

    async def replay(
        self,
        conversation_id: str,
        request: Optional[RetryRequest] = None,
        options: Optional[RunOptions] = None,
    ) -> Union[StepResult, PlanRunReport]:
        request = request or RetryRequest()
        options = options or RunOptions()
        command = await self.get_last_command(conversation_id)
        if command is None:
            raise NoPreviousCommandError("There is no previous command to retry")
        if isinstance(command, MultiStepCommand):
            return await self._replay_multi(conversation_id, command, request, options)
        return await self._replay_single(conversation_id, command, request, options)

    def resolve_provider(self, command: SingleStepCommand, request: RetryRequest) -> Optional[str]:
        if request.provider_override:
            return normalize_provider(request.provider_override)
        for source in (command.args, command.result):
            for key in ("provider", "service", "provider_used", "providerUsed"):
                provider = normalize_provider(source.get(key))
                if provider:
                    return provider
        return infer_provider_from_tool(command.tool)

    async def _replay_single(
        self,
        conversation_id: str,
        command: SingleStepCommand,
        request: RetryRequest,
        options: RunOptions,
    ) -> StepResult:
        tool = self.settings.legacy_tool_aliases.get(command.tool, command.tool)
        args = append_modifications(command.args, request.modifications, self._declared_params(tool), tool)
        provider = self.resolve_provider(command, request)
        if provider and (self.settings.family_for(tool) or "provider" in args or "service" in args):
            key = "service" if "service" in args else "provider"
            args[key] = provider
        logger.info("Retrying %s for %s (provider=%s)", tool, conversation_id, provider)
        return await self.plan_executor.run_single(conversation_id, tool, args, options)

    def _declared_params(self, tool: Optional[str]) -> List[str]:
        registered = self.plan_executor.executor.registry.get(tool)
        if registered is None:
            return []
        params = registered.declaration.get("parameters") or {}
        return list(params.get("properties") or {})

    def _is_creation_step(self, tool: Optional[str]) -> bool:
        return self.settings.family_for(tool) in CREATION_FAMILIES

    async def _replay_multi(
        self,
        conversation_id: str,
        command: MultiStepCommand,
        request: RetryRequest,
        options: RunOptions,
    ) -> PlanRunReport:
        original = command.plan
        selected = select_steps(original, request.step_numbers, request.step_tools)
        override = normalize_provider(request.provider_override)
        rebuilt: List[Step] = []
        for idx, step in enumerate(selected):
            update: Dict[str, Any] = {}
            if idx == 0 and request.modifications:
                update["action"] = f"{step.action} {request.modifications}".strip()
                # Steps with complete parameters run without reading the action.
                if step.tool and step.parameters:
                    update["parameters"] = append_modifications(
                        step.parameters, request.modifications, self._declared_params(step.tool), step.tool
                    )
            if override and self._is_creation_step(step.tool):
                params = dict(update.get("parameters", step.parameters))
                params["provider"] = override
                if "service" in params:
                    params["service"] = override
                update["parameters"] = params
            rebuilt.append(step.model_copy(update=update) if update else step)
        plan = Plan.renumbered(rebuilt)
        logger.info(
            "Retrying %s of %s steps for %s: %s",
            len(plan.steps),
            len(original.steps),
            conversation_id,
            plan.describe(),
        )
        await self.acks.send_multi_step_retry_ack(
            conversation_id, list(selected), len(original.steps), options.quoted_message_id
        )
        return await self.plan_executor.run(plan, conversation_id, options)
