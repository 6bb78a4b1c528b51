import logging
from typing import Any, Dict, Optional, Union

from .acks import AckEmitter
from .command_store import LastCommandStore
from .config import AppSettings
from .plan_executor import PlanExecutor, RunOptions
from .providers import ProviderFallbackPolicy
from .result_sender import ResultSender
from .retry import RetryLedger
from .schemas import Plan, PlanRunReport, RetryRequest, StepResult
from .step_executor import StepExecutor
from .task_store import ScheduledTaskStore
from .tool_registry import ToolRegistry
from .tools.creation import Backend, build_creation_tools
from .tools.retry_tool import build_retry_tool
from .tools.scheduling import RecipientResolver, ScheduleMessageTool

logger = logging.getLogger("uvicorn.error")


class Orchestrator:
    """Wires the registry, executors and retry ledger around one messaging channel."""

    def __init__(
        self,
        settings: AppSettings,
        channel: Any,
        *,
        reasoner: Any = None,
        backends: Optional[Dict[str, Dict[str, Backend]]] = None,
        registry: Optional[ToolRegistry] = None,
        recipient_resolver: Optional[RecipientResolver] = None,
    ) -> None:
        self.settings = settings
        self.channel = channel
        self.reasoner = reasoner
        self.store = LastCommandStore(settings.database_path)
        self.task_store = ScheduledTaskStore(settings.database_path)
        self.acks = AckEmitter(channel, settings)
        self.policy = ProviderFallbackPolicy(settings, self.acks)
        self.registry = registry if registry is not None else ToolRegistry()

        for tool in build_creation_tools(settings, self.policy, backends or {}):
            if tool.name not in self.registry:
                self.registry.register(tool)
        if "schedule_message" not in self.registry:
            self.registry.register(ScheduleMessageTool(self.task_store, settings, recipient_resolver).as_tool())

        self.executor = StepExecutor(self.registry, reasoner, settings.max_step_iterations, acks=self.acks)
        self.sender = ResultSender(channel, settings)
        self.plans = PlanExecutor(self.executor, self.acks, self.sender, self.store, settings)
        self.ledger = RetryLedger(self.store, self.plans, self.acks, settings)
        if "retry_last_command" not in self.registry:
            self.registry.register(build_retry_tool(self.ledger))
        logger.info("Orchestrator ready with tools: %s", ", ".join(self.registry.names()))

    async def run_plan(self, conversation_id: str, plan: Plan, options: Optional[RunOptions] = None) -> PlanRunReport:
        return await self.plans.run(plan, conversation_id, options)

    async def run_command(
        self,
        conversation_id: str,
        tool: Optional[str],
        args: Optional[Dict[str, Any]] = None,
        options: Optional[RunOptions] = None,
        instruction: str = "",
    ) -> StepResult:
        return await self.plans.run_single(conversation_id, tool, args, options, instruction)

    async def retry(
        self, conversation_id: str, request: Optional[RetryRequest] = None, options: Optional[RunOptions] = None
    ) -> Union[StepResult, PlanRunReport]:
        return await self.ledger.replay(conversation_id, request, options)
