from typing import Any, Dict

from ..errors import ToolError
from ..plan_executor import RunOptions
from ..retry import RetryLedger
from ..schemas import PlanRunReport, RetryRequest
from ..tool_registry import Tool, ToolContext, ToolResult, declaration

RETRY_DECLARATION = declaration(
    "retry_last_command",
    'Retry the last command. Use only when the user explicitly asks to "retry", "try again", "fix it" or names step numbers.',
    {
        "provider_override": {"type": "string", "description": "Alternative provider to use (optional)"},
        "modifications": {
            "type": "string",
            "description": 'Modifications or additional instructions (e.g. "with long hair")',
        },
        "step_numbers": {
            "type": "array",
            "items": {"type": "number"},
            "description": "Specific step numbers to retry (1-based, e.g. [2]). Null for all steps.",
        },
        "step_tools": {
            "type": "array",
            "items": {"type": "string"},
            "description": 'Specific tool names to retry (e.g. ["send_location"]). Null for all steps.',
        },
    },
)


def build_retry_tool(ledger: RetryLedger) -> Tool:
    async def execute(args: Dict[str, Any], context: ToolContext) -> ToolResult:
        request = RetryRequest.model_validate(args or {})
        options = RunOptions(
            quoted_message_id=context.quoted_message_id,
            user_text=context.user_text,
            skip_ack_tools=context.skip_ack_tools,
        )
        try:
            outcome = await ledger.replay(context.conversation_id, request, options)
        except ToolError as exc:
            return {"success": False, "error": str(exc)}
        # The replay delivered its own results and errors; report only what ran.
        if isinstance(outcome, PlanRunReport):
            return {
                "success": True,
                "replayed": "multi_step",
                "steps_attempted": outcome.steps_attempted,
                "steps_succeeded": outcome.steps_succeeded,
            }
        return {"success": True, "replayed": outcome.tools_used[0] if outcome.tools_used else None}

    return Tool(name="retry_last_command", declaration=RETRY_DECLARATION, execute=execute)
