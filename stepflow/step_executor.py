import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import ToolError, ToolValidationError
from .providers import provider_response
from .reasoner import message_text, parse_tool_calls
from .result_sender import clean_json_wrapper
from .schemas import Poll, Step, StepResult, ToolCall
from .tool_registry import ToolContext, ToolRegistry, ToolResult

logger = logging.getLogger("uvicorn.error")

SINGLE_STEP_SYSTEM_PROMPT = (
    "You execute exactly one task for a chat user. Call the provided tool when the task needs it, "
    "using arguments taken from the task. Do not ask follow-up questions. After the tool returns, "
    "reply with one short sentence for the user, or nothing if the tool output speaks for itself."
)


@dataclass(frozen=True)
class StepInput:
    step: Step
    instruction: str
    context: ToolContext
    # number of earlier plan steps summarized into ``instruction``
    prior_steps: int = 0


def _text_from(result: ToolResult) -> Optional[str]:
    for key in ("text", "data", "message"):
        value = result.get(key)
        if value in (None, ""):
            continue
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)
    return None


def _poll_from(value: Any) -> Optional[Poll]:
    if isinstance(value, Poll):
        return value
    if isinstance(value, dict) and value.get("question"):
        return Poll(question=str(value["question"]), options=[str(o) for o in value.get("options") or []])
    return None


def _is_failure(result: ToolResult) -> bool:
    return result.get("success") is False or bool(result.get("error"))


def normalize(
    result: ToolResult,
    tools_used: List[str],
    iterations: int = 0,
    text: Optional[str] = None,
    tool_calls: Optional[List[ToolCall]] = None,
) -> StepResult:
    """Map a raw tool result onto the StepResult asset shape."""
    if _is_failure(result):
        return StepResult(
            success=False,
            error=str(result.get("error") or "Tool reported failure"),
            tools_used=tools_used,
            iterations=iterations,
            provider_used=result.get("provider_used"),
            tool_calls=tool_calls or [],
        )
    image_url = result.get("image_url") or result.get("imageUrl")
    video_url = result.get("video_url") or result.get("videoUrl")
    location_info = result.get("location_info") or result.get("locationInfo")
    caption = result.get("caption")
    return StepResult(
        success=True,
        text=text if text is not None else _text_from(result),
        image_url=image_url,
        image_caption=(result.get("image_caption") or result.get("imageCaption") or caption) if image_url else None,
        video_url=video_url,
        video_caption=(result.get("video_caption") or result.get("videoCaption") or caption) if video_url else None,
        audio_url=result.get("audio_url") or result.get("audioUrl"),
        poll=_poll_from(result.get("poll")),
        latitude=result.get("latitude"),
        longitude=result.get("longitude"),
        location_info=clean_json_wrapper(location_info) or None,
        tools_used=tools_used,
        iterations=iterations,
        provider_used=result.get("provider_used") or result.get("providerUsed"),
        tool_calls=tool_calls or [],
    )


def _merge_assets(target: Dict[str, Any], result: ToolResult) -> None:
    for key in ("image_url", "video_url", "audio_url", "poll", "latitude", "longitude", "location_info", "provider_used"):
        camel = "".join(part.title() if idx else part for idx, part in enumerate(key.split("_")))
        value = result.get(key)
        if value in (None, ""):
            value = result.get(camel)
        # 0.0 is a valid coordinate
        if value not in (None, ""):
            target[key] = value
    caption = result.get("caption")
    if result.get("image_url") or result.get("imageUrl"):
        target["image_caption"] = result.get("image_caption") or result.get("imageCaption") or caption or ""
    if result.get("video_url") or result.get("videoUrl"):
        target["video_caption"] = result.get("video_caption") or result.get("videoCaption") or caption or ""
    if _is_failure(result):
        target["error"] = result.get("error") or "Tool reported failure"
        target["success"] = False


class StepExecutor:
    def __init__(self, registry: ToolRegistry, reasoner: Any = None, max_iterations: int = 5, acks: Any = None):
        self.registry = registry
        self.reasoner = reasoner
        self.max_iterations = max_iterations
        # Announces tools the reasoner picks on its own; planner-named tools are acked by the caller.
        self.acks = acks

    async def execute(self, step_input: StepInput) -> StepResult:
        """Run one step. Failures come back as ``StepResult(success=False)``, never as exceptions."""
        step = step_input.step
        try:
            tool = self.registry.get(step.tool)
            if step.tool and tool is None:
                raise ToolValidationError(f"Unknown tool: {step.tool}", tool=step.tool)
            if tool is not None and not tool.missing_params(step.parameters):
                if self.reasoner is None or not step_input.prior_steps:
                    return await self._direct(step_input)
                return await self._reason_then_direct(step_input)
            if self.reasoner is None:
                if tool is not None:
                    missing = ", ".join(tool.missing_params(step.parameters))
                    raise ToolValidationError(f"Missing required parameters: {missing}", tool=tool.name)
                raise ToolValidationError("No tool named and no reasoner available")
            return await self._reason(step_input)
        except ToolError as exc:
            logger.warning("Step %s (%s) failed: %s", step.step_number, step.tool, exc)
            return StepResult(
                success=False,
                error=str(exc),
                tools_used=[exc.tool] if exc.tool else ([step.tool] if step.tool else []),
            )
        except Exception as exc:
            logger.exception("Step %s (%s) raised", step.step_number, step.tool)
            return StepResult(
                success=False,
                error=str(exc) or exc.__class__.__name__,
                tools_used=[step.tool] if step.tool else [],
            )

    async def _direct(self, step_input: StepInput) -> StepResult:
        step = step_input.step
        context = step_input.context
        result = await self.registry.execute(step.tool, dict(step.parameters), context)
        return normalize(
            result or {},
            tools_used=[step.tool],
            iterations=0,
            tool_calls=[ToolCall(name=step.tool, args=dict(step.parameters))],
        )

    async def _reason_then_direct(self, step_input: StepInput) -> StepResult:
        """Let the reasoner adapt planner parameters to earlier results; run them as-is if it does not call the tool."""
        step = step_input.step
        result = await self._reason(step_input)
        if step.tool in result.tools_used:
            return result
        logger.info("Reasoner skipped %s for step %s; running planner parameters", step.tool, step.step_number)
        return await self._direct(step_input)

    async def _reason(self, step_input: StepInput) -> StepResult:
        expected = step_input.step.tool
        declarations = self.registry.declarations(only=expected) if expected else self.registry.declarations()
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": SINGLE_STEP_SYSTEM_PROMPT},
            {"role": "user", "content": step_input.instruction},
        ]
        context = step_input.context
        tools_used: List[str] = []
        tool_calls: List[ToolCall] = []
        assets: Dict[str, Any] = {}
        text = ""
        iterations = 0
        target_done = False

        while iterations < self.max_iterations:
            iterations += 1
            message = await self.reasoner.chat(messages, tools=declarations)
            calls = parse_tool_calls(message)
            if not calls:
                text = message_text(message)
                break
            messages.append(
                {
                    "role": "assistant",
                    "content": message.get("content") or "",
                    "tool_calls": [
                        {
                            "id": call["id"],
                            "type": "function",
                            "function": {"name": call["name"], "arguments": json.dumps(call["args"])},
                        }
                        for call in calls
                    ],
                }
            )
            if not expected and self.acks is not None:
                await self.acks.send_tool_ack(
                    context.conversation_id,
                    [{"name": c["name"], "args": c["args"]} for c in calls],
                    context.quoted_message_id,
                    context.skip_ack_tools,
                )
            for call in calls:
                name = call["name"]
                if expected and name != expected:
                    logger.warning("Blocking tool call %s (expected %s)", name, expected)
                    response = {
                        "error": f"This tool is not part of the current step. Execute only: {expected}",
                        "blocked": True,
                    }
                elif expected and target_done:
                    response = {"error": f"{expected} already ran for this step", "blocked": True}
                else:
                    response = await self._run_tool(name, call["args"], context)
                    tools_used.append(name)
                    tool_calls.append(ToolCall(name=name, args=call["args"]))
                    _merge_assets(assets, response)
                    if response.get("text") and not assets.get("tool_text"):
                        assets["tool_text"] = _text_from(response)
                    if expected and name == expected:
                        target_done = True
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call["id"],
                        "content": json.dumps(provider_response(response), ensure_ascii=False, default=str),
                    }
                )
            if target_done:
                final = await self.reasoner.chat(messages)
                text = message_text(final)
                break

        tool_text = assets.pop("tool_text", None)
        if assets.get("success") is False:
            return StepResult(
                success=False,
                error=str(assets.get("error")),
                tools_used=tools_used,
                iterations=iterations,
                provider_used=assets.get("provider_used"),
                tool_calls=tool_calls,
            )
        assets.pop("error", None)
        assets.pop("success", None)
        return normalize(
            assets,
            tools_used=tools_used,
            iterations=iterations,
            text=text or tool_text or None,
            tool_calls=tool_calls,
        )

    async def _run_tool(self, name: str, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        try:
            return await self.registry.execute(name, args, context) or {}
        except ToolError as exc:
            return {"success": False, "error": str(exc)}
        except Exception as exc:
            logger.exception("Tool %s raised", name)
            return {"success": False, "error": str(exc) or exc.__class__.__name__}
