import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from .acks import AckEmitter
from .config import AppSettings
from .errors import PROVIDER_DISPLAY_NAMES, format_provider_error, format_provider_name
from .schemas import ProviderAttempt
from .tool_registry import ToolContext, ToolResult

logger = logging.getLogger("uvicorn.error")

AttemptFn = Callable[[str], Awaitable[ToolResult]]

KNOWN_PROVIDERS = {
    "gemini",
    "openai",
    "grok",
    "veo3",
    "sora",
    "kling",
    "runway",
    "suno",
}


def normalize_provider(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cleaned = value.strip().lower()
    if not cleaned or cleaned == "none":
        return None
    aliases = {"veo": "veo3", "veo-3": "veo3", "sora-2": "sora", "sora2": "sora"}
    return aliases.get(cleaned, cleaned)


def infer_provider_from_tool(tool: Optional[str]) -> Optional[str]:
    """Legacy tool names carry their provider as a prefix (``openai_image``, ``kling_text_to_video``)."""
    if not tool or "_" not in tool:
        return None
    prefix = tool.split("_", 1)[0].lower()
    if prefix in KNOWN_PROVIDERS or prefix in PROVIDER_DISPLAY_NAMES:
        return normalize_provider(prefix)
    return None


def _failure_message(result: Any) -> Optional[str]:
    if not isinstance(result, dict):
        return "provider returned no result"
    error = result.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    if error:
        return str(error)
    if result.get("success") is False:
        return "request failed"
    return None


class ProviderFallbackPolicy:
    def __init__(self, settings: AppSettings, acks: Optional[AckEmitter] = None):
        self.settings = settings
        self.acks = acks

    def order_for(self, family: Optional[str]) -> List[str]:
        return list(self.settings.provider_orders.get(family or "", []))

    @staticmethod
    def attempt_order(
        canonical_order: Sequence[str],
        avoid: Iterable[str] = (),
        pinned_provider: Optional[str] = None,
    ) -> List[str]:
        pinned = normalize_provider(pinned_provider)
        if pinned:
            return [pinned]
        excluded = {p for p in (normalize_provider(a) for a in avoid) if p}
        order: List[str] = []
        for provider in canonical_order:
            key = normalize_provider(provider)
            if key and key not in excluded and key not in order:
                order.append(key)
        return order

    async def try_with_fallback(
        self,
        canonical_order: Sequence[str],
        attempt: AttemptFn,
        *,
        avoid: Iterable[str] = (),
        pinned_provider: Optional[str] = None,
        tool_name: str,
        context: Optional[ToolContext] = None,
    ) -> ToolResult:
        """Try providers in order and return the first success.

        A pinned provider is the only one tried. Every failure is recorded in the
        session ledger and, when enabled, surfaced to the user as a notice.
        """
        providers = self.attempt_order(canonical_order, avoid, pinned_provider)
        if not providers:
            return {
                "success": False,
                "error": f"No provider available for {tool_name}",
                "attempts": [],
            }
        ledger: List[ProviderAttempt] = []
        for idx, provider in enumerate(providers):
            if idx > 0 and context is not None and self.acks is not None:
                await self.acks.send_provider_ack(
                    context.conversation_id, tool_name, provider, context.quoted_message_id
                )
            try:
                result = await attempt(provider)
            except Exception as exc:
                logger.warning("[%s] %s raised: %s", tool_name, provider, exc)
                await self._record_failure(ledger, provider, str(exc) or exc.__class__.__name__, tool_name, context)
                continue
            message = _failure_message(result)
            if message:
                await self._record_failure(ledger, provider, message, tool_name, context)
                continue
            logger.info("[%s] succeeded with %s after %s failed attempt(s)", tool_name, provider, len(ledger))
            return {**result, "success": True, "provider_used": provider}

        lines = [format_provider_error(a.provider, a.message) for a in ledger]
        return {
            "success": False,
            "error": "\n".join(lines),
            "attempts": [a.model_dump() for a in ledger],
        }

    async def _record_failure(
        self,
        ledger: List[ProviderAttempt],
        provider: str,
        message: str,
        tool_name: str,
        context: Optional[ToolContext],
    ) -> None:
        ledger.append(ProviderAttempt(provider=provider, message=message))
        logger.warning("[%s] %s failed: %s", tool_name, format_provider_name(provider), message)
        if self.settings.surface_provider_failures and context is not None and self.acks is not None:
            await self.acks.send_notice(
                context.conversation_id, format_provider_error(provider, message), context.quoted_message_id
            )


def provider_response(result: Dict[str, Any]) -> Dict[str, Any]:
    """Strip policy bookkeeping from a tool result before it is shown to the reasoner."""
    return {k: v for k, v in result.items() if k != "attempts"}
