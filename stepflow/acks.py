import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config import AppSettings
from .errors import format_provider_name
from .schemas import Step

logger = logging.getLogger("uvicorn.error")

PROVIDER_PLACEHOLDER = "__PROVIDER__"
DEFAULT_ACK = "Working on it..."

TOOL_ACK_MESSAGES: Dict[str, str] = {
    # creation
    "create_image": "Creating an image with __PROVIDER__...",
    "create_video": "Creating a video with __PROVIDER__...",
    "image_to_video": "Animating the image with __PROVIDER__...",
    "create_music": "Composing music...",
    "text_to_speech": "Converting to speech...",
    # analysis
    "analyze_image": "Analyzing the image...",
    "analyze_video": "Analyzing the video...",
    # editing
    "edit_image": "Editing the image with __PROVIDER__...",
    "edit_video": "Editing the video with __PROVIDER__...",
    # info
    "search_web": "Searching the web...",
    "get_chat_history": "Fetching chat history...",
    "get_long_term_memory": "Checking preferences...",
    "translate_text": "Translating...",
    "schedule_message": "Scheduling the message...",
    "transcribe_audio": "Transcribing the recording...",
    "chat_summary": "Summarizing the chat...",
    "create_poll": "Creating a poll...",
    "send_location": "",
    "retry_last_command": "Repeating the last action...",
}


def ack_message(tool: str, provider: Optional[str] = None) -> str:
    base = TOOL_ACK_MESSAGES.get(tool, DEFAULT_ACK)
    if PROVIDER_PLACEHOLDER not in base:
        return base
    if provider:
        return base.replace(PROVIDER_PLACEHOLDER, format_provider_name(provider))
    return base.replace(" with __PROVIDER__", "")


class AckEmitter:
    """Short progress previews sent before tools run. Send failures never propagate."""

    def __init__(self, channel: Any, settings: AppSettings):
        self.channel = channel
        self.settings = settings

    def default_provider(self, tool: str) -> Optional[str]:
        family = self.settings.family_for(tool)
        order = self.settings.provider_orders.get(family or "") or []
        return order[0] if order else None

    def build_ack(self, call: Dict[str, Any]) -> str:
        tool = call.get("name") or ""
        if tool == "send_location":
            return ""
        args = call.get("args") or {}
        provider = args.get("provider") or args.get("service")
        if not isinstance(provider, str) or not provider.strip():
            provider = self.default_provider(tool)
        return ack_message(tool, provider)

    async def send_tool_ack(
        self,
        conversation_id: str,
        calls: Sequence[Dict[str, Any]],
        quoted_message_id: Optional[str] = None,
        skip_tools: Iterable[str] = (),
    ) -> Optional[str]:
        if not conversation_id or not calls:
            return None
        skip = set(skip_tools or ())
        acks = [self.build_ack(call) for call in calls if call.get("name") not in skip]
        acks = [ack for ack in acks if ack and ack.strip()]
        if not acks:
            return None
        if len(acks) == 1:
            text = acks[0]
        elif len(acks) == 2:
            text = f"{acks[0]} {acks[1]}".strip()
        else:
            text = f"Running {len(acks)} actions..."
        await self._send(conversation_id, text, quoted_message_id)
        return text

    async def send_provider_ack(
        self, conversation_id: str, tool: str, provider: str, quoted_message_id: Optional[str] = None
    ) -> Optional[str]:
        return await self.send_tool_ack(
            conversation_id, [{"name": tool, "args": {"provider": provider}}], quoted_message_id
        )

    async def send_multi_step_retry_ack(
        self,
        conversation_id: str,
        steps: List[Step],
        total_steps: int,
        quoted_message_id: Optional[str] = None,
    ) -> Optional[str]:
        if not steps:
            return None
        if len(steps) == total_steps:
            text = f"Retrying all {total_steps} steps: {', '.join(step.label() for step in steps)}"
        elif len(steps) == 1:
            text = f"Retrying step: {steps[0].label()}"
        else:
            text = f"Retrying {len(steps)} of {total_steps} steps: {', '.join(step.label() for step in steps)}"
        await self._send(conversation_id, text, quoted_message_id)
        return text

    async def send_notice(
        self, conversation_id: str, message: str, quoted_message_id: Optional[str] = None
    ) -> None:
        if not message:
            return
        await self._send(conversation_id, message, quoted_message_id)

    async def _send(self, conversation_id: str, text: str, quoted_message_id: Optional[str]) -> None:
        try:
            resp = await self.channel.send_text(conversation_id, text, quoted_message_id, self.settings.messaging.send_delay_ms)
        except Exception as exc:
            logger.warning("Ack send failed for %s: %s", conversation_id, exc)
            return
        if isinstance(resp, dict) and resp.get("error"):
            logger.warning("Ack send failed for %s: %s", conversation_id, resp)
