import logging
import re
import time
from typing import Any, List, Optional

from .config import AppSettings
from .schemas import StepResult

logger = logging.getLogger("uvicorn.error")

_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.DOTALL | re.IGNORECASE)
_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)


def clean_json_wrapper(text: Optional[str]) -> str:
    if not text:
        return ""
    cleaned = text.strip()
    match = _JSON_FENCE_RE.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    return cleaned


def strip_urls(text: str) -> str:
    stripped = _URL_RE.sub("", text)
    return re.sub(r"[ \t]{2,}", " ", stripped).strip()


def _send_failed(resp: Any) -> Optional[str]:
    if isinstance(resp, dict) and resp.get("error"):
        detail = resp.get("detail")
        return f"{resp['error']}: {detail}" if detail else str(resp["error"])
    return None


class ResultSender:
    """Flushes one step's assets to the channel in a fixed order."""

    def __init__(self, channel: Any, settings: AppSettings):
        self.channel = channel
        self.settings = settings
        self._boilerplate = [re.compile(p, re.IGNORECASE) for p in settings.boilerplate_patterns]

    @property
    def delay_ms(self) -> int:
        return self.settings.messaging.send_delay_ms

    def is_boilerplate(self, text: str) -> bool:
        candidate = text.strip()
        return any(pattern.match(candidate) for pattern in self._boilerplate)

    def clean_text(self, result: StepResult) -> str:
        text = clean_json_wrapper(result.text)
        keep_urls = set(self.settings.text_tools_keep_urls)
        if not any(tool in keep_urls for tool in result.tools_used):
            text = strip_urls(text)
        return text

    async def send_step_results(
        self,
        conversation_id: str,
        result: StepResult,
        step_number: Optional[int] = None,
        quoted_message_id: Optional[str] = None,
    ) -> List[str]:
        """Send image, video, audio, poll, location and then any remaining text.

        Returns the asset kinds that were delivered.
        """
        delivered: List[str] = []
        label = f" for step {step_number}" if step_number else ""
        stamp = int(time.time() * 1000)

        if result.image_url:
            if await self._send_file(
                conversation_id, result.image_url, f"agent_image_{stamp}.png", result.image_caption, quoted_message_id, "image", label
            ):
                delivered.append("image")
        if result.video_url:
            if await self._send_file(
                conversation_id, result.video_url, f"agent_video_{stamp}.mp4", result.video_caption, quoted_message_id, "video", label
            ):
                delivered.append("video")
        if result.audio_url:
            if await self._send_file(
                conversation_id, result.audio_url, f"agent_audio_{stamp}.mp3", None, quoted_message_id, "audio", label
            ):
                delivered.append("audio")
        if result.poll:
            if await self._send_poll(conversation_id, result, quoted_message_id, label):
                delivered.append("poll")
        if result.has_location():
            if await self._send_location(conversation_id, result, quoted_message_id, label):
                delivered.append("location")

        text = self.clean_text(result)
        if text and not self._suppress_text(text, result, delivered):
            error = await self._call(
                "text", label, self.channel.send_text, conversation_id, text, quoted_message_id, self.delay_ms
            )
            if error is None:
                delivered.append("text")
        return delivered

    def _suppress_text(self, text: str, result: StepResult, delivered: List[str]) -> bool:
        if not delivered and not result.location_info:
            return False
        captions = {c.strip() for c in (result.image_caption, result.video_caption) if c}
        if text.strip() in captions:
            return True
        return self.is_boilerplate(text)

    async def _send_file(
        self,
        conversation_id: str,
        url: str,
        filename: str,
        caption: Optional[str],
        quoted_message_id: Optional[str],
        kind: str,
        label: str,
    ) -> bool:
        error = await self._call(
            kind, label, self.channel.send_file, conversation_id, url, filename, caption or "", quoted_message_id, self.delay_ms
        )
        return error is None

    async def _send_poll(
        self, conversation_id: str, result: StepResult, quoted_message_id: Optional[str], label: str
    ) -> bool:
        poll = result.poll
        error = await self._call(
            "poll", label, self.channel.send_poll, conversation_id, poll.question, list(poll.options), False, quoted_message_id
        )
        if error is None:
            return True
        await self._call(
            "poll error", label, self.channel.send_text, conversation_id, f"Could not send the poll: {error}", quoted_message_id, self.delay_ms
        )
        return False

    async def _send_location(
        self, conversation_id: str, result: StepResult, quoted_message_id: Optional[str], label: str
    ) -> bool:
        try:
            latitude, longitude = float(result.latitude), float(result.longitude)
        except (TypeError, ValueError):
            logger.warning("Invalid coordinates%s: %s, %s", label, result.latitude, result.longitude)
            return False
        error = await self._call(
            "location", label, self.channel.send_location, conversation_id, latitude, longitude, "", "", quoted_message_id
        )
        if error is not None:
            return False
        info = clean_json_wrapper(result.location_info)
        if info:
            await self._call("location info", label, self.channel.send_text, conversation_id, info, quoted_message_id, self.delay_ms)
        return True

    async def _call(self, kind: str, label: str, fn: Any, *args: Any) -> Optional[str]:
        try:
            resp = await fn(*args)
        except Exception as exc:
            logger.warning("Failed to send %s%s: %s", kind, label, exc)
            return str(exc) or exc.__class__.__name__
        error = _send_failed(resp)
        if error:
            logger.warning("Failed to send %s%s: %s", kind, label, error)
        return error
