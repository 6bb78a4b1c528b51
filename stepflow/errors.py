import re
from typing import Optional

PROVIDER_DISPLAY_NAMES = {
    "gemini": "Gemini",
    "openai": "OpenAI",
    "grok": "Grok",
    "veo3": "Veo 3",
    "veo-3": "Veo 3",
    "veo": "Veo 3",
    "sora": "Sora 2",
    "sora-2": "Sora 2",
    "sora2": "Sora 2",
    "sora-pro": "Sora 2 Pro",
    "sora-2-pro": "Sora 2 Pro",
    "kling": "Kling",
    "runway": "Runway",
    "suno": "Suno",
}

_ERROR_PREFIX_RE = re.compile(r"^(error:|failed:)\s*", re.IGNORECASE)


class ToolError(Exception):
    """Base error raised inside the orchestration core.

    ``kind`` is ``validation`` or ``orchestration``. Provider failures never raise; they come
    back as failed tool results.
    """

    kind = "orchestration"

    def __init__(self, message: str, *, tool: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(message)
        self.tool = tool
        self.provider = provider


class ToolValidationError(ToolError):
    kind = "validation"


class OrchestrationError(ToolError):
    kind = "orchestration"


class MalformedCommandError(OrchestrationError):
    pass


class NoMatchingStepsError(OrchestrationError):
    pass


class NoPreviousCommandError(OrchestrationError):
    pass


def http_status_for(exc: ToolError) -> int:
    if isinstance(exc, (NoPreviousCommandError, NoMatchingStepsError)):
        return 404
    if isinstance(exc, ToolValidationError):
        return 400
    return 409


def format_provider_name(provider: Optional[str]) -> str:
    if not provider:
        return ""
    return PROVIDER_DISPLAY_NAMES.get(provider.lower(), provider)


def format_provider_error(provider: str, message: str) -> str:
    name = format_provider_name(provider) or "provider"
    clean = _ERROR_PREFIX_RE.sub("", (message or "").strip()) or "unknown error"
    prefix = f"{name}: "
    if clean.startswith(prefix):
        return clean
    return f"{prefix}{clean}"


def format_step_error(step_number: Optional[int], tool: Optional[str], message: str) -> str:
    clean = (message or "").strip() or "unknown error"
    label = tool or "step"
    if step_number is None:
        return f"{label} failed: {clean}"
    return f"Step {step_number} ({label}) failed: {clean}"


def error_envelope(exc: ToolError) -> dict:
    return {
        "error": {
            "kind": exc.kind,
            "tool": exc.tool,
            "provider": exc.provider,
            "message": str(exc),
        }
    }
