from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..config import AppSettings
from ..errors import ToolValidationError, format_provider_name
from ..providers import ProviderFallbackPolicy, normalize_provider
from ..tool_registry import Tool, ToolContext, ToolResult, declaration

Backend = Callable[[Dict[str, Any]], Awaitable[ToolResult]]

IMAGE_FAMILIES = ("image", "edit")
VIDEO_FAMILIES = ("video", "edit_video")
CONTROL_KEYS = ("provider", "service", "avoid_providers")

_PROVIDER_PROP = {
    "type": "string",
    "description": "Optional. Leave empty for the default order; set only when the user names a provider.",
}
_AVOID_PROP = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Providers that must not be used for this request.",
}

CREATION_DECLARATIONS: Dict[str, Dict[str, Any]] = {
    "create_image": declaration(
        "create_image",
        "Create a new image from a text description.",
        {"prompt": {"type": "string", "description": "Image description"}, "provider": _PROVIDER_PROP, "avoid_providers": _AVOID_PROP},
        ["prompt"],
    ),
    "create_video": declaration(
        "create_video",
        "Create a new video from a text description.",
        {"prompt": {"type": "string", "description": "Video description"}, "provider": _PROVIDER_PROP, "avoid_providers": _AVOID_PROP},
        ["prompt"],
    ),
    "image_to_video": declaration(
        "image_to_video",
        "Animate an attached image into a video.",
        {
            "image_url": {"type": "string", "description": "Image URL"},
            "prompt": {"type": "string", "description": "Animation instructions"},
            "provider": _PROVIDER_PROP,
            "avoid_providers": _AVOID_PROP,
        },
        ["image_url"],
    ),
    "edit_image": declaration(
        "edit_image",
        "Edit an existing image.",
        {
            "image_url": {"type": "string", "description": "Image URL"},
            "edit_instruction": {"type": "string", "description": "What to change"},
            "service": _PROVIDER_PROP,
            "avoid_providers": _AVOID_PROP,
        },
        ["image_url", "edit_instruction"],
    ),
    "edit_video": declaration(
        "edit_video",
        "Edit an existing video.",
        {
            "video_url": {"type": "string", "description": "Video URL"},
            "edit_instruction": {"type": "string", "description": "What to change"},
            "service": _PROVIDER_PROP,
        },
        ["video_url", "edit_instruction"],
    ),
}


def _providers_of(settings: AppSettings, families: tuple) -> Set[str]:
    providers: Set[str] = set()
    for family in families:
        providers.update(normalize_provider(p) for p in settings.provider_orders.get(family, []))
    providers.discard(None)
    return providers


class CreationTool:
    """Content-creation tool that walks a provider family through the fallback policy."""

    def __init__(
        self,
        name: str,
        family: str,
        policy: ProviderFallbackPolicy,
        backends: Dict[str, Backend],
        settings: AppSettings,
    ):
        self.name = name
        self.family = family
        self.policy = policy
        self.backends = {normalize_provider(k): v for k, v in backends.items()}
        self.settings = settings

    def _check_provider_kind(self, provider: Optional[str]) -> None:
        if not provider:
            return
        image_providers = _providers_of(self.settings, IMAGE_FAMILIES)
        video_providers = _providers_of(self.settings, VIDEO_FAMILIES)
        if self.family in IMAGE_FAMILIES and provider in video_providers and provider not in image_providers:
            raise ToolValidationError(
                f"{format_provider_name(provider)} creates videos, not images", tool=self.name, provider=provider
            )
        if self.family in VIDEO_FAMILIES and provider in image_providers and provider not in video_providers:
            raise ToolValidationError(
                f"{format_provider_name(provider)} creates images, not videos", tool=self.name, provider=provider
            )

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        pinned = normalize_provider(args.get("provider")) or normalize_provider(args.get("service"))
        self._check_provider_kind(pinned)
        avoid = args.get("avoid_providers") or []
        if isinstance(avoid, str):
            avoid = [a.strip() for a in avoid.split(",")]
        payload = {k: v for k, v in args.items() if k not in CONTROL_KEYS}

        async def attempt(provider: str) -> ToolResult:
            backend = self.backends.get(provider)
            if backend is None:
                return {"success": False, "error": "provider is not configured"}
            return await backend(dict(payload))

        return await self.policy.try_with_fallback(
            self.policy.order_for(self.family),
            attempt,
            avoid=avoid,
            pinned_provider=pinned,
            tool_name=self.name,
            context=context,
        )

    def as_tool(self) -> Tool:
        return Tool(
            name=self.name,
            declaration=CREATION_DECLARATIONS[self.name],
            execute=self.execute,
            family=self.family,
        )


def build_creation_tools(
    settings: AppSettings,
    policy: ProviderFallbackPolicy,
    backends: Dict[str, Dict[str, Backend]],
) -> List[Tool]:
    """One tool per declared creation tool whose family has at least one backend.

    ``backends`` maps family -> provider -> coroutine function.
    """
    tools: List[Tool] = []
    for name in CREATION_DECLARATIONS:
        family = settings.tool_families.get(name)
        family_backends = backends.get(family or "") or {}
        if not family_backends:
            continue
        tools.append(CreationTool(name, family, policy, family_backends, settings).as_tool())
    return tools
