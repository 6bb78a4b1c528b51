import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "STEPFLOW_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


def _default_provider_orders() -> Dict[str, List[str]]:
    return {
        "image": ["gemini", "openai", "grok"],
        "video": ["veo3", "kling", "sora"],
        "edit": ["gemini", "openai"],
        "edit_video": ["runway"],
    }


def _default_tool_families() -> Dict[str, str]:
    return {
        "create_image": "image",
        "create_video": "video",
        "image_to_video": "video",
        "edit_image": "edit",
        "edit_video": "edit_video",
    }


def _default_legacy_aliases() -> Dict[str, str]:
    return {
        "gemini_image": "create_image",
        "openai_image": "create_image",
        "grok_image": "create_image",
        "veo3_video": "create_video",
        "sora_video": "create_video",
        "kling_text_to_video": "create_video",
        "music_generation": "create_music",
    }


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str

    model_config = {"protected_namespaces": ()}


class MessagingConfig(BaseModel):
    base_url: str = "http://127.0.0.1:3000/api"
    api_token: Optional[str] = None
    send_delay_ms: int = 1000
    timeout_s: float = 30.0

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    database_path: str = "stepflow.db"
    host: str = "0.0.0.0"
    port: int = 8000

    # Inner single-step reasoning pass (OpenAI-compatible chat completions)
    reasoner_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="gemini-2.5-flash")
    )
    reasoner_api_key: Optional[str] = None
    messaging: MessagingConfig = Field(default_factory=MessagingConfig)

    provider_orders: Dict[str, List[str]] = Field(default_factory=_default_provider_orders)
    tool_families: Dict[str, str] = Field(default_factory=_default_tool_families)
    legacy_tool_aliases: Dict[str, str] = Field(default_factory=_default_legacy_aliases)
    surface_provider_failures: bool = True

    max_step_iterations: int = 5
    context_excerpt_chars: int = 200
    non_persisted_tools: List[str] = Field(
        default_factory=lambda: ["retry_last_command", "get_chat_history", "get_long_term_memory"]
    )
    text_tools_keep_urls: List[str] = Field(
        default_factory=lambda: ["search_web", "get_chat_history", "chat_summary", "translate_text"]
    )
    boilerplate_patterns: List[str] = Field(
        default_factory=lambda: [
            r"^(done|completed|success(fully)?)[.!]*$",
            r"^(here (it is|you go)|all set)[.!]*$",
            r"^(the )?(image|video|audio|poll|location|music)( was| has been)? (created|generated|sent|ready)[.!]*$",
        ]
    )

    schedule_dedup_window_s: float = 5.0
    schedule_dedup_max_entries: int = 100
    schedule_dedup_gc_age_s: float = 60.0
    schedule_past_grace_s: float = 120.0

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("reasoner_api_key"):
            data["reasoner_api_key"] = "********"
        if (data.get("messaging") or {}).get("api_token"):
            data["messaging"]["api_token"] = "********"
        return data

    def family_for(self, tool: Optional[str]) -> Optional[str]:
        if not tool:
            return None
        return self.tool_families.get(tool) or self.tool_families.get(self.legacy_tool_aliases.get(tool, ""))

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "reasoner_base_url": os.getenv("REASONER_BASE_URL"),
        "reasoner_model": os.getenv("REASONER_MODEL"),
        "reasoner_api_key": os.getenv("REASONER_API_KEY"),
        "messaging_base_url": os.getenv("MESSAGING_BASE_URL"),
        "messaging_api_token": os.getenv("MESSAGING_API_TOKEN"),
        "max_step_iterations": os.getenv("MAX_STEP_ITERATIONS"),
        "surface_provider_failures": os.getenv("SURFACE_PROVIDER_FAILURES"),
        "schedule_dedup_window_s": os.getenv("SCHEDULE_DEDUP_WINDOW_S"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "max_step_iterations" in cleaned:
        cleaned["max_step_iterations"] = int(cleaned["max_step_iterations"])
    if "surface_provider_failures" in cleaned:
        cleaned["surface_provider_failures"] = str(cleaned["surface_provider_failures"]).lower() in ENV_OVERRIDE_TRUE
    if "schedule_dedup_window_s" in cleaned:
        cleaned["schedule_dedup_window_s"] = float(cleaned["schedule_dedup_window_s"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _fold_nested_env(merged: Dict[str, Any], env_data: Dict[str, Any], allow_env_overrides: bool) -> None:
    """Move flat env keys into the nested endpoint/messaging blocks."""
    endpoint = merged.get("reasoner_endpoint")
    if not isinstance(endpoint, dict):
        endpoint = dict(endpoint.model_dump()) if isinstance(endpoint, BaseModel) else {}
    messaging = merged.get("messaging")
    if not isinstance(messaging, dict):
        messaging = dict(messaging.model_dump()) if isinstance(messaging, BaseModel) else {}

    def apply(target: Dict[str, Any], key: str, value: Optional[str]) -> None:
        if not value:
            return
        if allow_env_overrides or not target.get(key):
            target[key] = value

    apply(endpoint, "base_url", env_data.get("reasoner_base_url"))
    apply(endpoint, "model_id", env_data.get("reasoner_model"))
    apply(messaging, "base_url", env_data.get("messaging_base_url"))
    apply(messaging, "api_token", env_data.get("messaging_api_token"))
    for key in ("reasoner_base_url", "reasoner_model", "messaging_base_url", "messaging_api_token"):
        merged.pop(key, None)
    if endpoint:
        defaults = AppSettings().reasoner_endpoint
        endpoint.setdefault("base_url", defaults.base_url)
        endpoint.setdefault("model_id", defaults.model_id)
        merged["reasoner_endpoint"] = endpoint
    if messaging:
        merged["messaging"] = messaging


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("reasoner_api_key") and env_data.get("reasoner_api_key"):
        merged["reasoner_api_key"] = env_data["reasoner_api_key"]
    _fold_nested_env(merged, env_data, allow_env_overrides)
    # Partial provider_orders in config.json only replace the families they name.
    orders = merged.get("provider_orders")
    if isinstance(orders, dict):
        merged["provider_orders"] = {**_default_provider_orders(), **orders}
    families = merged.get("tool_families")
    if isinstance(families, dict):
        merged["tool_families"] = {**_default_tool_families(), **families}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
