import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..config import AppSettings
from ..task_store import ScheduledTaskStore
from ..tool_registry import Tool, ToolContext, ToolResult, declaration

logger = logging.getLogger("uvicorn.error")

REMINDER_PREFIX = "Reminder: "

# resolver(name) -> (chat_id, display_name) or None
RecipientResolver = Callable[[str], Awaitable[Optional[Tuple[str, str]]]]

SCHEDULE_MESSAGE_DECLARATION = declaration(
    "schedule_message",
    "Schedule a message. Pass the exact ISO 8601 time computed from the user request; never natural language.",
    {
        "message": {"type": "string", "description": "The content of the message to be sent."},
        "time": {
            "type": "string",
            "description": "Exact send time in ISO 8601 (e.g. 2025-01-01T15:00:00+02:00).",
        },
        "recipient": {
            "type": "string",
            "description": "Optional contact or group name. Defaults to the current chat.",
        },
    },
    ["message", "time"],
)


class DedupCache:
    """Short-lived cache of successful results so a duplicated call returns the first result.

    Access is serialized per key, so concurrent duplicates wait for the first call and reuse it.
    """

    def __init__(
        self,
        window_s: float = 5.0,
        max_entries: int = 100,
        gc_age_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_s = window_s
        self.max_entries = max_entries
        self.gc_age_s = gc_age_s
        self.clock = clock
        self._entries: Dict[str, Tuple[float, ToolResult]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pending_locks(self) -> int:
        return len(self._locks)

    def get(self, key: str) -> Optional[ToolResult]:
        entry = self._entries.get(key)
        if entry and self.clock() - entry[0] < self.window_s:
            return entry[1]
        return None

    def put(self, key: str, result: ToolResult) -> None:
        self._entries[key] = (self.clock(), result)
        if len(self._entries) > self.max_entries:
            now = self.clock()
            for stale in [k for k, (ts, _) in self._entries.items() if now - ts > self.gc_age_s]:
                self._entries.pop(stale, None)
                if stale not in self._users:
                    self._locks.pop(stale, None)

    async def get_or_create(self, key: str, factory: Callable[[], Awaitable[ToolResult]]) -> ToolResult:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                cached = self.get(key)
                if cached is not None:
                    logger.info("Dedup hit for %s", key)
                    return cached
                result = await factory()
                if isinstance(result, dict) and result.get("success"):
                    self.put(key, result)
                return result
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                # Failed results are never cached; drop their lock once nobody waits on it.
                if key not in self._entries:
                    self._locks.pop(key, None)


def parse_iso_time(value: str) -> Optional[datetime]:
    text = (value or "").strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _iso_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class ScheduleMessageTool:
    def __init__(
        self,
        store: ScheduledTaskStore,
        settings: AppSettings,
        resolver: Optional[RecipientResolver] = None,
        cache: Optional[DedupCache] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.settings = settings
        self.resolver = resolver
        if cache is None:
            cache = DedupCache(
                settings.schedule_dedup_window_s,
                settings.schedule_dedup_max_entries,
                settings.schedule_dedup_gc_age_s,
            )
        self.cache = cache
        self.now = now

    @staticmethod
    def dedup_key(conversation_id: str, args: Dict[str, Any]) -> str:
        return f"{conversation_id}:{args.get('message')}:{args.get('time')}:{args.get('recipient') or 'self'}"

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        key = self.dedup_key(context.conversation_id, args)
        return await self.cache.get_or_create(key, lambda: self._schedule(args, context))

    async def _schedule(self, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        target = context.conversation_id
        recipient_name = None
        recipient = (args.get("recipient") or "").strip()
        if recipient:
            match = await self.resolver(recipient) if self.resolver else None
            if not match:
                return {
                    "success": False,
                    "error": f'Could not find a contact or group named "{recipient}". Try a different name.',
                }
            target, recipient_name = match

        scheduled_at = parse_iso_time(str(args.get("time") or ""))
        if scheduled_at is None:
            return {"success": False, "error": "Invalid time format. Provide a valid ISO 8601 date string."}
        now = self.now()
        if scheduled_at < now - timedelta(seconds=self.settings.schedule_past_grace_s):
            return {
                "success": False,
                "error": (
                    f"Cannot schedule a message in the past. Current time is {_iso_z(now)}, "
                    f"but the requested time is {_iso_z(scheduled_at)}."
                ),
            }

        content = str(args.get("message") or "")
        if target == context.conversation_id:
            content = f"{REMINDER_PREFIX}{content}"
        task = await self.store.create(target, content, _iso_z(scheduled_at))
        if recipient_name and target != context.conversation_id:
            text = f"Message to {recipient_name} scheduled for {task['scheduled_at']}"
        else:
            text = f"Message scheduled for {task['scheduled_at']}"
        logger.info("Scheduled task %s for %s at %s", task["id"], target, task["scheduled_at"])
        return {
            "success": True,
            "task_id": task["id"],
            "scheduled_at": task["scheduled_at"],
            "message": text,
        }

    def as_tool(self) -> Tool:
        return Tool(name="schedule_message", declaration=SCHEDULE_MESSAGE_DECLARATION, execute=self.execute)
