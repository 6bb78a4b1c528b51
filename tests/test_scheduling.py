import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from stepflow.db import Database
from stepflow.task_store import ScheduledTaskStore
from stepflow.tool_registry import ToolContext
from stepflow.tools.scheduling import DedupCache, ScheduleMessageTool, parse_iso_time
from tests.fakes import make_settings


NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def _tool(tmp_path: Path, db: Database, resolver=None, clock=None):
    settings = make_settings(tmp_path)
    cache = DedupCache(5.0, 100, 60.0, clock=clock or Clock())
    store = ScheduledTaskStore(db.path)
    return ScheduleMessageTool(store, settings, resolver, cache=cache, now=lambda: NOW), store


def test_parse_iso_time_variants():
    assert parse_iso_time("2025-01-01T15:00:00Z") == datetime(2025, 1, 1, 15, 0, tzinfo=timezone.utc)
    assert parse_iso_time("2025-01-01T17:00:00+02:00") == datetime(2025, 1, 1, 15, 0, tzinfo=timezone.utc)
    assert parse_iso_time("2025-01-01T15:00:00") == datetime(2025, 1, 1, 15, 0, tzinfo=timezone.utc)
    assert parse_iso_time("tomorrow at 3") is None


@pytest.mark.asyncio
async def test_self_reminder_is_prefixed(tmp_path: Path, db: Database):
    tool, store = _tool(tmp_path, db)
    result = await tool.execute({"message": "water plants", "time": "2025-01-01T15:00:00Z"}, ToolContext("c1"))

    assert result["success"] is True
    assert result["message"] == "Message scheduled for 2025-01-01T15:00:00Z"
    task = await store.get(result["task_id"])
    assert task["conversation_id"] == "c1"
    assert task["content"] == "Reminder: water plants"


@pytest.mark.asyncio
async def test_named_recipient(tmp_path: Path, db: Database):
    async def resolver(name):
        return ("group-42", "Family") if name == "family" else None

    tool, store = _tool(tmp_path, db, resolver)
    ok = await tool.execute({"message": "dinner at 8", "time": "2025-01-01T18:00:00Z", "recipient": "family"}, ToolContext("c1"))
    assert ok["message"] == "Message to Family scheduled for 2025-01-01T18:00:00Z"
    task = await store.get(ok["task_id"])
    assert task["conversation_id"] == "group-42"
    assert task["content"] == "dinner at 8"

    missing = await tool.execute({"message": "hi", "time": "2025-01-01T18:00:00Z", "recipient": "bob"}, ToolContext("c1"))
    assert missing["success"] is False
    assert 'named "bob"' in missing["error"]


@pytest.mark.asyncio
async def test_invalid_and_past_times(tmp_path: Path, db: Database):
    tool, _ = _tool(tmp_path, db)
    invalid = await tool.execute({"message": "x", "time": "next week"}, ToolContext("c1"))
    assert invalid["error"].startswith("Invalid time format")

    within_grace = await tool.execute({"message": "x", "time": "2025-01-01T11:59:00Z"}, ToolContext("c1"))
    assert within_grace["success"] is True

    past = await tool.execute({"message": "x", "time": "2025-01-01T11:00:00Z"}, ToolContext("c1"))
    assert past["error"] == (
        "Cannot schedule a message in the past. Current time is 2025-01-01T12:00:00Z, "
        "but the requested time is 2025-01-01T11:00:00Z."
    )


@pytest.mark.asyncio
async def test_duplicate_calls_within_window_return_first_result(tmp_path: Path, db: Database):
    clock = Clock()
    tool, _ = _tool(tmp_path, db, clock=clock)
    args = {"message": "stand up", "time": "2025-01-01T15:00:00Z"}

    first, second = await asyncio.gather(tool.execute(args, ToolContext("c1")), tool.execute(args, ToolContext("c1")))
    assert first == second
    assert len(await db.fetchall("SELECT id FROM scheduled_tasks")) == 1

    clock.value += 6
    third = await tool.execute(args, ToolContext("c1"))
    assert third["task_id"] != first["task_id"]
    assert len(await db.fetchall("SELECT id FROM scheduled_tasks")) == 2


@pytest.mark.asyncio
async def test_failures_are_not_cached(tmp_path: Path, db: Database):
    tool, _ = _tool(tmp_path, db)
    args = {"message": "x", "time": "garbage"}
    await tool.execute(args, ToolContext("c1"))
    await asyncio.gather(tool.execute(args, ToolContext("c1")), tool.execute(args, ToolContext("c2")))
    assert len(tool.cache) == 0
    assert tool.cache.pending_locks == 0


def test_an_empty_injected_cache_is_kept(tmp_path: Path):
    cache = DedupCache(5.0, 100, 60.0, clock=Clock())
    tool = ScheduleMessageTool(ScheduledTaskStore(str(tmp_path / "t.db")), make_settings(tmp_path), cache=cache)
    assert tool.cache is cache


def test_dedup_cache_gc_drops_old_entries():
    clock = Clock()
    cache = DedupCache(window_s=5.0, max_entries=2, gc_age_s=60.0, clock=clock)
    cache.put("a", {"success": True})
    clock.value += 61
    cache.put("b", {"success": True})
    cache.put("c", {"success": True})
    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("c") == {"success": True}
