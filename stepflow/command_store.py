import json
import logging
from typing import Any, Dict, Optional, Union

import aiosqlite

from .db import utc_now
from .schemas import MultiStepCommand, SingleStepCommand, parse_last_command

logger = logging.getLogger("uvicorn.error")

Command = Union[SingleStepCommand, MultiStepCommand]


class LastCommandStore:
    """Persist the most recent top-level command per conversation (last write wins)."""

    def __init__(self, path: str):
        self.path = path

    async def get_raw(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT payload_json FROM last_commands WHERE conversation_id=?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        try:
            payload = json.loads(row["payload_json"] or "{}")
        except Exception:
            logger.warning("Stored command for %s is not valid JSON", conversation_id)
            return {}
        return payload if isinstance(payload, dict) else {}

    async def get(self, conversation_id: str) -> Optional[Command]:
        """Return the tagged command; raises MalformedCommandError for unusable records."""
        raw = await self.get_raw(conversation_id)
        if raw is None:
            return None
        return parse_last_command(raw)

    async def record(self, conversation_id: str, command: Command) -> None:
        payload = command.model_dump(mode="json")
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO last_commands(conversation_id, kind, payload_json, updated_at) VALUES (?,?,?,?)",
                (conversation_id, command.kind, json.dumps(payload, ensure_ascii=True), utc_now()),
            )
            await db.commit()
