import uuid
from typing import Any, Dict, Optional

import aiosqlite

from .db import utc_now


def _row_to_task(row: aiosqlite.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "conversation_id": row["conversation_id"],
        "content": row["content"],
        "scheduled_at": row["scheduled_at"],
        "status": row["status"],
        "created_at": row["created_at"],
        "executed_at": row["executed_at"],
        "error_text": row["error_text"],
    }


class ScheduledTaskStore:
    """Scheduled outgoing messages. Written here; delivery is left to an external dispatcher that reads the table."""

    def __init__(self, path: str):
        self.path = path

    async def create(self, conversation_id: str, content: str, scheduled_at: str) -> Dict[str, Any]:
        task_id = uuid.uuid4().hex
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO scheduled_tasks(id, conversation_id, content, scheduled_at, status, created_at, executed_at, error_text) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (task_id, conversation_id, content, scheduled_at, "pending", created_at, None, None),
            )
            await db.commit()
        return {
            "id": task_id,
            "conversation_id": conversation_id,
            "content": content,
            "scheduled_at": scheduled_at,
            "status": "pending",
            "created_at": created_at,
            "executed_at": None,
            "error_text": None,
        }

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM scheduled_tasks WHERE id=?", (task_id,))
            row = await cursor.fetchone()
            await cursor.close()
        return _row_to_task(row) if row else None
