"""
Key/value state and conversation message log.

The state table holds small JSON values such as the per-user maintenance
timestamps; the message log is written by the channel layer and read only by
the degraded recall fallback.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiosqlite


MESSAGE_ROLES = {"user", "assistant", "system"}


class StateStore:
    """JSON key/value rows."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._conn.execute("SELECT value FROM state WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        if not row:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            return row[0]

    async def set(self, key: str, value: Any) -> None:
        await self._conn.execute("""
            INSERT INTO state (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """, (key, json.dumps(value), datetime.now().isoformat()))
        await self._conn.commit()

    async def delete(self, key: str) -> None:
        await self._conn.execute("DELETE FROM state WHERE key = ?", (key,))
        await self._conn.commit()

    async def get_datetime(self, key: str) -> Optional[datetime]:
        value = await self.get(key)
        return datetime.fromisoformat(value) if value else None

    async def set_datetime(self, key: str, value: datetime) -> None:
        await self.set(key, value.isoformat())


class MessageLog:
    """Append-only conversation history keyed by session."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def append(self, session_key: str, role: str, content: str) -> None:
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Invalid role: {role}. Must be one of: {MESSAGE_ROLES}")
        await self._conn.execute(
            "INSERT INTO messages (session_key, role, content, created_at) VALUES (?, ?, ?, ?)",
            (session_key, role, content, datetime.now().isoformat()),
        )
        await self._conn.commit()

    async def get_history(self, session_key: str, limit: int = 30) -> List[Dict[str, str]]:
        """Most recent messages of a session, oldest first."""
        async with self._conn.execute("""
            SELECT role, content FROM messages WHERE session_key = ?
            ORDER BY id DESC LIMIT ?
        """, (session_key, limit)) as cursor:
            rows = await cursor.fetchall()
        return [{"role": role, "content": content} for role, content in reversed(rows)]

    async def search(self, session_key: str, query: str, limit: int = 5,
                     window: int = 50) -> List[str]:
        """Case-insensitive substring match over the recent history window."""
        needle = query.strip().lower()
        if not needle:
            return []
        history = await self.get_history(session_key, window)
        matches = [m["content"] for m in reversed(history) if needle in m["content"].lower()]
        return matches[:limit]
