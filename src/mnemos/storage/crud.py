"""
CRUD and scan operations for memory rows.

This module handles the memories table:
- insert / get_by_id: create and hydrate memory rows
- list_by_user: filtered scans (sector, strength, tag, time range)
- update_strength / set_strength: reinforcement and aging writes
- archive / archive_batch: soft removal, never a physical delete
- keyword_search: substring fallback used when vector search is unavailable
- get_for_decay / get_for_reflection / get_stats: maintenance queries
"""

import json
import re
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any, Iterable, Sequence

import aiosqlite

from .models import Memory, MemoryFilter, SECTORS, clamp_strength
from .embeddings import embed_to_blob, blob_to_embed

logger = logging.getLogger(__name__)

MEMORY_COLUMNS = """
    id, user_id, sector, content, summary, tags, session_key, event_at,
    remembered_at, valid_until, strength, recall_count, last_recalled_at,
    last_decayed_at, archived, embedding
"""

_WORD_RE = re.compile(r"[\w']+")


def like_pattern(text: str) -> str:
    """Substring LIKE pattern with % and _ matched literally (use with ESCAPE '\\')."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def row_to_memory(row: Sequence[Any]) -> Memory:
    """Build a Memory from a row selected with MEMORY_COLUMNS."""
    return Memory(
        id=row[0],
        user_id=row[1],
        sector=row[2],
        content=row[3],
        summary=row[4],
        tags=json.loads(row[5]) if row[5] else [],
        session_key=row[6],
        event_at=_dt(row[7]),
        remembered_at=_dt(row[8]),
        valid_until=_dt(row[9]),
        strength=row[10],
        recall_count=row[11],
        last_recalled_at=_dt(row[12]),
        last_decayed_at=_dt(row[13]),
        archived=bool(row[14]),
        embedding=blob_to_embed(row[15]) or None,
    )


class MemoryCRUD:
    """
    Memory row operations over a shared aiosqlite connection.

    Every write is a single-row statement followed by a commit; the
    aiosqlite worker thread serializes them.
    """

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    @staticmethod
    def validate_sector(sector: str) -> None:
        """Validate memory sector."""
        if sector not in SECTORS:
            raise ValueError(f"Invalid sector: {sector}. Must be one of: {set(SECTORS)}")

    async def insert(self, memory: Memory) -> str:
        """
        Insert a memory row.

        Args:
            memory: Fully populated Memory (id chosen by the caller)

        Returns:
            The memory id
        """
        self.validate_sector(memory.sector)
        if not 0.0 <= memory.strength <= 1.0:
            raise ValueError("strength must be between 0.0 and 1.0")

        await self._conn.execute(f"""
            INSERT INTO memories ({MEMORY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            memory.id,
            memory.user_id,
            memory.sector,
            memory.content,
            memory.summary,
            json.dumps(sorted(set(memory.tags))) if memory.tags else None,
            memory.session_key,
            _ts(memory.event_at),
            _ts(memory.remembered_at),
            _ts(memory.valid_until),
            memory.strength,
            memory.recall_count,
            _ts(memory.last_recalled_at),
            _ts(memory.last_decayed_at),
            1 if memory.archived else 0,
            embed_to_blob(memory.embedding) if memory.embedding else None,
        ))
        await self._conn.commit()
        return memory.id

    async def get_by_id(self, memory_id: str) -> Optional[Memory]:
        """Retrieve a memory by ID (no access bookkeeping)."""
        async with self._conn.execute(
            f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id = ?", (memory_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return row_to_memory(row) if row else None

    async def get_many(self, memory_ids: Iterable[str]) -> Dict[str, Memory]:
        """Hydrate several rows at once, keyed by id."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with self._conn.execute(
            f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id IN ({placeholders})", ids
        ) as cursor:
            rows = await cursor.fetchall()
        return {row[0]: row_to_memory(row) for row in rows}

    async def list_by_user(self, user_id: str, filters: Optional[MemoryFilter] = None) -> List[Memory]:
        """
        Filtered scan over one user's memories.

        Ordered by strength descending, or by event_at descending when
        filters.order == "recent". The tag filter is a substring match on the
        stored JSON array; callers wanting exact tag semantics re-check with
        Memory.has_tag.
        """
        filters = filters or MemoryFilter()
        clauses = ["user_id = ?"]
        params: List[Any] = [user_id]

        if not filters.include_archived:
            clauses.append("archived = 0")
        if filters.sectors:
            sectors = sorted(filters.sectors)
            for sector in sectors:
                self.validate_sector(sector)
            clauses.append(f"sector IN ({','.join('?' for _ in sectors)})")
            params.extend(sectors)
        if filters.min_strength is not None:
            clauses.append("strength >= ?")
            params.append(filters.min_strength)
        if filters.tag:
            clauses.append("LOWER(tags) LIKE ? ESCAPE '\\'")
            params.append(like_pattern(filters.tag.strip().lower()))
        if filters.after is not None:
            clauses.append("event_at >= ?")
            params.append(filters.after.isoformat())
        if filters.before is not None:
            clauses.append("event_at < ?")
            params.append(filters.before.isoformat())

        order = "event_at DESC" if filters.order == "recent" else "strength DESC, event_at DESC"
        params.append(filters.limit)

        async with self._conn.execute(f"""
            SELECT {MEMORY_COLUMNS} FROM memories
            WHERE {' AND '.join(clauses)}
            ORDER BY {order}
            LIMIT ?
        """, params) as cursor:
            rows = await cursor.fetchall()
        return [row_to_memory(row) for row in rows]

    async def keyword_search(self,
                             user_id: str,
                             query: str,
                             limit: int = 10,
                             sectors: Optional[Iterable[str]] = None,
                             min_strength: Optional[float] = None) -> List[Memory]:
        """
        Substring/keyword scan over content.

        Rows matching the whole query rank first, then rows by number of
        query words (3+ chars) they contain, then by strength.
        """
        phrase = query.strip().lower()
        words = [w for w in dict.fromkeys(_WORD_RE.findall(phrase)) if len(w) >= 3]
        terms = [phrase] + words if phrase else words
        if not terms:
            return []

        clauses = ["user_id = ?", "archived = 0"]
        params: List[Any] = [user_id]
        if sectors:
            sectors = sorted(set(sectors))
            clauses.append(f"sector IN ({','.join('?' for _ in sectors)})")
            params.extend(sectors)
        if min_strength is not None:
            clauses.append("strength >= ?")
            params.append(min_strength)
        clauses.append("(" + " OR ".join("LOWER(content) LIKE ? ESCAPE '\\'" for _ in terms) + ")")
        params.extend(like_pattern(t) for t in terms)

        async with self._conn.execute(f"""
            SELECT {MEMORY_COLUMNS} FROM memories
            WHERE {' AND '.join(clauses)}
            ORDER BY strength DESC
            LIMIT ?
        """, params + [limit * 5]) as cursor:
            rows = await cursor.fetchall()

        def score(memory: Memory) -> tuple:
            text = memory.content.lower()
            return (phrase in text if phrase else False,
                    sum(1 for w in words if w in text),
                    memory.strength)

        memories = [row_to_memory(row) for row in rows]
        memories.sort(key=score, reverse=True)
        return memories[:limit]

    async def update_strength(self, memory_id: str, new_strength: float,
                              now: Optional[datetime] = None) -> bool:
        """
        Write a recall-driven strength change.

        Also increments recall_count and sets last_recalled_at.
        """
        cursor = await self._conn.execute("""
            UPDATE memories
            SET strength = ?, recall_count = recall_count + 1, last_recalled_at = ?
            WHERE id = ?
        """, (clamp_strength(new_strength), (now or datetime.now()).isoformat(), memory_id))
        await self._conn.commit()
        return cursor.rowcount > 0

    async def set_strength(self, memory_id: str, new_strength: float,
                           decayed_at: Optional[datetime] = None) -> bool:
        """
        Write a strength change that is not a recall.

        Args:
            memory_id: Memory ID
            new_strength: New value (clamped to [0, 1])
            decayed_at: When given, recorded as last_decayed_at
        """
        if decayed_at is not None:
            cursor = await self._conn.execute(
                "UPDATE memories SET strength = ?, last_decayed_at = ? WHERE id = ?",
                (clamp_strength(new_strength), decayed_at.isoformat(), memory_id),
            )
        else:
            cursor = await self._conn.execute(
                "UPDATE memories SET strength = ? WHERE id = ?",
                (clamp_strength(new_strength), memory_id),
            )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def update_embedding(self, memory_id: str, embedding: List[float]) -> bool:
        """Store the embedding vector for a memory."""
        cursor = await self._conn.execute(
            "UPDATE memories SET embedding = ? WHERE id = ?",
            (embed_to_blob(embedding) if embedding else None, memory_id),
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def archive(self, memory_id: str) -> bool:
        """Mark a memory archived. Idempotent."""
        cursor = await self._conn.execute(
            "UPDATE memories SET archived = 1 WHERE id = ? AND archived = 0", (memory_id,)
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def archive_batch(self, memory_ids: Iterable[str]) -> int:
        """
        Mark memories as archived (excluded from recall and dedup).

        Returns:
            Number of memories that transitioned to archived
        """
        archived_count = 0
        for memory_id in dict.fromkeys(memory_ids):
            cursor = await self._conn.execute(
                "UPDATE memories SET archived = 1 WHERE id = ? AND archived = 0", (memory_id,)
            )
            archived_count += cursor.rowcount
        await self._conn.commit()
        return archived_count

    async def get_for_decay(self, user_id: str) -> List[Memory]:
        """All live memories of a user."""
        return await self.list_by_user(user_id, MemoryFilter(limit=1_000_000))

    async def get_for_reflection(self, user_id: str, sector: str = "episodic",
                                 min_age_days: float = 7, limit: int = 30,
                                 now: Optional[datetime] = None) -> List[Memory]:
        """Old live memories of one sector, weakest first."""
        self.validate_sector(sector)
        cutoff = (now or datetime.now()) - timedelta(days=min_age_days)
        async with self._conn.execute(f"""
            SELECT {MEMORY_COLUMNS} FROM memories
            WHERE user_id = ? AND sector = ? AND archived = 0 AND remembered_at < ?
            ORDER BY strength ASC, remembered_at ASC
            LIMIT ?
        """, (user_id, sector, cutoff.isoformat(), limit)) as cursor:
            rows = await cursor.fetchall()
        return [row_to_memory(row) for row in rows]

    async def list_embeddings(self) -> List[tuple]:
        """(id, vector) for every live memory with a stored embedding, all users."""
        async with self._conn.execute(
            "SELECT id, embedding FROM memories WHERE archived = 0 AND embedding IS NOT NULL"
        ) as cursor:
            rows = await cursor.fetchall()
        return [(row[0], blob_to_embed(row[1])) for row in rows]

    async def list_all(self, user_id: str) -> List[Memory]:
        """Every memory of a user, archived included, oldest first."""
        async with self._conn.execute(f"""
            SELECT {MEMORY_COLUMNS} FROM memories
            WHERE user_id = ? ORDER BY remembered_at ASC
        """, (user_id,)) as cursor:
            rows = await cursor.fetchall()
        return [row_to_memory(row) for row in rows]

    async def count(self, user_id: str) -> int:
        async with self._conn.execute(
            "SELECT COUNT(*) FROM memories WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return row[0]

    async def get_stats(self, user_id: str) -> Dict[str, Any]:
        """
        Per-user statistics.

        Returns:
            Dict with total, by_sector (live rows), avg_strength (live rows)
            and archived count
        """
        async with self._conn.execute("""
            SELECT sector, COUNT(*), AVG(strength) FROM memories
            WHERE user_id = ? AND archived = 0 GROUP BY sector
        """, (user_id,)) as cursor:
            rows = await cursor.fetchall()

        by_sector = {sector: 0 for sector in SECTORS}
        live = 0
        strength_total = 0.0
        for sector, count, avg in rows:
            by_sector[sector] = count
            live += count
            strength_total += (avg or 0.0) * count

        async with self._conn.execute(
            "SELECT COUNT(*) FROM memories WHERE user_id = ? AND archived = 1", (user_id,)
        ) as cursor:
            archived = (await cursor.fetchone())[0]

        return {
            "total": live + archived,
            "by_sector": by_sector,
            "avg_strength": round(strength_total / live, 4) if live else 0.0,
            "archived": archived,
        }
