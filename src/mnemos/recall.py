"""
Recall Ranker - tag, timeframe and semantic retrieval paths.

- tag: exact tag membership, strength order, no vector search
- timeframe: event_at range scan, re-ranked by similarity for real queries
- semantic: vector candidates scored 0.7 * cosine + 0.3 * strength, with a
  keyword scan when the index has nothing to offer

Returned memories are reinforced unless the caller opts out.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .decay import reinforced_strength
from .embeddings import EmbeddingProvider
from .event_bus import EventBus
from .events import MemoryRecalledEvent
from .index_guard import GuardedIndex
from .storage.embeddings import cosine_similarity
from .storage.models import Memory, MemoryFilter
from .storage.row_store import RowStore
from .timeframe import resolve_time_range

logger = logging.getLogger(__name__)

SIMILARITY_WEIGHT = 0.7
STRENGTH_WEIGHT = 0.3
CANDIDATE_MULTIPLIER = 3
SCAN_LIMIT = 1000


def is_trivial_query(query: Optional[str]) -> bool:
    """Queries that carry no meaning for similarity ranking."""
    if not query:
        return True
    stripped = query.strip()
    return stripped == "*" or len("".join(stripped.split())) < 3


class RecallRanker:
    def __init__(self,
                 row_store: RowStore,
                 index: GuardedIndex,
                 embedder: EmbeddingProvider,
                 event_bus: Optional[EventBus] = None):
        self.row_store = row_store
        self.index = index
        self.embedder = embedder
        self.event_bus = event_bus

    async def search(self,
                     user_id: str,
                     query: str,
                     limit: int = 10,
                     sectors: Optional[Iterable[str]] = None,
                     min_strength: Optional[float] = None,
                     tag: Optional[str] = None,
                     timeframe: Optional[str] = None,
                     reinforce: bool = True,
                     now: Optional[datetime] = None) -> List[Memory]:
        """
        Ranked memories for a query.

        Raises:
            ValueError: If timeframe is not a known token
        """
        sector_set = set(sectors) if sectors else None
        after = before = None
        if timeframe:
            after, before = resolve_time_range(timeframe, now)

        if tag:
            results = await self._tag_search(user_id, tag, limit, sector_set, min_strength, after, before)
        elif timeframe:
            results = await self._timeframe_search(user_id, query, limit, sector_set, min_strength,
                                                   after, before)
        else:
            results = await self._semantic_search(user_id, query, limit, sector_set, min_strength)

        if reinforce:
            await self.reinforce(results)

        if self.event_bus is not None:
            self.event_bus.publish(MemoryRecalledEvent(
                user_id=user_id,
                query=query,
                result_count=len(results),
                top_results=[{"memory_id": m.id, "strength": m.strength} for m in results[:3]],
            ))
        return results

    async def reinforce(self, memories: List[Memory], now: Optional[datetime] = None) -> None:
        """Strengthen recalled memories; the Memory objects are updated in place."""
        now = now or datetime.now()
        for memory in memories:
            memory.strength = reinforced_strength(memory.strength)
            memory.recall_count += 1
            memory.last_recalled_at = now
            await self.row_store.memories.update_strength(memory.id, memory.strength, now)

    async def _tag_search(self, user_id: str, tag: str, limit: int, sectors, min_strength,
                          after, before) -> List[Memory]:
        rows = await self.row_store.memories.list_by_user(user_id, MemoryFilter(
            sectors=sectors, min_strength=min_strength, tag=tag,
            after=after, before=before, order="strength", limit=SCAN_LIMIT,
        ))
        return [m for m in rows if m.has_tag(tag)][:limit]

    async def _timeframe_search(self, user_id: str, query: str, limit: int, sectors, min_strength,
                                after, before) -> List[Memory]:
        rows = await self.row_store.memories.list_by_user(user_id, MemoryFilter(
            sectors=sectors, min_strength=min_strength,
            after=after, before=before, order="recent", limit=SCAN_LIMIT,
        ))
        if len(rows) <= 1 or is_trivial_query(query):
            return rows[:limit]

        try:
            query_vec = await self.embedder.embed_one(query)
        except Exception as e:
            logger.warning(f"Query embedding failed, keeping time order: {e}")
            return rows[:limit]

        similarities = await self._similarities(query_vec, rows)
        # sort() is stable, so ties keep newest-first order
        rows.sort(key=lambda m: similarities.get(m.id, 0.0), reverse=True)
        return rows[:limit]

    async def _semantic_search(self, user_id: str, query: str, limit: int, sectors,
                               min_strength) -> List[Memory]:
        query_vec = None
        rows: List[Memory] = []
        try:
            query_vec = await self.embedder.embed_one(query)
        except Exception as e:
            logger.warning(f"Query embedding failed, using keyword search: {e}")

        def usable(memory: Memory) -> bool:
            return (memory.user_id == user_id and not memory.archived
                    and (not sectors or memory.sector in sectors)
                    and (min_strength is None or memory.strength >= min_strength))

        if query_vec is not None:
            rows = await self.index.search_scoped(
                query_vec, limit * CANDIDATE_MULTIPLIER, self.row_store.memories.get_many, usable,
            )

        if not rows:
            logger.debug(f"No vector candidates for user {user_id}, keyword fallback")
            return await self.row_store.memories.keyword_search(
                user_id, query, limit, sectors=sectors, min_strength=min_strength
            )

        similarities = await self._similarities(query_vec, rows)
        rows.sort(
            key=lambda m: SIMILARITY_WEIGHT * similarities.get(m.id, 0.0) + STRENGTH_WEIGHT * m.strength,
            reverse=True,
        )
        rows = rows[:limit]
        if len(rows) < limit:
            # Memories not yet indexed are still reachable by keyword
            seen = {m.id for m in rows}
            extra = await self.row_store.memories.keyword_search(
                user_id, query, limit, sectors=sectors, min_strength=min_strength
            )
            rows.extend(m for m in extra if m.id not in seen)
        return rows[:limit]

    async def _similarities(self, query_vec: List[float], rows: List[Memory]) -> Dict[str, float]:
        """Cosine similarity per memory, embedding rows without a stored vector on demand."""
        missing = [m for m in rows if not m.embedding]
        vectors = {m.id: m.embedding for m in rows if m.embedding}
        if missing:
            try:
                computed = await self.embedder.embed([m.content for m in missing])
                vectors.update({m.id: vec for m, vec in zip(missing, computed)})
            except Exception as e:
                logger.warning(f"Could not embed {len(missing)} recall candidates: {e}")
        return {memory_id: cosine_similarity(query_vec, vec) for memory_id, vec in vectors.items()}
