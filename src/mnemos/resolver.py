"""
Dedup & Contradiction Resolver - the single write path for new memories.

For resolvable sectors the new content is compared against its nearest
neighbours of the same user:
- similarity >= duplicate_threshold: the existing memory is reinforced instead
- contradiction band (factual/semantic only): stored as new, the older memory
  is halved and linked through a shared entity (contradicts / updated_from)
- otherwise: stored as new

A vector computed for the dedup check is indexed before insert_memory
returns; embedding content that skipped the check and entity extraction are
detached onto the background queue.
"""

import asyncio
import contextlib
import logging
import random
import string
import time
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .background import BackgroundQueue
from .config import MemoryConfig
from .decay import reinforced_strength
from .embeddings import EmbeddingProvider
from .event_bus import EventBus
from .events import ContradictionDetectedEvent, MemoryReinforcedEvent, MemoryStoredEvent
from .graph import EntityGraph
from .index_guard import GuardedIndex
from .storage.crud import MemoryCRUD
from .storage.embeddings import cosine_similarity
from .storage.models import CONTRADICTION_SECTORS, UNRESOLVED_SECTORS, Memory
from .storage.row_store import RowStore

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_memory_id(user_id: str) -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=5))
    return f"mem_{user_id}_{int(time.time() * 1000)}_{suffix}"


class Resolver:
    """Decides whether new content is a duplicate, an update or a new memory."""

    def __init__(self,
                 row_store: RowStore,
                 index: GuardedIndex,
                 embedder: EmbeddingProvider,
                 graph: EntityGraph,
                 queue: BackgroundQueue,
                 config: MemoryConfig,
                 event_bus: Optional[EventBus] = None):
        self.row_store = row_store
        self.index = index
        self.embedder = embedder
        self.graph = graph
        self.queue = queue
        self.config = config
        self.event_bus = event_bus
        self._user_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _publish(self, event) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event)

    async def insert_memory(self,
                            user_id: str,
                            content: str,
                            sector: str = "semantic",
                            tags: Optional[List[str]] = None,
                            session_key: Optional[str] = None,
                            event_at: Optional[datetime] = None,
                            valid_until: Optional[datetime] = None,
                            summary: Optional[str] = None) -> str:
        """
        Store content, collapsing duplicates and recording factual updates.

        Returns:
            Id of the new memory, or of the existing memory that was reinforced

        Raises:
            ValueError: If sector is unknown
        """
        MemoryCRUD.validate_sector(sector)
        lock = self._user_locks[user_id] if self.config.serialize_writes else contextlib.nullcontext()
        async with lock:
            embedding: Optional[List[float]] = None
            contradicted: Optional[Tuple[Memory, float]] = None

            if sector not in UNRESOLVED_SECTORS:
                try:
                    embedding = await self.embedder.embed_one(content)
                except Exception as e:
                    logger.warning(f"Embedding failed during dedup check, storing as new: {e}")
                if embedding is not None:
                    existing_id, contradicted = await self._resolve(user_id, sector, embedding)
                    if existing_id is not None:
                        return existing_id

            memory = Memory(
                id=new_memory_id(user_id),
                user_id=user_id,
                content=content,
                sector=sector,
                summary=summary,
                tags=list(tags or []),
                session_key=session_key,
                event_at=event_at,
                valid_until=valid_until,
                strength=1.0,
            )
            await self.row_store.memories.insert(memory)
            logger.debug(f"Stored {sector} memory {memory.id}")
            self._publish(MemoryStoredEvent(memory_id=memory.id, user_id=user_id,
                                            content=content, sector=sector))

            if contradicted is not None:
                old, similarity = contradicted
                await self._apply_contradiction(user_id, content, memory.id, old, similarity)

            if embedding is not None:
                # Index inline so the next insert of the same content finds this one
                await self._index_vector(memory.id, embedding)
                await self.queue.submit(lambda: self._post_insert(memory, embedding, indexed=True),
                                        name=f"post-insert {memory.id}")
            else:
                await self.queue.submit(lambda: self._post_insert(memory, embedding),
                                        name=f"post-insert {memory.id}")
            return memory.id

    async def _resolve(self, user_id: str, sector: str,
                       embedding: List[float]) -> Tuple[Optional[str], Optional[Tuple[Memory, float]]]:
        """
        Walk the nearest candidates.

        Returns:
            (reinforced_id, None) for a duplicate, (None, (old, similarity)) for
            a contradiction, (None, None) otherwise
        """
        candidates = await self.index.search_scoped(
            embedding, self.config.candidate_count, self.row_store.memories.get_many,
            lambda m: m.user_id == user_id and not m.archived,
        )

        for candidate in candidates:
            if candidate.sector != sector:
                continue

            vector = candidate.embedding
            if not vector:
                try:
                    vector = await self.embedder.embed_one(candidate.content)
                except Exception as e:
                    logger.warning(f"Could not embed candidate {candidate.id}, skipping: {e}")
                    continue
            similarity = cosine_similarity(embedding, vector)

            if similarity >= self.config.duplicate_threshold:
                new_strength = reinforced_strength(candidate.strength)
                await self.row_store.memories.update_strength(candidate.id, new_strength)
                logger.debug(f"Duplicate of {candidate.id} (similarity {similarity:.3f}), reinforced")
                self._publish(MemoryReinforcedEvent(
                    memory_id=candidate.id, user_id=user_id, old_strength=candidate.strength,
                    new_strength=new_strength, similarity=similarity,
                ))
                return candidate.id, None
            if similarity >= self.config.contradiction_threshold and sector in CONTRADICTION_SECTORS:
                return None, (candidate, similarity)
        return None, None

    async def _apply_contradiction(self, user_id: str, content: str, new_id: str,
                                   old: Memory, similarity: float) -> None:
        entity = await self.graph.find_shared_entity(user_id, content, old)
        if entity is not None:
            await self.graph.record_contradiction(old.id, new_id, entity.id)
        await self.row_store.memories.set_strength(old.id, old.strength / 2)
        logger.info(f"Memory {new_id} supersedes {old.id} (similarity {similarity:.3f})")
        self._publish(ContradictionDetectedEvent(
            old_memory_id=old.id, new_memory_id=new_id, user_id=user_id,
            similarity=similarity, entity_id=entity.id if entity else None,
        ))

    async def _index_vector(self, memory_id: str, embedding: List[float]) -> None:
        await self.row_store.memories.update_embedding(memory_id, embedding)
        await self.index.add(memory_id, embedding)

    async def _post_insert(self, memory: Memory, embedding: Optional[List[float]],
                           indexed: bool = False) -> None:
        """Embed and index a new memory, then link its entities."""
        if not indexed:
            if embedding is None:
                try:
                    embedding = await self.embedder.embed_one(memory.content)
                except Exception as e:
                    logger.warning(f"Embedding failed for {memory.id}, left unindexed: {e}")
            if embedding is not None:
                await self._index_vector(memory.id, embedding)

        if memory.sector != "episodic":
            await self.graph.index_memory(memory.user_id, memory.id, memory.content)

    async def backfill(self, user_id: str) -> int:
        """Embed and index live memories that have no stored vector."""
        count = 0
        for memory in await self.row_store.memories.get_for_decay(user_id):
            if memory.embedding:
                continue
            try:
                embedding = await self.embedder.embed_one(memory.content)
            except Exception as e:
                logger.warning(f"Backfill embedding failed for {memory.id}: {e}")
                continue
            await self._index_vector(memory.id, embedding)
            count += 1
        return count
