"""
Memory Service - the boundary interface of the memory engine.

Everything hangs off one MemoryService built with injected collaborators:

    service = await MemoryService.open(load_config())
    memory_id = await service.store("alice", "Alice prefers dark roast coffee")
    facts = await service.recall("alice", "coffee")
    await service.close()

Row-store failures are logged and turned into empty results at this layer;
validation errors (unknown sector, unknown timeframe) still raise ValueError.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .background import BackgroundQueue
from .config import MemoryConfig, load_config
from .decay import (
    LLMReflector,
    Reflector,
    decay_state_key,
    reflect_state_key,
    run_decay,
    run_reflection,
    should_run_decay,
    should_run_reflection,
)
from .embeddings import EmbeddingCache, EmbeddingProvider, OllamaEmbedder, OpenAIEmbedder
from .event_bus import EventBus
from .events import DecayCompletedEvent, MemoryArchivedEvent, ReflectionCompletedEvent
from .graph import EntityExtractor, EntityGraph, LLMEntityExtractor, substring_matcher
from .index_guard import GuardedIndex, VectorIndex
from .llm import ChatClient
from .recall import RecallRanker
from .resolver import Resolver
from .storage.ann_index import HNSWVectorIndex
from .storage.models import SECTORS, Memory, MemoryFilter
from .storage.row_store import RowStore

logger = logging.getLogger(__name__)

PROFILE_QUERY = "who is the user, background, preferences, goals"
PROFILE_STATIC_LIMIT = 8
PROFILE_DYNAMIC_LIMIT = 5
PROFILE_MEMORY_LIMIT = 5
PROFILE_DYNAMIC_MIN_STRENGTH = 0.5
INGEST_TURN_CHARS = 300
HISTORY_WINDOW = 50
NON_EPISODIC = {s for s in SECTORS if s != "episodic"}


@dataclass
class UserProfile:
    static: List[str] = field(default_factory=list)
    dynamic: List[str] = field(default_factory=list)
    memories: List[str] = field(default_factory=list)


class MemoryService:
    """
    Long-term memory for one process.

    Args:
        row_store: Durable tables
        vector_index: Anything with async add/search (see index_guard.VectorIndex)
        embedder: Embedding provider
        extractor: Entity extractor (None disables entity linking)
        reflector: Reflector for episodic compression (None disables reflection)
        config: Engine knobs
        event_bus: Optional bus receiving memory/maintenance events
    """

    def __init__(self,
                 row_store: RowStore,
                 vector_index: VectorIndex,
                 embedder: EmbeddingProvider,
                 extractor: Optional[EntityExtractor],
                 reflector: Optional[Reflector],
                 config: MemoryConfig,
                 event_bus: Optional[EventBus] = None):
        config.validate()
        self.row_store = row_store
        self.vector_index = vector_index
        self.embedder = embedder
        self.reflector = reflector
        self.config = config
        self.event_bus = event_bus

        self.index = GuardedIndex(vector_index)
        self.graph = EntityGraph(row_store, extractor)
        self.queue = BackgroundQueue(config.background_mode, config.background_workers,
                                     config.background_queue_size)
        self.resolver = Resolver(row_store, self.index, embedder, self.graph, self.queue,
                                 config, event_bus)
        self.ranker = RecallRanker(row_store, self.index, embedder, event_bus)
        self._resources: List[Any] = []

    @classmethod
    async def open(cls, config: Optional[MemoryConfig] = None,
                   event_bus: Optional[EventBus] = None) -> "MemoryService":
        """Build the default stack: SQLite, hnswlib, HTTP embedding and chat providers."""
        config = config or load_config()
        row_store = await RowStore.open(config.db_path, config.enable_wal)

        vector_index = HNSWVectorIndex(config.index_path)
        # The index file is only written on close; catch up on anything indexed since
        added = vector_index.reconcile(await row_store.memories.list_embeddings())
        if added:
            logger.info(f"Added {added} stored embeddings missing from the vector index")

        emb = config.embedding
        if emb.provider == "ollama":
            base_embedder = OllamaEmbedder(model=emb.model, base_url=emb.base_url, timeout=emb.timeout)
        else:
            base_embedder = OpenAIEmbedder(api_key=emb.api_key, model=emb.model, base_url=emb.base_url,
                                           batch_size=emb.batch_size, max_retries=emb.max_retries,
                                           timeout=emb.timeout)
        embedder = EmbeddingCache(config.cache_dir, base_embedder) if emb.cache else base_embedder

        llm = config.llm
        chat = ChatClient(provider=llm.provider, api_key=llm.api_key, base_url=llm.base_url,
                          timeout=llm.timeout)
        service = cls(
            row_store=row_store,
            vector_index=vector_index,
            embedder=embedder,
            extractor=LLMEntityExtractor(chat, llm.fast_model),
            reflector=LLMReflector(chat, llm.deep_model),
            config=config,
            event_bus=event_bus,
        )
        service._resources = [embedder, chat]
        return service

    @property
    def is_degraded(self) -> bool:
        """True while the vector index is failing."""
        return self.index.degraded

    # -- writes ---------------------------------------------------------

    async def store(self, user_id: str, content: str, tags: Optional[List[str]] = None) -> Optional[str]:
        """Store a semantic memory. Returns None if the row store failed."""
        return await self.store_rich(user_id, content, sector="semantic", tags=tags)

    async def store_rich(self,
                         user_id: str,
                         content: str,
                         sector: str = "semantic",
                         tags: Optional[List[str]] = None,
                         session_key: Optional[str] = None,
                         event_at: Optional[datetime] = None,
                         valid_until: Optional[datetime] = None) -> Optional[str]:
        try:
            return await self.resolver.insert_memory(
                user_id, content, sector=sector, tags=tags, session_key=session_key,
                event_at=event_at, valid_until=valid_until,
            )
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Store failed for user {user_id}: {e}", exc_info=True)
            return None

    async def ingest_conversation(self, session_key: str, user_id: str,
                                  messages: List[Dict[str, str]]) -> Optional[str]:
        """Record the last user/assistant exchange as one episodic memory."""
        last_user = next((m for m in reversed(messages) if m.get("role") == "user"), None)
        last_assistant = next((m for m in reversed(messages) if m.get("role") == "assistant"), None)
        if last_user is None or last_assistant is None:
            return None

        content = (f"User: {last_user.get('content', '')[:INGEST_TURN_CHARS]}\n"
                   f"Assistant: {last_assistant.get('content', '')[:INGEST_TURN_CHARS]}")
        memory_id = await self.store_rich(user_id, content, sector="episodic", session_key=session_key)
        logger.debug(f"Ingested episodic memory for session {session_key}")
        return memory_id

    async def append_message(self, session_key: str, role: str, content: str) -> None:
        await self.row_store.messages.append(session_key, role, content)

    async def archive_memory(self, memory_id: str) -> bool:
        archived = await self.row_store.memories.archive(memory_id)
        if archived and self.event_bus is not None:
            memory = await self.row_store.memories.get_by_id(memory_id)
            self.event_bus.publish(MemoryArchivedEvent(memory_id=memory_id,
                                                       user_id=memory.user_id if memory else None))
        return archived

    # -- reads ----------------------------------------------------------

    async def recall(self, user_id: str, query: str, limit: int = 5,
                     session_key: Optional[str] = None) -> List[str]:
        """
        Texts of the best matching memories.

        Falls back to the session's message history when nothing is found
        while the index is degraded, or when the row store fails.
        """
        try:
            memories = await self.ranker.search(user_id, query, limit)
        except Exception as e:
            logger.error(f"Recall failed for user {user_id}: {e}", exc_info=True)
            return await self._history_fallback(session_key, query, limit)

        if not memories and self.is_degraded:
            return await self._history_fallback(session_key, query, limit)
        return [m.text for m in memories]

    async def recall_rich(self,
                          user_id: str,
                          query: str,
                          limit: int = 10,
                          sectors: Optional[List[str]] = None,
                          min_strength: Optional[float] = None,
                          graph_depth: Optional[int] = None,
                          tag: Optional[str] = None,
                          timeframe: Optional[str] = None) -> List[Memory]:
        """Ranked memories plus graph neighbours; the whole set is reinforced."""
        depth = self.config.graph_depth if graph_depth is None else graph_depth
        try:
            core = await self.ranker.search(user_id, query, limit, sectors=sectors,
                                            min_strength=min_strength, tag=tag,
                                            timeframe=timeframe, reinforce=False)
            enriched = await self.graph.graph_enrich_recall(user_id, core, depth)
            await self.ranker.reinforce(enriched)
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Rich recall failed for user {user_id}: {e}", exc_info=True)
            return []
        return enriched

    async def get_profile(self, user_id: str, query: Optional[str] = None,
                          session_key: Optional[str] = None) -> UserProfile:
        """Background facts, recent facts and query-specific memories. Never reinforces."""
        try:
            static_rows = await self.ranker.search(user_id, PROFILE_QUERY, PROFILE_STATIC_LIMIT,
                                                   sectors=NON_EPISODIC, reinforce=False)
            static_ids = {m.id for m in static_rows}

            recent = await self.row_store.memories.list_by_user(user_id, MemoryFilter(
                sectors=NON_EPISODIC,
                min_strength=PROFILE_DYNAMIC_MIN_STRENGTH,
                after=datetime.now() - timedelta(hours=24),
                order="recent",
                limit=PROFILE_DYNAMIC_LIMIT + PROFILE_STATIC_LIMIT,
            ))
            dynamic = [m.text for m in recent if m.id not in static_ids][:PROFILE_DYNAMIC_LIMIT]

            memories: List[str] = []
            if query:
                rows = await self.ranker.search(user_id, query, PROFILE_MEMORY_LIMIT, reinforce=False)
                memories = [m.text for m in rows]
                if not memories and self.is_degraded:
                    memories = await self._history_fallback(session_key, query, PROFILE_MEMORY_LIMIT)
        except Exception as e:
            logger.error(f"Profile failed for user {user_id}: {e}", exc_info=True)
            fallback = await self._history_fallback(session_key, query, PROFILE_MEMORY_LIMIT) if query else []
            return UserProfile(memories=fallback)

        logger.debug(f"Profile user={user_id} static={len(static_rows)} dynamic={len(dynamic)} "
                     f"memories={len(memories)}")
        return UserProfile(static=[m.text for m in static_rows], dynamic=dynamic, memories=memories)

    async def _history_fallback(self, session_key: Optional[str], query: str, limit: int) -> List[str]:
        if not session_key:
            return []
        try:
            return await self.row_store.messages.search(session_key, query, limit, window=HISTORY_WINDOW)
        except Exception as e:
            logger.error(f"Message history fallback failed: {e}", exc_info=True)
            return []

    # -- maintenance ----------------------------------------------------

    async def decay(self, user_id: str) -> Dict[str, int]:
        result = await run_decay(self.row_store, user_id, self.config.archive_threshold,
                                 self.config.decay_aggressiveness)
        if self.event_bus is not None:
            self.event_bus.publish(DecayCompletedEvent(user_id=user_id, **result))
        return result

    async def reflect(self, user_id: str) -> Dict[str, int]:
        if self.reflector is None:
            return {"reflected": 0, "compressed": 0}

        async def insert(uid: str, content: str, sector: str, tags: List[str]) -> Optional[str]:
            return await self.store_rich(uid, content, sector=sector, tags=tags)

        cfg = self.config
        result = await run_reflection(
            self.row_store, self.reflector, insert, user_id,
            batch_size=cfg.reflection_batch_size,
            min_batch=cfg.reflection_min_batch,
            min_age_days=cfg.reflection_min_age_days,
            max_candidates=cfg.reflection_max_candidates,
        )
        if self.event_bus is not None:
            self.event_bus.publish(ReflectionCompletedEvent(user_id=user_id, **result))
        return result

    async def run_maintenance(self, user_id: str) -> Dict[str, Optional[Dict[str, int]]]:
        """Scheduler tick: run whichever job is due. Failures are logged."""
        results: Dict[str, Optional[Dict[str, int]]] = {"decay": None, "reflection": None}
        try:
            if await should_run_decay(self.row_store, user_id, self.config.decay_interval_hours):
                results["decay"] = await self.decay(user_id)
            if await should_run_reflection(self.row_store, user_id, self.config.reflection_schedule):
                results["reflection"] = await self.reflect(user_id)
        except Exception as e:
            logger.error(f"Maintenance failed for user {user_id}: {e}", exc_info=True)
        return results

    async def merge_entities(self, user_id: str, matcher=substring_matcher) -> List[tuple]:
        return await self.graph.merge_near_duplicate_entities(user_id, matcher)

    async def format_entity_graph(self, user_id: str) -> str:
        return await self.graph.format_entity_graph(user_id)

    async def backfill_embeddings(self, user_id: str) -> int:
        """Index memories whose detached embedding never completed."""
        return await self.resolver.backfill(user_id)

    # -- introspection --------------------------------------------------

    async def get_stats(self, user_id: str) -> Dict[str, Any]:
        stats = await self.row_store.memories.get_stats(user_id)
        stats["entity_count"] = await self.row_store.graph.count_entities(user_id)
        stats["last_decay"] = await self.row_store.state.get(decay_state_key(user_id))
        stats["last_reflection"] = await self.row_store.state.get(reflect_state_key(user_id))
        stats["degraded"] = self.is_degraded
        stats["pending_jobs"] = self.queue.pending
        return stats

    async def export_memories(self, user_id: str) -> List[Dict[str, Any]]:
        """Every memory of the user, archived included, oldest first."""
        return [m.to_dict() for m in await self.row_store.memories.list_all(user_id)]

    async def health_check(self) -> bool:
        try:
            return await self.row_store.ping()
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return False

    async def drain(self) -> None:
        """Wait for detached embedding/entity work to finish."""
        await self.queue.drain()

    async def close(self) -> None:
        await self.queue.close()
        save = getattr(self.vector_index, "save", None)
        if save is not None:
            save()
        for resource in self._resources:
            await resource.close()
        await self.row_store.close()

    async def __aenter__(self) -> "MemoryService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
