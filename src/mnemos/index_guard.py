"""
Degradation tracking around the vector index.

Any failing index call flips ``degraded`` and is reported to the caller as an
empty result; the next successful call clears it.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Protocol, Sequence, runtime_checkable

from .storage.models import Memory

logger = logging.getLogger(__name__)

MAX_SCOPED_K = 1000


@runtime_checkable
class VectorIndex(Protocol):
    async def add(self, memory_id: str, vector: Sequence[float]) -> None:
        ...

    async def search(self, vector: Sequence[float], k: int) -> List[str]:
        ...


class GuardedIndex:
    def __init__(self, index: VectorIndex):
        self.index = index
        self.degraded = False

    def _mark(self, ok: bool, action: str, error: Exception = None) -> None:
        if ok:
            if self.degraded:
                logger.info("Vector index reachable again")
            self.degraded = False
            return
        if not self.degraded:
            logger.warning(f"Vector index {action} failed, entering degraded mode: {error}")
        self.degraded = True

    async def add(self, memory_id: str, vector: Sequence[float]) -> bool:
        try:
            await self.index.add(memory_id, vector)
        except Exception as e:
            self._mark(False, "add", e)
            return False
        self._mark(True, "add")
        return True

    async def search(self, vector: Sequence[float], k: int) -> List[str]:
        try:
            ids = await self.index.search(vector, k)
        except Exception as e:
            self._mark(False, "search", e)
            return []
        self._mark(True, "search")
        return list(ids)

    async def search_scoped(self,
                            vector: Sequence[float],
                            k: int,
                            load: Callable[[List[str]], Awaitable[Dict[str, Memory]]],
                            keep: Callable[[Memory], bool],
                            max_k: int = MAX_SCOPED_K) -> List[Memory]:
        """
        Up to k nearest memories accepted by ``keep``, nearest first.

        The index is shared by every user, so when other users' vectors crowd
        the top k the query is widened (x4 per round) until k memories pass,
        the index runs out, or max_k is reached.

        Args:
            vector: Query embedding
            k: Number of accepted memories wanted
            load: Hydrates ids into memories (missing ids are dropped)
            keep: Acceptance test, e.g. owner and archived checks
            max_k: Largest index query issued
        """
        fetch = k
        while True:
            ids = await self.search(vector, fetch)
            rows = await load(ids) if ids else {}
            kept = [rows[i] for i in ids if i in rows and keep(rows[i])]
            if len(kept) >= k or len(ids) < fetch or fetch >= max_k:
                return kept[:k]
            logger.debug(f"Only {len(kept)}/{k} of {fetch} neighbours usable, widening")
            fetch = min(fetch * 4, max_k)
