"""Pytest fixtures for Mnemos tests: deterministic providers and in-memory services."""
import hashlib
import re
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest
import pytest_asyncio

from mnemos.config import MemoryConfig
from mnemos.decay import Insight
from mnemos.event_bus import EventBus
from mnemos.graph import ExtractedEntity
from mnemos.service import MemoryService
from mnemos.storage.row_store import RowStore

DIM = 64


def _hash_vector(text: str) -> np.ndarray:
    seed = int.from_bytes(hashlib.sha256(text.encode()).digest()[:4], "little")
    vec = np.random.default_rng(seed).standard_normal(DIM)
    return vec / np.linalg.norm(vec)


class FakeEmbedder:
    """
    Deterministic embedder.

    Unrelated texts get pseudo-random unit vectors (near-orthogonal in 64
    dims); set_similar() pins the exact cosine between two texts.
    """

    def __init__(self):
        self._vectors: Dict[str, np.ndarray] = {}
        self.calls = 0
        self.fail = False

    def vector(self, text: str) -> np.ndarray:
        if text not in self._vectors:
            self._vectors[text] = _hash_vector(text)
        return self._vectors[text]

    def set_similar(self, text: str, to: str, similarity: float) -> None:
        base = self.vector(to)
        noise = _hash_vector("orthogonal:" + text)
        noise = noise - np.dot(noise, base) * base
        noise = noise / np.linalg.norm(noise)
        self._vectors[text] = similarity * base + np.sqrt(1 - similarity ** 2) * noise

    async def embed_one(self, text: str) -> List[float]:
        vectors = await self.embed([text])
        return vectors[0]

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding provider down")
        return [self.vector(t).tolist() for t in texts]


class FakeVectorIndex:
    """Brute-force cosine index; fail=True makes every call raise."""

    def __init__(self):
        self.vectors: Dict[str, np.ndarray] = {}
        self.fail = False

    async def add(self, memory_id: str, vector: Sequence[float]) -> None:
        if self.fail:
            raise ConnectionError("vector index unreachable")
        self.vectors[memory_id] = np.array(vector, dtype=float)

    async def search(self, vector: Sequence[float], k: int) -> List[str]:
        if self.fail:
            raise ConnectionError("vector index unreachable")
        query = np.array(vector, dtype=float)
        scored = sorted(
            self.vectors.items(),
            key=lambda item: float(np.dot(item[1], query) / (np.linalg.norm(item[1]) * np.linalg.norm(query))),
            reverse=True,
        )
        return [memory_id for memory_id, _ in scored[:k]]


class FakeExtractor:
    """Returns the configured entities whose keyword appears as a whole word."""

    def __init__(self, keywords: Optional[Dict[str, List[ExtractedEntity]]] = None):
        self.keywords = keywords or {}
        self.calls: List[str] = []
        self.fail = False

    async def extract(self, text: str) -> List[ExtractedEntity]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("extractor down")
        found = []
        for keyword, entities in self.keywords.items():
            if re.search(rf"\b{re.escape(keyword)}\b", text, re.IGNORECASE):
                found.extend(entities)
        return found


class FakeReflector:
    def __init__(self, insights: Optional[List[Insight]] = None):
        self.insights = insights or []
        self.batches: List[list] = []
        self.fail = False

    async def reflect(self, memories) -> List[Insight]:
        self.batches.append(list(memories))
        if self.fail:
            raise RuntimeError("deep model down")
        return list(self.insights)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_index():
    return FakeVectorIndex()


@pytest.fixture
def extractor():
    return FakeExtractor({
        "rust": [ExtractedEntity(type="topic", name="Rust")],
        "go": [ExtractedEntity(type="topic", name="Go")],
        "alice": [ExtractedEntity(type="person", name="Alice")],
        "bob": [ExtractedEntity(type="person", name="Bob")],
        "mnemos": [ExtractedEntity(type="project", name="Mnemos")],
        "coffee": [ExtractedEntity(type="preference", name="coffee")],
    })


@pytest.fixture
def reflector():
    return FakeReflector()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def memory_config(tmp_path):
    return MemoryConfig(base_path=tmp_path, db_path=":memory:", background_mode="sync")


@pytest_asyncio.fixture
async def row_store():
    store = await RowStore.open(":memory:")
    yield store
    await store.close()


@pytest_asyncio.fixture
async def service(row_store, vector_index, embedder, extractor, reflector, memory_config, event_bus):
    svc = MemoryService(
        row_store=row_store,
        vector_index=vector_index,
        embedder=embedder,
        extractor=extractor,
        reflector=reflector,
        config=memory_config,
        event_bus=event_bus,
    )
    yield svc
    await svc.queue.close()
