"""
ANN (Approximate Nearest Neighbor) Vector Index for memory recall.

This module provides fast vector similarity search using HNSW (Hierarchical Navigable Small World):
- add: Incrementally add embeddings to the index
- search: k-nearest neighbor search with cosine distance, returns memory ids
- save/load: Persist index next to the SQLite database
- rebuild: Repopulate the index from embeddings stored in the row store

The engine talks to it through async methods; the blocking hnswlib calls run
in a worker thread.
"""

import asyncio
import threading
from pathlib import Path
from typing import List, Tuple, Optional, Union, Sequence

import numpy as np
import hnswlib


class HNSWVectorIndex:
    """
    Approximate Nearest Neighbor index using HNSW.

    Provides:
    - HNSW indexing with capacity doubling as memories accumulate
    - Disk persistence (index file plus an .npz id map)
    - Dimension auto-detected from the first vector
    - Thread-safe operations
    """

    # HNSW parameters for good balance of speed/accuracy/memory
    M = 16  # Number of bi-directional links per element
    EF_CONSTRUCTION = 200  # Size of dynamic candidate list during construction
    EF_SEARCH = 50  # Size of dynamic candidate list during search

    # Initial capacity for the index (will grow as needed)
    INITIAL_CAPACITY = 1024

    def __init__(self, index_path: Optional[Union[str, Path]] = None, dim: Optional[int] = None):
        """
        Initialize the index.

        Args:
            index_path: Path of the .hnsw file; None keeps the index in memory only
            dim: Embedding dimension. Auto-detected from first embedding if None.
        """
        self.index_path = Path(index_path) if index_path else None
        self.dim = dim

        # Thread lock for serializing index operations
        self._lock = threading.Lock()

        self._index: Optional[hnswlib.Index] = None
        self._id_map = {}  # Maps memory_id to index label
        self._reverse_id_map = {}  # Maps index label to memory_id
        self._current_size = 0
        self._max_capacity = 0

        if self.index_path is not None:
            self.load()

    def _init_index(self, dim: int, initial_capacity: Optional[int] = None) -> None:
        if initial_capacity is None:
            initial_capacity = self.INITIAL_CAPACITY

        self.dim = dim
        self._max_capacity = initial_capacity

        self._index = hnswlib.Index(space='cosine', dim=dim)
        self._index.init_index(
            max_elements=initial_capacity,
            ef_construction=self.EF_CONSTRUCTION,
            M=self.M
        )
        self._index.set_ef(self.EF_SEARCH)

    def add_sync(self, memory_id: str, embedding: Sequence[float]) -> None:
        """
        Add a single embedding to the index.

        Raises:
            ValueError: If embedding dimension doesn't match index dimension
        """
        with self._lock:
            if self._index is None:
                self._init_index(self.dim or len(embedding))

            if len(embedding) != self.dim:
                raise ValueError(
                    f"Embedding dimension {len(embedding)} doesn't match index dimension {self.dim}"
                )

            # Re-adding a memory is a no-op (detached indexing is at-least-once)
            if memory_id in self._id_map:
                return

            if self._current_size >= self._max_capacity:
                self._max_capacity *= 2
                self._index.resize_index(self._max_capacity)

            label = self._current_size
            self._index.add_items(np.array(embedding, dtype=np.float32).reshape(1, -1), [label])

            self._id_map[memory_id] = label
            self._reverse_id_map[label] = memory_id
            self._current_size += 1

    def search_sync(self, query_embedding: Sequence[float], k: int = 10) -> List[Tuple[str, float]]:
        """
        Search for k nearest neighbors.

        Returns:
            List of (memory_id, similarity_score) tuples, most similar first
        """
        with self._lock:
            if self._index is None or self._current_size == 0:
                return []

            if len(query_embedding) != self.dim:
                raise ValueError(
                    f"Query dimension {len(query_embedding)} doesn't match index dimension {self.dim}"
                )

            k = min(k, self._current_size)
            query_array = np.array(query_embedding, dtype=np.float32).reshape(1, -1)

            # hnswlib returns cosine distance (1 - cosine_similarity)
            labels, distances = self._index.knn_query(query_array, k=k)

            results = []
            for label, dist in zip(labels[0], distances[0]):
                memory_id = self._reverse_id_map.get(int(label))
                if memory_id is not None:
                    results.append((memory_id, 1.0 - float(dist)))
            return results

    async def add(self, memory_id: str, vector: Sequence[float]) -> None:
        await asyncio.to_thread(self.add_sync, memory_id, list(vector))

    async def search(self, vector: Sequence[float], k: int) -> List[str]:
        results = await asyncio.to_thread(self.search_sync, list(vector), k)
        return [memory_id for memory_id, _ in results]

    def __contains__(self, memory_id: str) -> bool:
        return memory_id in self._id_map

    def __len__(self) -> int:
        return self._current_size

    def _mapping_path(self) -> Path:
        return self.index_path.with_suffix('.npz')

    def save(self) -> None:
        """Persist index to disk (no-op for in-memory indexes)."""
        with self._lock:
            if self.index_path is None or self._index is None:
                return
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            self._index.save_index(str(self.index_path))
            np.savez(
                self._mapping_path(),
                id_map_keys=np.array(list(self._id_map.keys()), dtype=str),
                id_map_values=np.array(list(self._id_map.values()), dtype=np.int64),
                current_size=self._current_size,
                max_capacity=self._max_capacity,
                dim=self.dim
            )

    def load(self) -> bool:
        """
        Load index from disk if it exists.

        Returns:
            True if index was loaded, False otherwise (the index stays empty)
        """
        if self.index_path is None or not self.index_path.exists() or not self._mapping_path().exists():
            return False

        with self._lock:
            try:
                data = np.load(self._mapping_path())
                dim = int(data['dim'])
                max_capacity = int(data['max_capacity'])

                index = hnswlib.Index(space='cosine', dim=dim)
                index.load_index(str(self.index_path), max_elements=max_capacity)
                index.set_ef(self.EF_SEARCH)

                self._id_map = {str(k): int(v) for k, v in zip(data['id_map_keys'], data['id_map_values'])}
                self._reverse_id_map = {v: k for k, v in self._id_map.items()}
                self._current_size = int(data['current_size'])
                self._max_capacity = max_capacity
                self._index = index
                self.dim = dim
                return True
            except (OSError, ValueError, KeyError, RuntimeError):
                self._index = None
                self._id_map = {}
                self._reverse_id_map = {}
                self._current_size = 0
                self._max_capacity = 0
                return False

    def reconcile(self, embeddings: List[Tuple[str, List[float]]]) -> int:
        """
        Bring the index up to date with the embeddings stored in the row store.

        An empty index is rebuilt in one batch; otherwise vectors whose ids the
        index does not know (indexed after the last save) are added.

        Returns:
            Number of vectors added
        """
        if self._current_size == 0:
            return self.rebuild(embeddings)
        added = 0
        for memory_id, embedding in embeddings:
            if memory_id in self._id_map or len(embedding) != self.dim:
                continue
            self.add_sync(memory_id, embedding)
            added += 1
        return added

    def rebuild(self, embeddings: List[Tuple[str, List[float]]]) -> int:
        """
        Rebuild index from scratch with a batch of embeddings.

        Args:
            embeddings: List of (memory_id, embedding) tuples

        Returns:
            Number of vectors indexed
        """
        with self._lock:
            self._index = None
            self._id_map = {}
            self._reverse_id_map = {}
            self._current_size = 0
            if not embeddings:
                return 0

            dim = len(embeddings[0][1])
            usable = [(mid, emb) for mid, emb in embeddings if len(emb) == dim]
            self._init_index(dim, max(len(usable), self.INITIAL_CAPACITY))

            matrix = np.array([emb for _, emb in usable], dtype=np.float32)
            self._index.add_items(matrix, np.arange(len(usable)))
            for label, (memory_id, _) in enumerate(usable):
                self._id_map[memory_id] = label
                self._reverse_id_map[label] = memory_id
            self._current_size = len(usable)
            return self._current_size
