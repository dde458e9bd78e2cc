"""
Tests for the HNSW vector index.
"""

import numpy as np
import pytest

from mnemos.storage.ann_index import HNSWVectorIndex


def random_vectors(n, dim=32, seed=0):
    rng = np.random.default_rng(seed)
    vectors = rng.standard_normal((n, dim))
    return vectors / np.linalg.norm(vectors, axis=1, keepdims=True)


class TestHNSWVectorIndex:

    def test_empty_index_returns_nothing(self):
        index = HNSWVectorIndex()
        assert index.search_sync([0.1] * 8, k=5) == []
        assert len(index) == 0

    def test_nearest_neighbour_is_itself(self):
        index = HNSWVectorIndex()
        vectors = random_vectors(50)
        for i, vec in enumerate(vectors):
            index.add_sync(f"m{i}", vec.tolist())

        results = index.search_sync(vectors[17].tolist(), k=3)

        assert results[0][0] == "m17"
        assert results[0][1] == pytest.approx(1.0, abs=1e-4)
        assert len(results) == 3

    def test_readding_is_a_noop(self):
        index = HNSWVectorIndex()
        vec = random_vectors(1)[0].tolist()
        index.add_sync("m1", vec)
        index.add_sync("m1", vec)
        assert len(index) == 1
        assert "m1" in index

    def test_dimension_mismatch_raises(self):
        index = HNSWVectorIndex(dim=4)
        with pytest.raises(ValueError):
            index.add_sync("m1", [0.1, 0.2])

    def test_capacity_grows(self):
        index = HNSWVectorIndex()
        index.INITIAL_CAPACITY = 4
        for i, vec in enumerate(random_vectors(10, dim=8)):
            index.add_sync(f"m{i}", vec.tolist())
        assert len(index) == 10

    @pytest.mark.asyncio
    async def test_async_interface(self):
        index = HNSWVectorIndex()
        vectors = random_vectors(5)
        for i, vec in enumerate(vectors):
            await index.add(f"m{i}", vec)

        ids = await index.search(vectors[2], k=2)

        assert ids[0] == "m2"

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "vectors.hnsw"
        index = HNSWVectorIndex(path)
        vectors = random_vectors(20)
        for i, vec in enumerate(vectors):
            index.add_sync(f"m{i}", vec.tolist())
        index.save()

        reloaded = HNSWVectorIndex(path)

        assert len(reloaded) == 20
        assert reloaded.search_sync(vectors[5].tolist(), k=1)[0][0] == "m5"

    def test_corrupt_files_leave_empty_index(self, tmp_path):
        path = tmp_path / "vectors.hnsw"
        path.write_bytes(b"not an index")
        path.with_suffix(".npz").write_bytes(b"garbage")

        index = HNSWVectorIndex(path)

        assert len(index) == 0

    def test_rebuild(self):
        index = HNSWVectorIndex()
        index.add_sync("stale", random_vectors(1, seed=9)[0].tolist())
        vectors = random_vectors(8)

        count = index.rebuild([(f"m{i}", vec.tolist()) for i, vec in enumerate(vectors)])

        assert count == 8
        assert "stale" not in index
        assert index.search_sync(vectors[3].tolist(), k=1)[0][0] == "m3"

    def test_reconcile_adds_vectors_missing_after_crash(self, tmp_path):
        path = tmp_path / "vectors.hnsw"
        vectors = random_vectors(3)
        index = HNSWVectorIndex(path)
        index.add_sync("m0", vectors[0].tolist())
        index.save()
        # m1 and m2 were indexed after the last save and lost with the process
        stored = [(f"m{i}", vec.tolist()) for i, vec in enumerate(vectors)]

        reloaded = HNSWVectorIndex(path)
        added = reloaded.reconcile(stored)

        assert added == 2
        assert len(reloaded) == 3
        assert reloaded.search_sync(vectors[2].tolist(), k=1)[0][0] == "m2"
        assert reloaded.reconcile(stored) == 0

    def test_reconcile_rebuilds_empty_index(self):
        index = HNSWVectorIndex()
        vectors = random_vectors(4)

        assert index.reconcile([(f"m{i}", vec.tolist()) for i, vec in enumerate(vectors)]) == 4
        assert "m3" in index
