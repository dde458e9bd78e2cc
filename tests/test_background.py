"""Tests for the detached post-insert work queue."""

import asyncio

import pytest

from mnemos.background import BackgroundQueue


class TestBackgroundQueue:

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            BackgroundQueue(mode="threads")

    @pytest.mark.asyncio
    async def test_sync_mode_runs_inline(self):
        queue = BackgroundQueue(mode="sync")
        done = []

        async def job():
            done.append(1)

        await queue.submit(job)

        assert done == [1]
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_background_mode_drains(self):
        queue = BackgroundQueue(mode="background", workers=2, maxsize=4)
        done = []

        def make_job(i):
            async def job():
                await asyncio.sleep(0)
                done.append(i)
            return job

        for i in range(10):
            await queue.submit(make_job(i), name=f"job {i}")
        await queue.drain()

        assert sorted(done) == list(range(10))
        await queue.close()

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self):
        queue = BackgroundQueue(mode="background", workers=1)
        done = []

        async def bad():
            raise RuntimeError("provider down")

        async def good():
            done.append("ok")

        await queue.submit(bad, name="bad")
        await queue.submit(good, name="good")
        await queue.close()

        assert queue.failed == 1
        assert done == ["ok"]

    @pytest.mark.asyncio
    async def test_sync_mode_failure_is_swallowed(self):
        queue = BackgroundQueue(mode="sync")

        async def bad():
            raise ValueError("bad input")

        await queue.submit(bad)

        assert queue.failed == 1

    @pytest.mark.asyncio
    async def test_close_without_jobs(self):
        queue = BackgroundQueue()
        await queue.close()
        assert queue.pending == 0


@pytest.mark.asyncio
async def test_service_background_mode_indexes_after_drain(row_store, vector_index, embedder,
                                                           extractor, reflector, memory_config):
    from mnemos.service import MemoryService

    memory_config.background_mode = "background"
    service = MemoryService(row_store, vector_index, embedder, extractor, reflector, memory_config)

    memory_id = await service.store("u1", "Alice is planning a trip to Kyoto")
    await service.drain()

    assert memory_id in vector_index.vectors
    assert await row_store.graph.list_relations_for_memory(memory_id)
    await service.queue.close()
