"""
Tests for decay and reflection maintenance jobs.
"""

from datetime import datetime, timedelta

import pytest

from mnemos.decay import (
    Insight,
    compute_decayed_strength,
    decay_state_key,
    parse_insights,
    reflect_state_key,
    reinforced_strength,
    run_decay,
    run_reflection,
    should_run_decay,
    should_run_reflection,
)
from mnemos.storage.models import Memory, MemoryFilter

NOW = datetime(2025, 6, 15, 12, 0)


def memory(memory_id, sector="semantic", strength=1.0, age_days=0.0, **kwargs):
    return Memory(id=memory_id, user_id="u1", content=f"content of {memory_id}", sector=sector,
                  strength=strength, remembered_at=NOW - timedelta(days=age_days), **kwargs)


class TestStrengthMath:

    @pytest.mark.parametrize("sector,half_life", [
        ("episodic", 7), ("semantic", 60), ("factual", 365), ("procedural", 90), ("reflective", 180),
    ])
    def test_one_half_life_halves_strength(self, sector, half_life):
        m = memory("m", sector=sector, age_days=half_life)
        assert compute_decayed_strength(m, now=NOW) == pytest.approx(0.5)

    def test_aggressiveness_shortens_half_life(self):
        m = memory("m", sector="episodic", age_days=7)
        assert compute_decayed_strength(m, aggressiveness=2.0, now=NOW) == pytest.approx(0.25)

    def test_reference_time_is_latest_touch(self):
        m = memory("m", sector="episodic", age_days=30, last_recalled_at=NOW - timedelta(days=7))
        assert compute_decayed_strength(m, now=NOW) == pytest.approx(0.5)

    def test_future_reference_does_not_grow(self):
        m = memory("m", strength=0.4, age_days=-1)
        assert compute_decayed_strength(m, now=NOW) == pytest.approx(0.4)

    def test_reinforced_strength(self):
        assert reinforced_strength(0.5) == pytest.approx(0.65)
        assert reinforced_strength(1.0) == 1.0
        assert reinforced_strength(0.0) == pytest.approx(0.3)


class TestRunDecay:

    @pytest.mark.asyncio
    async def test_decays_and_archives(self, row_store):
        await row_store.memories.insert(memory("fresh", age_days=0))
        await row_store.memories.insert(memory("aging", sector="episodic", age_days=7))
        await row_store.memories.insert(memory("stale", sector="episodic", strength=0.2, age_days=21))

        result = await run_decay(row_store, "u1", archive_threshold=0.05, now=NOW)

        assert result == {"archived": 1, "reinforced": 0, "decayed": 1}
        assert (await row_store.memories.get_by_id("aging")).strength == pytest.approx(0.5)
        assert (await row_store.memories.get_by_id("fresh")).strength == 1.0
        assert (await row_store.memories.get_by_id("stale")).archived is True

    @pytest.mark.asyncio
    async def test_strengths_stay_in_bounds(self, row_store):
        for i, age in enumerate([0, 1, 10, 100, 1000]):
            await row_store.memories.insert(memory(f"m{i}", sector="factual", age_days=age))

        await run_decay(row_store, "u1", now=NOW)

        rows = await row_store.memories.list_by_user("u1", MemoryFilter(include_archived=True))
        assert all(0.0 <= m.strength <= 1.0 for m in rows)

    @pytest.mark.asyncio
    async def test_consecutive_passes_do_not_compound(self, row_store):
        await row_store.memories.insert(memory("m", sector="episodic", age_days=7))

        await run_decay(row_store, "u1", now=NOW)
        await run_decay(row_store, "u1", now=NOW)
        assert (await row_store.memories.get_by_id("m")).strength == pytest.approx(0.5)

        await run_decay(row_store, "u1", now=NOW + timedelta(days=7))
        assert (await row_store.memories.get_by_id("m")).strength == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_counts_recalled_memories_as_reinforced(self, row_store):
        await row_store.memories.insert(memory("m", age_days=3))
        await row_store.memories.update_strength("m", 1.0, now=NOW - timedelta(hours=1))

        result = await run_decay(row_store, "u1", now=NOW)
        assert result["reinforced"] == 1

        result = await run_decay(row_store, "u1", now=NOW + timedelta(days=1))
        assert result["reinforced"] == 0

    @pytest.mark.asyncio
    async def test_records_last_run(self, row_store):
        await run_decay(row_store, "u1", now=NOW)
        assert await row_store.state.get_datetime(decay_state_key("u1")) == NOW


class TestThrottles:

    @pytest.mark.asyncio
    async def test_decay_interval(self, row_store):
        assert await should_run_decay(row_store, "u1", 23, now=NOW) is True
        await row_store.state.set_datetime(decay_state_key("u1"), NOW)
        assert await should_run_decay(row_store, "u1", 23, now=NOW + timedelta(hours=22)) is False
        assert await should_run_decay(row_store, "u1", 23, now=NOW + timedelta(hours=23)) is True

    @pytest.mark.asyncio
    async def test_reflection_schedule(self, row_store):
        assert await should_run_reflection(row_store, "u1", "never", now=NOW) is False
        assert await should_run_reflection(row_store, "u1", "weekly", now=NOW) is True

        await row_store.state.set_datetime(reflect_state_key("u1"), NOW)
        later = NOW + timedelta(days=2)
        assert await should_run_reflection(row_store, "u1", "daily", now=later) is True
        assert await should_run_reflection(row_store, "u1", "weekly", now=later) is False


class RecordingInsert:
    def __init__(self):
        self.calls = []

    async def __call__(self, user_id, content, sector, tags):
        self.calls.append((user_id, content, sector, tags))
        return f"mem_{len(self.calls)}"


class TestReflection:

    async def _seed_episodics(self, row_store, count, age_days=10):
        for i in range(count):
            await row_store.memories.insert(memory(f"ep{i:02d}", sector="episodic",
                                                   strength=0.1 + i * 0.01, age_days=age_days))

    @pytest.mark.asyncio
    async def test_compresses_full_batches_only(self, row_store, reflector):
        await self._seed_episodics(row_store, 12)
        reflector.insights = [
            Insight("User prefers morning meetings"),
            Insight("short"),
            Insight("User is learning Portuguese", sector="semantic"),
            Insight("User travels to Lisbon often"),
            Insight("User dislikes long email threads"),
            Insight("User keeps a running journal"),
        ]
        insert = RecordingInsert()

        result = await run_reflection(row_store, reflector, insert, "u1", now=NOW)

        assert len(reflector.batches) == 1
        assert len(reflector.batches[0]) == 10
        assert result == {"reflected": 4, "compressed": 10}
        assert [c[1] for c in insert.calls] == [
            "User prefers morning meetings",
            "User is learning Portuguese",
            "User travels to Lisbon often",
            "User dislikes long email threads",
        ]
        assert all(c[3] == ["auto-reflection"] for c in insert.calls)
        assert [c[2] for c in insert.calls] == ["reflective", "semantic", "reflective", "reflective"]

        live = await row_store.memories.list_by_user("u1", MemoryFilter(sectors={"episodic"}))
        # Weakest ten were summarized; the two strongest stay live
        assert sorted(m.id for m in live) == ["ep10", "ep11"]

    @pytest.mark.asyncio
    async def test_recent_episodics_are_not_reflected(self, row_store, reflector):
        await self._seed_episodics(row_store, 8, age_days=2)

        result = await run_reflection(row_store, reflector, RecordingInsert(), "u1", now=NOW)

        assert reflector.batches == []
        assert result == {"reflected": 0, "compressed": 0}
        assert await row_store.state.get_datetime(reflect_state_key("u1")) == NOW

    @pytest.mark.asyncio
    async def test_reflector_failure_keeps_batch(self, row_store, reflector):
        await self._seed_episodics(row_store, 6)
        reflector.fail = True

        result = await run_reflection(row_store, reflector, RecordingInsert(), "u1", now=NOW)

        assert result == {"reflected": 0, "compressed": 0}
        assert len(await row_store.memories.list_by_user("u1")) == 6

    @pytest.mark.asyncio
    async def test_failed_insight_stores_keep_batch(self, row_store, reflector):
        await self._seed_episodics(row_store, 6)
        reflector.insights = [Insight("User prefers morning meetings"), Insight("User is learning Portuguese")]
        calls = []

        async def failing_insert(user_id, content, sector, tags):
            calls.append(content)
            return None

        result = await run_reflection(row_store, reflector, failing_insert, "u1", now=NOW)

        assert len(calls) == 2
        assert result == {"reflected": 0, "compressed": 0}
        assert len(await row_store.memories.list_by_user("u1")) == 6

    @pytest.mark.asyncio
    async def test_partially_stored_insights_are_counted(self, row_store, reflector):
        await self._seed_episodics(row_store, 5)
        reflector.insights = [Insight("User prefers morning meetings"), Insight("User is learning Portuguese")]

        async def insert_first_only(user_id, content, sector, tags):
            return "mem_ok" if "morning" in content else None

        result = await run_reflection(row_store, reflector, insert_first_only, "u1", now=NOW)

        assert result == {"reflected": 1, "compressed": 5}

    @pytest.mark.asyncio
    async def test_service_reflect_stores_insights(self, service, row_store, reflector, event_bus):
        events = []
        event_bus.subscribe("maintenance.reflection_completed", events.append)
        old = datetime.now() - timedelta(days=10)
        for i in range(5):
            await row_store.memories.insert(Memory(id=f"ep{i}", user_id="u1", content=f"episode {i}",
                                                   sector="episodic", remembered_at=old))
        reflector.insights = [Insight("User enjoys long weekend hikes")]

        result = await service.reflect("u1")

        assert result == {"reflected": 1, "compressed": 5}
        stored = await row_store.memories.list_by_user("u1", MemoryFilter(tag="auto-reflection"))
        assert [m.content for m in stored] == ["User enjoys long weekend hikes"]
        assert stored[0].sector == "reflective"
        assert len(events) == 1


def test_parse_insights():
    insights = parse_insights([
        " User likes tea ",
        {"content": "User runs marathons", "sector": "semantic"},
        {"insight": "User avoids meetings", "sector": "episodic"},
        {"nothing": 1},
        42,
    ])
    assert [(i.content, i.sector) for i in insights] == [
        ("User likes tea", "reflective"),
        ("User runs marathons", "semantic"),
        ("User avoids meetings", "reflective"),
    ]
