"""
Decay & Reflection - maintenance jobs for memory strength.

Decay: strength halves every half_life[sector] / aggressiveness days since the
memory was last touched (recalled, decayed or created). Memories that fall
below archive_threshold are archived.

Reflection: old episodic memories are summarized by the deep LLM into a few
long-term insights, which are stored through the normal resolver; the
summarized episodics are archived.

Both jobs throttle themselves through per-user timestamps in the state table.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

from .llm import ChatClient, LLMError, parse_json_array
from .storage.models import Memory, clamp_strength
from .storage.row_store import RowStore

logger = logging.getLogger(__name__)

HALF_LIVES_DAYS = {
    "episodic": 7,
    "semantic": 60,
    "factual": 365,
    "procedural": 90,
    "reflective": 180,
}

REINFORCE_FACTOR = 0.3
MIN_STRENGTH_CHANGE = 0.001
MAX_INSIGHTS_PER_BATCH = 4
MIN_INSIGHT_CHARS = 10
REFLECTION_TAG = "auto-reflection"
INSIGHT_SECTORS = {"semantic", "reflective"}

REFLECTION_PROMPT = """You are summarizing episodic memories into long-term insights.
Below are {count} episodic memories. Extract 2-4 meaningful semantic insights
(preferences, patterns, important facts) that should be remembered long-term.
Write each insight as a single clear sentence. Return as a JSON array of strings.

Memories:
{memories}

JSON array of insights:"""


def decay_state_key(user_id: str) -> str:
    return f"last_decay_{user_id}"


def reflect_state_key(user_id: str) -> str:
    return f"last_reflect_{user_id}"


def reinforced_strength(strength: float) -> float:
    """Move strength 30% of the way toward 1.0."""
    return clamp_strength(strength + (1.0 - strength) * REINFORCE_FACTOR)


def decay_reference_time(memory: Memory) -> datetime:
    """Latest of last recall, last decay pass and creation."""
    stamps = [t for t in (memory.last_recalled_at, memory.last_decayed_at, memory.remembered_at) if t]
    return max(stamps)


def compute_decayed_strength(memory: Memory, aggressiveness: float = 1.0,
                             now: Optional[datetime] = None) -> float:
    """
    Exponential decay since the reference time.

    S' = S * 0.5 ^ (days / (half_life / aggressiveness))
    """
    now = now or datetime.now()
    half_life = HALF_LIVES_DAYS.get(memory.sector, HALF_LIVES_DAYS["semantic"]) / aggressiveness
    days = max(0.0, (now - decay_reference_time(memory)).total_seconds() / 86400)
    return clamp_strength(memory.strength * 0.5 ** (days / half_life))


async def run_decay(row_store: RowStore, user_id: str, archive_threshold: float = 0.05,
                    aggressiveness: float = 1.0, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    One decay pass over a user's live memories.

    Returns:
        Dict with archived, decayed (strength rewritten) and reinforced
        (retained memories recalled since the previous pass)
    """
    now = now or datetime.now()
    previous_run = await row_store.state.get_datetime(decay_state_key(user_id))

    to_archive: List[str] = []
    decayed = 0
    reinforced = 0
    for memory in await row_store.memories.get_for_decay(user_id):
        new_strength = compute_decayed_strength(memory, aggressiveness, now)
        if new_strength < archive_threshold:
            to_archive.append(memory.id)
            continue

        if memory.last_recalled_at and (previous_run is None or memory.last_recalled_at > previous_run):
            reinforced += 1
        if abs(new_strength - memory.strength) > MIN_STRENGTH_CHANGE:
            await row_store.memories.set_strength(memory.id, new_strength, decayed_at=now)
            decayed += 1

    archived = await row_store.memories.archive_batch(to_archive) if to_archive else 0
    await row_store.state.set_datetime(decay_state_key(user_id), now)

    logger.info(f"Decay user={user_id} decayed={decayed} archived={archived} reinforced={reinforced}")
    return {"archived": archived, "reinforced": reinforced, "decayed": decayed}


async def should_run_decay(row_store: RowStore, user_id: str, interval_hours: float = 23,
                           now: Optional[datetime] = None) -> bool:
    last_run = await row_store.state.get_datetime(decay_state_key(user_id))
    if last_run is None:
        return True
    hours_since = ((now or datetime.now()) - last_run).total_seconds() / 3600
    return hours_since >= interval_hours


async def should_run_reflection(row_store: RowStore, user_id: str, schedule: str = "weekly",
                                now: Optional[datetime] = None) -> bool:
    if schedule == "never":
        return False
    last_run = await row_store.state.get_datetime(reflect_state_key(user_id))
    if last_run is None:
        return True
    days_since = ((now or datetime.now()) - last_run).total_seconds() / 86400
    return days_since >= (1 if schedule == "daily" else 7)


@dataclass
class Insight:
    content: str
    sector: str = "reflective"


@runtime_checkable
class Reflector(Protocol):
    async def reflect(self, memories: List[Memory]) -> List[Insight]:
        ...


def parse_insights(raw: List[Any]) -> List[Insight]:
    """Strings become reflective insights; objects may pick semantic or reflective."""
    insights = []
    for item in raw:
        if isinstance(item, str):
            insights.append(Insight(content=item.strip()))
        elif isinstance(item, dict):
            content = item.get("content") or item.get("insight") or item.get("text")
            if not isinstance(content, str):
                continue
            sector = item.get("sector")
            insights.append(Insight(content=content.strip(),
                                    sector=sector if sector in INSIGHT_SECTORS else "reflective"))
    return insights


class LLMReflector:
    """Reflector backed by the deep chat model."""

    def __init__(self, chat: ChatClient, model: str):
        self.chat = chat
        self.model = model

    async def reflect(self, memories: List[Memory]) -> List[Insight]:
        block = "\n".join(
            f"{i}. [{m.event_at.strftime('%Y-%m-%d')}] {m.content}" for i, m in enumerate(memories, 1)
        )
        prompt = REFLECTION_PROMPT.format(count=len(memories), memories=block)
        response = await self.chat.complete(prompt, model=self.model, max_tokens=400, temperature=0.3)
        raw = parse_json_array(response)
        if raw is None:
            raise LLMError("Reflection response contained no JSON array")
        return parse_insights(raw)


InsertFn = Callable[[str, str, str, List[str]], Awaitable[Optional[str]]]


async def run_reflection(row_store: RowStore, reflector: Reflector, insert_fn: InsertFn,
                         user_id: str, batch_size: int = 10, min_batch: int = 5,
                         min_age_days: float = 7, max_candidates: int = 30,
                         now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Compress old episodic memories into reflective insights.

    Args:
        insert_fn: insert_fn(user_id, content, sector, tags), normally the resolver

    Returns:
        Dict with reflected (insights stored) and compressed (episodics archived)
    """
    now = now or datetime.now()
    candidates = await row_store.memories.get_for_reflection(
        user_id, "episodic", min_age_days=min_age_days, limit=max_candidates, now=now
    )

    reflected = 0
    compressed = 0
    for start in range(0, len(candidates), batch_size):
        batch = candidates[start:start + batch_size]
        if len(batch) < min_batch:
            logger.debug(f"Reflection batch of {len(batch)} below minimum {min_batch}, skipped")
            continue
        try:
            insights = await reflector.reflect(batch)
        except Exception as e:
            logger.warning(f"Reflection batch failed for user {user_id}, skipping: {e}")
            continue

        usable = [i for i in insights if len(i.content) > MIN_INSIGHT_CHARS][:MAX_INSIGHTS_PER_BATCH]
        stored = 0
        for insight in usable:
            if await insert_fn(user_id, insight.content, insight.sector, [REFLECTION_TAG]) is not None:
                stored += 1
        reflected += stored
        if not stored:
            logger.warning(f"No insight stored for a batch of {len(batch)} episodics, batch kept live")
            continue
        compressed += await row_store.memories.archive_batch([m.id for m in batch])

    await row_store.state.set_datetime(reflect_state_key(user_id), now)
    logger.info(f"Reflect user={user_id} insights={reflected} compressed={compressed}")
    return {"reflected": reflected, "compressed": compressed}
