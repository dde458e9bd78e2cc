"""
Data models for the memory row store.

This module contains the core dataclasses representing memories, entities and
the relations between them, plus the vocabularies each field accepts.
"""

import json
from datetime import datetime
from typing import List, Optional, Dict, Any, Set
from dataclasses import dataclass, field


SECTORS = ("episodic", "semantic", "factual", "procedural", "reflective")
ENTITY_TYPES = ("person", "project", "place", "preference", "topic")
RELATION_TYPES = ("prefers", "knows", "updated_from", "part_of", "contradicts", "co_occurs")

# Sectors that bypass dedup/contradiction resolution
UNRESOLVED_SECTORS = {"episodic", "reflective"}

# Sectors where a near-match is treated as a factual update
CONTRADICTION_SECTORS = {"factual", "semantic"}


def clamp_strength(value: float) -> float:
    """Clamp a strength value into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Memory:
    """A unit of remembered content owned by one user."""
    id: str
    user_id: str
    content: str
    sector: str = "semantic"  # episodic | semantic | factual | procedural | reflective
    summary: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    session_key: Optional[str] = None
    event_at: Optional[datetime] = None
    remembered_at: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    strength: float = 1.0
    recall_count: int = 0
    last_recalled_at: Optional[datetime] = None
    last_decayed_at: Optional[datetime] = None
    archived: bool = False
    embedding: Optional[List[float]] = None

    def __post_init__(self):
        if self.remembered_at is None:
            self.remembered_at = datetime.now()
        if self.event_at is None:
            self.event_at = self.remembered_at
        self.strength = clamp_strength(self.strength)

    @property
    def text(self) -> str:
        """Summary when one exists, content otherwise."""
        return self.summary or self.content

    def has_tag(self, tag: str) -> bool:
        wanted = tag.strip().lower()
        return any(t.lower() == wanted for t in self.tags)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization (embedding omitted)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "sector": self.sector,
            "content": self.content,
            "summary": self.summary,
            "tags": list(self.tags),
            "session_key": self.session_key,
            "event_at": _iso(self.event_at),
            "remembered_at": _iso(self.remembered_at),
            "valid_until": _iso(self.valid_until),
            "strength": self.strength,
            "recall_count": self.recall_count,
            "last_recalled_at": _iso(self.last_recalled_at),
            "archived": self.archived,
        }


@dataclass
class Entity:
    """A named thing the user has mentioned."""
    id: str
    user_id: str
    type: str  # person | project | place | preference | topic
    name: str
    attributes: Optional[Dict[str, str]] = None
    merged_into: Optional[str] = None
    created_at: datetime = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now()

    def attributes_json(self) -> Optional[str]:
        return json.dumps(self.attributes) if self.attributes else None


@dataclass
class Relation:
    """A directed edge from an entity to another entity or to a memory."""
    id: str
    from_entity: str
    relation: str  # prefers | knows | updated_from | part_of | contradicts | co_occurs
    to_entity: Optional[str] = None
    to_memory: Optional[str] = None
    created_at: datetime = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now()

    def validate(self) -> None:
        if self.relation not in RELATION_TYPES:
            raise ValueError(f"Invalid relation: {self.relation}. Must be one of: {set(RELATION_TYPES)}")
        if (self.to_entity is None) == (self.to_memory is None):
            raise ValueError("Relation must target exactly one of to_entity / to_memory")


@dataclass
class MemoryFilter:
    """Filters accepted by RowStore.list_by_user."""
    sectors: Optional[Set[str]] = None
    min_strength: Optional[float] = None
    tag: Optional[str] = None
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    include_archived: bool = False
    order: str = "strength"  # strength | recent
    limit: int = 100
