"""
Event type definitions for memory engine observability.

This module defines typed events emitted during memory operations:
- MemoryStoredEvent: When a new memory row is written
- MemoryReinforcedEvent: When a near-duplicate store reinforces an existing memory
- ContradictionDetectedEvent: When a factual update supersedes an older memory
- MemoryRecalledEvent: When memories are recalled
- MemoryArchivedEvent: When a memory is archived outside decay/reflection
- DecayCompletedEvent: When a decay pass finishes
- ReflectionCompletedEvent: When a reflection pass finishes
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class MemoryStoredEvent:
    """Event emitted when a memory is stored."""
    memory_id: str
    user_id: str
    content: str
    sector: str
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "memory.stored"
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "memory_id": self.memory_id,
            "user_id": self.user_id,
            "content": self.content,
            "sector": self.sector,
            "timestamp": _ts(self.timestamp),
            "metadata": self.metadata or {}
        }


@dataclass
class MemoryReinforcedEvent:
    """Event emitted when a store collapses into an existing memory."""
    memory_id: str
    user_id: str
    old_strength: float
    new_strength: float
    similarity: float
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "memory.reinforced"
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "memory_id": self.memory_id,
            "user_id": self.user_id,
            "old_strength": self.old_strength,
            "new_strength": self.new_strength,
            "similarity": self.similarity,
            "timestamp": _ts(self.timestamp),
            "metadata": self.metadata or {}
        }


@dataclass
class ContradictionDetectedEvent:
    """Event emitted when a contradiction is detected."""
    old_memory_id: str
    new_memory_id: str
    user_id: str
    similarity: float
    entity_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "memory.contradiction_detected"
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "old_memory_id": self.old_memory_id,
            "new_memory_id": self.new_memory_id,
            "user_id": self.user_id,
            "similarity": self.similarity,
            "entity_id": self.entity_id,
            "timestamp": _ts(self.timestamp),
            "metadata": self.metadata or {}
        }


@dataclass
class MemoryRecalledEvent:
    """Event emitted when memories are recalled."""
    user_id: str
    query: str
    result_count: int
    top_results: List[Dict[str, Any]] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "memory.recalled"
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "user_id": self.user_id,
            "query": self.query,
            "result_count": self.result_count,
            "top_results": self.top_results,
            "timestamp": _ts(self.timestamp),
            "metadata": self.metadata or {}
        }


@dataclass
class MemoryArchivedEvent:
    """Event emitted when a memory is explicitly archived."""
    memory_id: str
    user_id: Optional[str] = None
    reason: str = "manual"
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "memory.archived"
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "memory_id": self.memory_id,
            "user_id": self.user_id,
            "reason": self.reason,
            "timestamp": _ts(self.timestamp),
            "metadata": self.metadata or {}
        }


@dataclass
class DecayCompletedEvent:
    """Event emitted after a decay pass."""
    user_id: str
    archived: int
    decayed: int
    reinforced: int
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "maintenance.decay_completed"
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "user_id": self.user_id,
            "archived": self.archived,
            "decayed": self.decayed,
            "reinforced": self.reinforced,
            "timestamp": _ts(self.timestamp),
            "metadata": self.metadata or {}
        }


@dataclass
class ReflectionCompletedEvent:
    """Event emitted after a reflection pass."""
    user_id: str
    reflected: int
    compressed: int
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "maintenance.reflection_completed"
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "user_id": self.user_id,
            "reflected": self.reflected,
            "compressed": self.compressed,
            "timestamp": _ts(self.timestamp),
            "metadata": self.metadata or {}
        }


ALL_EVENTS = (
    MemoryStoredEvent,
    MemoryReinforcedEvent,
    ContradictionDetectedEvent,
    MemoryRecalledEvent,
    MemoryArchivedEvent,
    DecayCompletedEvent,
    ReflectionCompletedEvent,
)

# event_type string -> event class
EVENT_TYPES: Dict[str, type] = {cls.event_type: cls for cls in ALL_EVENTS}
