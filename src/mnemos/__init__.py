"""
Mnemos - long-term memory engine for personal assistants.

Turns conversational text into ranked, decaying, interlinked memories that can
be recalled semantically.
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .config import MemoryConfig, load_config
from .event_bus import EventBus
from .service import MemoryService, UserProfile
from .storage import Memory, Entity, Relation, RowStore
from .storage.ann_index import HNSWVectorIndex

__all__ = [
    "MemoryConfig", "load_config",
    "EventBus",
    "MemoryService", "UserProfile",
    "Memory", "Entity", "Relation", "RowStore",
    "HNSWVectorIndex",
]
