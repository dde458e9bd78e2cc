from .models import Memory, Entity, Relation, MemoryFilter, SECTORS, ENTITY_TYPES, RELATION_TYPES
from .row_store import RowStore
from .crud import MemoryCRUD
from .graph_ops import GraphOperations
from .state import StateStore, MessageLog

__all__ = [
    "Memory", "Entity", "Relation", "MemoryFilter",
    "SECTORS", "ENTITY_TYPES", "RELATION_TYPES",
    "RowStore", "MemoryCRUD", "GraphOperations", "StateStore", "MessageLog",
]
