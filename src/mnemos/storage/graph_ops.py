"""
Entity and relation operations for the memory graph.

This module handles the entities and relations tables:
- upsert_entity: create or refresh an entity, unique per (user, type, name)
- insert_relation: append-only, idempotent edge insert
- list_relations_*: edge queries by endpoint
- mark_merged: record a fuzzy-merge outcome without deleting anything
"""

import json
import logging
from datetime import datetime
from typing import List, Optional, Sequence, Any

import aiosqlite

from .models import Entity, Relation, ENTITY_TYPES

logger = logging.getLogger(__name__)

ENTITY_COLUMNS = "id, user_id, type, name, attributes, merged_into, created_at"
RELATION_COLUMNS = "id, from_entity, to_entity, to_memory, relation, created_at"


def _row_to_entity(row: Sequence[Any]) -> Entity:
    return Entity(
        id=row[0],
        user_id=row[1],
        type=row[2],
        name=row[3],
        attributes=json.loads(row[4]) if row[4] else None,
        merged_into=row[5],
        created_at=datetime.fromisoformat(row[6]) if row[6] else None,
    )


def _row_to_relation(row: Sequence[Any]) -> Relation:
    return Relation(
        id=row[0],
        from_entity=row[1],
        to_entity=row[2],
        to_memory=row[3],
        relation=row[4],
        created_at=datetime.fromisoformat(row[5]) if row[5] else None,
    )


class GraphOperations:
    """
    Entity/relation persistence over a shared aiosqlite connection.

    Relations are append-only: inserts use INSERT OR IGNORE keyed on the
    relation id, so replaying the same linking work is harmless.
    """

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    @staticmethod
    def validate_entity_type(entity_type: str) -> None:
        """Validate entity type."""
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Invalid entity type: {entity_type}. Must be one of: {set(ENTITY_TYPES)}")

    async def upsert_entity(self, entity: Entity) -> str:
        """
        Insert an entity or update the existing (user, type, name) row.

        Last write wins on attributes; a None attributes bag leaves the stored
        one untouched.

        Returns:
            The id of the stored row (the pre-existing one on conflict)
        """
        self.validate_entity_type(entity.type)
        existing = await self.find_entity(entity.user_id, entity.type, entity.name)
        if existing is not None:
            if entity.attributes is not None:
                await self._conn.execute(
                    "UPDATE entities SET attributes = ? WHERE id = ?",
                    (entity.attributes_json(), existing.id),
                )
                await self._conn.commit()
            return existing.id

        await self._conn.execute(f"""
            INSERT INTO entities ({ENTITY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                attributes = COALESCE(excluded.attributes, entities.attributes)
        """, (
            entity.id,
            entity.user_id,
            entity.type,
            entity.name,
            entity.attributes_json(),
            None,
            entity.created_at.isoformat(),
        ))
        await self._conn.commit()
        return entity.id

    async def find_entity(self, user_id: str, entity_type: str, name: str) -> Optional[Entity]:
        """Look up an entity by its natural key (name compared case-insensitively)."""
        async with self._conn.execute(f"""
            SELECT {ENTITY_COLUMNS} FROM entities
            WHERE user_id = ? AND type = ? AND name = ? COLLATE NOCASE
        """, (user_id, entity_type, name)) as cursor:
            row = await cursor.fetchone()
        return _row_to_entity(row) if row else None

    async def get_entity(self, entity_id: str) -> Optional[Entity]:
        async with self._conn.execute(
            f"SELECT {ENTITY_COLUMNS} FROM entities WHERE id = ?", (entity_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_entity(row) if row else None

    async def list_entities(self, user_id: str, entity_type: Optional[str] = None,
                            include_merged: bool = True) -> List[Entity]:
        """List a user's entities, oldest first."""
        clauses = ["user_id = ?"]
        params: List[Any] = [user_id]
        if entity_type:
            self.validate_entity_type(entity_type)
            clauses.append("type = ?")
            params.append(entity_type)
        if not include_merged:
            clauses.append("merged_into IS NULL")
        async with self._conn.execute(f"""
            SELECT {ENTITY_COLUMNS} FROM entities
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at ASC, id ASC
        """, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_entity(row) for row in rows]

    async def count_entities(self, user_id: str) -> int:
        async with self._conn.execute(
            "SELECT COUNT(*) FROM entities WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return row[0]

    async def mark_merged(self, entity_id: str, canonical_id: str) -> bool:
        """Record that an entity was absorbed into a canonical sibling."""
        cursor = await self._conn.execute(
            "UPDATE entities SET merged_into = ? WHERE id = ? AND merged_into IS NULL",
            (canonical_id, entity_id),
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def insert_relation(self, relation: Relation) -> bool:
        """
        Append a relation edge.

        Returns:
            True if a new row was written, False if the id already existed
        """
        relation.validate()
        cursor = await self._conn.execute(f"""
            INSERT OR IGNORE INTO relations ({RELATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)
        """, (
            relation.id,
            relation.from_entity,
            relation.to_entity,
            relation.to_memory,
            relation.relation,
            relation.created_at.isoformat(),
        ))
        await self._conn.commit()
        return cursor.rowcount > 0

    async def list_relations_for_memory(self, memory_id: str) -> List[Relation]:
        """Inbound edges pointing at a memory."""
        return await self._select_relations("to_memory = ?", (memory_id,))

    async def list_relations_from_entity(self, entity_id: str) -> List[Relation]:
        """Outbound edges of an entity, in insertion order."""
        return await self._select_relations("from_entity = ?", (entity_id,))

    async def list_relations_to_entity(self, entity_id: str) -> List[Relation]:
        """Edges from other entities pointing at this one."""
        return await self._select_relations("to_entity = ?", (entity_id,))

    async def list_relations(self, relation: Optional[str] = None) -> List[Relation]:
        if relation:
            return await self._select_relations("relation = ?", (relation,))
        return await self._select_relations("1 = 1", ())

    async def _select_relations(self, where: str, params: Sequence[Any]) -> List[Relation]:
        async with self._conn.execute(f"""
            SELECT {RELATION_COLUMNS} FROM relations
            WHERE {where}
            ORDER BY created_at ASC, rowid ASC
        """, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_relation(row) for row in rows]
