"""
Entity Graph - extraction, linking and traversal.

This module handles the knowledge graph that sits beside the memories:
- extract_entities: typed entities from memory text (fast LLM)
- link_entities_to_memory: upsert entities, part_of edges, pairwise relations
- record_contradiction: contradicts/updated_from edges for factual updates
- graph_enrich_recall: pull related memories in through shared entities
- merge_near_duplicate_entities: fuzzy merge of entity aliases
"""

import logging
import re
from itertools import combinations
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..storage.models import Entity, Memory, Relation
from ..storage.row_store import RowStore
from .extract import EntityExtractor, ExtractedEntity
from .merge import normalize_name, substring_matcher

logger = logging.getLogger(__name__)

MIN_EXTRACT_CHARS = 20
MAX_ENRICH_EXTRA = 10
FANOUT_PER_HOP = 5

SYMMETRIC_RELATIONS = {"knows", "co_occurs"}

_SLUG_RE = re.compile(r"\W+")


def slugify(name: str) -> str:
    return _SLUG_RE.sub("_", name.strip().lower()).strip("_")


def make_entity_id(user_id: str, entity_type: str, name: str) -> str:
    return f"ent_{user_id}_{entity_type}_{slugify(name)}"


def infer_relation(a: Entity, b: Entity) -> List[Tuple[str, str, str]]:
    """
    Relation(s) implied by two entities mentioned in the same memory.

    Returns:
        List of (from_id, relation, to_id); symmetric relations yield both directions
    """
    types = {a.type, b.type}
    if a.type == "person" and b.type == "person":
        relation = "knows"
    elif types == {"person", "preference"}:
        person, pref = (a, b) if a.type == "person" else (b, a)
        return [(person.id, "prefers", pref.id)]
    elif types == {"topic", "project"}:
        topic, project = (a, b) if a.type == "topic" else (b, a)
        return [(topic.id, "part_of", project.id)]
    else:
        relation = "co_occurs"
    return [(a.id, relation, b.id), (b.id, relation, a.id)]


class EntityGraph:
    """
    Graph operations over the row store's entities and relations tables.

    Relation ids are derived from their endpoints, so relinking the same
    memory writes nothing new.
    """

    def __init__(self, row_store: RowStore, extractor: Optional[EntityExtractor] = None):
        self.row_store = row_store
        self.extractor = extractor

    async def extract_entities(self, content: str) -> List[ExtractedEntity]:
        """Entities of a text; [] for short text, missing extractor or provider failure."""
        if len(content) < MIN_EXTRACT_CHARS or self.extractor is None:
            return []
        try:
            return await self.extractor.extract(content)
        except Exception as e:
            logger.warning(f"Entity extraction failed, skipping: {e}")
            return []

    async def link_entities_to_memory(self, user_id: str, memory_id: str,
                                      entities: List[ExtractedEntity]) -> List[Entity]:
        """
        Persist extracted entities and connect them to a memory and to each other.

        Returns:
            The stored entities (deduplicated, in extraction order)
        """
        graph = self.row_store.graph
        stored: Dict[str, Entity] = {}
        for extracted in entities:
            entity = Entity(
                id=make_entity_id(user_id, extracted.type, extracted.name),
                user_id=user_id,
                type=extracted.type,
                name=extracted.name,
                attributes=extracted.attributes,
            )
            entity.id = await graph.upsert_entity(entity)
            if entity.id in stored:
                continue
            stored[entity.id] = entity
            await graph.insert_relation(Relation(
                id=f"rel_{entity.id}_{memory_id}",
                from_entity=entity.id,
                relation="part_of",
                to_memory=memory_id,
            ))

        for a, b in combinations(stored.values(), 2):
            for from_id, relation, to_id in infer_relation(a, b):
                await graph.insert_relation(Relation(
                    id=f"rel_{relation}_{from_id}_{to_id}",
                    from_entity=from_id,
                    relation=relation,
                    to_entity=to_id,
                ))

        logger.debug(f"Linked {len(stored)} entities to memory {memory_id}")
        return list(stored.values())

    async def index_memory(self, user_id: str, memory_id: str, content: str) -> List[Entity]:
        """Extract and link in one step (the detached post-insert work)."""
        entities = await self.extract_entities(content)
        if not entities:
            return []
        return await self.link_entities_to_memory(user_id, memory_id, entities)

    async def record_contradiction(self, old_memory_id: str, new_memory_id: str, entity_id: str) -> None:
        """The entity now contradicts the old memory and is updated from the new one."""
        graph = self.row_store.graph
        await graph.insert_relation(Relation(
            id=f"rel_contra_{entity_id}_{old_memory_id}_{new_memory_id}",
            from_entity=entity_id,
            relation="contradicts",
            to_memory=old_memory_id,
        ))
        await graph.insert_relation(Relation(
            id=f"rel_upd_{entity_id}_{old_memory_id}_{new_memory_id}",
            from_entity=entity_id,
            relation="updated_from",
            to_memory=new_memory_id,
        ))

    async def find_shared_entity(self, user_id: str, new_content: str,
                                 old_memory: Memory) -> Optional[Entity]:
        """
        An entity whose name occurs in either text.

        Entities already linked to the old memory are preferred over the rest
        of the user's entities.
        """
        haystacks = (new_content.lower(), old_memory.content.lower())

        def mentioned(entity: Entity) -> bool:
            name = entity.name.lower()
            return bool(name) and any(name in text for text in haystacks)

        graph = self.row_store.graph
        seen: Set[str] = set()
        for relation in await graph.list_relations_for_memory(old_memory.id):
            if relation.from_entity in seen:
                continue
            seen.add(relation.from_entity)
            entity = await graph.get_entity(relation.from_entity)
            if entity is not None and entity.user_id == user_id and mentioned(entity):
                return entity

        for entity in await graph.list_entities(user_id, include_merged=False):
            if entity.id not in seen and mentioned(entity):
                return entity
        return None

    async def graph_enrich_recall(self, user_id: str, core: List[Memory], depth: int) -> List[Memory]:
        """
        Append memories reachable through the entity graph.

        Starting from the entities pointing at each core memory, outbound edges
        are followed for up to ``depth`` hops (at most depth*5 edges per entity,
        contradicts edges never followed). At most 10 extra memories are added,
        in discovery order, after the unchanged core list.
        """
        if not core or depth < 1:
            return core

        graph = self.row_store.graph
        fanout = depth * FANOUT_PER_HOP
        seen_memories = {m.id for m in core}
        seen_entities: Set[str] = set()
        extra: List[Memory] = []

        for memory in core:
            frontier: List[str] = []
            for relation in await graph.list_relations_for_memory(memory.id):
                if relation.relation == "contradicts" or relation.from_entity in seen_entities:
                    continue
                seen_entities.add(relation.from_entity)
                frontier.append(relation.from_entity)

            for _ in range(depth):
                next_frontier: List[str] = []
                for entity_id in frontier:
                    edges = [r for r in await graph.list_relations_from_entity(entity_id)
                             if r.relation != "contradicts"]
                    for edge in edges[:fanout]:
                        if edge.to_entity is not None:
                            if edge.to_entity not in seen_entities:
                                seen_entities.add(edge.to_entity)
                                next_frontier.append(edge.to_entity)
                            continue
                        if edge.to_memory in seen_memories:
                            continue
                        linked = await self.row_store.memories.get_by_id(edge.to_memory)
                        if linked is None or linked.archived or linked.user_id != user_id:
                            continue
                        seen_memories.add(linked.id)
                        extra.append(linked)
                        if len(extra) >= MAX_ENRICH_EXTRA:
                            return core + extra
                frontier = next_frontier
                if not frontier:
                    break

        return core + extra

    async def merge_near_duplicate_entities(
            self, user_id: str,
            matcher: Callable[[str, str], bool] = substring_matcher) -> List[Tuple[str, str]]:
        """
        Fold entity aliases into one canonical entity per type.

        Names are normalized before matching; the longer name wins. Relations
        of the absorbed entity are copied onto the canonical one and the
        absorbed entity is marked merged_into. Nothing is deleted.

        Returns:
            (absorbed_id, canonical_id) pairs
        """
        graph = self.row_store.graph
        merges: List[Tuple[str, str]] = []
        entities = await graph.list_entities(user_id, include_merged=False)

        by_type: Dict[str, List[Entity]] = {}
        for entity in entities:
            by_type.setdefault(entity.type, []).append(entity)

        for group in by_type.values():
            group.sort(key=lambda e: (-len(normalize_name(e.name)), e.created_at, e.id))
            absorbed: Set[str] = set()
            for i, canonical in enumerate(group):
                if canonical.id in absorbed:
                    continue
                canonical_norm = normalize_name(canonical.name)
                if not canonical_norm:
                    continue
                for other in group[i + 1:]:
                    if other.id in absorbed:
                        continue
                    other_norm = normalize_name(other.name)
                    if not other_norm or not matcher(canonical_norm, other_norm):
                        continue
                    await self._absorb(other, canonical)
                    absorbed.add(other.id)
                    merges.append((other.id, canonical.id))

        if merges:
            logger.info(f"Merged {len(merges)} near-duplicate entities for user {user_id}")
        return merges

    async def _absorb(self, absorbed: Entity, canonical: Entity) -> None:
        graph = self.row_store.graph
        for relation in await graph.list_relations_from_entity(absorbed.id):
            if relation.to_entity == canonical.id:
                continue
            await graph.insert_relation(Relation(
                id=f"rel_merge_{canonical.id}_{relation.id}",
                from_entity=canonical.id,
                relation=relation.relation,
                to_entity=relation.to_entity,
                to_memory=relation.to_memory,
            ))
        for relation in await graph.list_relations_to_entity(absorbed.id):
            if relation.from_entity == canonical.id:
                continue
            await graph.insert_relation(Relation(
                id=f"rel_merge_{canonical.id}_{relation.id}",
                from_entity=relation.from_entity,
                relation=relation.relation,
                to_entity=canonical.id,
            ))
        await graph.mark_merged(absorbed.id, canonical.id)
        logger.debug(f"Entity {absorbed.id} merged into {canonical.id}")

    async def format_entity_graph(self, user_id: str) -> str:
        """Human-readable listing of a user's entities and their connections."""
        graph = self.row_store.graph
        entities = await graph.list_entities(user_id, include_merged=False)
        if not entities:
            return "No entities."

        names = {e.id: e.name for e in entities}
        lines = [f"Entities ({len(entities)}):"]
        for entity in entities:
            edges = await graph.list_relations_from_entity(entity.id)
            memory_count = len({r.to_memory for r in edges if r.to_memory and r.relation == "part_of"})
            lines.append(f"  [{entity.type}] {entity.name} ({memory_count} memories)")
            for edge in edges:
                if edge.to_entity is not None:
                    target = names.get(edge.to_entity, edge.to_entity)
                    lines.append(f"      --{edge.relation}--> {target}")
                elif edge.relation in ("contradicts", "updated_from"):
                    lines.append(f"      --{edge.relation}--> memory {edge.to_memory}")
        return "\n".join(lines)
