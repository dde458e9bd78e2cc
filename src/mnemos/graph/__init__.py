from .entity_graph import EntityGraph, infer_relation, make_entity_id
from .extract import EntityExtractor, ExtractedEntity, LLMEntityExtractor
from .merge import edit_distance_matcher, normalize_name, substring_matcher

__all__ = [
    "EntityGraph", "infer_relation", "make_entity_id",
    "EntityExtractor", "ExtractedEntity", "LLMEntityExtractor",
    "edit_distance_matcher", "normalize_name", "substring_matcher",
]
