"""
Entity extraction from memory content.

A fast LLM reads up to 500 characters of text and returns a JSON array of
typed entities; anything malformed is dropped.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..llm import ChatClient, parse_json_array
from ..storage.models import ENTITY_TYPES

logger = logging.getLogger(__name__)

MAX_ENTITIES = 10
MAX_CONTENT_CHARS = 500

EXTRACTION_PROMPT = """Extract named entities from the following text as JSON.
Return ONLY a JSON array with objects: {{"type": "person|project|place|preference|topic", "name": "..."}}
Extract only clearly mentioned entities (people, projects, locations, explicit preferences, topics).
Return [] if nothing notable.

Text: {content}

JSON array:"""


@dataclass
class ExtractedEntity:
    type: str
    name: str
    attributes: Optional[Dict[str, str]] = None


@runtime_checkable
class EntityExtractor(Protocol):
    async def extract(self, text: str) -> List[ExtractedEntity]:
        ...


def parse_entities(raw: List[Any]) -> List[ExtractedEntity]:
    """Keep well-formed entries of known types, at most MAX_ENTITIES."""
    entities = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        entity_type = item.get("type")
        name = item.get("name")
        if entity_type not in ENTITY_TYPES or not isinstance(name, str) or not name.strip():
            continue
        attributes = item.get("attributes")
        if isinstance(attributes, dict):
            attributes = {str(k): str(v) for k, v in attributes.items()}
        else:
            attributes = None
        entities.append(ExtractedEntity(type=entity_type, name=name.strip(), attributes=attributes))
    return entities[:MAX_ENTITIES]


class LLMEntityExtractor:
    """Entity extractor backed by the fast chat model."""

    def __init__(self, chat: ChatClient, model: str):
        self.chat = chat
        self.model = model

    async def extract(self, text: str) -> List[ExtractedEntity]:
        prompt = EXTRACTION_PROMPT.format(content=text[:MAX_CONTENT_CHARS])
        response = await self.chat.complete(prompt, model=self.model, max_tokens=200, temperature=0)
        entities = parse_entities(parse_json_array(response) or [])
        logger.debug(f"Extracted {len(entities)} entities")
        return entities
