"""Parsing, resolution and dereferencing of ``requirements://`` resource URIs."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from ..entities import (
    ACCEPTANCE_CRITERIA,
    EPIC,
    REQUIREMENT,
    USER_STORY,
    EntityKind,
    is_canonical_id,
    is_reference_id,
)
from ..errors import NotFoundError, ValidationError

if TYPE_CHECKING:  # pragma: no cover
    from ..service import RequirementsService

logger = logging.getLogger(__name__)

EXTERNAL_SCHEME = "requirements"
PROMPT_SCHEME = "prompt"
PROMPTS_COLLECTION = "prompts"
ACTIVE_PROMPT = "active"
JSON_MIME_TYPE = "application/json"

COLLECTIONS: Dict[str, EntityKind] = {
    EPIC.collection: EPIC,
    USER_STORY.collection: USER_STORY,
    ACCEPTANCE_CRITERIA.collection: ACCEPTANCE_CRITERIA,
    REQUIREMENT.collection: REQUIREMENT,
}

SCHEMES: Dict[str, EntityKind] = {kind.name: kind for kind in COLLECTIONS.values()}

SUB_PATHS: Dict[str, frozenset] = {
    EPIC.name: frozenset({"hierarchy", "user-stories"}),
    USER_STORY.name: frozenset({"requirements", "acceptance-criteria"}),
    ACCEPTANCE_CRITERIA.name: frozenset(),
    REQUIREMENT.name: frozenset({"relationships"}),
}


@dataclass(frozen=True)
class ResourceURI:
    """A parsed ``requirements://<collection>[/<identifier>[/<sub_path>]]``."""

    collection: str
    identifier: Optional[str] = None
    sub_path: Optional[str] = None

    @property
    def kind(self) -> Optional[EntityKind]:
        return COLLECTIONS.get(self.collection)

    @property
    def is_collection(self) -> bool:
        return self.identifier is None


def _split(uri: str, scheme: str) -> list:
    prefix = f"{scheme}://"
    if not uri.startswith(prefix):
        raise ValidationError(f"Resource URI must start with {prefix}")
    rest = uri[len(prefix):].strip("/")
    if not rest:
        raise ValidationError("Resource URI is missing a resource kind")
    return rest.split("/")


def parse_resource_uri(uri: str) -> ResourceURI:
    """Parse an external resource URI.

    Raises:
        ValidationError: the kind, identifier or sub-path is not recognised
    """

    if not isinstance(uri, str):
        raise ValidationError("uri must be a string")
    parts = _split(uri, EXTERNAL_SCHEME)
    collection = parts[0]

    if collection == PROMPTS_COLLECTION:
        if len(parts) > 2 or (len(parts) == 2 and not parts[1]):
            raise ValidationError(f"Invalid prompt resource URI: {uri}")
        return ResourceURI(collection, parts[1] if len(parts) == 2 else None)

    kind = COLLECTIONS.get(collection)
    if kind is None:
        raise ValidationError(f"Unsupported resource kind: {collection}")
    if len(parts) == 1:
        return ResourceURI(collection)
    if len(parts) > 3:
        raise ValidationError(f"Invalid resource URI: {uri}")

    identifier = parts[1]
    if not (is_canonical_id(identifier) or is_reference_id(identifier)):
        raise ValidationError(
            "Invalid resource identifier: expected a UUID or a reference ID"
        )

    sub_path = parts[2] if len(parts) == 3 else None
    if sub_path is not None and sub_path not in SUB_PATHS[kind.name]:
        raise ValidationError(f"Unsupported sub-resource for {collection}: {sub_path}")
    return ResourceURI(collection, identifier, sub_path)


class URIResolver:
    """Translate external URIs to canonical ``<scheme>://<reference>`` and load them."""

    def __init__(self, service: "RequirementsService"):
        self.service = service

    def resolve(self, uri: str) -> str:
        """Return the canonical URI for ``uri``.

        Collection URIs and URIs outside the ``requirements://`` scheme are
        returned unchanged.
        """

        return self._resolve(uri)[0]

    def _resolve(self, uri: str) -> Tuple[str, Optional[Dict[str, Any]]]:
        if not isinstance(uri, str) or not uri.startswith(f"{EXTERNAL_SCHEME}://"):
            return uri, None

        parsed = parse_resource_uri(uri)
        if parsed.collection == PROMPTS_COLLECTION:
            if parsed.identifier in (None, ACTIVE_PROMPT):
                return uri, None
            return f"{PROMPT_SCHEME}://{parsed.identifier}", None
        if parsed.is_collection:
            return uri, None

        kind = parsed.kind
        entity = self.service.find_entity(kind.name, parsed.identifier)
        if entity is None:
            raise NotFoundError(f"{kind.label} not found: {parsed.identifier}")

        canonical = f"{kind.name}://{entity['reference_id']}"
        if parsed.sub_path:
            canonical = f"{canonical}/{parsed.sub_path}"
            entity = None
        logger.debug("Resolved resource URI %s to %s", uri, canonical)
        return canonical, entity

    def load(self, canonical_uri: str) -> Any:
        """Dereference a canonical or collection URI to a JSON-serializable value."""

        if canonical_uri.startswith(f"{EXTERNAL_SCHEME}://"):
            return self._load_collection(parse_resource_uri(canonical_uri))

        scheme, separator, rest = canonical_uri.partition("://")
        if not separator or not rest:
            raise ValidationError(f"Unsupported resource URI: {canonical_uri}")

        if scheme == PROMPT_SCHEME:
            return self.service.get_prompt_by_name(rest)

        kind = SCHEMES.get(scheme)
        if kind is None:
            raise ValidationError(f"Unsupported resource URI scheme: {scheme}")

        reference, _, sub_path = rest.partition("/")
        if sub_path and sub_path not in SUB_PATHS[kind.name]:
            raise ValidationError(f"Unsupported sub-resource for {kind.name}: {sub_path}")
        return self._load_entity(kind, reference, sub_path or None)

    def _load_collection(self, parsed: ResourceURI) -> Dict[str, Any]:
        if parsed.collection == PROMPTS_COLLECTION:
            if parsed.identifier == ACTIVE_PROMPT:
                prompt = self.service.get_active_prompt()
                if prompt is None:
                    raise NotFoundError("No active prompt")
                return prompt
            prompts = self.service.list_prompts()
            return {"prompts": prompts, "count": len(prompts)}

        kind = parsed.kind
        rows = self.service.list_collection(kind.name)
        return {kind.table: rows, "count": len(rows)}

    def _load_entity(
        self, kind: EntityKind, reference: str, sub_path: Optional[str]
    ) -> Any:
        if sub_path is None:
            return self.service.get_entity(kind.name, reference)

        if kind is EPIC and sub_path == "hierarchy":
            return self.service.get_epic_hierarchy(reference)
        if kind is EPIC and sub_path == "user-stories":
            stories = self.service.list_user_stories(reference)
            return {"user_stories": stories, "count": len(stories)}
        if kind is USER_STORY and sub_path == "requirements":
            _, requirements = self.service.get_user_story_requirements(reference)
            return {"requirements": requirements, "count": len(requirements)}
        if kind is USER_STORY and sub_path == "acceptance-criteria":
            story = self.service.get_user_story(reference)
            criteria = self.service.list_acceptance_criteria(story["id"])
            return {"acceptance_criteria": criteria, "count": len(criteria)}
        # requirement relationships
        return self.service.get_requirement_relationships(reference)

    def read(self, uri: str) -> Dict[str, Any]:
        """Resolve and dereference ``uri`` into a ``resources/read`` result."""

        canonical, entity = self._resolve(uri)
        payload = entity if entity is not None else self.load(canonical)
        return {
            "contents": [
                {
                    "uri": canonical,
                    "mimeType": JSON_MIME_TYPE,
                    "text": json.dumps(payload, indent=2, sort_keys=True, default=str),
                }
            ]
        }
