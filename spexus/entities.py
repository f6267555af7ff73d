"""Entity kinds shared by the service layer, the resolver and the tool router."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

REFERENCE_PATTERN = re.compile(r"^(EP|US|AC|REQ|STD)-[0-9]*[1-9][0-9]*\Z")

ENTITY_STATUSES = ("Backlog", "Draft", "In Progress", "Done", "Cancelled")
REQUIREMENT_STATUSES = ("Draft", "Active", "Obsolete")
PRIORITIES = (1, 2, 3, 4)


@dataclass(frozen=True)
class EntityKind:
    """Static description of one entity family."""

    name: str
    prefix: str
    table: str
    collection: str
    label: str
    title_field: Optional[str] = "title"
    body_field: str = "description"


EPIC = EntityKind("epic", "EP", "epics", "epics", "Epic")
USER_STORY = EntityKind("user_story", "US", "user_stories", "user-stories", "User story")
ACCEPTANCE_CRITERIA = EntityKind(
    "acceptance_criteria",
    "AC",
    "acceptance_criteria",
    "acceptance-criteria",
    "Acceptance criteria",
    title_field=None,
)
REQUIREMENT = EntityKind(
    "requirement", "REQ", "requirements", "requirements", "Requirement"
)
STEERING_DOCUMENT = EntityKind(
    "steering_document",
    "STD",
    "steering_documents",
    "steering-documents",
    "Steering document",
)

KINDS: Dict[str, EntityKind] = {
    kind.name: kind
    for kind in (EPIC, USER_STORY, ACCEPTANCE_CRITERIA, REQUIREMENT, STEERING_DOCUMENT)
}

# Entity kinds that can carry comments.
COMMENTABLE_KINDS = (EPIC, USER_STORY, ACCEPTANCE_CRITERIA, REQUIREMENT)


def is_reference_id(value: str) -> bool:
    """Return True when ``value`` looks like ``EP-001`` and friends."""

    return bool(REFERENCE_PATTERN.match(value))


def is_canonical_id(value: str) -> bool:
    """Return True for a 36-character UUID string."""

    if len(value) != 36:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def format_reference(prefix: str, number: int) -> str:
    return f"{prefix}-{number:03d}"


def new_id() -> str:
    return str(uuid.uuid4())
