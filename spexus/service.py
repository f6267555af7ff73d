"""Core service module for Spexus."""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .anchors import AnchorEngine
from .config import Config
from .db import DataAccess
from .entities import (
    ACCEPTANCE_CRITERIA,
    COMMENTABLE_KINDS,
    ENTITY_STATUSES,
    EPIC,
    KINDS,
    PRIORITIES,
    REQUIREMENT,
    REQUIREMENT_STATUSES,
    STEERING_DOCUMENT,
    USER_STORY,
    EntityKind,
    is_canonical_id,
    is_reference_id,
)
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ROLES = ("administrator", "user", "commenter")
PROMPT_ROLES = ("user", "assistant")
MAX_TITLE_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 50000
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
COLLECTION_RESOURCE_LIMIT = 1000

_SORTABLE_COLUMNS = {"created_at", "updated_at", "title", "priority", "status", "reference_id"}

_UPDATABLE_FIELDS = {
    EPIC.name: {"title", "description", "priority", "status", "assignee_id"},
    USER_STORY.name: {"title", "description", "priority", "status", "assignee_id"},
    ACCEPTANCE_CRITERIA.name: {"description"},
    REQUIREMENT.name: {"title", "description", "priority", "status", "assignee_id"},
    STEERING_DOCUMENT.name: {"title", "description"},
}

_STATUSES = {
    EPIC.name: ENTITY_STATUSES,
    USER_STORY.name: ENTITY_STATUSES,
    REQUIREMENT.name: REQUIREMENT_STATUSES,
}


@dataclass
class ServiceComponents:
    """Container for service dependencies."""

    data: DataAccess
    anchors: AnchorEngine


class RequirementsService:
    """Domain operations over epics, stories, criteria, requirements and comments."""

    def __init__(
        self, config_path: Optional[str] = None, db_path: Optional[str] = None
    ):
        """Initialize the requirements service.

        Args:
            config_path: Path to the configuration file
            db_path: Path to the SQLite database
        """
        self.config = Config(config_path)
        self.db_path = db_path or self.config.database_path()
        data = DataAccess(self.db_path)
        self._component_overrides: Dict[str, Any] = {}
        self._components = ServiceComponents(data=data, anchors=AnchorEngine(data))
        self.data.initialize_schema()
        logger.info("Requirements service initialized (database=%s)", self.db_path)

    def _set_component(self, name: str, value: Any) -> None:
        """Assign a component while keeping track of the original value."""

        if name not in self._component_overrides:
            self._component_overrides[name] = getattr(self._components, name)
        setattr(self._components, name, value)

    def _reset_component(self, name: str) -> None:
        """Restore a previously overridden component."""

        original = self._component_overrides.pop(name, None)
        if original is not None:
            setattr(self._components, name, original)

    @property
    def data(self) -> DataAccess:
        """Access the database layer component."""

        return self._components.data

    @data.setter
    def data(self, value: DataAccess) -> None:
        """Override the data access component."""

        self._set_component("data", value)

    @data.deleter
    def data(self) -> None:
        """Reset the data component override."""

        self._reset_component("data")

    @property
    def anchors(self) -> AnchorEngine:
        """Access the inline-comment anchor engine."""

        return self._components.anchors

    # -- validation helpers ------------------------------------------------

    @staticmethod
    def _hash_secret(secret: str) -> str:
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()

    @staticmethod
    def _require_text(value: Any, field: str, max_length: int = MAX_TITLE_LENGTH) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field} is required")
        text = value.strip()
        if len(text) > max_length:
            raise ValidationError(f"{field} must not exceed {max_length} characters")
        return text

    @staticmethod
    def _optional_text(
        value: Any, field: str, max_length: int = MAX_DESCRIPTION_LENGTH
    ) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{field} must be a string")
        if len(value) > max_length:
            raise ValidationError(f"{field} must not exceed {max_length} characters")
        return value

    @staticmethod
    def _validate_priority(priority: Any) -> int:
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority must be an integer between 1 and 4")
        if priority not in PRIORITIES:
            raise ValidationError("priority must be an integer between 1 and 4")
        return priority

    @staticmethod
    def _validate_status(kind: EntityKind, status: Any) -> str:
        allowed = _STATUSES.get(kind.name, ())
        if status not in allowed:
            raise ValidationError(
                f"Invalid status for {kind.label.lower()}; expected one of: "
                + ", ".join(allowed)
            )
        return status

    @staticmethod
    def _pagination(limit: Any, offset: Any) -> Tuple[int, int]:
        limit = DEFAULT_PAGE_SIZE if limit is None else limit
        offset = 0 if offset is None else offset
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be a non-negative integer")
        return limit, offset

    @staticmethod
    def _order_by(order_by: Optional[str]) -> str:
        if not order_by:
            return "created_at DESC"
        parts = order_by.strip().split()
        column = parts[0].lower()
        direction = parts[1].upper() if len(parts) > 1 else "ASC"
        if column not in _SORTABLE_COLUMNS or direction not in {"ASC", "DESC"} or len(parts) > 2:
            raise ValidationError(f"Unsupported order_by value: {order_by}")
        return f"{column} {direction}"

    def _validate_assignee(self, assignee_id: Optional[str]) -> Optional[str]:
        if assignee_id is None:
            return None
        if self.data.fetch_user(assignee_id) is None:
            raise NotFoundError("Assignee not found")
        return assignee_id

    # -- users -------------------------------------------------------------

    def create_user(
        self, username: str, *, email: Optional[str] = None, role: str = "user"
    ) -> Tuple[Dict[str, Any], str]:
        """Create a user and return it together with its one-time API token.

        Args:
            username: Unique login name
            email: Optional contact address
            role: One of ``administrator``, ``user`` or ``commenter``

        Returns:
            Tuple of the stored user record and the plain-text token
        """
        name = self._require_text(username, "username", 255)
        if role not in ROLES:
            raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
        if self.data.fetch_user_by_username(name) is not None:
            raise ConflictError(f"User '{name}' already exists")

        token = secrets.token_urlsafe(32)
        user = self.data.create_user(name, email, role, self._hash_secret(token))
        logger.info("Created user %s with role %s", name, role)
        return user, token

    def authenticate_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the user owning ``token`` or ``None``."""

        if not token:
            return None
        return self.data.fetch_user_by_token_hash(self._hash_secret(token))

    def get_user(self, user_id: str) -> Dict[str, Any]:
        user = self.data.fetch_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def get_user_by_username(self, username: str) -> Dict[str, Any]:
        user = self.data.fetch_user_by_username(username)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def list_users(self) -> List[Dict[str, Any]]:
        return self.data.list_users()

    @staticmethod
    def require_editor(user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Ensure ``user`` may create or change hierarchy entities."""

        if user is None:
            raise AuthorizationError("Authentication required")
        if user.get("role") not in {"administrator", "user"}:
            raise AuthorizationError("Insufficient permissions")
        return user

    @staticmethod
    def require_administrator(user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if user is None:
            raise AuthorizationError("Authentication required")
        if user.get("role") != "administrator":
            raise AuthorizationError("Administrator role required")
        return user

    # -- generic entity access ---------------------------------------------

    def create_entity(
        self, kind: str, creator_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Create an entity of ``kind`` from keyword ``fields``.

        Args:
            kind: Entity kind name
            creator_id: Id of the user recorded as creator or author
            fields: Keyword arguments accepted by the kind's create method

        Returns:
            The stored entity record
        """
        factories = {
            EPIC.name: self.create_epic,
            USER_STORY.name: self.create_user_story,
            ACCEPTANCE_CRITERIA.name: self.create_acceptance_criteria,
            REQUIREMENT.name: self.create_requirement,
            STEERING_DOCUMENT.name: self.create_steering_document,
        }
        factory = factories[self._kind(kind).name]
        return factory(creator_id, **fields)

    @staticmethod
    def _kind(kind: str) -> EntityKind:
        try:
            return KINDS[kind]
        except KeyError as exc:
            raise ValidationError(f"Unsupported entity type: {kind}") from exc

    def find_entity(self, kind: str, identifier: str) -> Optional[Dict[str, Any]]:
        """Look up an entity by canonical id or reference id without raising."""

        entity_kind = self._kind(kind)
        if not isinstance(identifier, str):
            return None
        if is_canonical_id(identifier):
            return self.data.fetch_entity(entity_kind.table, identifier)
        if is_reference_id(identifier):
            return self.data.fetch_entity_by_reference(entity_kind.table, identifier)
        return None

    def get_entity(self, kind: str, identifier: str) -> Dict[str, Any]:
        """Look up an entity by canonical id or reference id.

        Raises:
            ValidationError: ``identifier`` is neither form
            NotFoundError: no entity matches
        """
        entity_kind = self._kind(kind)
        if not isinstance(identifier, str) or not (
            is_canonical_id(identifier) or is_reference_id(identifier)
        ):
            raise ValidationError(
                f"Invalid {entity_kind.label.lower()} identifier: not a valid UUID or reference ID"
            )
        entity = self.find_entity(kind, identifier)
        if entity is None:
            raise NotFoundError(f"{entity_kind.label} not found")
        return entity

    def get_epic(self, identifier: str) -> Dict[str, Any]:
        return self.get_entity(EPIC.name, identifier)

    def get_epic_by_reference(self, reference_id: str) -> Dict[str, Any]:
        epic = self.data.fetch_entity_by_reference(EPIC.table, reference_id)
        if epic is None:
            raise NotFoundError("Epic not found")
        return epic

    def get_user_story(self, identifier: str) -> Dict[str, Any]:
        return self.get_entity(USER_STORY.name, identifier)

    def get_acceptance_criteria(self, identifier: str) -> Dict[str, Any]:
        return self.get_entity(ACCEPTANCE_CRITERIA.name, identifier)

    def get_requirement(self, identifier: str) -> Dict[str, Any]:
        return self.get_entity(REQUIREMENT.name, identifier)

    def get_steering_document(self, identifier: str) -> Dict[str, Any]:
        return self.get_entity(STEERING_DOCUMENT.name, identifier)

    def update_entity(
        self, kind: str, identifier: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply validated field changes to an entity.

        A changed description re-anchors the inline comments of the entity in
        the same transaction.

        Args:
            kind: Entity kind name (``epic``, ``user_story`` ...)
            identifier: Canonical id or reference id
            changes: Field values to store; ``assignee_id=None`` unassigns

        Returns:
            The updated entity record
        """
        entity_kind = self._kind(kind)
        entity = self.get_entity(kind, identifier)
        allowed = _UPDATABLE_FIELDS[entity_kind.name]
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")

        cleaned: Dict[str, Any] = {}
        for field, value in changes.items():
            if field == "title":
                cleaned[field] = self._require_text(value, "title")
            elif field == "description":
                if entity_kind is ACCEPTANCE_CRITERIA:
                    cleaned[field] = self._require_text(
                        value, "description", MAX_DESCRIPTION_LENGTH
                    )
                else:
                    cleaned[field] = self._optional_text(value, "description")
            elif field == "priority":
                cleaned[field] = self._validate_priority(value)
            elif field == "status":
                cleaned[field] = self._validate_status(entity_kind, value)
            elif field == "assignee_id":
                cleaned[field] = self._validate_assignee(value)

        if not cleaned:
            return entity

        if "description" in cleaned and entity_kind in COMMENTABLE_KINDS:
            updated = self.anchors.on_entity_body_changed(
                entity_kind.table,
                entity_kind.name,
                entity["id"],
                cleaned,
                cleaned["description"] or "",
            )
        else:
            updated = self.data.update_entity(entity_kind.table, entity["id"], cleaned)

        if updated is None:
            raise NotFoundError(f"{entity_kind.label} not found")
        logger.info(
            "Updated %s %s (%s)",
            entity_kind.name,
            updated["reference_id"],
            ", ".join(sorted(cleaned)),
        )
        return updated

    def _list(
        self,
        kind: EntityKind,
        *,
        filters: Optional[Dict[str, Any]] = None,
        search: Optional[str] = None,
        order_by: Optional[str] = None,
        limit: Any = None,
        offset: Any = None,
        paginate: bool = True,
    ) -> Tuple[List[Dict[str, Any]], int]:
        page_limit: Optional[int] = None
        page_offset = 0
        if paginate:
            page_limit, page_offset = self._pagination(limit, offset)
        search_columns = ("description",) if kind.title_field is None else ("title", "description")
        return self.data.list_entities(
            kind.table,
            filters=filters,
            search=search,
            search_columns=search_columns,
            order_by=self._order_by(order_by),
            limit=page_limit,
            offset=page_offset,
        )

    # -- epics -------------------------------------------------------------

    def create_epic(
        self,
        creator_id: str,
        title: str,
        priority: int,
        *,
        description: Optional[str] = None,
        assignee_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        values = {
            "title": self._require_text(title, "title"),
            "description": self._optional_text(description, "description"),
            "status": "Backlog",
            "priority": self._validate_priority(priority),
            "creator_id": self.get_user(creator_id)["id"],
            "assignee_id": self._validate_assignee(assignee_id),
        }
        epic = self.data.insert_entity(EPIC.table, EPIC.prefix, values)
        logger.info("Created epic %s", epic["reference_id"])
        return epic

    def update_epic(self, identifier: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self.update_entity(EPIC.name, identifier, changes)

    def list_epics(
        self,
        *,
        status: Optional[str] = None,
        priority: Optional[int] = None,
        creator_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
        order_by: Optional[str] = None,
        limit: Any = None,
        offset: Any = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        filters = {
            "status": status,
            "priority": priority,
            "creator_id": creator_id,
            "assignee_id": assignee_id,
        }
        return self._list(
            EPIC, filters=filters, order_by=order_by, limit=limit, offset=offset
        )

    def get_epic_hierarchy(self, identifier: str) -> Dict[str, Any]:
        """Return the epic with nested user stories, criteria and requirements."""

        epic = dict(self.get_epic(identifier))
        stories, _ = self._list(
            USER_STORY, filters={"epic_id": epic["id"]}, order_by="created_at ASC", paginate=False
        )
        for story in stories:
            story["acceptance_criteria"] = self.list_acceptance_criteria(story["id"])
            story["requirements"] = self.list_requirements(user_story_id=story["id"])
        epic["user_stories"] = stories
        return epic

    # -- user stories ------------------------------------------------------

    def create_user_story(
        self,
        creator_id: str,
        epic_id: str,
        title: str,
        priority: int,
        *,
        description: Optional[str] = None,
        assignee_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        epic = self.get_epic(epic_id)
        values = {
            "epic_id": epic["id"],
            "title": self._require_text(title, "title"),
            "description": self._optional_text(description, "description"),
            "status": "Backlog",
            "priority": self._validate_priority(priority),
            "creator_id": self.get_user(creator_id)["id"],
            "assignee_id": self._validate_assignee(assignee_id),
        }
        story = self.data.insert_entity(USER_STORY.table, USER_STORY.prefix, values)
        logger.info("Created user story %s in %s", story["reference_id"], epic["reference_id"])
        return story

    def update_user_story(self, identifier: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self.update_entity(USER_STORY.name, identifier, changes)

    def list_user_stories(self, epic_id: Optional[str] = None) -> List[Dict[str, Any]]:
        filters = {"epic_id": self.get_epic(epic_id)["id"]} if epic_id else None
        stories, _ = self._list(
            USER_STORY, filters=filters, order_by="created_at ASC", paginate=False
        )
        return stories

    def get_user_story_requirements(
        self, identifier: str
    ) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        story = self.get_user_story(identifier)
        return story, self.list_requirements(user_story_id=story["id"])

    # -- acceptance criteria -----------------------------------------------

    def create_acceptance_criteria(
        self, author_id: str, user_story_id: str, description: str
    ) -> Dict[str, Any]:
        story = self.get_user_story(user_story_id)
        values = {
            "user_story_id": story["id"],
            "author_id": self.get_user(author_id)["id"],
            "description": self._require_text(
                description, "description", MAX_DESCRIPTION_LENGTH
            ),
        }
        criteria = self.data.insert_entity(
            ACCEPTANCE_CRITERIA.table, ACCEPTANCE_CRITERIA.prefix, values
        )
        logger.info(
            "Created acceptance criteria %s for %s",
            criteria["reference_id"],
            story["reference_id"],
        )
        return criteria

    def update_acceptance_criteria(
        self, identifier: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        return self.update_entity(ACCEPTANCE_CRITERIA.name, identifier, changes)

    def list_acceptance_criteria(
        self, user_story_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        filters = {"user_story_id": user_story_id} if user_story_id else None
        rows, _ = self._list(
            ACCEPTANCE_CRITERIA, filters=filters, order_by="created_at ASC", paginate=False
        )
        return rows

    # -- requirements ------------------------------------------------------

    def list_requirement_types(self) -> List[Dict[str, Any]]:
        return self.data.list_types("requirement_types")

    def list_relationship_types(self) -> List[Dict[str, Any]]:
        return self.data.list_types("relationship_types")

    def create_requirement(
        self,
        creator_id: str,
        user_story_id: str,
        type_id: str,
        title: str,
        priority: int,
        *,
        description: Optional[str] = None,
        acceptance_criteria_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        story = self.get_user_story(user_story_id)
        if self.data.fetch_type("requirement_types", type_id) is None:
            raise NotFoundError("Requirement type not found")

        criteria_id = None
        if acceptance_criteria_id:
            criteria = self.get_acceptance_criteria(acceptance_criteria_id)
            if criteria["user_story_id"] != story["id"]:
                raise ValidationError(
                    "Acceptance criteria must belong to the same user story"
                )
            criteria_id = criteria["id"]

        values = {
            "user_story_id": story["id"],
            "acceptance_criteria_id": criteria_id,
            "type_id": type_id,
            "title": self._require_text(title, "title"),
            "description": self._optional_text(description, "description"),
            "status": "Draft",
            "priority": self._validate_priority(priority),
            "creator_id": self.get_user(creator_id)["id"],
            "assignee_id": self._validate_assignee(assignee_id),
        }
        requirement = self.data.insert_entity(REQUIREMENT.table, REQUIREMENT.prefix, values)
        logger.info(
            "Created requirement %s in %s",
            requirement["reference_id"],
            story["reference_id"],
        )
        return requirement

    def update_requirement(self, identifier: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self.update_entity(REQUIREMENT.name, identifier, changes)

    def list_requirements(
        self, *, user_story_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        rows, _ = self._list(
            REQUIREMENT,
            filters={"user_story_id": user_story_id, "status": status},
            order_by="created_at ASC",
            paginate=False,
        )
        return rows

    def search_requirements(self, query: str) -> List[Dict[str, Any]]:
        text = self._require_text(query, "query")
        rows, _ = self._list(REQUIREMENT, search=text, paginate=False)
        return rows

    def create_relationship(
        self, creator_id: str, source_id: str, target_id: str, relationship_type_id: str
    ) -> Dict[str, Any]:
        source = self.get_requirement(source_id)
        target = self.get_requirement(target_id)
        if source["id"] == target["id"]:
            raise ValidationError("A requirement cannot be related to itself")
        relationship_type = self.data.fetch_type("relationship_types", relationship_type_id)
        if relationship_type is None:
            raise NotFoundError("Relationship type not found")

        relationship = self.data.insert_relationship(
            source["id"], target["id"], relationship_type_id, self.get_user(creator_id)["id"]
        )
        if relationship is None:
            raise ConflictError("Relationship already exists")
        relationship["relationship_type"] = relationship_type["name"]
        relationship["source_reference_id"] = source["reference_id"]
        relationship["target_reference_id"] = target["reference_id"]
        logger.info(
            "Linked %s -[%s]-> %s",
            source["reference_id"],
            relationship_type["name"],
            target["reference_id"],
        )
        return relationship

    def get_requirement_relationships(self, identifier: str) -> Dict[str, Any]:
        requirement = dict(self.get_requirement(identifier))
        requirement["relationships"] = self.data.fetch_relationships(requirement["id"])
        return requirement

    # -- steering documents ------------------------------------------------

    def create_steering_document(
        self, creator_id: str, title: str, description: Optional[str] = None
    ) -> Dict[str, Any]:
        values = {
            "title": self._require_text(title, "title"),
            "description": self._optional_text(description, "description"),
            "creator_id": self.get_user(creator_id)["id"],
        }
        document = self.data.insert_entity(
            STEERING_DOCUMENT.table, STEERING_DOCUMENT.prefix, values
        )
        logger.info("Created steering document %s", document["reference_id"])
        return document

    def update_steering_document(
        self, identifier: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        return self.update_entity(STEERING_DOCUMENT.name, identifier, changes)

    def list_steering_documents(
        self,
        *,
        creator_id: Optional[str] = None,
        search: Optional[str] = None,
        order_by: Optional[str] = None,
        limit: Any = None,
        offset: Any = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        return self._list(
            STEERING_DOCUMENT,
            filters={"creator_id": creator_id},
            search=search or None,
            order_by=order_by,
            limit=limit,
            offset=offset,
        )

    def link_steering_document(self, document_id: str, epic_id: str) -> Dict[str, Any]:
        document = self.get_steering_document(document_id)
        epic = self.get_epic(epic_id)
        if not self.data.link_steering_document(epic["id"], document["id"]):
            raise ConflictError("Steering document is already linked to this epic")
        return {"steering_document": document, "epic": epic}

    def unlink_steering_document(self, document_id: str, epic_id: str) -> Dict[str, Any]:
        document = self.get_steering_document(document_id)
        epic = self.get_epic(epic_id)
        if not self.data.unlink_steering_document(epic["id"], document["id"]):
            raise NotFoundError("Steering document is not linked to this epic")
        return {"steering_document": document, "epic": epic}

    def list_epic_steering_documents(
        self, epic_id: str
    ) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        epic = self.get_epic(epic_id)
        return epic, self.data.fetch_epic_steering_documents(epic["id"])

    # -- search ------------------------------------------------------------

    def search(
        self,
        query: str,
        entity_types: Optional[Iterable[str]] = None,
        *,
        limit: Any = None,
        offset: Any = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Search titles and descriptions across the hierarchy.

        Returns:
            Tuple of the requested page of results and the total match count
        """
        text = self._require_text(query, "query")
        page_limit, page_offset = self._pagination(limit, offset)
        searchable = [kind.name for kind in COMMENTABLE_KINDS]
        requested = list(entity_types) if entity_types else searchable
        unknown = [name for name in requested if name not in searchable]
        if unknown:
            raise ValidationError(f"Unsupported entity types: {', '.join(unknown)}")

        results: List[Dict[str, Any]] = []
        for name in requested:
            kind = KINDS[name]
            rows, _ = self._list(kind, search=text, paginate=False)
            for row in rows:
                results.append(
                    {
                        "entity_type": kind.name,
                        "id": row["id"],
                        "reference_id": row["reference_id"],
                        "title": row.get("title") or (row.get("description") or "")[:80],
                        "description": row.get("description"),
                        "created_at": row["created_at"],
                    }
                )

        results.sort(key=lambda item: item["created_at"], reverse=True)
        return results[page_offset:page_offset + page_limit], len(results)

    # -- prompts -----------------------------------------------------------

    def create_prompt(
        self,
        creator_id: str,
        name: str,
        title: str,
        content: str,
        *,
        description: Optional[str] = None,
        role: str = "assistant",
    ) -> Dict[str, Any]:
        prompt_name = self._require_text(name, "name", 255)
        if self.data.fetch_prompt("name", prompt_name) is not None:
            raise ConflictError(f"Prompt '{prompt_name}' already exists")
        if role not in PROMPT_ROLES:
            raise ValidationError("role must be 'user' or 'assistant'")
        prompt = self.data.insert_prompt(
            {
                "name": prompt_name,
                "title": self._require_text(title, "title"),
                "description": self._optional_text(description, "description"),
                "content": self._require_text(content, "content", MAX_DESCRIPTION_LENGTH),
                "role": role,
                "creator_id": self.get_user(creator_id)["id"],
            }
        )
        logger.info("Created prompt %s", prompt_name)
        return prompt

    def list_prompts(self) -> List[Dict[str, Any]]:
        return self.data.list_prompts()

    def get_prompt_by_name(self, name: str) -> Dict[str, Any]:
        prompt = self.data.fetch_prompt("name", name)
        if prompt is None:
            raise NotFoundError("Prompt not found")
        return prompt

    def activate_prompt(self, identifier: str) -> Dict[str, Any]:
        column = "id" if is_canonical_id(identifier) else "name"
        prompt = self.data.fetch_prompt(column, identifier)
        if prompt is None:
            raise NotFoundError("Prompt not found")
        self.data.activate_prompt(prompt["id"])
        logger.info("Activated prompt %s", prompt["name"])
        return self.data.fetch_prompt("id", prompt["id"])

    def get_active_prompt(self) -> Optional[Dict[str, Any]]:
        return self.data.fetch_active_prompt()

    # -- comments ----------------------------------------------------------

    @staticmethod
    def _commentable_kind(entity_type: str) -> EntityKind:
        for kind in COMMENTABLE_KINDS:
            if kind.name == entity_type:
                return kind
        raise ValidationError(f"Invalid entity type for comments: {entity_type}")

    def create_comment(
        self,
        author_id: str,
        entity_type: str,
        entity_id: str,
        content: str,
        *,
        parent_comment_id: Optional[str] = None,
        linked_text: Optional[str] = None,
        text_position_start: Optional[int] = None,
        text_position_end: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Create a general, reply or inline comment on an entity.

        Inline comments carry an anchor that is validated against the entity
        description.
        """
        kind = self._commentable_kind(entity_type)
        entity = self.get_entity(kind.name, entity_id)
        if self.data.fetch_user(author_id) is None:
            raise NotFoundError("Author not found")

        if parent_comment_id is not None:
            parent = self.data.fetch_comment(parent_comment_id)
            if parent is None:
                raise NotFoundError("Parent comment not found")
            if parent["entity_type"] != kind.name or parent["entity_id"] != entity["id"]:
                raise ValidationError("Parent comment must be on the same entity")

        anchor = self.anchors.create_anchor(
            entity.get(kind.body_field),
            linked_text,
            text_position_start,
            text_position_end,
        )

        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Comment content cannot be empty")

        values: Dict[str, Any] = {
            "entity_type": kind.name,
            "entity_id": entity["id"],
            "parent_comment_id": parent_comment_id,
            "author_id": author_id,
            "content": content.strip(),
            "linked_text": None,
            "text_position_start": None,
            "text_position_end": None,
        }
        if anchor is not None:
            values.update(
                linked_text=anchor.linked_text,
                text_position_start=anchor.start,
                text_position_end=anchor.end,
            )
        comment = self.data.insert_comment(values)
        logger.info(
            "Created %s comment %s on %s %s",
            "inline" if anchor else "general",
            comment["id"],
            kind.name,
            entity["reference_id"],
        )
        return self._format_comment(comment)

    def get_comment(self, comment_id: str) -> Dict[str, Any]:
        comment = self.data.fetch_comment(comment_id)
        if comment is None:
            raise NotFoundError("Comment not found")
        return self._format_comment(comment)

    def update_comment(self, comment_id: str, content: str) -> Dict[str, Any]:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Comment content cannot be empty")
        self.get_comment(comment_id)
        self.data.update_comment(comment_id, {"content": content.strip()})
        return self.get_comment(comment_id)

    def delete_comment(self, comment_id: str) -> None:
        self.get_comment(comment_id)
        if self.data.count_replies(comment_id):
            raise ConflictError("Comment has replies and cannot be deleted")
        self.data.delete_comment(comment_id)

    def resolve_comment(self, comment_id: str, resolved: bool = True) -> Dict[str, Any]:
        self.get_comment(comment_id)
        self.data.update_comment(comment_id, {"is_resolved": int(resolved)})
        return self.get_comment(comment_id)

    def unresolve_comment(self, comment_id: str) -> Dict[str, Any]:
        return self.resolve_comment(comment_id, resolved=False)

    def list_comments(self, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
        """Return the comment threads on an entity, replies nested under parents."""

        kind = self._commentable_kind(entity_type)
        entity = self.get_entity(kind.name, entity_id)
        rows = self.data.fetch_comments(kind.name, entity["id"])

        children: Dict[Optional[str], List[Dict[str, Any]]] = {}
        for row in rows:
            children.setdefault(row["parent_comment_id"], []).append(row)

        def build(row: Dict[str, Any], depth: int) -> Dict[str, Any]:
            comment = self._format_comment(row, depth)
            comment["replies"] = [
                build(child, depth + 1) for child in children.get(row["id"], [])
            ]
            return comment

        return [build(row, 0) for row in children.get(None, [])]

    def list_inline_comments(self, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
        kind = self._commentable_kind(entity_type)
        entity = self.get_entity(kind.name, entity_id)
        return [
            self._format_comment(row)
            for row in self.anchors.list_visible(kind.name, entity["id"])
        ]

    @staticmethod
    def _format_comment(row: Dict[str, Any], depth: Optional[int] = None) -> Dict[str, Any]:
        comment = dict(row)
        comment["is_inline"] = comment.get("linked_text") is not None
        comment["is_reply"] = comment.get("parent_comment_id") is not None
        if depth is None:
            depth = 1 if comment["is_reply"] else 0
        comment["depth"] = depth
        return comment

    # -- resources ---------------------------------------------------------

    def list_resources(self) -> List[Dict[str, Any]]:
        """Describe every resource readable through ``resources/read``."""

        resources: List[Dict[str, Any]] = [
            {
                "uri": f"requirements://{kind.collection}",
                "name": f"All {kind.collection.replace('-', ' ')}",
                "description": f"Collection of every {kind.label.lower()}",
                "mimeType": "application/json",
            }
            for kind in COMMENTABLE_KINDS
        ]
        resources.append(
            {
                "uri": "requirements://prompts",
                "name": "All prompts",
                "description": "Collection of system prompts",
                "mimeType": "application/json",
            }
        )
        resources.append(
            {
                "uri": "requirements://prompts/active",
                "name": "Active prompt",
                "description": "The prompt currently used as server instructions",
                "mimeType": "application/json",
            }
        )

        for kind in COMMENTABLE_KINDS:
            rows, _ = self.data.list_entities(
                kind.table, order_by="created_at ASC", limit=COLLECTION_RESOURCE_LIMIT
            )
            for row in rows:
                label = row.get("title") or (row.get("description") or "")[:80]
                resources.append(
                    {
                        "uri": f"requirements://{kind.collection}/{row['id']}",
                        "name": f"{row['reference_id']}: {label}",
                        "description": f"{kind.label} {row['reference_id']}",
                        "mimeType": "application/json",
                    }
                )
        return resources

    def list_collection(self, kind: str) -> List[Dict[str, Any]]:
        entity_kind = self._kind(kind)
        rows, _ = self.data.list_entities(
            entity_kind.table, order_by="created_at ASC", limit=COLLECTION_RESOURCE_LIMIT
        )
        return rows
