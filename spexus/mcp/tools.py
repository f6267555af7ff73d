"""Tool routing: argument checking, permission checks and service dispatch."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Tuple

from ..entities import (
    ACCEPTANCE_CRITERIA,
    EPIC,
    REQUIREMENT,
    STEERING_DOCUMENT,
    USER_STORY,
    EntityKind,
)
from ..errors import AuthorizationError, ValidationError
from .context import current_user
from .errors import INVALID_PARAMS, METHOD_NOT_FOUND, MCPError
from .schemas import tool_definitions

if TYPE_CHECKING:  # pragma: no cover
    from ..service import RequirementsService

logger = logging.getLogger(__name__)

ToolResult = Tuple[str, Any]
ToolHandler = Callable[[Dict[str, Any]], ToolResult]

_JSON_TYPES = {
    "string": str,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def _describe(kind: EntityKind, entity: Dict[str, Any]) -> str:
    label = entity.get("title") or (entity.get("description") or "")[:80]
    return f"{kind.label.lower()} {entity['reference_id']}: {label}"


def tool_response(summary: str, payload: Any) -> Dict[str, Any]:
    """Wrap a handler result in MCP tool-call content."""

    return {
        "content": [
            {"type": "text", "text": summary},
            {
                "type": "text",
                "text": json.dumps(payload, indent=2, sort_keys=True, default=str),
            },
        ]
    }


class ToolRouter:
    """Dispatch ``tools/call`` requests to the requirements service."""

    def __init__(self, service: "RequirementsService"):
        self.service = service
        self._definitions = tool_definitions()
        self._schemas = {tool["name"]: tool["inputSchema"] for tool in self._definitions}
        self._handlers: Dict[str, ToolHandler] = {
            "create_epic": partial(self._create, EPIC),
            "update_epic": partial(self._update, EPIC, "epic_id"),
            "create_user_story": partial(self._create, USER_STORY),
            "update_user_story": partial(self._update, USER_STORY, "user_story_id"),
            "get_user_story_requirements": self._get_user_story_requirements,
            "create_acceptance_criteria": partial(self._create, ACCEPTANCE_CRITERIA),
            "create_requirement": partial(self._create, REQUIREMENT),
            "update_requirement": partial(self._update, REQUIREMENT, "requirement_id"),
            "create_relationship": self._create_relationship,
            "search_global": self._search_global,
            "search_requirements": self._search_requirements,
            "list_steering_documents": self._list_steering_documents,
            "create_steering_document": partial(self._create, STEERING_DOCUMENT),
            "get_steering_document": partial(
                self._get, STEERING_DOCUMENT, "steering_document_id"
            ),
            "update_steering_document": partial(
                self._update, STEERING_DOCUMENT, "steering_document_id"
            ),
            "link_steering_to_epic": partial(self._steering_link, True),
            "unlink_steering_from_epic": partial(self._steering_link, False),
            "get_epic_steering_documents": self._get_epic_steering_documents,
            "create_comment": self._create_comment,
            "list_comments": self._list_comments,
            "resolve_comment": self._resolve_comment,
            "create_prompt": self._create_prompt,
            "activate_prompt": self._activate_prompt,
        }
        missing = set(self._schemas) ^ set(self._handlers)
        if missing:
            raise RuntimeError(f"Tool catalog and handlers disagree: {sorted(missing)}")

    def definitions(self) -> List[Dict[str, Any]]:
        """Return a copy of the advertised tool catalog."""

        return copy.deepcopy(self._definitions)

    @property
    def names(self) -> List[str]:
        return [tool["name"] for tool in self._definitions]

    async def call(self, name: Any, arguments: Any) -> Dict[str, Any]:
        """Validate ``arguments`` and run the tool called ``name``."""

        if not isinstance(name, str) or not name.strip():
            raise MCPError(code=INVALID_PARAMS, message="name must be a non-empty string")
        tool_name = name.strip()
        handler = self._handlers.get(tool_name)
        if handler is None:
            raise MCPError(code=METHOD_NOT_FOUND, message=f"Unknown tool: {tool_name}")

        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise MCPError(code=INVALID_PARAMS, message="arguments must be an object")

        checked = self._check_arguments(tool_name, arguments)
        logger.debug("Calling tool %s with %s", tool_name, sorted(checked))
        summary, payload = await asyncio.to_thread(handler, checked)
        return tool_response(summary, payload)

    # -- argument checking -------------------------------------------------

    def _check_arguments(self, tool_name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        schema = self._schemas[tool_name]
        properties = schema["properties"]
        for field in schema["required"]:
            if arguments.get(field) is None:
                raise ValidationError(f"Missing required argument: {field}")

        checked: Dict[str, Any] = {}
        for field, value in arguments.items():
            field_schema = properties.get(field)
            if field_schema is None:
                logger.debug("Ignoring unknown argument %s for tool %s", field, tool_name)
                continue
            if value is None:
                continue
            checked[field] = self._coerce(field, value, field_schema)
        return checked

    @staticmethod
    def _coerce(field: str, value: Any, field_schema: Dict[str, Any]) -> Any:
        expected = field_schema.get("type")
        if expected == "integer":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"{field} must be an integer")
            if isinstance(value, float):
                if not value.is_integer():
                    raise ValidationError(f"{field} must be an integer")
                value = int(value)
        elif expected in _JSON_TYPES:
            if not isinstance(value, _JSON_TYPES[expected]):
                raise ValidationError(f"{field} must be of type {expected}")

        allowed = field_schema.get("enum")
        if allowed is not None and value not in allowed:
            raise ValidationError(f"{field} must be one of: {', '.join(allowed)}")

        items = field_schema.get("items")
        if expected == "array" and items:
            value = [ToolRouter._coerce(f"{field} item", item, items) for item in value]
        return value

    @staticmethod
    def _assignee(arguments: Dict[str, Any]) -> None:
        if arguments.get("assignee_id") == "":
            arguments["assignee_id"] = None

    def _editor(self) -> Dict[str, Any]:
        return self.service.require_editor(current_user())

    @staticmethod
    def _authenticated() -> Dict[str, Any]:
        user = current_user()
        if user is None:
            raise AuthorizationError("Authentication required")
        return user

    # -- hierarchy ---------------------------------------------------------

    def _create(self, kind: EntityKind, arguments: Dict[str, Any]) -> ToolResult:
        user = self._editor()
        self._assignee(arguments)
        entity = self.service.create_entity(kind.name, user["id"], arguments)
        return f"Successfully created {_describe(kind, entity)}", entity

    def _update(
        self, kind: EntityKind, id_argument: str, arguments: Dict[str, Any]
    ) -> ToolResult:
        self._editor()
        changes = dict(arguments)
        identifier = changes.pop(id_argument)
        if "assignee_id" in arguments:
            self._assignee(changes)
        entity = self.service.update_entity(kind.name, identifier, changes)
        return f"Successfully updated {_describe(kind, entity)}", entity

    def _get(
        self, kind: EntityKind, id_argument: str, arguments: Dict[str, Any]
    ) -> ToolResult:
        entity = self.service.get_entity(kind.name, arguments[id_argument])
        return f"{kind.label} {entity['reference_id']}: {entity.get('title')}", entity

    def _get_user_story_requirements(self, arguments: Dict[str, Any]) -> ToolResult:
        story, requirements = self.service.get_user_story_requirements(
            arguments["user_story_id"]
        )
        payload = {
            "user_story": story,
            "requirements": requirements,
            "count": len(requirements),
        }
        return (
            f"Found {len(requirements)} requirements for user story {story['reference_id']}",
            payload,
        )

    def _create_relationship(self, arguments: Dict[str, Any]) -> ToolResult:
        user = self._editor()
        relationship = self.service.create_relationship(
            user["id"],
            arguments["source_requirement_id"],
            arguments["target_requirement_id"],
            arguments["relationship_type_id"],
        )
        summary = (
            "Successfully created relationship "
            f"{relationship['source_reference_id']} {relationship['relationship_type']} "
            f"{relationship['target_reference_id']}"
        )
        return summary, relationship

    # -- search ------------------------------------------------------------

    def _search_global(self, arguments: Dict[str, Any]) -> ToolResult:
        query = arguments["query"]
        entity_types = arguments.get("entity_types")
        limit = arguments.get("limit", 50)
        offset = arguments.get("offset", 0)
        results, total = self.service.search(
            query, entity_types, limit=limit, offset=offset
        )
        payload = {
            "results": results,
            "total_count": total,
            "query": query,
            "entity_types": entity_types or [],
            "limit": limit,
            "offset": offset,
        }
        return f"Found {total} results for query '{query}'", payload

    def _search_requirements(self, arguments: Dict[str, Any]) -> ToolResult:
        query = arguments["query"]
        requirements = self.service.search_requirements(query)
        payload = {"requirements": requirements, "query": query, "count": len(requirements)}
        return f"Found {len(requirements)} requirements matching '{query}'", payload

    # -- steering documents ------------------------------------------------

    def _list_steering_documents(self, arguments: Dict[str, Any]) -> ToolResult:
        limit = arguments.get("limit", 50)
        offset = arguments.get("offset", 0)
        documents, total = self.service.list_steering_documents(
            creator_id=arguments.get("creator_id"),
            search=arguments.get("search"),
            order_by=arguments.get("order_by"),
            limit=limit,
            offset=offset,
        )
        payload = {
            "steering_documents": documents,
            "total_count": total,
            "limit": limit,
            "offset": offset,
        }
        return f"Found {total} steering documents", payload

    def _steering_link(self, link: bool, arguments: Dict[str, Any]) -> ToolResult:
        self._editor()
        operation = (
            self.service.link_steering_document
            if link
            else self.service.unlink_steering_document
        )
        result = operation(arguments["steering_document_id"], arguments["epic_id"])
        document = result["steering_document"]["reference_id"]
        epic = result["epic"]["reference_id"]
        if link:
            summary = f"Successfully linked steering document {document} to epic {epic}"
        else:
            summary = f"Successfully unlinked steering document {document} from epic {epic}"
        return summary, {"steering_document_id": document, "epic_id": epic, "linked": link}

    def _get_epic_steering_documents(self, arguments: Dict[str, Any]) -> ToolResult:
        epic, documents = self.service.list_epic_steering_documents(arguments["epic_id"])
        payload = {
            "epic_id": epic["reference_id"],
            "steering_documents": documents,
            "count": len(documents),
        }
        return (
            f"Found {len(documents)} steering documents for epic {epic['reference_id']}",
            payload,
        )

    # -- comments ----------------------------------------------------------

    def _create_comment(self, arguments: Dict[str, Any]) -> ToolResult:
        user = self._authenticated()
        comment = self.service.create_comment(
            user["id"],
            arguments["entity_type"],
            arguments["entity_id"],
            arguments["content"],
            parent_comment_id=arguments.get("parent_comment_id"),
            linked_text=arguments.get("linked_text"),
            text_position_start=arguments.get("text_position_start"),
            text_position_end=arguments.get("text_position_end"),
        )
        style = "inline comment" if comment["is_inline"] else "comment"
        return (
            f"Successfully created {style} on {arguments['entity_type']} {arguments['entity_id']}",
            comment,
        )

    def _list_comments(self, arguments: Dict[str, Any]) -> ToolResult:
        if arguments.get("inline_only"):
            comments = self.service.list_inline_comments(
                arguments["entity_type"], arguments["entity_id"]
            )
        else:
            comments = self.service.list_comments(
                arguments["entity_type"], arguments["entity_id"]
            )
        payload = {"comments": comments, "count": len(comments)}
        return (
            f"Found {len(comments)} comments on {arguments['entity_type']} {arguments['entity_id']}",
            payload,
        )

    def _resolve_comment(self, arguments: Dict[str, Any]) -> ToolResult:
        self._authenticated()
        resolved = arguments.get("resolved", True)
        comment = self.service.resolve_comment(arguments["comment_id"], resolved)
        state = "resolved" if resolved else "reopened"
        return f"Comment {comment['id']} {state}", comment

    # -- prompts -----------------------------------------------------------

    def _create_prompt(self, arguments: Dict[str, Any]) -> ToolResult:
        user = self.service.require_administrator(current_user())
        prompt = self.service.create_prompt(
            user["id"],
            arguments["name"],
            arguments["title"],
            arguments["content"],
            description=arguments.get("description"),
            role=arguments.get("role", "assistant"),
        )
        return f"Successfully created prompt {prompt['name']}", prompt

    def _activate_prompt(self, arguments: Dict[str, Any]) -> ToolResult:
        self.service.require_administrator(current_user())
        prompt = self.service.activate_prompt(arguments["prompt_id"])
        return f"Prompt {prompt['name']} is now active", prompt
