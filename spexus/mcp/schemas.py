"""Static catalog of MCP tools and their argument schemas."""

from __future__ import annotations

from typing import Any, Dict, List

from ..entities import ENTITY_STATUSES, REQUIREMENT_STATUSES

PRIORITY_LEVELS = "(1=Critical, 2=High, 3=Medium, 4=Low)"


def _string(description: str, **extra: Any) -> Dict[str, Any]:
    return {"type": "string", "description": description, **extra}


def _identifier(prefix: str, what: str) -> Dict[str, Any]:
    return _string(f"UUID or reference ID ({prefix}-XXX) of {what}")


def _title(what: str, *, new: bool = False) -> Dict[str, Any]:
    label = "New title" if new else "Title"
    suffix = "optional" if new else "required"
    return _string(f"{label} of the {what} ({suffix}, max 500 characters)", maxLength=500)


def _description(what: str, *, new: bool = False) -> Dict[str, Any]:
    label = "New description" if new else "Detailed description"
    return _string(f"{label} of the {what} (optional, max 50000 characters)", maxLength=50000)


def _priority(*, new: bool = False) -> Dict[str, Any]:
    return {
        "type": "integer",
        "description": f"{'New priority' if new else 'Priority'} level {PRIORITY_LEVELS}",
        "minimum": 1,
        "maximum": 4,
    }


def _assignee(what: str, *, update: bool = False) -> Dict[str, Any]:
    hint = "empty string to unassign" if update else "optional"
    return _string(f"UUID of the user to assign the {what} to ({hint})")


def _status(what: str, values: tuple) -> Dict[str, Any]:
    return _string(
        f"New status of the {what} ({', '.join(values)})", enum=list(values)
    )


def _limit() -> Dict[str, Any]:
    return {
        "type": "integer",
        "description": "Maximum number of results to return (default: 50, max: 100)",
        "minimum": 1,
        "maximum": 100,
        "default": 50,
    }


def _offset() -> Dict[str, Any]:
    return {
        "type": "integer",
        "description": "Number of results to skip for pagination (default: 0)",
        "minimum": 0,
        "default": 0,
    }


def _tool(
    name: str,
    title: str,
    description: str,
    properties: Dict[str, Any],
    required: List[str],
) -> Dict[str, Any]:
    return {
        "name": name,
        "title": title,
        "description": description,
        "inputSchema": {
            "type": "object",
            "properties": properties,
            "required": required,
        },
    }


def _hierarchy_tools() -> List[Dict[str, Any]]:
    return [
        _tool(
            "create_epic",
            "Create Epic",
            "Create a new epic in the requirements management system",
            {
                "title": _title("epic"),
                "description": _description("epic"),
                "priority": _priority(),
                "assignee_id": _assignee("epic"),
            },
            ["title", "priority"],
        ),
        _tool(
            "update_epic",
            "Update Epic",
            "Update an existing epic",
            {
                "epic_id": _identifier("EP", "the epic to update"),
                "title": _title("epic", new=True),
                "description": _description("epic", new=True),
                "priority": _priority(new=True),
                "assignee_id": _assignee("epic", update=True),
                "status": _status("epic", ENTITY_STATUSES),
            },
            ["epic_id"],
        ),
        _tool(
            "create_user_story",
            "Create User Story",
            "Create a new user story within an epic",
            {
                "title": _title("user story"),
                "description": _string(
                    "Description of the user story, preferably in format "
                    "'As [role], I want [function], so that [goal]' "
                    "(optional, max 50000 characters)",
                    maxLength=50000,
                ),
                "priority": _priority(),
                "epic_id": _identifier("EP", "the parent epic"),
                "assignee_id": _assignee("user story"),
            },
            ["title", "priority", "epic_id"],
        ),
        _tool(
            "update_user_story",
            "Update User Story",
            "Update an existing user story",
            {
                "user_story_id": _identifier("US", "the user story to update"),
                "title": _title("user story", new=True),
                "description": _description("user story", new=True),
                "priority": _priority(new=True),
                "assignee_id": _assignee("user story", update=True),
                "status": _status("user story", ENTITY_STATUSES),
            },
            ["user_story_id"],
        ),
        _tool(
            "get_user_story_requirements",
            "Get User Story Requirements",
            "List the requirements that belong to a user story",
            {"user_story_id": _identifier("US", "the user story")},
            ["user_story_id"],
        ),
        _tool(
            "create_acceptance_criteria",
            "Create Acceptance Criteria",
            "Create acceptance criteria for a user story",
            {
                "user_story_id": _identifier("US", "the parent user story"),
                "description": _string(
                    "Acceptance criteria text, preferably in WHEN/THEN form "
                    "(required, max 50000 characters)",
                    maxLength=50000,
                ),
            },
            ["user_story_id", "description"],
        ),
        _tool(
            "create_requirement",
            "Create Requirement",
            "Create a new requirement within a user story",
            {
                "title": _title("requirement"),
                "description": _description("requirement"),
                "priority": _priority(),
                "user_story_id": _identifier("US", "the parent user story"),
                "acceptance_criteria_id": _identifier(
                    "AC", "the linked acceptance criteria (optional)"
                ),
                "type_id": _string(
                    "UUID of the requirement type (Functional, Non-Functional, etc.)"
                ),
                "assignee_id": _assignee("requirement"),
            },
            ["title", "priority", "user_story_id", "type_id"],
        ),
        _tool(
            "update_requirement",
            "Update Requirement",
            "Update an existing requirement",
            {
                "requirement_id": _identifier("REQ", "the requirement to update"),
                "title": _title("requirement", new=True),
                "description": _description("requirement", new=True),
                "priority": _priority(new=True),
                "assignee_id": _assignee("requirement", update=True),
                "status": _status("requirement", REQUIREMENT_STATUSES),
            },
            ["requirement_id"],
        ),
        _tool(
            "create_relationship",
            "Create Relationship",
            "Create a relationship between two requirements",
            {
                "source_requirement_id": _identifier("REQ", "the source requirement"),
                "target_requirement_id": _identifier("REQ", "the target requirement"),
                "relationship_type_id": _string(
                    "UUID of the relationship type (depends_on, blocks, relates_to, etc.)"
                ),
            },
            ["source_requirement_id", "target_requirement_id", "relationship_type_id"],
        ),
    ]


def _search_tools() -> List[Dict[str, Any]]:
    return [
        _tool(
            "search_global",
            "Global Search",
            "Search across epics, user stories, acceptance criteria and requirements",
            {
                "query": _string("Search query string"),
                "entity_types": {
                    "type": "array",
                    "description": "Entity types to search (optional, defaults to all)",
                    "items": {
                        "type": "string",
                        "enum": [
                            "epic",
                            "user_story",
                            "acceptance_criteria",
                            "requirement",
                        ],
                    },
                },
                "limit": _limit(),
                "offset": _offset(),
            },
            ["query"],
        ),
        _tool(
            "search_requirements",
            "Search Requirements",
            "Search requirements by title and description",
            {"query": _string("Search query string for requirements")},
            ["query"],
        ),
    ]


def _steering_tools() -> List[Dict[str, Any]]:
    return [
        _tool(
            "list_steering_documents",
            "List Steering Documents",
            "List steering documents with optional filtering",
            {
                "creator_id": _string("Filter by creator UUID (optional)"),
                "search": _string(
                    "Search query for full-text search in title and description (optional)"
                ),
                "order_by": _string(
                    "Order results by field and direction (optional, default: 'created_at DESC')"
                ),
                "limit": _limit(),
                "offset": _offset(),
            },
            [],
        ),
        _tool(
            "create_steering_document",
            "Create Steering Document",
            "Create a new steering document",
            {
                "title": _title("steering document"),
                "description": _description("steering document content"),
            },
            ["title"],
        ),
        _tool(
            "get_steering_document",
            "Get Steering Document",
            "Get a steering document by UUID or reference ID",
            {
                "steering_document_id": _identifier(
                    "STD", "the steering document to retrieve"
                )
            },
            ["steering_document_id"],
        ),
        _tool(
            "update_steering_document",
            "Update Steering Document",
            "Update an existing steering document",
            {
                "steering_document_id": _identifier(
                    "STD", "the steering document to update"
                ),
                "title": _title("steering document", new=True),
                "description": _description("steering document", new=True),
            },
            ["steering_document_id"],
        ),
        _tool(
            "link_steering_to_epic",
            "Link Steering Document to Epic",
            "Link a steering document to an epic",
            {
                "steering_document_id": _identifier("STD", "the steering document"),
                "epic_id": _identifier("EP", "the epic"),
            },
            ["steering_document_id", "epic_id"],
        ),
        _tool(
            "unlink_steering_from_epic",
            "Unlink Steering Document from Epic",
            "Unlink a steering document from an epic",
            {
                "steering_document_id": _identifier("STD", "the steering document"),
                "epic_id": _identifier("EP", "the epic"),
            },
            ["steering_document_id", "epic_id"],
        ),
        _tool(
            "get_epic_steering_documents",
            "Get Epic Steering Documents",
            "Get all steering documents linked to an epic",
            {"epic_id": _identifier("EP", "the epic")},
            ["epic_id"],
        ),
    ]


def _comment_tools() -> List[Dict[str, Any]]:
    return [
        _tool(
            "create_comment",
            "Create Comment",
            "Comment on an entity; supply linked_text and positions for an inline comment",
            {
                "entity_type": _string(
                    "Type of the commented entity",
                    enum=["epic", "user_story", "acceptance_criteria", "requirement"],
                ),
                "entity_id": _string("UUID or reference ID of the commented entity"),
                "content": _string("Comment text (required)"),
                "parent_comment_id": _string("UUID of the comment being replied to (optional)"),
                "linked_text": _string(
                    "Exact text of the entity description the comment refers to (inline only)"
                ),
                "text_position_start": {
                    "type": "integer",
                    "description": "Start offset of linked_text in the description (inline only)",
                    "minimum": 0,
                },
                "text_position_end": {
                    "type": "integer",
                    "description": "End offset (exclusive) of linked_text in the description (inline only)",
                    "minimum": 0,
                },
            },
            ["entity_type", "entity_id", "content"],
        ),
        _tool(
            "list_comments",
            "List Comments",
            "List the comment threads on an entity",
            {
                "entity_type": _string(
                    "Type of the commented entity",
                    enum=["epic", "user_story", "acceptance_criteria", "requirement"],
                ),
                "entity_id": _string("UUID or reference ID of the commented entity"),
                "inline_only": {
                    "type": "boolean",
                    "description": "Return only visible inline comments (optional)",
                    "default": False,
                },
            },
            ["entity_type", "entity_id"],
        ),
        _tool(
            "resolve_comment",
            "Resolve Comment",
            "Mark a comment as resolved or reopen it",
            {
                "comment_id": _string("UUID of the comment"),
                "resolved": {
                    "type": "boolean",
                    "description": "False reopens the comment (optional, default: true)",
                    "default": True,
                },
            },
            ["comment_id"],
        ),
    ]


def _prompt_tools() -> List[Dict[str, Any]]:
    return [
        _tool(
            "create_prompt",
            "Create Prompt",
            "Create a system prompt that can later be activated as server instructions",
            {
                "name": _string("Unique prompt name"),
                "title": _title("prompt"),
                "description": _description("prompt"),
                "content": _string("Prompt text (required)", maxLength=50000),
                "role": _string(
                    "Role of the prompt message (optional, default: assistant)",
                    enum=["user", "assistant"],
                ),
            },
            ["name", "title", "content"],
        ),
        _tool(
            "activate_prompt",
            "Activate Prompt",
            "Make a prompt the active system prompt",
            {"prompt_id": _string("UUID or name of the prompt")},
            ["prompt_id"],
        ),
    ]


def tool_definitions() -> List[Dict[str, Any]]:
    """Return the full tool catalog advertised by ``tools/list``."""

    return [
        *_hierarchy_tools(),
        *_search_tools(),
        *_steering_tools(),
        *_comment_tools(),
        *_prompt_tools(),
    ]
