"""Tests for tool argument checking, permissions and dispatch."""

from __future__ import annotations

import asyncio
import json

import pytest

from spexus.errors import AuthorizationError, NotFoundError, ValidationError
from spexus.mcp.context import request_context
from spexus.mcp.errors import MCPError
from spexus.mcp.tools import ToolRouter


def _run(coro):
    return asyncio.run(coro)


def _call(router, name, arguments, user):
    async def scenario():
        with request_context(user):
            return await router.call(name, arguments)

    return _run(scenario())


def _payload(result):
    return json.loads(result["content"][1]["text"])


def _summary(result):
    return result["content"][0]["text"]


@pytest.fixture()
def router(service):
    return ToolRouter(service)


def test_catalog_matches_handlers(router):
    names = router.names
    assert len(names) == len(set(names))
    assert "create_epic" in names
    assert "activate_prompt" in names
    definitions = router.definitions()
    definitions[0]["name"] = "changed"
    assert router.definitions()[0]["name"] != "changed"


def test_unknown_tool_is_method_not_found(router, editor):
    with pytest.raises(MCPError) as excinfo:
        _call(router, "drop_tables", {}, editor)
    assert excinfo.value.code == -32601
    assert excinfo.value.message == "Unknown tool: drop_tables"


def test_arguments_must_be_an_object(router, editor):
    with pytest.raises(MCPError) as excinfo:
        _call(router, "create_epic", ["title"], editor)
    assert excinfo.value.code == -32602


def test_create_epic_summary_and_payload(router, editor):
    result = _call(router, "create_epic", {"title": "Checkout", "priority": 1}, editor)
    assert _summary(result) == "Successfully created epic EP-001: Checkout"
    payload = _payload(result)
    assert payload["creator_id"] == editor["id"]
    assert payload["status"] == "Backlog"


def test_missing_required_argument(router, editor):
    with pytest.raises(ValidationError) as excinfo:
        _call(router, "create_epic", {"title": "Checkout"}, editor)
    assert "priority" in str(excinfo.value)


def test_integral_floats_are_coerced(router, editor):
    result = _call(router, "create_epic", {"title": "Checkout", "priority": 2.0}, editor)
    assert _payload(result)["priority"] == 2


@pytest.mark.parametrize("priority", ["1", 1.5, True])
def test_bad_integer_arguments(router, editor, priority):
    with pytest.raises(ValidationError):
        _call(router, "create_epic", {"title": "Checkout", "priority": priority}, editor)


def test_unknown_arguments_are_ignored(router, editor):
    result = _call(
        router, "create_epic", {"title": "Checkout", "priority": 1, "colour": "red"}, editor
    )
    assert "colour" not in _payload(result)


def test_mutations_require_editor_role(router, commenter):
    with pytest.raises(AuthorizationError):
        _call(router, "create_epic", {"title": "Checkout", "priority": 1}, commenter)
    with pytest.raises(AuthorizationError):
        _call(router, "create_epic", {"title": "Checkout", "priority": 1}, None)


def test_update_with_status_enum(router, editor):
    _call(router, "create_epic", {"title": "Checkout", "priority": 1}, editor)
    result = _call(
        router, "update_epic", {"epic_id": "EP-001", "status": "Done", "assignee_id": ""}, editor
    )
    assert _summary(result) == "Successfully updated epic EP-001: Checkout"
    assert _payload(result)["status"] == "Done"
    with pytest.raises(ValidationError):
        _call(router, "update_epic", {"epic_id": "EP-001", "status": "Shipped"}, editor)


def test_full_hierarchy_through_tools(router, service, editor, functional_type):
    _call(router, "create_epic", {"title": "Checkout", "priority": 1}, editor)
    _call(
        router,
        "create_user_story",
        {"epic_id": "EP-001", "title": "Pay by card", "priority": 2},
        editor,
    )
    _call(
        router,
        "create_acceptance_criteria",
        {"user_story_id": "US-001", "description": "WHEN paying THEN charge"},
        editor,
    )
    _call(
        router,
        "create_requirement",
        {
            "user_story_id": "US-001",
            "type_id": functional_type["id"],
            "title": "Charge card",
            "priority": 2,
            "acceptance_criteria_id": "AC-001",
        },
        editor,
    )
    _call(
        router,
        "create_requirement",
        {
            "user_story_id": "US-001",
            "type_id": functional_type["id"],
            "title": "Email receipt",
            "priority": 3,
        },
        editor,
    )
    relates = next(
        row for row in service.list_relationship_types() if row["name"] == "relates_to"
    )
    relationship = _call(
        router,
        "create_relationship",
        {
            "source_requirement_id": "REQ-001",
            "target_requirement_id": "REQ-002",
            "relationship_type_id": relates["id"],
        },
        editor,
    )
    assert _summary(relationship) == (
        "Successfully created relationship REQ-001 relates_to REQ-002"
    )

    listing = _call(router, "get_user_story_requirements", {"user_story_id": "US-001"}, editor)
    assert _summary(listing) == "Found 2 requirements for user story US-001"
    assert _payload(listing)["count"] == 2


def test_search_global_reports_totals(router, editor):
    _call(router, "create_epic", {"title": "Card payments", "priority": 1}, editor)
    _call(router, "create_epic", {"title": "Card refunds", "priority": 2}, editor)
    result = _call(
        router, "search_global", {"query": "card", "limit": 1, "entity_types": ["epic"]}, editor
    )
    assert _summary(result) == "Found 2 results for query 'card'"
    payload = _payload(result)
    assert payload["total_count"] == 2
    assert len(payload["results"]) == 1
    assert payload["limit"] == 1

    with pytest.raises(ValidationError):
        _call(router, "search_global", {"query": "card", "entity_types": ["widget"]}, editor)


def test_steering_document_tools(router, editor):
    _call(router, "create_epic", {"title": "Checkout", "priority": 1}, editor)
    created = _call(
        router, "create_steering_document", {"title": "PCI policy", "description": "Rules"}, editor
    )
    assert _summary(created) == "Successfully created steering document STD-001: PCI policy"

    fetched = _call(router, "get_steering_document", {"steering_document_id": "STD-001"}, editor)
    assert _payload(fetched)["title"] == "PCI policy"

    linked = _call(
        router, "link_steering_to_epic", {"steering_document_id": "STD-001", "epic_id": "EP-001"}, editor
    )
    assert _payload(linked) == {"steering_document_id": "STD-001", "epic_id": "EP-001", "linked": True}

    documents = _call(router, "get_epic_steering_documents", {"epic_id": "EP-001"}, editor)
    assert _payload(documents)["count"] == 1

    listing = _call(router, "list_steering_documents", {}, editor)
    assert _payload(listing)["total_count"] == 1

    unlinked = _call(
        router,
        "unlink_steering_from_epic",
        {"steering_document_id": "STD-001", "epic_id": "EP-001"},
        editor,
    )
    assert _payload(unlinked)["linked"] is False


def test_commenters_can_comment_but_not_edit(router, service, editor, commenter):
    service.create_epic(editor["id"], "Signup", 1, description="Please validate email field")
    result = _call(
        router,
        "create_comment",
        {
            "entity_type": "epic",
            "entity_id": "EP-001",
            "content": "Which validation rules?",
            "linked_text": "validate email",
            "text_position_start": 7,
            "text_position_end": 21,
        },
        commenter,
    )
    assert _summary(result) == "Successfully created inline comment on epic EP-001"
    comment = _payload(result)
    assert comment["author_id"] == commenter["id"]

    listing = _call(
        router,
        "list_comments",
        {"entity_type": "epic", "entity_id": "EP-001", "inline_only": True},
        commenter,
    )
    assert _payload(listing)["count"] == 1

    resolved = _call(router, "resolve_comment", {"comment_id": comment["id"]}, commenter)
    assert _payload(resolved)["is_resolved"] is True

    with pytest.raises(AuthorizationError):
        _call(router, "update_epic", {"epic_id": "EP-001", "title": "Edited"}, commenter)
    with pytest.raises(AuthorizationError):
        _call(
            router,
            "create_comment",
            {"entity_type": "epic", "entity_id": "EP-001", "content": "Hi"},
            None,
        )


def test_comment_entity_type_must_be_commentable(router, editor):
    with pytest.raises(ValidationError):
        _call(
            router,
            "create_comment",
            {"entity_type": "steering_document", "entity_id": "STD-001", "content": "Hi"},
            editor,
        )


def test_prompt_tools_require_administrator(router, editor, admin):
    arguments = {"name": "onboarding", "title": "Onboarding", "content": "Be helpful"}
    with pytest.raises(AuthorizationError):
        _call(router, "create_prompt", arguments, editor)

    created = _call(router, "create_prompt", arguments, admin)
    assert _summary(created) == "Successfully created prompt onboarding"
    activated = _call(router, "activate_prompt", {"prompt_id": "onboarding"}, admin)
    assert _payload(activated)["is_active"] is True


def test_missing_entities_surface_not_found(router, editor):
    with pytest.raises(NotFoundError):
        _call(router, "update_requirement", {"requirement_id": "REQ-404", "title": "x"}, editor)
