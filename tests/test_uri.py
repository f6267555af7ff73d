"""Tests for resource URI parsing, resolution and loading."""

from __future__ import annotations

import json

import pytest

from spexus.entities import is_reference_id
from spexus.errors import NotFoundError, ValidationError
from spexus.mcp.uri import ResourceURI, URIResolver, parse_resource_uri


@pytest.fixture()
def hierarchy(service, editor, functional_type):
    epic = service.create_epic(editor["id"], "Checkout", 1, description="Pay for things")
    story = service.create_user_story(editor["id"], epic["id"], "Pay by card", 2)
    criteria = service.create_acceptance_criteria(
        editor["id"], story["id"], "WHEN paying THEN the card is charged"
    )
    requirement = service.create_requirement(
        editor["id"], story["id"], functional_type["id"], "Charge card", 2
    )
    return {"epic": epic, "story": story, "criteria": criteria, "requirement": requirement}


@pytest.fixture()
def resolver(service):
    return URIResolver(service)


def test_parse_collection_and_entity_uris():
    assert parse_resource_uri("requirements://epics") == ResourceURI("epics")
    parsed = parse_resource_uri("requirements://user-stories/US-004/requirements")
    assert parsed.collection == "user-stories"
    assert parsed.identifier == "US-004"
    assert parsed.sub_path == "requirements"
    assert parsed.kind.name == "user_story"
    assert not parsed.is_collection


@pytest.mark.parametrize(
    "uri",
    [
        "epic://EP-001",
        "requirements://",
        "requirements://widgets",
        "requirements://epics/not-an-id",
        "requirements://epics/EP-001/unknown",
        "requirements://epics/EP-001/hierarchy/extra",
        "requirements://prompts/a/b",
    ],
)
def test_parse_rejects_malformed_uris(uri):
    with pytest.raises(ValidationError):
        parse_resource_uri(uri)


def test_resolve_by_reference_and_uuid(resolver, hierarchy):
    epic = hierarchy["epic"]
    assert resolver.resolve("requirements://epics/EP-001") == "epic://EP-001"
    assert resolver.resolve(f"requirements://epics/{epic['id']}") == "epic://EP-001"
    assert (
        resolver.resolve(f"requirements://epics/{epic['id']}/hierarchy")
        == "epic://EP-001/hierarchy"
    )


def test_resolve_leaves_collections_and_foreign_schemes(resolver):
    assert resolver.resolve("requirements://epics") == "requirements://epics"
    assert resolver.resolve("requirements://prompts/active") == "requirements://prompts/active"
    assert resolver.resolve("https://example.com/x") == "https://example.com/x"


def test_resolve_prompt_by_name(resolver):
    assert resolver.resolve("requirements://prompts/onboarding") == "prompt://onboarding"


def test_resolve_unknown_entity_is_not_found(resolver):
    with pytest.raises(NotFoundError):
        resolver.resolve("requirements://epics/EP-999")


def test_read_entity_returns_canonical_uri_and_json(resolver, hierarchy):
    result = resolver.read("requirements://requirements/REQ-001")
    content = result["contents"][0]
    assert content["uri"] == "requirement://REQ-001"
    assert content["mimeType"] == "application/json"
    assert json.loads(content["text"])["id"] == hierarchy["requirement"]["id"]


def test_read_collection(resolver, hierarchy):
    result = resolver.read("requirements://epics")
    payload = json.loads(result["contents"][0]["text"])
    assert result["contents"][0]["uri"] == "requirements://epics"
    assert payload["count"] == 1
    assert payload["epics"][0]["reference_id"] == "EP-001"


def test_read_epic_hierarchy(resolver, hierarchy):
    result = resolver.read("requirements://epics/EP-001/hierarchy")
    payload = json.loads(result["contents"][0]["text"])
    story = payload["user_stories"][0]
    assert story["reference_id"] == "US-001"
    assert story["acceptance_criteria"][0]["reference_id"] == "AC-001"
    assert story["requirements"][0]["reference_id"] == "REQ-001"


def test_read_story_sub_resources(resolver, hierarchy):
    requirements = json.loads(
        resolver.read("requirements://user-stories/US-001/requirements")["contents"][0]["text"]
    )
    criteria = json.loads(
        resolver.read("requirements://user-stories/US-001/acceptance-criteria")["contents"][0][
            "text"
        ]
    )
    assert requirements["count"] == 1
    assert criteria["acceptance_criteria"][0]["id"] == hierarchy["criteria"]["id"]


def test_read_requirement_relationships(service, resolver, hierarchy, editor, functional_type):
    other = service.create_requirement(
        editor["id"], hierarchy["story"]["id"], functional_type["id"], "Refund card", 3
    )
    depends_on = next(
        row for row in service.list_relationship_types() if row["name"] == "depends_on"
    )
    service.create_relationship(editor["id"], "REQ-001", other["id"], depends_on["id"])

    payload = json.loads(
        resolver.read("requirements://requirements/REQ-001/relationships")["contents"][0]["text"]
    )
    assert len(payload["relationships"]) == 1


def test_read_active_prompt_without_one_is_not_found(resolver):
    with pytest.raises(NotFoundError):
        resolver.read("requirements://prompts/active")


def test_read_prompt_collection(service, resolver, admin):
    service.create_prompt(admin["id"], "onboarding", "Onboarding", "Be helpful")
    payload = json.loads(resolver.read("requirements://prompts")["contents"][0]["text"])
    assert payload["count"] == 1
    named = json.loads(resolver.read("requirements://prompts/onboarding")["contents"][0]["text"])
    assert named["content"] == "Be helpful"


@pytest.mark.parametrize("value", ["EP-001", "US-4", "AC-10", "REQ-2", "STD-100"])
def test_reference_ids_accept_positive_decimals(value):
    assert is_reference_id(value)


@pytest.mark.parametrize(
    "value", ["EP-0", "EP-000", "EP-001\n", "EP-١", "ep-001", "EP-", "EP-1a", "XX-001"]
)
def test_reference_ids_reject_malformed_values(value):
    assert not is_reference_id(value)


def test_parse_rejects_zero_reference():
    with pytest.raises(ValidationError):
        parse_resource_uri("requirements://epics/EP-0")
