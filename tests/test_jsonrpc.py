"""Tests for JSON-RPC envelope handling and error mapping."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3

import pytest

from spexus.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from spexus.mcp.errors import MCPError, map_error
from spexus.mcp.jsonrpc import JSONRPCProcessor, decode_payload, is_parse_error
from spexus.mcp.request_log import RequestLogger, extract_resource, redact


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def processor():
    proc = JSONRPCProcessor(request_logger=RequestLogger(slow_threshold_ms=10_000))

    async def echo(params):
        return {"params": params}

    async def explode(_params):
        raise RuntimeError("secret database password is hunter2")

    async def missing(_params):
        raise NotFoundError("Epic not found")

    async def forbidden(_params):
        raise AuthorizationError("Insufficient permissions")

    async def too_slow(_params):
        raise asyncio.TimeoutError()

    proc.register_handler("echo", echo)
    proc.register_handler("explode", explode)
    proc.register_handler("missing", missing)
    proc.register_handler("forbidden", forbidden)
    proc.register_handler("slow", too_slow)
    return proc


def test_register_handler_rejects_duplicates(processor):
    with pytest.raises(ValueError):
        processor.register_handler("echo", lambda params: params)


def test_request_echoes_id_and_result(processor):
    response = _run(
        processor.process(json.dumps({"jsonrpc": "2.0", "id": 7, "method": "echo", "params": {"a": 1}}))
    )
    assert response == {"jsonrpc": "2.0", "id": 7, "result": {"params": {"a": 1}}}


def test_string_id_is_echoed_verbatim(processor):
    response = _run(
        processor.process('{"jsonrpc": "2.0", "id": "abc", "method": "echo"}')
    )
    assert response["id"] == "abc"
    assert response["result"] == {"params": {}}


@pytest.mark.parametrize("raw", ["", "   ", "{not json", '{"a": NaN}'])
def test_malformed_input_is_parse_error(processor, raw):
    response = _run(processor.process(raw))
    assert response["id"] is None
    assert response["error"]["code"] == -32700
    assert is_parse_error(response)


def test_duplicate_keys_are_invalid_request(processor):
    response = _run(
        processor.process('{"jsonrpc": "2.0", "id": 1, "id": 2, "method": "echo"}')
    )
    assert response["id"] is None
    assert response["error"]["code"] == -32600


def test_decode_payload_rejects_infinity():
    with pytest.raises(ValueError):
        decode_payload('{"value": Infinity}')


def test_wrong_version_is_invalid_request(processor):
    response = _run(processor.process('{"jsonrpc": "1.0", "id": 3, "method": "echo"}'))
    assert response["id"] == 3
    assert response["error"]["code"] == -32600


def test_version_key_is_echoed(processor):
    response = _run(processor.process('{"version": "2.0", "id": 4, "method": "echo"}'))
    assert "version" in response
    assert "jsonrpc" not in response
    assert response["result"] == {"params": {}}


@pytest.mark.parametrize("bad_id", [True, 1.5, {"a": 1}, [1]])
def test_invalid_id_types_are_rejected(processor, bad_id):
    response = _run(
        processor.process_message({"jsonrpc": "2.0", "id": bad_id, "method": "echo"})
    )
    assert response["id"] is None
    assert response["error"]["code"] == -32600


def test_missing_method_is_invalid_request(processor):
    response = _run(processor.process_message({"jsonrpc": "2.0", "id": 5}))
    assert response["error"]["code"] == -32600


def test_unknown_method_is_method_not_found(processor):
    response = _run(
        processor.process_message({"jsonrpc": "2.0", "id": 8, "method": "unknown"})
    )
    assert response["id"] == 8
    assert response["error"]["code"] == -32601


def test_scalar_params_are_invalid(processor):
    response = _run(
        processor.process_message({"jsonrpc": "2.0", "id": 9, "method": "echo", "params": 3})
    )
    assert response["error"]["code"] == -32602


def test_notifications_produce_no_response(processor):
    assert _run(processor.process('{"jsonrpc": "2.0", "method": "echo"}')) is None
    assert _run(processor.process('{"jsonrpc": "2.0", "method": "explode"}')) is None
    assert _run(processor.process('{"jsonrpc": "2.0", "method": "unknown"}')) is None
    assert _run(processor.process_request('{"jsonrpc": "2.0", "method": "echo"}')) == b""


def test_batch_returns_one_response_per_request(processor):
    batch = [
        {"jsonrpc": "2.0", "id": 1, "method": "echo"},
        {"jsonrpc": "2.0", "method": "echo"},
        {"jsonrpc": "2.0", "id": 2, "method": "missing"},
        5,
    ]
    responses = _run(processor.process(json.dumps(batch)))
    assert len(responses) == 3
    assert responses[0]["id"] == 1
    assert responses[1]["error"] == {"code": -32602, "message": "Epic not found"}
    assert responses[2]["error"]["code"] == -32600


def test_empty_batch_is_invalid_request(processor):
    response = _run(processor.process("[]"))
    assert response["error"]["code"] == -32600


def test_batch_of_notifications_returns_nothing(processor):
    batch = [{"jsonrpc": "2.0", "method": "echo"}, {"jsonrpc": "2.0", "method": "echo"}]
    assert _run(processor.process(json.dumps(batch))) is None


def test_internal_failures_do_not_leak_details(processor, caplog):
    with caplog.at_level(logging.ERROR, logger="spexus.mcp.requests"):
        response = _run(
            processor.process_message({"jsonrpc": "2.0", "id": 10, "method": "explode"})
        )
    assert response["error"] == {
        "code": -32603,
        "message": "Service temporarily unavailable",
    }
    assert "hunter2" not in json.dumps(response)
    assert any("explode" in record.getMessage() for record in caplog.records)


def test_authorization_failures_use_fixed_message(processor):
    response = _run(
        processor.process_message({"jsonrpc": "2.0", "id": 11, "method": "forbidden"})
    )
    assert response["error"] == {"code": -32603, "message": "Unauthorized access"}


def test_timeouts_are_reported(processor):
    response = _run(
        processor.process_message({"jsonrpc": "2.0", "id": 12, "method": "slow"})
    )
    assert response["error"] == {"code": -32603, "message": "Operation timeout"}


def test_slow_requests_are_flagged(caplog):
    proc = JSONRPCProcessor(request_logger=RequestLogger(slow_threshold_ms=0))

    async def sleepy(_params):
        await asyncio.sleep(0.01)
        return {}

    proc.register_handler("sleepy", sleepy)
    with caplog.at_level(logging.WARNING, logger="spexus.mcp.requests"):
        _run(proc.process_message({"jsonrpc": "2.0", "id": 1, "method": "sleepy"}))
    assert any(getattr(record, "slow_operation", False) for record in caplog.records)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (ValidationError("title is required"), (-32602, "title is required")),
        (ConflictError("Relationship already exists"), (-32602, "Relationship already exists")),
        (NotFoundError("Epic not found"), (-32602, "Epic not found")),
        (AuthorizationError("nope"), (-32603, "Unauthorized access")),
        (TimeoutError(), (-32603, "Operation timeout")),
        (asyncio.CancelledError(), (-32603, "Operation canceled")),
        (ServiceUnavailableError(), (-32603, "Service temporarily unavailable")),
        (sqlite3.OperationalError("database is locked"), (-32603, "Service temporarily unavailable")),
        (KeyError("boom"), (-32603, "Internal server error")),
    ],
)
def test_map_error(exc, expected):
    mapped = map_error(exc)
    assert (mapped.code, mapped.message) == expected
    assert mapped.data is None


def test_map_error_passes_mcp_errors_through():
    original = MCPError(code=-32601, message="Unknown tool: nope")
    assert map_error(original) is original


def test_redact_masks_credentials():
    redacted = redact(
        {
            "api_token": "abc",
            "nested": [{"password": "x", "note": "Bearer abc.def"}],
            "title": "kept",
        }
    )
    assert redacted["api_token"] == "[REDACTED]"
    assert redacted["nested"][0]["password"] == "[REDACTED]"
    assert "abc.def" not in redacted["nested"][0]["note"]
    assert redacted["title"] == "kept"


@pytest.mark.parametrize(
    "tool, arguments, expected",
    [
        ("search_global", {"query": "x"}, ("search", "")),
        ("search_requirements", {"query": "x"}, ("requirement", "")),
        (
            "create_acceptance_criteria",
            {"user_story_id": "US-001"},
            ("acceptance_criteria", "US-001"),
        ),
        (
            "create_relationship",
            {"source_requirement_id": "REQ-001", "target_requirement_id": "REQ-002"},
            ("relationship", "REQ-001"),
        ),
        ("update_epic", {"epic_id": "EP-001"}, ("epic", "EP-001")),
        ("create_user_story", {"epic_id": "EP-001"}, ("user_story", "")),
        ("update_requirement", {"requirement_id": "REQ-002"}, ("requirement", "REQ-002")),
        ("resolve_comment", {"comment_id": "c1"}, ("comment", "c1")),
        ("activate_prompt", {"prompt_id": "p1"}, ("prompt", "p1")),
        ("mystery", {}, ("unknown", "")),
    ],
)
def test_extract_resource(tool, arguments, expected):
    assert extract_resource(tool, arguments) == expected
