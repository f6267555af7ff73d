"""Unit tests for the MCP server implementation."""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import sqlite3
import time

import pytest

from spexus.mcp.server import SERVER_NAME, MCPServer


def _run(coro):
    return asyncio.run(coro)


async def _open_connection_with_retry(host: str, port: int, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last_error: Exception | None = None
    while True:
        try:
            return await asyncio.open_connection(host, port)
        except (ConnectionRefusedError, OSError) as exc:
            last_error = exc
            if loop.time() >= deadline:
                raise AssertionError(
                    f"Timed out waiting for MCP server on {host}:{port}"
                ) from last_error
            await asyncio.sleep(0.05)


def _initialize(version="2025-03-26", key="version"):
    return {
        key: "2.0",
        "id": 1,
        "method": "initialize",
        "params": {
            "protocolVersion": version,
            "clientInfo": {"name": "x", "version": "1"},
        },
    }


def _tool_call(message_id, name, arguments):
    return {
        "jsonrpc": "2.0",
        "id": message_id,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments},
    }


@pytest.fixture()
def server(service, editor):
    return MCPServer(service, user=editor)


def test_initialize_without_active_prompt(server):
    response = _run(server.handle_message(_initialize()))
    result = response["result"]
    assert response["version"] == "2.0"
    assert response["id"] == 1
    assert result["protocolVersion"] == "2025-03-26"
    assert result["serverInfo"]["name"] == SERVER_NAME == "spexus mcp"
    assert result["instructions"] == ""
    assert result["capabilities"]["tools"] == {"listChanged": False}
    assert "prompts" not in result["capabilities"]
    assert result["capabilities"]["resources"] == {"listChanged": False}


def test_initialize_echoes_later_supported_version(server):
    response = _run(server.handle_message(_initialize("2025-06-18", key="jsonrpc")))
    assert response["result"]["protocolVersion"] == "2025-06-18"


@pytest.mark.parametrize("version", ["2024-01-01", "latest", None])
def test_initialize_rejects_unsupported_protocol(server, version):
    response = _run(server.handle_message(_initialize(version)))
    error = response["error"]
    assert error["code"] == -32600
    assert error["message"].startswith("Unsupported protocol version")
    assert error["data"]["supported_versions"] == ["2025-03-26", "2025-06-18"]
    assert error["data"]["received_version"] == version


def test_initialize_requires_client_info(server):
    message = _initialize()
    del message["params"]["clientInfo"]
    response = _run(server.handle_message(message))
    assert response["error"]["code"] == -32602


def test_initialize_returns_active_prompt_as_instructions(service, admin):
    prompt = service.create_prompt(
        admin["id"], "guide", "Guide", "Always cite reference IDs", description="House rules"
    )
    service.activate_prompt(prompt["id"])
    server = MCPServer(service, user=admin)

    result = _run(server.handle_message(_initialize()))["result"]
    assert result["instructions"] == "House rules\n\nAlways cite reference IDs"
    assert result["capabilities"]["prompts"] == {"listChanged": True}


def test_instructions_fall_back_to_empty_on_failure(server, monkeypatch):
    def broken():
        raise RuntimeError("prompt store offline")

    monkeypatch.setattr(server.capabilities, "_active_prompt", broken)
    result = _run(server.handle_message(_initialize()))["result"]
    assert result["instructions"] == ""


def test_initialize_survives_prompt_store_failure(server, monkeypatch, caplog):
    def broken():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(server.service.data, "list_prompts", broken)
    monkeypatch.setattr(server.service.data, "fetch_active_prompt", broken)
    with caplog.at_level(logging.WARNING, logger="spexus.mcp.capabilities"):
        response = _run(server.handle_message(_initialize()))

    assert "error" not in response
    result = response["result"]
    assert "prompts" not in result["capabilities"]
    assert result["capabilities"]["tools"] == {"listChanged": False}
    assert result["instructions"] == ""
    assert any(record.levelno == logging.WARNING for record in caplog.records)


def test_notification_has_no_response(server):
    assert _run(server.handle_raw('{"version":"2.0","method":"ping"}')) is None
    assert (
        _run(server.handle_message({"jsonrpc": "2.0", "method": "notifications/initialized"}))
        is None
    )


def test_ping(server):
    response = _run(server.handle_message({"jsonrpc": "2.0", "id": None, "method": "ping"}))
    assert response == {"jsonrpc": "2.0", "id": None, "result": {}}


def test_tools_list_schemas(server):
    response = _run(server.handle_message({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}))
    tools = response["result"]["tools"]
    assert tools
    for tool in tools:
        assert set(tool) == {"name", "title", "description", "inputSchema"}
        assert tool["title"].strip(), tool["name"]
        schema = tool["inputSchema"]
        assert schema["type"] == "object"
        assert isinstance(schema["required"], list)
        if tool["name"] != "list_steering_documents":
            assert schema["required"], tool["name"]


def test_tools_call_creates_epic(server):
    response = _run(
        server.handle_message(_tool_call(3, "create_epic", {"title": "Checkout", "priority": 1}))
    )
    content = response["result"]["content"]
    assert content[0]["text"] == "Successfully created epic EP-001: Checkout"
    assert json.loads(content[1]["text"])["reference_id"] == "EP-001"


def test_tools_call_unknown_tool(server):
    response = _run(server.handle_message(_tool_call(4, "nope", {})))
    assert response["error"] == {"code": -32601, "message": "Unknown tool: nope"}


def test_tools_call_validation_error(server):
    response = _run(server.handle_message(_tool_call(5, "create_epic", {"priority": 1})))
    assert response["error"]["code"] == -32602
    assert "title" in response["error"]["message"]


def test_tools_call_unauthorized_message_is_fixed(service, commenter):
    server = MCPServer(service, user=commenter)
    response = _run(
        server.handle_message(_tool_call(6, "create_epic", {"title": "x", "priority": 1}))
    )
    assert response["error"] == {"code": -32603, "message": "Unauthorized access"}


def test_tools_call_is_audited(server, caplog):
    with caplog.at_level(logging.INFO, logger="spexus.audit"):
        _run(
            server.handle_message(
                _tool_call(7, "create_epic", {"title": "Checkout", "priority": 1})
            )
        )
        _run(server.handle_message(_tool_call(8, "update_epic", {"epic_id": "EP-404"})))
    audits = [record for record in caplog.records if record.name == "spexus.audit"]
    assert [record.success for record in audits] == [True, False]
    assert audits[1].resource_kind == "epic"
    assert audits[1].resource_id == "EP-404"


def test_resources_read_by_reference(server, service, editor):
    service.create_epic(editor["id"], "Checkout", 1)
    response = _run(
        server.handle_message(
            {
                "jsonrpc": "2.0",
                "id": 9,
                "method": "resources/read",
                "params": {"uri": "requirements://epics/EP-001"},
            }
        )
    )
    content = response["result"]["contents"][0]
    assert content["uri"] == "epic://EP-001"
    assert content["mimeType"] == "application/json"
    assert content["text"]


def test_resources_read_missing_entity(server):
    response = _run(
        server.handle_message(
            {
                "jsonrpc": "2.0",
                "id": 10,
                "method": "resources/read",
                "params": {"uri": "requirements://epics/EP-999"},
            }
        )
    )
    assert response["error"]["code"] == -32602
    assert "not found" in response["error"]["message"]


def test_resources_read_database_failure(server, monkeypatch):
    def broken(*_args, **_kwargs):
        raise RuntimeError("database connection refused")

    monkeypatch.setattr(server.service, "find_entity", broken)
    response = _run(
        server.handle_message(
            {
                "jsonrpc": "2.0",
                "id": 11,
                "method": "resources/read",
                "params": {"uri": "requirements://epics/EP-999"},
            }
        )
    )
    assert response["error"] == {"code": -32603, "message": "Service temporarily unavailable"}


def test_canonical_uri_round_trips(server, service, editor):
    epic = service.create_epic(editor["id"], "Checkout", 1)
    for uri in ("requirements://epics/EP-001", f"requirements://epics/{epic['id']}"):
        canonical = server.resolver.resolve(uri)
        reference = canonical.split("://", 1)[1]
        assert service.get_entity("epic", reference)["reference_id"] == "EP-001"


def test_resources_list(server, service, editor):
    service.create_epic(editor["id"], "Checkout", 1)
    response = _run(server.handle_message({"jsonrpc": "2.0", "id": 12, "method": "resources/list"}))
    uris = {resource["uri"] for resource in response["result"]["resources"]}
    assert "requirements://epics" in uris
    assert any(uri.startswith("requirements://epics/") for uri in uris)


def test_resources_list_timeout(service, editor, monkeypatch):
    server = MCPServer(service, user=editor, resources_list_timeout=0.01)

    def slow():
        time.sleep(0.2)
        return []

    monkeypatch.setattr(service, "list_resources", slow)
    response = _run(server.handle_message({"jsonrpc": "2.0", "id": 13, "method": "resources/list"}))
    assert response["error"] == {"code": -32603, "message": "Operation timeout"}


def _read(message_id, uri):
    return {
        "jsonrpc": "2.0",
        "id": message_id,
        "method": "resources/read",
        "params": {"uri": uri},
    }


def _slow_lookups(service, monkeypatch, delay):
    real = service.find_entity
    calls = []

    def slow(*args, **kwargs):
        calls.append(args)
        time.sleep(delay)
        return real(*args, **kwargs)

    monkeypatch.setattr(service, "find_entity", slow)
    return calls


def test_resources_read_looks_up_entity_once(server, service, editor, monkeypatch):
    service.create_epic(editor["id"], "Checkout", 1)
    calls = _slow_lookups(service, monkeypatch, 0)
    response = _run(server.handle_message(_read(30, "requirements://epics/EP-001")))
    assert json.loads(response["result"]["contents"][0]["text"])["title"] == "Checkout"
    assert len(calls) == 1


def test_resources_read_honors_caller_deadline(server, service, editor, monkeypatch):
    service.create_epic(editor["id"], "Checkout", 1)
    _slow_lookups(service, monkeypatch, 0.3)

    async def scenario():
        started = time.perf_counter()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                server.handle_message(_read(31, "requirements://epics/EP-001")), 0.05
            )
        return time.perf_counter() - started

    assert _run(scenario()) < 0.25


def test_batch_reads_run_concurrently(server, service, editor, monkeypatch):
    service.create_epic(editor["id"], "Checkout", 1)
    _slow_lookups(service, monkeypatch, 0.3)
    batch = [_read(index, "requirements://epics/EP-001") for index in range(3)]

    started = time.perf_counter()
    responses = _run(server.handle_raw(json.dumps(batch)))
    elapsed = time.perf_counter() - started

    assert [response["id"] for response in responses] == [0, 1, 2]
    assert all("result" in response for response in responses)
    assert elapsed < 0.75


def test_prompts_list_and_get(service, admin):
    service.create_prompt(admin["id"], "guide", "Guide", "Cite IDs", role="user")
    server = MCPServer(service, user=admin)

    listing = _run(server.handle_message({"jsonrpc": "2.0", "id": 14, "method": "prompts/list"}))
    assert listing["result"]["prompts"] == [
        {"name": "guide", "title": "Guide", "description": ""}
    ]

    fetched = _run(
        server.handle_message(
            {"jsonrpc": "2.0", "id": 15, "method": "prompts/get", "params": {"name": "guide"}}
        )
    )
    assert fetched["result"]["messages"] == [
        {"role": "user", "content": {"type": "text", "text": "Cite IDs"}}
    ]

    missing = _run(
        server.handle_message(
            {"jsonrpc": "2.0", "id": 16, "method": "prompts/get", "params": {"name": "nope"}}
        )
    )
    assert missing["error"] == {"code": -32602, "message": "Prompt not found"}


def test_removed_control_methods_are_not_exposed(server):
    for method, params in (("logging/setLevel", {"level": "critical"}), ("shutdown", {})):
        response = _run(
            server.handle_message({"jsonrpc": "2.0", "id": 17, "method": method, "params": params})
        )
        assert response["error"]["code"] == -32601, method
    assert logging.getLogger("spexus.audit").getEffectiveLevel() < logging.CRITICAL


def test_list_params_are_rejected_for_object_methods(server):
    response = _run(
        server.handle_message(
            {"jsonrpc": "2.0", "id": 19, "method": "resources/read", "params": ["x"]}
        )
    )
    assert response["error"]["code"] == -32602


def test_batch_preserves_order(server):
    batch = [
        {"jsonrpc": "2.0", "id": "a", "method": "ping"},
        {"jsonrpc": "2.0", "method": "ping"},
        {"jsonrpc": "2.0", "id": "b", "method": "tools/list"},
        {"jsonrpc": "2.0", "id": "c", "method": "missing"},
    ]
    responses = _run(server.handle_raw(json.dumps(batch)))
    assert [response["id"] for response in responses] == ["a", "b", "c"]
    assert "error" in responses[2]
    for response in responses:
        assert ("result" in response) != ("error" in response)


def test_anchor_stays_visible_after_tool_update(server, service, editor):
    service.create_epic(editor["id"], "Signup", 1, description="Please validate email field")
    _run(
        server.handle_message(
            _tool_call(
                20,
                "create_comment",
                {
                    "entity_type": "epic",
                    "entity_id": "EP-001",
                    "content": "Which rules?",
                    "linked_text": "validate email",
                    "text_position_start": 7,
                    "text_position_end": 21,
                },
            )
        )
    )
    _run(
        server.handle_message(
            _tool_call(
                21,
                "update_epic",
                {"epic_id": "EP-001", "description": "Kindly validate email field today"},
            )
        )
    )

    body = service.get_epic("EP-001")["description"]
    visible = service.list_inline_comments("epic", "EP-001")
    assert len(visible) == 1
    anchor = visible[0]
    assert (anchor["text_position_start"], anchor["text_position_end"]) == (7, 21)
    assert body[anchor["text_position_start"]:anchor["text_position_end"]] == anchor["linked_text"]


def test_tcp_server_emits_initialize_response(server):
    async def scenario():
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind(("127.0.0.1", 0))
            host, port = probe.getsockname()

        shutdown_event = asyncio.Event()
        serve_task = asyncio.create_task(
            server.serve_tcp(host=host, port=port, shutdown_event=shutdown_event)
        )

        try:
            reader, writer = await _open_connection_with_retry(host, port)
            try:
                payload = json.dumps(_initialize("2025-06-18", key="jsonrpc")) + "\n"
                writer.write(payload.encode("utf-8"))
                await writer.drain()

                raw_response = await reader.readline()
                assert raw_response, "Server did not respond to initialize request"
                response = json.loads(raw_response.decode("utf-8"))
            finally:
                writer.close()
                await writer.wait_closed()
        finally:
            shutdown_event.set()
            await serve_task

        assert response["id"] == 1
        assert response["result"]["serverInfo"]["name"] == "spexus mcp"
        assert response["result"]["protocolVersion"] == "2025-06-18"

    _run(scenario())


def test_transport_reader_handles_content_length():
    async def _scenario():
        reader = asyncio.StreamReader()
        payload = {"jsonrpc": "2.0", "id": 1, "method": "ping"}
        raw = json.dumps(payload).encode("utf-8")
        reader.feed_data(f"Content-Length: {len(raw)}\r\n\r\n".encode("utf-8") + raw)
        reader.feed_eof()

        data, framing = await MCPServer._read_transport_message(reader)
        assert framing == "content-length"
        assert json.loads(data) == payload

    _run(_scenario())


def test_transport_reader_handles_newline_batches():
    async def _scenario():
        reader = asyncio.StreamReader()
        payload = [{"jsonrpc": "2.0", "id": 2, "method": "ping"}]
        reader.feed_data((json.dumps(payload) + "\n").encode("utf-8"))
        reader.feed_eof()

        data, framing = await MCPServer._read_transport_message(reader)
        assert framing == "newline"
        assert json.loads(data) == payload

    _run(_scenario())


def test_encode_message_content_length_round_trip():
    payload = {"jsonrpc": "2.0", "id": 3, "result": {}}
    encoded = MCPServer._encode_message(payload, "content-length")
    header, body = encoded.split(b"\r\n\r\n", 1)
    assert header.startswith(b"Content-Length: ")
    assert int(header.split(b": ")[1]) == len(body)
    assert json.loads(body.decode("utf-8")) == payload
