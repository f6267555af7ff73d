"""JSON-RPC server implementing the Model Context Protocol surface for Spexus."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import sys
from typing import Any, Dict, List, Optional, Union

from .. import __version__ as PACKAGE_VERSION
from ..service import RequirementsService
from .capabilities import CapabilitiesProvider
from .context import request_context
from .errors import INTERNAL_ERROR, INTERNAL_MESSAGE, INVALID_PARAMS, INVALID_REQUEST, MCPError
from .jsonrpc import JSONRPCProcessor, Response, error_response
from .request_log import RequestLogger
from .tools import ToolRouter
from .uri import URIResolver

logger = logging.getLogger(__name__)

SERVER_NAME = "spexus mcp"
SERVER_TITLE = "MCP server for requirements management system"
SERVER_VERSION = "1.0.0"

_PROTOCOL_VERSION_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class MCPServer:
    """JSON-RPC server exposing RequirementsService over MCP."""

    _SUPPORTED_PROTOCOL_VERSIONS = {
        "2025-03-26",
        "2025-06-18",
    }

    _DEFAULT_PROTOCOL_VERSION = "2025-03-26"

    def __init__(
        self,
        service: RequirementsService,
        *,
        user: Optional[Dict[str, Any]] = None,
        slow_threshold_ms: Optional[float] = None,
        resources_list_timeout: Optional[float] = None,
        log_bodies: Optional[bool] = None,
    ):
        """Initialize the MCP server.

        Args:
            service: Backing requirements service
            user: User that transport sessions act as
            slow_threshold_ms: Duration above which a request is logged as slow
            resources_list_timeout: Deadline in seconds for ``resources/list``
            log_bodies: Whether redacted request params are logged at DEBUG
        """

        self.service = service
        self.user = user
        config = service.config
        if slow_threshold_ms is None:
            slow_threshold_ms = config.get("mcp", "slow_threshold_ms", 100)
        if resources_list_timeout is None:
            resources_list_timeout = config.get("mcp", "resources_list_timeout", 30)
        if log_bodies is None:
            log_bodies = bool(config.get("mcp", "log_bodies", True))
        self.resources_list_timeout = float(resources_list_timeout)

        self.tools = ToolRouter(service)
        self.resolver = URIResolver(service)
        self.capabilities = CapabilitiesProvider(
            tools=self.tools.definitions,
            prompts=service.list_prompts,
            active_prompt=service.get_active_prompt,
        )
        self.processor = JSONRPCProcessor(
            request_logger=RequestLogger(
                slow_threshold_ms=slow_threshold_ms, log_bodies=log_bodies
            )
        )
        for method, handler in {
            "initialize": self._handle_initialize,
            "notifications/initialized": self._handle_initialized,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "resources/list": self._handle_resources_list,
            "resources/read": self._handle_resources_read,
            "prompts/list": self._handle_prompts_list,
            "prompts/get": self._handle_prompts_get,
        }.items():
            self.processor.register_handler(method, handler)

    async def handle_message(
        self, message: Dict[str, Any], *, user: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Process a single decoded JSON-RPC message and return the response object.

        Returns ``None`` when the message is a JSON-RPC notification that does not
        require a response.
        """

        with request_context(user or self.user):
            return await self.processor.process_message(message)

    async def handle_raw(
        self,
        raw: Union[bytes, str],
        *,
        user: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[Response]:
        """Process an undecoded request body under ``user`` and a correlation id."""

        with request_context(user or self.user, correlation_id):
            return await self.processor.process(raw)

    @staticmethod
    def _object_params(params: Any) -> Dict[str, Any]:
        if not isinstance(params, dict):
            raise MCPError(code=INVALID_PARAMS, message="Params must be an object")
        return params

    async def _handle_initialize(self, params: Any) -> Dict[str, Any]:
        """Negotiate protocol support per the MCP initialize handshake."""

        params = self._object_params(params)
        logger.debug("Initialize request received with params: %s", params)

        requested = params.get("protocolVersion")
        negotiated = self._negotiate_protocol_version(requested)
        client_info = self._client_info(params)
        capabilities = params.get("capabilities")
        if isinstance(capabilities, dict):
            logger.debug(
                "Client capabilities provided: top-level keys=%s",
                sorted(capabilities.keys()),
            )

        offered = await asyncio.to_thread(self.capabilities.capabilities)
        instructions = await asyncio.to_thread(self.capabilities.instructions)
        response = {
            "protocolVersion": negotiated,
            "capabilities": offered,
            "serverInfo": {
                "name": SERVER_NAME,
                "title": SERVER_TITLE,
                "version": SERVER_VERSION,
            },
            "instructions": instructions,
        }
        logger.info(
            "Completed initialize handshake (client=%s %s, protocol=%s)",
            client_info["name"],
            client_info["version"],
            negotiated,
        )
        return response

    def _negotiate_protocol_version(self, requested: Any) -> str:
        if (
            not isinstance(requested, str)
            or not _PROTOCOL_VERSION_PATTERN.match(requested)
            or requested not in self._SUPPORTED_PROTOCOL_VERSIONS
        ):
            logger.warning("Unsupported protocol requested: %s", requested)
            raise MCPError(
                code=INVALID_REQUEST,
                message=(
                    "Unsupported protocol version. Supported versions: "
                    + ", ".join(sorted(self._SUPPORTED_PROTOCOL_VERSIONS))
                ),
                data={
                    "supported_versions": sorted(self._SUPPORTED_PROTOCOL_VERSIONS),
                    "received_version": requested,
                },
            )
        if requested == "2025-06-18":
            return requested
        return self._DEFAULT_PROTOCOL_VERSION

    @staticmethod
    def _client_info(params: Dict[str, Any]) -> Dict[str, str]:
        client_info = params.get("clientInfo")
        if not isinstance(client_info, dict):
            raise MCPError(code=INVALID_PARAMS, message="clientInfo is required")
        for field in ("name", "version"):
            value = client_info.get(field)
            if not isinstance(value, str) or not value.strip():
                raise MCPError(
                    code=INVALID_PARAMS,
                    message=f"clientInfo.{field} must be a non-empty string",
                )
        return client_info

    async def _handle_initialized(self, _params: Any) -> Dict[str, Any]:
        logger.debug("Client confirmed initialization")
        return {}

    async def _handle_ping(self, _params: Any) -> Dict[str, Any]:
        return {}

    async def _handle_tools_list(self, _params: Any) -> Dict[str, Any]:
        """Return the catalog of available MCP tools."""

        return {"tools": self.tools.definitions()}

    async def _handle_tools_call(self, params: Any) -> Dict[str, Any]:
        """Invoke a named tool and return MCP tool-call content."""

        params = self._object_params(params)
        return await self.tools.call(params.get("name"), params.get("arguments"))

    async def _handle_resources_list(self, _params: Any) -> Dict[str, Any]:
        """List resource descriptors, bounded by the configured deadline."""

        resources = await asyncio.wait_for(
            asyncio.to_thread(self.service.list_resources),
            timeout=self.resources_list_timeout,
        )
        if resources is None:
            raise MCPError(code=INTERNAL_ERROR, message=INTERNAL_MESSAGE)
        return {"resources": resources}

    async def _handle_resources_read(self, params: Any) -> Dict[str, Any]:
        params = self._object_params(params)
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri.strip():
            raise MCPError(code=INVALID_PARAMS, message="uri must be a non-empty string")
        return await asyncio.to_thread(self.resolver.read, uri.strip())

    async def _handle_prompts_list(self, _params: Any) -> Dict[str, Any]:
        """Return the catalog of available prompts."""

        prompts: List[Dict[str, Any]] = [
            {
                "name": prompt["name"],
                "title": prompt["title"],
                "description": prompt.get("description") or "",
            }
            for prompt in await asyncio.to_thread(self.service.list_prompts)
        ]
        return {"prompts": prompts}

    async def _handle_prompts_get(self, params: Any) -> Dict[str, Any]:
        params = self._object_params(params)
        name = params.get("name")
        if not isinstance(name, str) or not name.strip():
            raise MCPError(code=INVALID_PARAMS, message="name must be a non-empty string")
        prompt = await asyncio.to_thread(self.service.get_prompt_by_name, name.strip())
        return {
            "name": prompt["name"],
            "description": prompt.get("description") or "",
            "messages": [
                {
                    "role": prompt.get("role") or "assistant",
                    "content": {"type": "text", "text": prompt["content"]},
                }
            ],
        }

    async def serve_tcp(
        self,
        host: str = "127.0.0.1",
        port: int = 8765,
        *,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Start a plain TCP JSON-RPC loop bound to ``host:port``."""

        logger.info(
            "Starting MCP TCP server version %s on %s:%s",
            PACKAGE_VERSION,
            host,
            port,
        )

        event = shutdown_event or asyncio.Event()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
            peer = writer.get_extra_info("peername")
            await self._serve_connection(reader, writer, peer)

        server = await asyncio.start_server(handler, host, port)
        sockets = ", ".join(str(sock.getsockname()) for sock in server.sockets or [])
        logger.info("MCP server listening on %s", sockets)

        try:
            await event.wait()
        finally:
            server.close()
            await server.wait_closed()
            logger.info("MCP server stopped")

    async def serve_stdio(self, *, shutdown_event: asyncio.Event | None = None) -> None:
        """Serve MCP requests over standard input/output streams."""

        logger.info("Starting MCP stdio server version %s", PACKAGE_VERSION)
        loop = asyncio.get_running_loop()
        event = shutdown_event or asyncio.Event()

        reader = asyncio.StreamReader()
        reader_protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: reader_protocol, sys.stdin)

        writer_transport, writer_protocol = await loop.connect_write_pipe(
            lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader()), sys.stdout
        )
        writer = asyncio.StreamWriter(writer_transport, writer_protocol, reader, loop)

        serve_task = asyncio.create_task(
            self._serve_connection(reader, writer, "stdio")
        )
        wait_task = asyncio.create_task(event.wait())

        try:
            await asyncio.wait(
                [serve_task, wait_task], return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            serve_task.cancel()
            wait_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await serve_task
            with contextlib.suppress(asyncio.CancelledError):
                await wait_task
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()
            logger.info("MCP stdio server stopped")

    @staticmethod
    async def _read_transport_message(
        reader: asyncio.StreamReader,
    ) -> tuple[Optional[str], str]:
        """Read a JSON message supporting newline and content-length framing."""
        first_line = await MCPServer._read_first_content_line(reader)
        if first_line is None:
            return None, "newline"

        if first_line.lower().startswith(b"content-length:"):
            payload = await MCPServer._read_content_length_body(reader, first_line)
            return payload, "content-length"

        payload = await MCPServer._read_newline_body(reader, first_line)
        return payload, "newline"

    @staticmethod
    async def _read_first_content_line(
        reader: asyncio.StreamReader,
    ) -> Optional[bytes]:
        while True:
            line = await reader.readline()
            if not line:
                return None
            if line in {b"\r\n", b"\n"}:
                continue
            return line

    @staticmethod
    async def _read_content_length_body(
        reader: asyncio.StreamReader,
        header_line: bytes,
    ) -> Optional[str]:
        try:
            length = int(header_line.split(b":", 1)[1].strip())
        except ValueError as exc:
            raise MCPError(
                code=INVALID_REQUEST,
                message="Invalid Content-Length header",
                data={"detail": header_line.decode("utf-8", errors="replace")},
            ) from exc

        while True:
            separator = await reader.readline()
            if not separator:
                return None
            if separator in {b"\r\n", b"\n"}:
                break

        body = await reader.readexactly(length)
        return body.decode("utf-8", errors="replace")

    @staticmethod
    async def _read_newline_body(
        reader: asyncio.StreamReader,
        first_line: bytes,
    ) -> str:
        buffer = first_line
        while not buffer.rstrip().endswith((b"}", b"]")):
            more = await reader.readline()
            if not more:
                break
            buffer += more
        return buffer.decode("utf-8", errors="replace").strip()

    @staticmethod
    def _encode_message(message: Response, framing: str) -> bytes:
        """Serialize ``message`` using the provided framing mode."""

        payload = json.dumps(message)
        if framing == "content-length":
            header = f"Content-Length: {len(payload.encode('utf-8'))}\r\n\r\n"
            return (header + payload).encode("utf-8")
        return (payload + "\n").encode("utf-8")

    async def _serve_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: Any,
    ) -> None:
        logger.info("MCP client connected: %s", peer)
        try:
            while True:
                try:
                    raw_message, framing = await self._read_transport_message(reader)
                except MCPError as transport_error:
                    response = error_response(None, transport_error)
                    logger.debug("Transport error for %s: %s", peer, response)
                    writer.write(self._encode_message(response, "newline"))
                    await writer.drain()
                    continue
                if raw_message is None:
                    break
                logger.debug(
                    "Decoding MCP message from %s with framing %s", peer, framing
                )

                response = await self.handle_raw(raw_message)
                if response is None:
                    logger.debug("No response required for message from %s", peer)
                    continue

                encoded = self._encode_message(response, framing)
                logger.debug(
                    "Encoded MCP response (%s bytes, framing=%s) for %s",
                    len(encoded),
                    framing,
                    peer,
                )
                writer.write(encoded)
                await writer.drain()
        except asyncio.IncompleteReadError:
            logger.info("MCP client %s closed the stream mid-message", peer)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()
            logger.info("MCP client disconnected: %s", peer)
