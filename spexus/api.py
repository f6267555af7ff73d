"""HTTP surface: the MCP JSON-RPC endpoint behind bearer authentication."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from flask import Flask, Response, jsonify, request
from flask_cors import CORS

from . import __version__
from .mcp.context import new_correlation_id, request_context
from .mcp.jsonrpc import is_parse_error
from .mcp.request_log import log_security_event
from .mcp.server import MCPServer
from .service import RequirementsService

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


def _bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def create_app(
    config_path: Optional[str] = None,
    db_path: Optional[str] = None,
    service: Optional[RequirementsService] = None,
) -> Flask:
    """Create the Flask application.

    Args:
        config_path: Path to the configuration file
        db_path: Path to the SQLite database
        service: Pre-built service, mainly for tests

    Returns:
        Configured Flask application
    """
    service = service or RequirementsService(config_path=config_path, db_path=db_path)
    server = MCPServer(service)

    app = Flask(__name__)
    app.config["SPEXUS_SERVICE"] = service
    app.config["SPEXUS_MCP_SERVER"] = server
    CORS(
        app,
        origins=service.config.get("api", "cors_origins", ["*"]),
        expose_headers=[CORRELATION_HEADER],
    )

    def _with_correlation(response: Response, correlation: str) -> Response:
        response.headers[CORRELATION_HEADER] = correlation
        return response

    def _unauthorized(message: str, correlation: str) -> Response:
        response = jsonify({"error": message})
        response.status_code = 401
        return _with_correlation(response, correlation)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "version": __version__})

    @app.route("/api/v1/mcp", methods=["POST"])
    def mcp_endpoint():
        correlation = request.headers.get(CORRELATION_HEADER) or new_correlation_id()

        with request_context(correlation=correlation):
            token = _bearer_token(request.headers.get("Authorization"))
            if token is None:
                log_security_event("missing_authorization", path=request.path)
                return _unauthorized("Authorization required", correlation)

            user = service.authenticate_token(token)
            if user is None:
                log_security_event("invalid_token", path=request.path)
                return _unauthorized("Invalid token", correlation)

        payload = asyncio.run(
            server.handle_raw(request.get_data(), user=user, correlation_id=correlation)
        )

        if payload is None:
            return _with_correlation(Response(status=204), correlation)

        response = jsonify(payload)
        if is_parse_error(payload):
            response.status_code = 400
        return _with_correlation(response, correlation)

    logger.info("HTTP API ready (database=%s)", service.db_path)
    return app
