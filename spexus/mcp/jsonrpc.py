"""JSON-RPC 2.0 request processing with per-method logging middleware."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .errors import (
    CANCELED_MESSAGE,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    MCPError,
    map_error,
)
from .request_log import RequestLogger

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
Handler = Callable[[Any], Awaitable[Any]]
Response = Union[Dict[str, Any], List[Dict[str, Any]]]


class DuplicateKeyError(ValueError):
    """Raised while decoding when an object repeats a key."""


def _reject_duplicate_keys(pairs: List[tuple]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise DuplicateKeyError(f"Duplicate key: {key}")
        result[key] = value
    return result


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Invalid JSON constant: {name}")


def decode_payload(raw: Union[bytes, str]) -> Any:
    """Decode a request body, rejecting ``NaN``/``Infinity`` and duplicate keys."""

    return json.loads(
        raw,
        object_pairs_hook=_reject_duplicate_keys,
        parse_constant=_reject_constant,
    )


def error_response(
    message_id: Any, error: MCPError, version_key: str = "jsonrpc"
) -> Dict[str, Any]:
    """Return a JSON-RPC error response payload."""

    return {version_key: JSONRPC_VERSION, "id": message_id, "error": error.to_dict()}


def is_parse_error(response: Optional[Response]) -> bool:
    return (
        isinstance(response, dict)
        and isinstance(response.get("error"), dict)
        and response["error"].get("code") == PARSE_ERROR
    )


def _valid_id(message_id: Any) -> bool:
    if message_id is None or isinstance(message_id, str):
        return True
    if isinstance(message_id, bool):
        return False
    if isinstance(message_id, int):
        return True
    if isinstance(message_id, float):
        return math.isfinite(message_id) and message_id.is_integer()
    return False


class JSONRPCProcessor:
    """Decode JSON-RPC envelopes, dispatch to handlers and encode responses."""

    def __init__(self, *, request_logger: Optional[RequestLogger] = None):
        self.request_logger = request_logger or RequestLogger()
        self._handlers: Dict[str, Handler] = {}

    def register_handler(self, method: str, handler: Handler) -> None:
        """Register ``handler`` for ``method``; each method may be registered once."""

        if not isinstance(method, str) or not method:
            raise ValueError("method must be a non-empty string")
        if method in self._handlers:
            raise ValueError(f"Handler already registered for {method}")
        self._handlers[method] = handler

    @property
    def methods(self) -> List[str]:
        return sorted(self._handlers)

    async def process_request(self, raw: Union[bytes, str]) -> bytes:
        """Process ``raw`` and return the encoded response.

        Returns empty bytes when the request held notifications only.
        """

        response = await self.process(raw)
        if response is None:
            return b""
        return json.dumps(response).encode("utf-8")

    async def process(self, raw: Union[bytes, str, None]) -> Optional[Response]:
        """Process ``raw`` and return the response object, or ``None``."""

        if raw is None or not raw.strip():
            return error_response(None, MCPError(code=PARSE_ERROR, message="Parse error"))

        try:
            payload = decode_payload(raw)
        except DuplicateKeyError as exc:
            logger.debug("Rejecting request with duplicate keys: %s", exc)
            return error_response(
                None, MCPError(code=INVALID_REQUEST, message="Invalid Request")
            )
        except ValueError as exc:
            logger.debug("Failed to decode JSON-RPC payload: %s", exc)
            return error_response(
                None,
                MCPError(code=PARSE_ERROR, message="Parse error", data={"detail": str(exc)}),
            )

        if isinstance(payload, list):
            return await self._process_batch(payload)
        return await self.process_message(payload)

    async def _process_batch(self, batch: List[Any]) -> Optional[Response]:
        if not batch:
            return error_response(
                None, MCPError(code=INVALID_REQUEST, message="Invalid Request")
            )

        logger.debug("Processing JSON-RPC batch of %s message(s)", len(batch))
        responses = await asyncio.gather(
            *(self.process_message(message) for message in batch)
        )
        collected = [response for response in responses if response is not None]
        return collected or None

    async def process_message(self, message: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(message, dict):
            return error_response(
                None, MCPError(code=INVALID_REQUEST, message="Invalid Request")
            )

        version_key = "version" if "version" in message and "jsonrpc" not in message else "jsonrpc"
        message_id = message.get("id")
        id_valid = _valid_id(message_id)
        echo_id = message_id if id_valid else None

        if message.get(version_key) != JSONRPC_VERSION:
            return error_response(
                echo_id,
                MCPError(code=INVALID_REQUEST, message="Invalid JSON-RPC version"),
                version_key,
            )
        if not id_valid:
            return error_response(
                None,
                MCPError(
                    code=INVALID_REQUEST,
                    message="id must be a string, an integer or null",
                ),
                version_key,
            )

        method = message.get("method")
        if not isinstance(method, str) or not method:
            return error_response(
                echo_id,
                MCPError(code=INVALID_REQUEST, message="Method must be a string"),
                version_key,
            )

        is_notification = "id" not in message
        handler = self._handlers.get(method)
        if handler is None:
            if is_notification:
                logger.debug("Ignoring unknown notification %s", method)
                return None
            return error_response(
                message_id,
                MCPError(code=METHOD_NOT_FOUND, message=f"Method not found: {method}"),
                version_key,
            )

        params = message.get("params")
        if params is None:
            params = {}
        elif not isinstance(params, (dict, list)):
            if is_notification:
                return None
            return error_response(
                message_id,
                MCPError(code=INVALID_PARAMS, message="Params must be an object or array"),
                version_key,
            )

        request_size = len(json.dumps(message, default=str))
        try:
            result = await self._dispatch(method, handler, params, request_size)
        except MCPError as exc:
            if is_notification:
                logger.debug("Notification %s failed: %s", method, exc)
                return None
            return error_response(message_id, exc, version_key)

        if is_notification:
            logger.debug("Notification %s handled without response", method)
            return None
        return {version_key: JSONRPC_VERSION, "id": message_id, "result": result}

    async def _dispatch(
        self, method: str, handler: Handler, params: Any, request_size: int
    ) -> Any:
        """Run ``handler`` inside the logging, audit and error-mapping middleware."""

        request_log = self.request_logger
        request_log.log_request(method, params, request_size)
        started = time.perf_counter()
        success = False
        failure: Optional[MCPError] = None
        response_size: Optional[int] = None
        try:
            result = await handler(params)
            success = True
            response_size = len(json.dumps(result, default=str))
            return result
        except MCPError as exc:
            failure = exc
            raise
        except asyncio.CancelledError as exc:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                failure = MCPError(code=INTERNAL_ERROR, message=CANCELED_MESSAGE)
                raise
            request_log.log_error(method, exc)
            failure = map_error(exc)
            raise failure from exc
        except Exception as exc:  # pylint: disable=broad-except
            request_log.log_error(method, exc)
            failure = map_error(exc)
            raise failure from exc
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            request_log.log_outcome(
                method,
                duration_ms,
                error=failure.to_dict() if failure else None,
                response_size=response_size,
            )
            request_log.audit(method, params, success=success)
