"""JSON-RPC error type and the mapping from domain failures to wire errors."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import (
    AuthorizationError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

UNAUTHORIZED_MESSAGE = "Unauthorized access"
TIMEOUT_MESSAGE = "Operation timeout"
CANCELED_MESSAGE = "Operation canceled"
UNAVAILABLE_MESSAGE = "Service temporarily unavailable"
INTERNAL_MESSAGE = "Internal server error"

DATABASE_ERROR_KEYWORDS = (
    "database",
    "connection",
    "sql",
    "driver",
    "network",
    "timeout",
    "connection refused",
    "connection reset",
    "broken pipe",
    "no such host",
)


@dataclass
class MCPError(Exception):
    """Structured error raised for MCP request failures."""

    code: int
    message: str
    data: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error into a JSON-RPC compliant dictionary."""

        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


def is_database_error(exc: BaseException) -> bool:
    """Return ``True`` when the error text names a storage connectivity problem."""

    text = str(exc).lower()
    return any(keyword in text for keyword in DATABASE_ERROR_KEYWORDS)


def map_error(exc: BaseException) -> MCPError:
    """Convert ``exc`` into the :class:`MCPError` sent to the caller.

    Only fixed messages leave this function; the caller is responsible for
    logging the original exception.
    """

    if isinstance(exc, MCPError):
        return exc
    if isinstance(exc, (ValidationError, NotFoundError)):
        return MCPError(code=INVALID_PARAMS, message=exc.message)
    if isinstance(exc, AuthorizationError):
        return MCPError(code=INTERNAL_ERROR, message=UNAUTHORIZED_MESSAGE)
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return MCPError(code=INTERNAL_ERROR, message=TIMEOUT_MESSAGE)
    if isinstance(exc, asyncio.CancelledError):
        return MCPError(code=INTERNAL_ERROR, message=CANCELED_MESSAGE)
    if isinstance(exc, ServiceUnavailableError) or is_database_error(exc):
        return MCPError(code=INTERNAL_ERROR, message=UNAVAILABLE_MESSAGE)
    return MCPError(code=INTERNAL_ERROR, message=INTERNAL_MESSAGE)
