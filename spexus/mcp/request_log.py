"""Structured request, audit and performance logging for MCP calls."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Optional, Tuple

from .context import correlation_id, current_user

logger = logging.getLogger("spexus.mcp.requests")
audit_logger = logging.getLogger("spexus.audit")
security_logger = logging.getLogger("spexus.security")

REDACTED = "[REDACTED]"
_SENSITIVE_KEY_PARTS = ("token", "password", "secret", "key", "authorization")
_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+")

_RESOURCE_ID_KEYS = (
    ("acceptance_criteria", ("acceptance_criteria_id", "user_story_id", "id")),
    ("relationship", ("relationship_id", "source_requirement_id", "id")),
    ("epic", ("epic_id", "id")),
    ("user_story", ("user_story_id", "id")),
    ("requirement", ("requirement_id", "source_requirement_id", "id")),
    ("steering", ("steering_document_id", "id")),
    ("comment", ("comment_id", "entity_id", "id")),
    ("prompt", ("prompt_id", "name", "id")),
)

_RESOURCE_KINDS = {
    "acceptance_criteria": "acceptance_criteria",
    "relationship": "relationship",
    "epic": "epic",
    "user_story": "user_story",
    "requirement": "requirement",
    "steering": "steering_document",
    "comment": "comment",
    "prompt": "prompt",
}


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _SENSITIVE_KEY_PARTS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with credentials masked."""

    if isinstance(value, dict):
        return {
            key: REDACTED if isinstance(key, str) and _is_sensitive(key) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    if isinstance(value, str):
        return _BEARER_PATTERN.sub(f"Bearer {REDACTED}", value)
    return value


def extract_resource(tool_name: str, arguments: Any) -> Tuple[str, str]:
    """Guess the ``(resource_kind, resource_id)`` a tool call touches."""

    if tool_name == "search_requirements":
        return "requirement", ""
    if "search" in tool_name:
        return "search", ""
    args = arguments if isinstance(arguments, dict) else {}
    for fragment, keys in _RESOURCE_ID_KEYS:
        if fragment in tool_name:
            return _RESOURCE_KINDS[fragment], _first_string(args, keys)
    return "unknown", ""


def _first_string(arguments: Dict[str, Any], keys: Iterable[str]) -> str:
    for key in keys:
        value = arguments.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


class RequestLogger:
    """Emit the per-request log records that share one correlation id."""

    def __init__(
        self,
        *,
        slow_threshold_ms: float = 100.0,
        log_bodies: bool = True,
        data_modifying: Iterable[str] = ("tools/call",),
    ):
        self.slow_threshold_ms = float(slow_threshold_ms)
        self.log_bodies = log_bodies
        self.data_modifying = frozenset(data_modifying)

    @staticmethod
    def _fields(method: str, **extra: Any) -> Dict[str, Any]:
        user = current_user()
        fields = {
            "correlation_id": correlation_id(),
            "user_id": user.get("id") if user else "anonymous",
            "method": method,
        }
        fields.update(extra)
        return fields

    def is_data_modifying(self, method: str) -> bool:
        return method in self.data_modifying

    def log_request(self, method: str, params: Any, request_size: Optional[int] = None) -> None:
        fields = self._fields(method, request_size=request_size)
        logger.info(
            "MCP request %s (correlation_id=%s, user=%s, bytes=%s)",
            method,
            fields["correlation_id"],
            fields["user_id"],
            request_size,
            extra=fields,
        )
        if self.log_bodies:
            logger.debug("MCP request params for %s: %s", method, redact(params), extra=fields)

    def log_outcome(
        self,
        method: str,
        duration_ms: float,
        *,
        error: Optional[Dict[str, Any]] = None,
        response_size: Optional[int] = None,
    ) -> None:
        success = error is None
        fields = self._fields(
            method,
            success=success,
            duration_ms=round(duration_ms, 3),
            response_size=response_size,
            error_code=error.get("code") if error else None,
        )
        if success:
            logger.info(
                "MCP request %s completed in %.1f ms (correlation_id=%s)",
                method,
                duration_ms,
                fields["correlation_id"],
                extra=fields,
            )
        else:
            logger.warning(
                "MCP request %s failed with %s in %.1f ms (correlation_id=%s)",
                method,
                fields["error_code"],
                duration_ms,
                fields["correlation_id"],
                extra=fields,
            )
        if duration_ms > self.slow_threshold_ms:
            logger.warning(
                "Slow MCP operation %s took %.1f ms (threshold %.0f ms, correlation_id=%s)",
                method,
                duration_ms,
                self.slow_threshold_ms,
                fields["correlation_id"],
                extra={**fields, "slow_operation": True},
            )

    def log_error(self, method: str, exc: BaseException) -> None:
        """Log the original failure; it is never serialized to the caller."""

        fields = self._fields(method, error=str(exc), error_type=type(exc).__name__)
        logger.error(
            "MCP handler %s raised %s (correlation_id=%s, user=%s)",
            method,
            type(exc).__name__,
            fields["correlation_id"],
            fields["user_id"],
            exc_info=(type(exc), exc, exc.__traceback__),
            extra=fields,
        )

    def audit(self, method: str, params: Any, *, success: bool) -> None:
        if not self.is_data_modifying(method):
            return
        params = params if isinstance(params, dict) else {}
        tool_name = params.get("name") if isinstance(params.get("name"), str) else ""
        arguments = params.get("arguments")
        resource_kind, resource_id = extract_resource(tool_name, arguments)
        fields = self._fields(
            method,
            tool_name=tool_name,
            arguments=redact(arguments),
            resource_kind=resource_kind,
            resource_id=resource_id,
            success=success,
        )
        audit_logger.info(
            "MCP audit %s %s %s:%s success=%s (user=%s, correlation_id=%s)",
            method,
            tool_name,
            resource_kind,
            resource_id or "-",
            success,
            fields["user_id"],
            fields["correlation_id"],
            extra=fields,
        )


def log_security_event(event: str, **details: Any) -> None:
    """Record an authentication or authorization event."""

    fields = {"correlation_id": correlation_id(), "event": event}
    fields.update(redact(details))
    security_logger.warning(
        "Security event %s (correlation_id=%s): %s",
        event,
        fields["correlation_id"],
        redact(details),
        extra=fields,
    )
