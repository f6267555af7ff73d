"""Domain error taxonomy raised by the Spexus service layer."""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for failures raised by the domain services."""

    kind = "internal"
    default_message = "Service operation failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(ServiceError):
    """The caller supplied data that violates a domain rule."""

    kind = "validation"
    default_message = "Validation failed"


class InvalidInlineDataError(ValidationError):
    kind = "invalid-inline-data"
    default_message = (
        "Inline comments require linked_text, text_position_start and "
        "text_position_end matching the entity content"
    )


class InvalidTextPositionError(ValidationError):
    kind = "invalid-text-position"
    default_message = (
        "Invalid text position: start must be >= 0, end must be >= start "
        "and end must not exceed the content length"
    )


class EmptyLinkedTextError(ValidationError):
    kind = "empty-linked-text"
    default_message = "linked_text cannot be empty for inline comments"


class ConflictError(ValidationError):
    """The operation collides with existing state (duplicates, dependents)."""

    kind = "conflict"
    default_message = "Operation conflicts with existing data"


class NotFoundError(ServiceError):
    kind = "not-found"
    default_message = "Resource not found"


class AuthorizationError(ServiceError):
    kind = "unauthorized"
    default_message = "Unauthorized access"


class ServiceUnavailableError(ServiceError):
    """Storage is unreachable; raised for connection-level failures."""

    kind = "unavailable"
    default_message = "Service temporarily unavailable"
