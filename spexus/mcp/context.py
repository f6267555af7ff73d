"""Per-request ambient values: the authenticated user and the correlation id."""

from __future__ import annotations

import contextlib
import contextvars
import uuid
from typing import Any, Dict, Iterator, Optional

_current_user: contextvars.ContextVar[Optional[Dict[str, Any]]] = contextvars.ContextVar(
    "spexus_current_user", default=None
)
_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "spexus_correlation_id", default=None
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def current_user() -> Optional[Dict[str, Any]]:
    """Return the user bound to the running request, if any."""

    return _current_user.get()


def current_user_id() -> Optional[str]:
    user = _current_user.get()
    return user.get("id") if user else None


def correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextlib.contextmanager
def request_context(
    user: Optional[Dict[str, Any]] = None, correlation: Optional[str] = None
) -> Iterator[str]:
    """Bind ``user`` and a correlation id for the duration of the block.

    Yields the correlation id in effect, generating one when none is given.
    """

    value = correlation or new_correlation_id()
    user_token = _current_user.set(user)
    correlation_token = _correlation_id.set(value)
    try:
        yield value
    finally:
        _correlation_id.reset(correlation_token)
        _current_user.reset(user_token)
