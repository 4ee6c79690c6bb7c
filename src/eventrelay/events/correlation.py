"""
Correlation identifiers for tracing a logical operation across services.

A correlation ID is assigned once at the origin of a causal chain (for
example the HTTP request that registers a user) and carried unchanged by
every envelope that reacts to it downstream. Uniqueness is advisory: the ID
is used for log correlation and tracing, never as an identity key.

Example:
    >>> tracker = CorrelationTracker()
    >>> cid = tracker.new_id()
    >>> with correlation_scope(cid):
    ...     assert current_correlation_id() == cid
"""

from __future__ import annotations

import contextlib
import logging
import secrets
import threading
import time
from collections.abc import Callable, Generator
from contextvars import ContextVar

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_RANDOM_LENGTH = 9
MAX_CORRELATION_ID_LENGTH = 255

_current_correlation_id: ContextVar[str | None] = ContextVar(
    "eventrelay_correlation_id", default=None
)


class CorrelationTracker:
    """
    Generates and validates correlation IDs.

    IDs have the form ``<epoch-millis>-<9 base36 chars>``. The time component
    never decreases for a given tracker, even if the wall clock steps back.

    Args:
        clock: Callable returning the current time in milliseconds.
            Defaults to the system clock.
    """

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        self._clock = clock or (lambda: time.time_ns() // 1_000_000)
        self._last_millis = 0
        self._lock = threading.Lock()

    def new_id(self) -> str:
        """Produce a new correlation ID."""
        with self._lock:
            millis = max(self._clock(), self._last_millis)
            self._last_millis = millis
        suffix = "".join(secrets.choice(_BASE36) for _ in range(_RANDOM_LENGTH))
        return f"{millis}-{suffix}"

    @staticmethod
    def is_valid(value: object) -> bool:
        """
        Check whether a value can be used as a correlation ID.

        Any non-empty printable string without whitespace, up to 255
        characters, is accepted. IDs minted by other systems (UUIDs, request
        IDs from a gateway) are therefore valid too.
        """
        if not isinstance(value, str) or not value:
            return False
        if len(value) > MAX_CORRELATION_ID_LENGTH:
            return False
        return value.isprintable() and not any(ch.isspace() for ch in value)

    @classmethod
    def validate(cls, value: object) -> str:
        """Return the value unchanged or raise ValueError if it is not a valid ID."""
        if not cls.is_valid(value):
            raise ValueError(f"Invalid correlation id: {value!r}")
        return value  # type: ignore[return-value]


default_tracker = CorrelationTracker()


def new_correlation_id() -> str:
    """Produce a correlation ID from the process-wide default tracker."""
    return default_tracker.new_id()


def current_correlation_id() -> str | None:
    """Return the correlation ID bound to the current context, if any."""
    return _current_correlation_id.get()


@contextlib.contextmanager
def correlation_scope(correlation_id: str) -> Generator[str, None, None]:
    """
    Bind a correlation ID to the current context.

    Envelopes created inside the scope without an explicit correlation ID
    inherit it, and CorrelationIdFilter stamps it onto log records.

    Any non-empty string is accepted, so IDs received from other services
    can be bound as they arrived.
    """
    if not isinstance(correlation_id, str) or not correlation_id:
        raise ValueError(f"Invalid correlation id: {correlation_id!r}")
    token = _current_correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _current_correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """
    Logging filter that adds ``correlation_id`` to every record.

    Records that already carry a correlation_id (passed through ``extra``)
    are left untouched.

    Example:
        >>> handler = logging.StreamHandler()
        >>> handler.addFilter(CorrelationIdFilter())
        >>> handler.setFormatter(logging.Formatter("%(correlation_id)s %(message)s"))
    """

    def __init__(self, name: str = "", default: str = "-") -> None:
        super().__init__(name)
        self._default = default

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = current_correlation_id() or self._default
        return True


__all__ = [
    "CorrelationIdFilter",
    "CorrelationTracker",
    "MAX_CORRELATION_ID_LENGTH",
    "correlation_scope",
    "current_correlation_id",
    "default_tracker",
    "new_correlation_id",
]
