"""
Event envelope: the unit of work that crosses the message bus.

The envelope is an immutable Pydantic model. Its wire form is a JSON object
with camelCase keys::

    {"type": "user.registered", "data": {...},
     "timestamp": "2024-05-01T12:00:00.000Z",
     "correlationId": "1714564800000-k3j9x0a2b", "version": "1.0"}

Example:
    >>> envelope = EventEnvelope.create("user.registered", {"userId": 42})
    >>> raw = envelope.serialize()
    >>> EventEnvelope.deserialize(raw).correlation_id == envelope.correlation_id
    True
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)

from eventrelay.events.correlation import (
    CorrelationTracker,
    current_correlation_id,
    new_correlation_id,
)
from eventrelay.exceptions import MalformedMessageError, SchemaValidationError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"
"""Current envelope schema version stamped on every new envelope."""

REQUIRED_FIELDS = ("type", "data", "timestamp")


class EventEnvelope(BaseModel):
    """
    Immutable envelope carrying one event between services.

    Attributes:
        type: Event type constant (e.g. 'user.registered')
        data: Arbitrary structured payload (JSON object)
        timestamp: Creation instant (UTC)
        correlation_id: ID threading the causal chain (wire key 'correlationId')
        version: Envelope schema version
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    type: str = Field(..., min_length=1, description="Event type constant")
    data: dict[str, Any] = Field(..., description="Event payload")
    timestamp: datetime = Field(..., description="Creation instant (UTC)")
    correlation_id: str = Field(
        default_factory=new_correlation_id,
        alias="correlationId",
        min_length=1,
        description="ID linking every event of one logical operation",
    )
    version: str = Field(default=SCHEMA_VERSION, description="Envelope schema version")

    @model_validator(mode="before")
    @classmethod
    def _drop_null_optionals(cls, data: Any) -> Any:
        # null correlationId/version on the wire behave like absent keys
        if isinstance(data, dict):
            data = {
                key: value
                for key, value in data.items()
                if not (
                    value is None and key in ("correlationId", "correlation_id", "version")
                )
            }
        return data

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    @classmethod
    def create(
        cls,
        type: str,
        data: Mapping[str, Any],
        correlation_id: str | None = None,
    ) -> Self:
        """
        Create a new envelope stamped with the current instant.

        When no correlation_id is given, the ID bound by correlation_scope()
        is used; outside a scope a fresh one is generated. An explicit
        correlation_id must pass CorrelationTracker.validate(); IDs read from
        the wire only need to be non-empty strings.

        Args:
            type: Event type constant
            data: Event payload
            correlation_id: Correlation ID of the causal chain (optional)

        Returns:
            A new immutable envelope with version SCHEMA_VERSION

        Raises:
            ValueError: If correlation_id is given but is not a valid ID
        """
        if correlation_id is not None:
            CorrelationTracker.validate(correlation_id)
        return cls(
            type=str(type),
            data=dict(data),
            timestamp=datetime.now(UTC),
            correlation_id=correlation_id or current_correlation_id() or new_correlation_id(),
            version=SCHEMA_VERSION,
        )

    def derive(self, type: str, data: Mapping[str, Any]) -> Self:
        """Create a follow-up envelope in the same causal chain."""
        return self.__class__(
            type=str(type),
            data=dict(data),
            timestamp=datetime.now(UTC),
            correlation_id=self.correlation_id,
            version=SCHEMA_VERSION,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the wire representation as a plain dictionary."""
        return self.model_dump(mode="json", by_alias=True)

    def serialize(self) -> bytes:
        """Serialize to UTF-8 JSON bytes."""
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def deserialize(cls, raw: bytes | bytearray | str) -> Self:
        """
        Parse an envelope from its wire form.

        Raises:
            MalformedMessageError: If the payload is not a JSON object
            SchemaValidationError: If type, data or timestamp is absent or invalid
        """
        try:
            text = raw.decode("utf-8") if isinstance(raw, bytes | bytearray) else raw
            payload = json.loads(text)
        except (UnicodeDecodeError, ValueError, RecursionError) as e:
            # RecursionError: nesting deeper than the decoder allows
            raise MalformedMessageError(f"Payload is not valid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise MalformedMessageError(
                f"Payload must be a JSON object, got {type(payload).__name__}"
            )
        return cls.from_dict(payload)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Self:
        """Validate a decoded payload into an envelope."""
        missing = [name for name in REQUIRED_FIELDS if payload.get(name) is None]
        if missing:
            raise SchemaValidationError(
                f"Envelope is missing required fields: {', '.join(missing)}",
                missing_fields=missing,
            )
        try:
            return cls.model_validate(dict(payload))
        except ValidationError as e:
            invalid = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
            raise SchemaValidationError(
                f"Invalid envelope fields: {', '.join(invalid)}",
            ) from e


def log_event(
    envelope: EventEnvelope,
    context: str = "",
    log: logging.Logger | None = None,
) -> None:
    """Log a one-line summary of an envelope, tagged with the caller's context."""
    (log or logger).info(
        f"[{context}] Event: {envelope.type} | ID: {envelope.correlation_id} | "
        f"Time: {envelope.to_dict()['timestamp']}",
        extra={
            "event_type": envelope.type,
            "correlation_id": envelope.correlation_id,
            "schema_version": envelope.version,
        },
    )


__all__ = [
    "EventEnvelope",
    "REQUIRED_FIELDS",
    "SCHEMA_VERSION",
    "log_event",
]
