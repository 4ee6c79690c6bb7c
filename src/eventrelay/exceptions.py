"""Library exceptions for the eventrelay package."""

from __future__ import annotations

from collections.abc import Sequence


class EventRelayError(Exception):
    """Base exception for eventrelay library."""

    pass


class BrokerConnectionError(EventRelayError):
    """Raised when the broker is unreachable or rejects the credentials."""

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        super().__init__(f"Failed to connect to broker at {url}: {message}")


class ReconnectExhaustedError(EventRelayError):
    """Raised when reconnect() runs out of attempts.

    This is fatal to the calling process; the connection manager does not
    retry on its own after raising it.
    """

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Failed to reconnect to broker after {attempts} attempts{detail}")


class TopologyError(EventRelayError):
    """Raised when a declaration conflicts with an existing broker object."""

    def __init__(self, object_name: str, message: str) -> None:
        self.object_name = object_name
        super().__init__(f"Topology declaration failed for {object_name!r}: {message}")


class NotConnectedError(EventRelayError):
    """Raised when publish/subscribe is attempted without a healthy connection."""

    def __init__(self, operation: str = "operation") -> None:
        self.operation = operation
        super().__init__(f"Cannot {operation}: not connected to broker")


class PublishRejectedError(EventRelayError):
    """Raised when the local channel declines a write.

    The message was NOT sent and must be resubmitted by the caller if required.
    """

    def __init__(self, exchange: str, routing_key: str, reason: str = "") -> None:
        self.exchange = exchange
        self.routing_key = routing_key
        self.reason = reason
        suffix = f" ({reason})" if reason else ""
        super().__init__(
            f"Channel rejected publish to {exchange!r} with routing key {routing_key!r}{suffix}"
        )


class MalformedMessageError(EventRelayError):
    """Raised when a payload is not valid structured data."""

    pass


class SchemaValidationError(MalformedMessageError):
    """Raised when a payload parses but lacks required envelope fields."""

    def __init__(self, message: str, missing_fields: Sequence[str] = ()) -> None:
        self.missing_fields = list(missing_fields)
        super().__init__(message)


class DeliveryAlreadyResolvedError(EventRelayError):
    """Raised when a delivery is acknowledged or rejected a second time."""

    def __init__(self, delivery_tag: int | None, resolution: str) -> None:
        self.delivery_tag = delivery_tag
        self.resolution = resolution
        super().__init__(f"Delivery {delivery_tag} was already resolved ({resolution})")


__all__ = [
    "BrokerConnectionError",
    "DeliveryAlreadyResolvedError",
    "EventRelayError",
    "MalformedMessageError",
    "NotConnectedError",
    "PublishRejectedError",
    "ReconnectExhaustedError",
    "SchemaValidationError",
    "TopologyError",
]
