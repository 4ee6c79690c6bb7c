"""
Event catalog for the registration and notification workflows.

Defines the event type, exchange, queue and routing-key constants shared by
the user service (producer of ``user.registered``) and the email service
(consumer of ``user.registered``, producer of ``email.sent`` /
``email.failed``), plus the declarative topology both sides rely on.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from eventrelay.broker.topology import BindingSpec, ExchangeSpec, QueueSpec, Topology
from eventrelay.events.envelope import EventEnvelope


class EventTypes(StrEnum):
    USER_REGISTERED = "user.registered"
    EMAIL_SEND_REQUEST = "email.send.request"
    EMAIL_SENT = "email.sent"
    EMAIL_FAILED = "email.failed"


class Exchanges(StrEnum):
    USER_EVENTS = "user.events.exchange"
    EMAIL_EVENTS = "email.events.exchange"


class Queues(StrEnum):
    USER_EVENTS = "user.events"
    EMAIL_REQUESTS = "email.requests"
    EMAIL_RESPONSES = "email.responses"


class RoutingKeys(StrEnum):
    USER_REGISTERED = "user.registered"
    EMAIL_WELCOME = "email.welcome"
    EMAIL_NOTIFICATION = "email.notification"
    EMAIL_SENT = "email.sent"
    EMAIL_FAILED = "email.failed"


DEAD_LETTER_EXCHANGE = "dead-letter.exchange"


def user_registered(data: Mapping[str, Any], correlation_id: str | None = None) -> EventEnvelope:
    """Envelope announcing a newly registered user."""
    return EventEnvelope.create(EventTypes.USER_REGISTERED, data, correlation_id)


def email_send_request(
    data: Mapping[str, Any], correlation_id: str | None = None
) -> EventEnvelope:
    """Envelope asking the notification workflow to send an email."""
    return EventEnvelope.create(EventTypes.EMAIL_SEND_REQUEST, data, correlation_id)


def email_sent(data: Mapping[str, Any], correlation_id: str | None = None) -> EventEnvelope:
    """Result envelope for a delivered email."""
    return EventEnvelope.create(EventTypes.EMAIL_SENT, data, correlation_id)


def email_failed(data: Mapping[str, Any], correlation_id: str | None = None) -> EventEnvelope:
    """Result envelope for an email that could not be delivered."""
    return EventEnvelope.create(EventTypes.EMAIL_FAILED, data, correlation_id)


def default_topology(*, dead_letter: bool = False) -> Topology:
    """
    Build the topology contract shared by the user and email services.

    Args:
        dead_letter: Attach a dead-letter queue to every consumer queue.
            Leave False when the queues already exist on the broker without
            dead-letter arguments; changing queue arguments is a conflict.

    Returns:
        Topology with both topic exchanges, the three durable queues and
        their bindings
    """
    return Topology(
        exchanges=(
            ExchangeSpec(Exchanges.USER_EVENTS),
            ExchangeSpec(Exchanges.EMAIL_EVENTS),
        ),
        queues=(
            QueueSpec(Queues.USER_EVENTS, dead_letter=dead_letter),
            QueueSpec(Queues.EMAIL_REQUESTS, dead_letter=dead_letter),
            QueueSpec(Queues.EMAIL_RESPONSES, dead_letter=dead_letter),
        ),
        bindings=(
            BindingSpec(Queues.EMAIL_REQUESTS, Exchanges.USER_EVENTS, RoutingKeys.USER_REGISTERED),
            BindingSpec(Queues.EMAIL_RESPONSES, Exchanges.EMAIL_EVENTS, "email.*"),
        ),
        dead_letter_exchange=DEAD_LETTER_EXCHANGE if dead_letter else None,
    )


__all__ = [
    "DEAD_LETTER_EXCHANGE",
    "EventTypes",
    "Exchanges",
    "Queues",
    "RoutingKeys",
    "default_topology",
    "email_failed",
    "email_send_request",
    "email_sent",
    "user_registered",
]
