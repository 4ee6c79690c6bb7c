"""
Envelope publisher.

Publishes EventEnvelopes to an exchange over the channel lent by a
BrokerConnectionManager. Messages are persistent JSON with the envelope's
correlation id copied into both the AMQP properties and the headers, so
consumers and broker tooling can follow a causal chain without decoding
the body.

The boolean returned by publish() means the local channel accepted the
write. Publisher confirms are not enabled, so it is NOT a broker-side
durability confirmation: a message routed to an exchange that does not
exist, or lost with the connection right after the write, still yields
True.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractExchange
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from eventrelay.events.envelope import EventEnvelope
from eventrelay.exceptions import NotConnectedError, PublishRejectedError
from eventrelay.observability import (
    ATTR_CORRELATION_ID,
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_ROUTING_KEY,
    ATTR_SCHEMA_VERSION,
    SpanKindEnum,
    Tracer,
    create_tracer,
    inject_context,
)

if TYPE_CHECKING:
    from eventrelay.broker.connection import BrokerConnectionManager

logger = logging.getLogger(__name__)

CONTENT_TYPE_JSON = "application/json"
CONTENT_ENCODING = "utf-8"


@dataclass(frozen=True)
class PublishOptions:
    """
    Per-publish overrides.

    Attributes:
        headers: Extra AMQP headers merged over the event headers.
        priority: Message priority (0-255), only honored by priority queues.
        expiration: Per-message TTL in seconds.
        message_id: Explicit message id. Defaults to a random UUID hex.
        content_type: Content type override.
    """

    headers: dict[str, Any] = field(default_factory=dict)
    priority: int | None = None
    expiration: float | None = None
    message_id: str | None = None
    content_type: str = CONTENT_TYPE_JSON


@dataclass
class PublisherStats:
    """
    Statistics for publish operations.

    Attributes:
        messages_published: Writes accepted by the local channel.
        messages_rejected: Writes declined by the channel.
        not_connected: Publish calls refused because the connection was unhealthy.
        bytes_published: Total body bytes accepted.
        last_publish_at: Time of the last accepted write.
        last_error: Description of the last rejection.
    """

    messages_published: int = 0
    messages_rejected: int = 0
    not_connected: int = 0
    bytes_published: int = 0
    last_publish_at: datetime | None = None
    last_error: str | None = None


class Publisher:
    """
    Publishes envelopes through a BrokerConnectionManager.

    Publishing never queues, buffers or retries: if the connection is
    unhealthy the call fails immediately with NotConnectedError.

    Args:
        manager: Connection manager lending the channel.
        tracer: Optional tracer. Defaults to one honoring
            ``manager.config.enable_tracing``.

    Example:
        >>> publisher = Publisher(manager)
        >>> await publisher.publish(
        ...     Exchanges.USER_EVENTS, RoutingKeys.USER_REGISTERED,
        ...     user_registered({"userId": "42", "email": "a@example.com"}),
        ... )
        True
    """

    def __init__(
        self,
        manager: BrokerConnectionManager,
        *,
        tracer: Tracer | None = None,
    ) -> None:
        self._manager = manager
        self._tracer = tracer or create_tracer(__name__, manager.config.enable_tracing)
        self._exchanges: dict[str, AbstractExchange] = {}
        self._exchanges_channel: AbstractChannel | None = None
        self._stats = PublisherStats()

    @property
    def stats(self) -> PublisherStats:
        return self._stats

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        envelope: EventEnvelope,
        options: PublishOptions | None = None,
    ) -> bool:
        """
        Publish an envelope to an exchange with a routing key.

        Args:
            exchange: Exchange name ("" for the default exchange).
            routing_key: Routing key matched against binding patterns.
            envelope: Envelope to serialize as the message body.
            options: Optional per-publish overrides.

        Returns:
            True when the local channel accepted the write. This is a local
            back-pressure signal only, not a broker confirmation.

        Raises:
            NotConnectedError: If the connection is unhealthy. No network
                I/O is attempted and nothing is queued.
            PublishRejectedError: If the channel declined the write (invalid
                channel state, or not written within publish_timeout).
        """
        exchange_name = str(exchange)
        routing_key = str(routing_key)

        if not self._manager.is_healthy():
            self._stats.not_connected += 1
            raise NotConnectedError(f"publish to exchange '{exchange_name}'")

        options = options or PublishOptions()
        span = None
        if self._tracer.enabled:
            span = self._tracer.start_span(
                "eventrelay.publish",
                kind=SpanKindEnum.PRODUCER,
                attributes={
                    ATTR_MESSAGING_SYSTEM: "rabbitmq",
                    ATTR_MESSAGING_OPERATION: "publish",
                    ATTR_MESSAGING_DESTINATION: exchange_name,
                    ATTR_ROUTING_KEY: routing_key,
                    ATTR_EVENT_TYPE: envelope.type,
                    ATTR_CORRELATION_ID: envelope.correlation_id,
                    ATTR_SCHEMA_VERSION: envelope.version,
                },
            )

        try:
            message = self._create_message(envelope, options, span)
            if span is not None:
                span.set_attribute(ATTR_MESSAGING_MESSAGE_ID, message.message_id or "")

            accepted, reason = await self._write(exchange_name, routing_key, message)
            if not accepted:
                self._stats.messages_rejected += 1
                self._stats.last_error = reason
                logger.warning(
                    f"Publish to {exchange_name!r} with routing key {routing_key!r} "
                    f"declined by channel: {reason}",
                    extra={
                        "exchange": exchange_name,
                        "routing_key": routing_key,
                        "event_type": envelope.type,
                        "correlation_id": envelope.correlation_id,
                        "error": reason,
                    },
                )
                raise PublishRejectedError(exchange_name, routing_key, reason)

            self._stats.messages_published += 1
            self._stats.bytes_published += len(message.body)
            self._stats.last_publish_at = datetime.now(UTC)

            logger.debug(
                f"Published {envelope.type} to {exchange_name!r} "
                f"with routing key {routing_key!r}",
                extra={
                    "exchange": exchange_name,
                    "routing_key": routing_key,
                    "event_type": envelope.type,
                    "correlation_id": envelope.correlation_id,
                    "message_id": message.message_id,
                },
            )
            return True
        except Exception as e:
            if span is not None:
                span.record_exception(e)
            raise
        finally:
            if span is not None:
                span.end()

    def _create_message(
        self,
        envelope: EventEnvelope,
        options: PublishOptions,
        span: Any = None,
    ) -> Message:
        headers: dict[str, Any] = {
            "event_type": envelope.type,
            "correlation_id": envelope.correlation_id,
            "schema_version": envelope.version,
        }
        headers.update(options.headers)

        if span is not None:
            inject_context(headers, span)

        return Message(
            body=envelope.serialize(),
            content_type=options.content_type,
            content_encoding=CONTENT_ENCODING,
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=options.message_id or uuid.uuid4().hex,
            correlation_id=envelope.correlation_id,
            timestamp=datetime.now(UTC),
            type=envelope.type,
            priority=options.priority,
            expiration=options.expiration,
            headers=headers,
        )

    async def _write(
        self,
        exchange_name: str,
        routing_key: str,
        message: Message,
    ) -> tuple[bool, str]:
        """Hand the message to the channel; (False, reason) when it declines."""
        try:
            target = await self._get_exchange(exchange_name)
            await target.publish(
                message,
                routing_key=routing_key,
                mandatory=False,
                timeout=self._manager.config.publish_timeout,
            )
        except TimeoutError:
            return False, f"not written within {self._manager.config.publish_timeout}s"
        except (ChannelInvalidStateError, AMQPError) as e:
            self._exchanges.clear()
            return False, str(e) or type(e).__name__
        return True, ""

    async def _get_exchange(self, name: str) -> AbstractExchange:
        channel = self._manager.channel
        if channel is not self._exchanges_channel:
            # exchange handles are bound to the channel they came from
            self._exchanges.clear()
            self._exchanges_channel = channel

        exchange = self._exchanges.get(name)
        if exchange is None:
            if name == "":
                exchange = channel.default_exchange
            else:
                exchange = await channel.get_exchange(name, ensure=False)
            self._exchanges[name] = exchange
        return exchange


__all__ = [
    "CONTENT_ENCODING",
    "CONTENT_TYPE_JSON",
    "PublishOptions",
    "Publisher",
    "PublisherStats",
]
