"""
Queue consumer with manual acknowledgment.

Consumer.subscribe() starts one task per subscription that iterates the
queue and hands every decodable envelope to the handler, one delivery at a
time in delivery order. The handler's result decides how the delivery is
resolved:

- returns None or HandlerOutcome.ACK: ack
- raises, or returns HandlerOutcome.RETRY: nack with requeue
- returns HandlerOutcome.REJECT: reject without requeue

Redelivery is bounded by SubscribeOptions.max_redeliveries on queues that
dead-letter (see QueueSpec.dead_letter). Once a message has been redelivered
that many times, a further failure rejects it without requeue, routing it to
the dead-letter exchange. On a queue without one the bound is ignored:
failures are requeued forever and never discarded.
max_redeliveries=None requeues failures forever on any queue.

Bodies that are not valid envelopes are rejected without requeue and never
reach the handler.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from aio_pika.abc import AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError, ChannelNotFoundEntity
from opentelemetry import trace

from eventrelay.events.correlation import correlation_scope
from eventrelay.events.envelope import EventEnvelope
from eventrelay.exceptions import (
    DeliveryAlreadyResolvedError,
    MalformedMessageError,
    NotConnectedError,
    TopologyError,
)
from eventrelay.observability import (
    ATTR_CORRELATION_ID,
    ATTR_DELIVERY_COUNT,
    ATTR_DELIVERY_TAG,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_TYPE,
    ATTR_HANDLER_NAME,
    ATTR_HANDLER_OUTCOME,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_REDELIVERED,
    ATTR_ROUTING_KEY,
    SpanKindEnum,
    Tracer,
    create_tracer,
    extract_context,
)

if TYPE_CHECKING:
    from eventrelay.broker.connection import BrokerConnectionManager

logger = logging.getLogger(__name__)

DELIVERY_COUNT_HEADER = "x-delivery-count"


class HandlerOutcome(StrEnum):
    """How a handler wants its delivery resolved."""

    ACK = "ack"
    RETRY = "retry"
    REJECT = "reject"


HandlerResult = HandlerOutcome | None
Handler = Callable[
    [EventEnvelope, "DeliveryHandle"],
    Awaitable[HandlerResult] | HandlerResult,
]


@dataclass(frozen=True)
class SubscribeOptions:
    """
    Per-subscription settings.

    Attributes:
        max_redeliveries: Redeliveries allowed before a failing message is
            rejected without requeue. None requeues forever. Only applied
            when the queue dead-letters.
        redelivery_delay: Seconds to pause before requeueing a failed delivery.
        consumer_tag: Explicit consumer tag; the broker generates one if None.
        exclusive: Request exclusive consumer access to the queue.
        dead_letter: Whether the queue routes rejected messages to a
            dead-letter exchange. None looks the queue up in the manager's
            topology; set True for a queue whose dead-lettering is declared
            outside eventrelay (for example by a broker policy).
    """

    max_redeliveries: int | None = 5
    redelivery_delay: float = 0.0
    consumer_tag: str | None = None
    exclusive: bool = False
    dead_letter: bool | None = None

    def __post_init__(self) -> None:
        if self.max_redeliveries is not None and self.max_redeliveries < 0:
            raise ValueError(f"max_redeliveries must be >= 0 or None, got {self.max_redeliveries}")
        if self.redelivery_delay < 0:
            raise ValueError(f"redelivery_delay must be >= 0, got {self.redelivery_delay}")


@dataclass
class ConsumerStats:
    """
    Statistics for consumed deliveries, across all subscriptions of a Consumer.

    Attributes:
        messages_received: Deliveries taken from queues.
        messages_acked: Deliveries acknowledged.
        messages_requeued: Deliveries returned to their queue for redelivery.
        messages_rejected: Deliveries rejected without requeue (all causes).
        messages_malformed: Deliveries rejected because the body was not a valid envelope.
        messages_dead_lettered: Deliveries rejected after exhausting max_redeliveries.
        handler_errors: Handler invocations that raised.
        last_message_at: Time of the last delivery.
    """

    messages_received: int = 0
    messages_acked: int = 0
    messages_requeued: int = 0
    messages_rejected: int = 0
    messages_malformed: int = 0
    messages_dead_lettered: int = 0
    handler_errors: int = 0
    last_message_at: datetime | None = None


class RedeliveryTracker:
    """
    In-process delivery counter keyed by message id.

    Used when the broker does not report a delivery count (classic queues
    do not set x-delivery-count). Counts are lost on restart, and the
    oldest entries are evicted once max_entries is reached.
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        self._max_entries = max_entries
        self._counts: OrderedDict[str, int] = OrderedDict()

    def record(self, key: str) -> int:
        """Count one delivery of key and return its total so far."""
        count = self._counts.pop(key, 0) + 1
        self._counts[key] = count
        while len(self._counts) > self._max_entries:
            self._counts.popitem(last=False)
        return count

    def forget(self, key: str) -> None:
        self._counts.pop(key, None)

    def __len__(self) -> int:
        return len(self._counts)

    def __contains__(self, key: object) -> bool:
        return key in self._counts


class DeliveryHandle:
    """
    Resolution handle for one delivery, passed to the handler.

    A handler may resolve its delivery itself (ack, nack or reject); the
    consumer then leaves it alone. A delivery can be resolved only once.
    """

    def __init__(
        self,
        message: AbstractIncomingMessage,
        queue: str,
        delivery_count: int = 1,
    ) -> None:
        self._message = message
        self._queue = queue
        self._delivery_count = delivery_count
        self._resolution: str | None = None
        self._requeued = False

    @property
    def queue(self) -> str:
        return self._queue

    @property
    def delivery_tag(self) -> int | None:
        return self._message.delivery_tag

    @property
    def message_id(self) -> str | None:
        return self._message.message_id

    @property
    def routing_key(self) -> str | None:
        return self._message.routing_key

    @property
    def headers(self) -> dict[str, Any]:
        return dict(self._message.headers or {})

    @property
    def redelivered(self) -> bool:
        return bool(self._message.redelivered)

    @property
    def delivery_count(self) -> int:
        """1 on first delivery, incremented on every redelivery."""
        return self._delivery_count

    @property
    def resolution(self) -> str | None:
        """'ack', 'nack' or 'reject' once resolved, else None."""
        return self._resolution

    @property
    def resolved(self) -> bool:
        return self._resolution is not None

    @property
    def requeued(self) -> bool:
        return self._requeued

    async def ack(self) -> None:
        self._claim("ack", requeue=False)
        await self._message.ack()

    async def nack(self, requeue: bool = True) -> None:
        self._claim("nack", requeue=requeue)
        await self._message.nack(requeue=requeue)

    async def reject(self, requeue: bool = False) -> None:
        self._claim("reject", requeue=requeue)
        await self._message.reject(requeue=requeue)

    def _claim(self, resolution: str, requeue: bool) -> None:
        if self._resolution is not None:
            raise DeliveryAlreadyResolvedError(self.delivery_tag, self._resolution)
        self._resolution = resolution
        self._requeued = requeue


class Subscription:
    """
    One active consumer of a queue.

    Created by Consumer.subscribe(); runs until cancel() is called or the
    channel closes.
    """

    def __init__(
        self,
        queue: AbstractQueue,
        handler: Handler,
        options: SubscribeOptions,
        *,
        stats: ConsumerStats,
        tracer: Tracer,
        dead_lettered: bool = False,
    ) -> None:
        self._queue = queue
        self._queue_name = queue.name
        self._handler = handler
        self._handler_name = getattr(handler, "__qualname__", repr(handler))
        self._options = options
        self._max_redeliveries = options.max_redeliveries if dead_lettered else None
        self._stats = stats
        self._tracer = tracer
        self._tracker = RedeliveryTracker()
        self._task: asyncio.Task[None] | None = None
        self._started: asyncio.Future[None] | None = None
        self._cancelled = False

    @property
    def queue(self) -> str:
        return self._queue_name

    @property
    def options(self) -> SubscribeOptions:
        return self._options

    @property
    def handler_name(self) -> str:
        return self._handler_name

    @property
    def max_redeliveries(self) -> int | None:
        """The redelivery bound in effect; None when failures requeue forever."""
        return self._max_redeliveries

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def start(self) -> None:
        """Start consuming; returns once the broker accepted the consumer."""
        loop = asyncio.get_running_loop()
        self._started = loop.create_future()
        self._task = asyncio.create_task(
            self._run(),
            name=f"eventrelay-consumer:{self._queue_name}",
        )
        await asyncio.wait({self._started, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if self._task.done():
            # propagates the startup failure
            self._task.result()

    async def cancel(self) -> None:
        """Stop taking deliveries. The delivery being handled, if any, stays unresolved."""
        self._cancelled = True
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        logger.info(
            f"Subscription to {self._queue_name!r} cancelled",
            extra={"queue": self._queue_name, "handler": self._handler_name},
        )

    async def wait(self) -> None:
        """Wait until the subscription ends."""
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        kwargs: dict[str, Any] = {}
        if self._options.consumer_tag is not None:
            kwargs["consumer_tag"] = self._options.consumer_tag
        if self._options.exclusive:
            kwargs["exclusive"] = True

        try:
            async with self._queue.iterator(**kwargs) as queue_iter:
                self._mark_started()
                logger.info(
                    f"Consuming from {self._queue_name!r}",
                    extra={
                        "queue": self._queue_name,
                        "handler": self._handler_name,
                        "max_redeliveries": self._max_redeliveries,
                    },
                )
                async for message in queue_iter:
                    await self._process_message(message)
        except asyncio.CancelledError:
            logger.debug(
                "Consumer loop cancelled",
                extra={"queue": self._queue_name},
            )
            raise
        except ChannelNotFoundEntity as e:
            if self._started is not None and not self._started.done():
                raise TopologyError(self._queue_name, "queue does not exist") from e
            raise
        except (AMQPError, ChannelInvalidStateError) as e:
            if self._started is not None and not self._started.done():
                raise
            logger.warning(
                f"Subscription to {self._queue_name!r} ended: {e}",
                extra={"queue": self._queue_name, "error": str(e), "error_type": type(e).__name__},
            )
        else:
            logger.info(
                f"Subscription to {self._queue_name!r} ended",
                extra={"queue": self._queue_name},
            )

    def _mark_started(self) -> None:
        if self._started is not None and not self._started.done():
            self._started.set_result(None)

    def _delivery_count(self, message: AbstractIncomingMessage) -> int:
        headers = message.headers or {}
        raw = headers.get(DELIVERY_COUNT_HEADER)
        if raw is not None:
            try:
                # the broker counts previous deliveries
                return int(str(raw)) + 1
            except ValueError:
                pass

        floor = 2 if message.redelivered else 1
        if message.message_id:
            return max(self._tracker.record(message.message_id), floor)
        return floor

    async def _process_message(self, message: AbstractIncomingMessage) -> None:
        self._stats.messages_received += 1
        self._stats.last_message_at = datetime.now(UTC)

        delivery_count = self._delivery_count(message)
        handle = DeliveryHandle(message, self._queue_name, delivery_count)
        headers = message.headers or {}

        log_extra: dict[str, Any] = {
            "queue": self._queue_name,
            "delivery_tag": message.delivery_tag,
            "message_id": message.message_id,
            "routing_key": message.routing_key,
            "delivery_count": delivery_count,
        }

        span = None
        if self._tracer.enabled:
            span = self._tracer.start_span(
                "eventrelay.consume",
                kind=SpanKindEnum.CONSUMER,
                attributes={
                    ATTR_MESSAGING_SYSTEM: "rabbitmq",
                    ATTR_MESSAGING_OPERATION: "process",
                    ATTR_MESSAGING_DESTINATION: self._queue_name,
                    ATTR_MESSAGING_MESSAGE_ID: message.message_id or "",
                    ATTR_ROUTING_KEY: message.routing_key or "",
                    ATTR_DELIVERY_TAG: message.delivery_tag or 0,
                    ATTR_REDELIVERED: bool(message.redelivered),
                    ATTR_DELIVERY_COUNT: delivery_count,
                    ATTR_HANDLER_NAME: self._handler_name,
                },
                context=extract_context(headers),
            )

        settled = True
        try:
            await self._dispatch(message, handle, log_extra, span)
        except (AMQPError, ChannelInvalidStateError) as e:
            settled = False
            # unresolved deliveries return to the queue when the channel closes
            logger.warning(
                f"Could not resolve delivery from {self._queue_name!r}: {e}",
                extra={**log_extra, "error": str(e), "error_type": type(e).__name__},
            )
            if span is not None:
                span.record_exception(e)
        except Exception as e:
            logger.error(
                f"Unexpected error processing delivery from {self._queue_name!r}: {e}",
                exc_info=True,
                extra={**log_extra, "error": str(e), "error_type": type(e).__name__},
            )
            if span is not None:
                span.record_exception(e)
                span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
            if not handle.resolved:
                try:
                    await handle.reject(requeue=False)
                except (AMQPError, ChannelInvalidStateError):
                    settled = False
        finally:
            if settled:
                self._record_resolution(handle)
            if span is not None:
                span.set_attribute(ATTR_HANDLER_OUTCOME, self._describe(handle))
                span.end()

    async def _dispatch(
        self,
        message: AbstractIncomingMessage,
        handle: DeliveryHandle,
        log_extra: dict[str, Any],
        span: Any,
    ) -> None:
        try:
            envelope = EventEnvelope.deserialize(message.body)
        except MalformedMessageError as e:
            self._stats.messages_malformed += 1
            logger.warning(
                f"Rejecting malformed message from {self._queue_name!r}: {e}",
                extra={**log_extra, "error": str(e), "error_type": type(e).__name__},
            )
            if span is not None:
                span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
            await handle.reject(requeue=False)
            return

        log_extra["event_type"] = envelope.type
        log_extra["correlation_id"] = envelope.correlation_id
        if span is not None:
            span.set_attribute(ATTR_EVENT_TYPE, envelope.type)
            span.set_attribute(ATTR_CORRELATION_ID, envelope.correlation_id)

        limit = self._max_redeliveries
        if limit is not None and handle.delivery_count > limit + 1:
            self._dead_letter_log(envelope, handle, log_extra)
            await handle.reject(requeue=False)
            return

        outcome = await self._invoke(envelope, handle, log_extra, span)

        if handle.resolved:
            return

        if outcome is HandlerOutcome.ACK:
            await handle.ack()
        elif outcome is HandlerOutcome.REJECT:
            await handle.reject(requeue=False)
        elif limit is not None and handle.delivery_count > limit:
            self._dead_letter_log(envelope, handle, log_extra)
            await handle.reject(requeue=False)
        else:
            if self._options.redelivery_delay > 0:
                await asyncio.sleep(self._options.redelivery_delay)
            await handle.nack(requeue=True)

    async def _invoke(
        self,
        envelope: EventEnvelope,
        handle: DeliveryHandle,
        log_extra: dict[str, Any],
        span: Any,
    ) -> HandlerOutcome:
        logger.debug(
            f"Handling {envelope.type} (delivery {handle.delivery_count})",
            extra=log_extra,
        )
        # handler work (follow-up publishes included) nests under the consume span
        active_span = (
            trace.use_span(span, end_on_exit=False)
            if span is not None
            else contextlib.nullcontext()
        )
        with correlation_scope(envelope.correlation_id), active_span:
            try:
                result = self._handler(envelope, handle)
                if inspect.isawaitable(result):
                    result = await result
                return _coerce_outcome(result)
            except Exception as e:
                self._stats.handler_errors += 1
                logger.error(
                    f"Handler {self._handler_name} failed for {envelope.type}: {e}",
                    exc_info=True,
                    extra={**log_extra, "error": str(e), "error_type": type(e).__name__},
                )
                if span is not None:
                    span.record_exception(e)
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                return HandlerOutcome.RETRY

    def _dead_letter_log(
        self,
        envelope: EventEnvelope,
        handle: DeliveryHandle,
        log_extra: dict[str, Any],
    ) -> None:
        self._stats.messages_dead_lettered += 1
        logger.warning(
            f"Giving up on {envelope.type} after {handle.delivery_count} deliveries, "
            f"rejecting without requeue",
            extra={**log_extra, "max_redeliveries": self._max_redeliveries},
        )

    def _record_resolution(self, handle: DeliveryHandle) -> None:
        if handle.resolution is None:
            return
        if handle.resolution == "ack":
            self._stats.messages_acked += 1
        elif handle.requeued:
            self._stats.messages_requeued += 1
        else:
            self._stats.messages_rejected += 1

        if handle.message_id and not handle.requeued:
            self._tracker.forget(handle.message_id)

    @staticmethod
    def _describe(handle: DeliveryHandle) -> str:
        if handle.resolution is None:
            return "unresolved"
        if handle.resolution == "ack":
            return "ack"
        return "requeue" if handle.requeued else "reject"


def _coerce_outcome(result: object) -> HandlerOutcome:
    if result is None:
        return HandlerOutcome.ACK
    if isinstance(result, HandlerOutcome):
        return result
    try:
        return HandlerOutcome(str(result))
    except ValueError:
        raise TypeError(
            f"Handler returned {result!r}; expected None or a HandlerOutcome"
        ) from None


class Consumer:
    """
    Subscribes handlers to queues through a BrokerConnectionManager.

    Args:
        manager: Connection manager lending the channel.
        tracer: Optional tracer. Defaults to one honoring
            ``manager.config.enable_tracing``.

    Example:
        >>> consumer = Consumer(manager)
        >>> async def on_request(envelope, delivery):
        ...     await send_email(envelope.data)
        >>> subscription = await consumer.subscribe(Queues.EMAIL_REQUESTS, on_request)
    """

    def __init__(
        self,
        manager: BrokerConnectionManager,
        *,
        tracer: Tracer | None = None,
    ) -> None:
        self._manager = manager
        self._tracer = tracer or create_tracer(__name__, manager.config.enable_tracing)
        self._subscriptions: list[Subscription] = []
        self._stats = ConsumerStats()

    @property
    def stats(self) -> ConsumerStats:
        return self._stats

    @property
    def subscriptions(self) -> list[Subscription]:
        """Subscriptions still consuming."""
        return [s for s in self._subscriptions if s.active]

    async def subscribe(
        self,
        queue: str,
        handler: Handler,
        options: SubscribeOptions | None = None,
    ) -> Subscription:
        """
        Start consuming a queue with manual acknowledgment.

        Args:
            queue: Queue name. The queue must already exist.
            handler: ``handler(envelope, delivery_handle)``, sync or async.
            options: Redelivery bound and consumer settings. The bound only
                applies when the queue dead-letters; otherwise a warning is
                logged and failures requeue until they succeed.

        Returns:
            The active Subscription.

        Raises:
            NotConnectedError: If the connection is unhealthy.
            TopologyError: If the queue does not exist.
        """
        queue_name = str(queue)
        if not self._manager.is_healthy():
            raise NotConnectedError(f"subscribe to queue '{queue_name}'")

        options = options or SubscribeOptions()
        channel = self._manager.channel
        amqp_queue = await channel.get_queue(queue_name, ensure=False)

        dead_lettered = self._dead_lettered(queue_name, options)
        if options.max_redeliveries is not None and not dead_lettered:
            logger.warning(
                f"Queue {queue_name!r} has no dead-letter exchange; "
                f"ignoring max_redeliveries={options.max_redeliveries} "
                f"and requeueing failed deliveries until they succeed",
                extra={"queue": queue_name, "max_redeliveries": options.max_redeliveries},
            )

        subscription = Subscription(
            amqp_queue,
            handler,
            options,
            stats=self._stats,
            tracer=self._tracer,
            dead_lettered=dead_lettered,
        )
        await subscription.start()

        self._subscriptions = [s for s in self._subscriptions if s.active]
        self._subscriptions.append(subscription)
        return subscription

    def _dead_lettered(self, queue_name: str, options: SubscribeOptions) -> bool:
        if options.dead_letter is not None:
            return options.dead_letter
        topology = self._manager.topology
        spec = topology.queue(queue_name) if topology is not None else None
        return spec is not None and spec.dead_letter

    async def cancel_all(self) -> None:
        """Cancel every subscription created by this consumer."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.cancel()


__all__ = [
    "DELIVERY_COUNT_HEADER",
    "Consumer",
    "ConsumerStats",
    "DeliveryHandle",
    "Handler",
    "HandlerOutcome",
    "RedeliveryTracker",
    "SubscribeOptions",
    "Subscription",
]
