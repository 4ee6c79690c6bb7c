"""
Integration tests for the user registration / welcome email workflow.

Runs the full stack (EventService, BrokerConnectionManager, Publisher,
Consumer, TopologyProvisioner) against InMemoryBroker:

- routing of events to the bound queues only
- correlation IDs carried from the first event to every derived event
- at-least-once delivery when a handler fails transiently
- poison messages dead-lettered after the redelivery bound
- malformed bodies dead-lettered without reaching a handler
- bounded reconnect against an unreachable broker
- recovery of publishing and consuming after a connection loss
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio

from eventrelay import (
    BrokerConfig,
    BrokerConnectionManager,
    DeliveryHandle,
    EventEnvelope,
    EventService,
    EventTypes,
    Exchanges,
    Queues,
    ReconnectExhaustedError,
    RetryPolicy,
    RoutingKeys,
    SubscribeOptions,
    default_topology,
)
from eventrelay.events.catalog import email_sent, user_registered
from eventrelay.testing import InMemoryBroker

pytestmark = pytest.mark.integration


@pytest_asyncio.fixture
async def service(broker: InMemoryBroker) -> AsyncGenerator[EventService, None]:
    svc = EventService(
        BrokerConfig(reconnect=RetryPolicy(max_retries=3, retry_delay=0.0)),
        topology=default_topology(dead_letter=True),
        connector=broker.connect,
        supervise_interval=0.01,
    )
    await svc.start()
    yield svc
    await svc.shutdown()


class TestRouting:
    @pytest.mark.asyncio
    async def test_events_reach_only_bound_queues(
        self, service: EventService, broker: InMemoryBroker
    ) -> None:
        await service.publish(
            Exchanges.USER_EVENTS,
            RoutingKeys.USER_REGISTERED,
            user_registered({"userId": "1", "email": "a@example.com"}),
        )
        await service.publish(
            Exchanges.EMAIL_EVENTS,
            RoutingKeys.EMAIL_SENT,
            email_sent({"userId": "1", "messageId": "smtp-1"}),
        )
        await service.publish(
            Exchanges.EMAIL_EVENTS,
            RoutingKeys.EMAIL_FAILED,
            EventEnvelope.create(EventTypes.EMAIL_FAILED, {"userId": "2"}),
        )
        await service.publish(
            Exchanges.USER_EVENTS,
            "user.deleted",
            EventEnvelope.create("user.deleted", {"userId": "3"}),
        )

        assert broker.message_count(Queues.EMAIL_REQUESTS) == 1
        assert broker.message_count(Queues.EMAIL_RESPONSES) == 2
        assert broker.message_count(Queues.USER_EVENTS) == 0
        assert [p.routing_key for p in broker.unroutable] == ["user.deleted"]


class TestCorrelationChain:
    @pytest.mark.asyncio
    async def test_correlation_id_flows_through_the_workflow(
        self, service: EventService, broker: InMemoryBroker
    ) -> None:
        """user.registered -> welcome email -> email.sent share one correlation ID."""
        responses: list[EventEnvelope] = []

        async def send_welcome_email(envelope: EventEnvelope, delivery: DeliveryHandle) -> None:
            # envelopes created in a handler join the delivery's chain
            sent = email_sent({"userId": envelope.data["userId"], "messageId": "smtp-42"})
            await service.publish(Exchanges.EMAIL_EVENTS, RoutingKeys.EMAIL_SENT, sent)

        async def record_response(envelope: EventEnvelope, delivery: DeliveryHandle) -> None:
            responses.append(envelope)

        await service.subscribe(Queues.EMAIL_REQUESTS, send_welcome_email)
        await service.subscribe(Queues.EMAIL_RESPONSES, record_response)

        await service.publish(
            Exchanges.USER_EVENTS,
            RoutingKeys.USER_REGISTERED,
            user_registered({"userId": "42", "email": "ada@example.com"}, correlation_id="abc-123"),
        )
        await broker.wait_for(lambda: len(responses) == 1)

        [response] = responses
        assert response.type == "email.sent"
        assert response.correlation_id == "abc-123"
        assert response.data == {"userId": "42", "messageId": "smtp-42"}
        assert [p.headers["correlation_id"] for p in broker.published] == ["abc-123", "abc-123"]
        assert [p.properties["correlation_id"] for p in broker.published] == [
            "abc-123",
            "abc-123",
        ]


class TestDeliveryGuarantees:
    @pytest.mark.asyncio
    async def test_at_least_once_after_transient_failures(
        self, service: EventService, broker: InMemoryBroker, sample_envelope: EventEnvelope
    ) -> None:
        attempts: list[int] = []

        async def flaky(envelope: EventEnvelope, delivery: DeliveryHandle) -> None:
            attempts.append(delivery.delivery_count)
            if len(attempts) <= 2:
                raise ConnectionError("SMTP temporarily unavailable")

        await service.subscribe(Queues.EMAIL_REQUESTS, flaky, SubscribeOptions(max_redeliveries=5))
        await service.publish(Exchanges.USER_EVENTS, RoutingKeys.USER_REGISTERED, sample_envelope)
        await broker.drain(Queues.EMAIL_REQUESTS)

        assert attempts == [1, 2, 3]
        assert service.consumer.stats.messages_acked == 1
        assert broker.message_count("email.requests.dlq") == 0

    @pytest.mark.asyncio
    async def test_poison_message_dead_lettered(
        self, service: EventService, broker: InMemoryBroker, sample_envelope: EventEnvelope
    ) -> None:
        invocations = 0

        async def always_fails(envelope: EventEnvelope, delivery: DeliveryHandle) -> None:
            nonlocal invocations
            invocations += 1
            raise ValueError("template rendering failed")

        await service.subscribe(
            Queues.EMAIL_REQUESTS, always_fails, SubscribeOptions(max_redeliveries=2)
        )
        await service.publish(Exchanges.USER_EVENTS, RoutingKeys.USER_REGISTERED, sample_envelope)
        await broker.wait_for(lambda: broker.message_count("email.requests.dlq") == 1)
        await broker.drain(Queues.EMAIL_REQUESTS)

        assert invocations == 3
        [dead] = broker.messages("email.requests.dlq")
        assert EventEnvelope.deserialize(dead.body).correlation_id == "abc-123"
        assert dead.headers["x-death"][0]["queue"] == "email.requests"

    @pytest.mark.asyncio
    async def test_malformed_message_dead_lettered_without_handler(
        self, service: EventService, broker: InMemoryBroker
    ) -> None:
        calls: list[Any] = []

        async def handler(envelope: EventEnvelope, delivery: DeliveryHandle) -> None:
            calls.append(envelope)

        await service.subscribe(Queues.EMAIL_REQUESTS, handler)
        broker.put(Queues.EMAIL_REQUESTS, b'{"type": "user.registered"')
        await broker.wait_for(lambda: broker.message_count("email.requests.dlq") == 1)

        assert calls == []
        assert service.consumer.stats.messages_malformed == 1


class TestConnectionResilience:
    @pytest.mark.asyncio
    async def test_bounded_reconnect_against_unreachable_broker(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        real_sleep = asyncio.sleep
        waits: list[float] = []

        async def recording_sleep(delay: float, *args: Any, **kwargs: Any) -> Any:
            waits.append(delay)
            return await real_sleep(delay, *args, **kwargs)

        monkeypatch.setattr(asyncio, "sleep", recording_sleep)
        broker = InMemoryBroker()
        broker.reachable = False
        manager = BrokerConnectionManager(connector=broker.connect)

        with pytest.raises(ReconnectExhaustedError) as exc_info:
            await manager.reconnect(max_retries=3, retry_delay=0.1)

        assert broker.connect_attempts == 3
        assert exc_info.value.attempts == 3
        gaps = [b - a for a, b in zip(broker.connect_times, broker.connect_times[1:])]
        assert [w for w in waits if w] == [0.1, 0.1]
        assert len(gaps) == 2
        assert all(gap >= 0.1 for gap in gaps)
        assert not manager.is_healthy()

    @pytest.mark.asyncio
    async def test_recovers_after_broker_restart(
        self, service: EventService, broker: InMemoryBroker, sample_envelope: EventEnvelope
    ) -> None:
        received: list[str] = []

        async def handler(envelope: EventEnvelope, delivery: DeliveryHandle) -> None:
            received.append(envelope.correlation_id)

        await service.subscribe(Queues.EMAIL_REQUESTS, handler)
        supervisor = asyncio.create_task(service.supervise())

        broker.reachable = False
        broker.drop_connections()
        assert not service.is_healthy()
        broker.reachable = True

        await broker.wait_for(
            lambda: service.is_healthy() and bool(service.consumer.subscriptions)
        )
        await service.publish(Exchanges.USER_EVENTS, RoutingKeys.USER_REGISTERED, sample_envelope)
        await broker.drain(Queues.EMAIL_REQUESTS)

        assert received == ["abc-123"]
        assert len(broker.open_connections) == 1

        service.request_stop()
        await asyncio.wait_for(supervisor, 1.0)

    @pytest.mark.asyncio
    async def test_in_flight_delivery_redelivered_after_connection_loss(
        self, service: EventService, broker: InMemoryBroker, sample_envelope: EventEnvelope
    ) -> None:
        deliveries: list[bool] = []
        first_started = asyncio.Event()

        async def handler(envelope: EventEnvelope, delivery: DeliveryHandle) -> None:
            deliveries.append(delivery.redelivered)
            if len(deliveries) == 1:
                first_started.set()
                await asyncio.sleep(0.05)

        await service.subscribe(Queues.EMAIL_REQUESTS, handler)
        supervisor = asyncio.create_task(service.supervise())
        await service.publish(Exchanges.USER_EVENTS, RoutingKeys.USER_REGISTERED, sample_envelope)
        await asyncio.wait_for(first_started.wait(), 1.0)

        broker.drop_connections()
        await broker.wait_for(lambda: len(deliveries) == 2)
        await broker.drain(Queues.EMAIL_REQUESTS)

        assert deliveries == [False, True]

        service.request_stop()
        await asyncio.wait_for(supervisor, 1.0)
