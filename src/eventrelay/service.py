"""
Process lifecycle for services built on eventrelay.

EventService glues a BrokerConnectionManager, a Publisher and a Consumer
into the lifecycle every producer or consumer process needs:

1. start: connect with the configured bounded reconnect policy (the
   topology is provisioned on every connect), then start the registered
   subscriptions
2. supervise: poll is_healthy(); after a connection loss, reconnect and
   restart the subscriptions
3. shutdown on SIGINT/SIGTERM or request_stop(): cancel subscriptions,
   close the channel (unacknowledged deliveries return to the broker),
   close the connection

Example:
    >>> service = EventService(BrokerConfig.from_env(), topology=default_topology())
    >>> await service.subscribe(Queues.EMAIL_REQUESTS, send_welcome_email)
    >>> await service.run()
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any

from eventrelay.broker.config import BrokerConfig
from eventrelay.broker.connection import BrokerConnectionManager, Connector
from eventrelay.broker.consumer import Consumer, Handler, SubscribeOptions, Subscription
from eventrelay.broker.publisher import PublishOptions, Publisher
from eventrelay.broker.topology import Topology
from eventrelay.events.envelope import EventEnvelope
from eventrelay.observability import Tracer

logger = logging.getLogger(__name__)

DEFAULT_SUPERVISE_INTERVAL = 5.0


@dataclass(frozen=True)
class _Registration:
    queue: str
    handler: Handler
    options: SubscribeOptions


class EventService:
    """
    Owns the broker client of one process.

    Args:
        config: Broker configuration. Defaults to BrokerConfig().
        topology: Topology provisioned on every (re)connect.
        connector: Connection factory passed to the manager (tests use
            InMemoryBroker.connect).
        tracer: Optional tracer shared by the publisher and consumer.
        supervise_interval: Seconds between health polls in supervise().
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        *,
        topology: Topology | None = None,
        connector: Connector | None = None,
        tracer: Tracer | None = None,
        supervise_interval: float = DEFAULT_SUPERVISE_INTERVAL,
    ) -> None:
        self._manager = BrokerConnectionManager(config, topology=topology, connector=connector)
        self._publisher = Publisher(self._manager, tracer=tracer)
        self._consumer = Consumer(self._manager, tracer=tracer)
        self._supervise_interval = supervise_interval
        self._registrations: list[_Registration] = []
        self._stop_event = asyncio.Event()
        self._started = False
        self._shutdown_complete = False

    @property
    def manager(self) -> BrokerConnectionManager:
        return self._manager

    @property
    def publisher(self) -> Publisher:
        return self._publisher

    @property
    def consumer(self) -> Consumer:
        return self._consumer

    @property
    def started(self) -> bool:
        return self._started

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def is_healthy(self) -> bool:
        """Health surface for readiness checks."""
        return self._manager.is_healthy()

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        envelope: EventEnvelope,
        options: PublishOptions | None = None,
    ) -> bool:
        """Publish through the service's Publisher. See Publisher.publish()."""
        return await self._publisher.publish(exchange, routing_key, envelope, options)

    async def subscribe(
        self,
        queue: str,
        handler: Handler,
        options: SubscribeOptions | None = None,
    ) -> Subscription | None:
        """
        Register a subscription that is (re)started after every (re)connect.

        Returns the running Subscription when the service is already started
        and healthy, else None (it starts with the service).
        """
        registration = _Registration(str(queue), handler, options or SubscribeOptions())
        self._registrations.append(registration)
        if self._started and self._manager.is_healthy():
            return await self._subscribe(registration)
        return None

    async def start(self) -> None:
        """
        Connect and start the registered subscriptions.

        Raises:
            ReconnectExhaustedError: If the broker stayed unreachable.
            TopologyError: If the topology conflicts with the broker's.
        """
        if self._shutdown_complete:
            raise RuntimeError("EventService has been shut down and cannot be restarted")

        logger.info(
            "Starting event service",
            extra={"url": self._manager.config.sanitized_url, "subscriptions": len(self._registrations)},
        )
        await self._manager.reconnect()
        await self._restart_subscriptions()
        self._started = True

    async def supervise(self, interval: float | None = None) -> None:
        """
        Keep the connection and subscriptions alive until request_stop().

        Raises:
            ReconnectExhaustedError: If a reconnect exhausted its attempts.
                Supervision stops; the caller decides what happens next.
            TopologyError: If re-provisioning after a reconnect conflicts.
        """
        interval = self._supervise_interval if interval is None else interval

        while not self._stop_event.is_set():
            if not self._manager.is_healthy():
                logger.warning(
                    "Broker connection lost, reconnecting",
                    extra={"state": self._manager.state.value},
                )
                await self._manager.reconnect()
                await self._restart_subscriptions()
            elif len(self._consumer.subscriptions) < len(self._registrations):
                logger.warning("Subscription ended unexpectedly, restarting subscriptions")
                await self._restart_subscriptions()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Start, supervise until SIGINT/SIGTERM or request_stop(), then shut down."""
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []

        if install_signal_handlers:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self._handle_signal, sig.name)
                    installed.append(sig)
                except NotImplementedError:
                    logger.debug(f"Signal handlers not supported, {sig.name} not installed")

        try:
            await self.start()
            await self.supervise()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.shutdown()

    def request_stop(self) -> None:
        """Ask supervise()/run() to return. Safe to call from signal handlers."""
        self._stop_event.set()

    async def shutdown(self) -> None:
        """
        Stop consuming, then close the channel and the connection.

        In-flight deliveries that were not acknowledged return to the broker
        when the channel closes. Idempotent.
        """
        if self._shutdown_complete:
            logger.debug("Shutdown already complete, skipping")
            return

        self._shutdown_complete = True
        self._stop_event.set()
        logger.info("Shutting down event service")

        await self._consumer.cancel_all()
        await self._manager.close()
        self._started = False

        logger.info(
            "Event service stopped",
            extra={
                "messages_published": self._publisher.stats.messages_published,
                "messages_received": self._consumer.stats.messages_received,
            },
        )

    async def __aenter__(self) -> EventService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    def _handle_signal(self, sig_name: str) -> None:
        logger.info(f"Received {sig_name}, initiating shutdown")
        self.request_stop()

    async def _restart_subscriptions(self) -> None:
        await self._consumer.cancel_all()
        for registration in self._registrations:
            await self._subscribe(registration)

    async def _subscribe(self, registration: _Registration) -> Subscription:
        subscription = await self._consumer.subscribe(
            registration.queue,
            registration.handler,
            registration.options,
        )
        logger.info(
            f"Subscribed to {registration.queue!r}",
            extra={"queue": registration.queue, "handler": subscription.handler_name},
        )
        return subscription


__all__ = ["DEFAULT_SUPERVISE_INTERVAL", "EventService"]
