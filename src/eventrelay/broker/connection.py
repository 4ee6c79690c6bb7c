"""
Broker connection lifecycle.

BrokerConnectionManager owns the single connection/channel pair of a
process. It lends the channel to TopologyProvisioner, Publisher and Consumer
(which receive the manager through their constructors) and is the only
component allowed to open, replace or close it.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED                    (error/close event)
    DISCONNECTED -> RECONNECTING -> CONNECTED | FAILED   (reconnect())

FAILED is terminal for one reconnect() call; the caller may call
reconnect() again later.

Example:
    >>> manager = BrokerConnectionManager(BrokerConfig(url="amqp://localhost/"),
    ...                                   topology=default_topology())
    >>> await manager.connect()
    >>> manager.is_healthy()
    True
    >>> await manager.close()
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection
from aio_pika.exceptions import AMQPError

from eventrelay.broker.config import BrokerConfig
from eventrelay.broker.retry import RetryPolicy
from eventrelay.broker.topology import Topology, TopologyProvisioner
from eventrelay.exceptions import (
    BrokerConnectionError,
    NotConnectedError,
    ReconnectExhaustedError,
    TopologyError,
)

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[AbstractConnection]]


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class ConnectionStats:
    """
    Counters describing the connection history of a manager.

    Attributes:
        connect_attempts: Calls to connect() that tried to open a connection.
        connects: Successful connects (initial and reconnects).
        reconnections: reconnect() calls that restored the connection.
        reconnect_failures: reconnect() calls that exhausted their attempts.
        unexpected_closes: Close/error events not initiated by close().
        disconnects: Calls to close().
        connected_at: When the current connection was established.
        last_error_at: When the last connection error was observed.
    """

    connect_attempts: int = 0
    connects: int = 0
    reconnections: int = 0
    reconnect_failures: int = 0
    unexpected_closes: int = 0
    disconnects: int = 0
    connected_at: datetime | None = None
    last_error_at: datetime | None = None


@dataclass
class HealthCheckResult:
    """
    Health status of the connection manager.

    Attributes:
        healthy: Same value as is_healthy().
        state: Current ConnectionState value.
        connection_status: 'connected', 'closed' or 'disconnected'.
        channel_status: 'open', 'closed' or 'not_initialized'.
        error: Last connection error, if any.
        details: URL (sanitized), topology summary and stats.
    """

    healthy: bool
    state: str
    connection_status: str
    channel_status: str
    error: str | None = None
    details: dict[str, Any] | None = None


class BrokerConnectionManager:
    """
    Owns the shared connection/channel pair; detects loss; restores it.

    Args:
        config: Broker configuration. Defaults to BrokerConfig().
        topology: Topology re-provisioned after every successful connect.
        connector: Coroutine function opening a connection. Defaults to
            aio_pika.connect. Automatic reconnection is deliberately not
            delegated to aio-pika's robust connection: loss is surfaced
            through is_healthy() and restored by reconnect().
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        *,
        topology: Topology | None = None,
        connector: Connector | None = None,
    ) -> None:
        self._config = config or BrokerConfig()
        self._topology = topology
        self._connector = connector

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._state = ConnectionState.DISCONNECTED
        self._last_error: BaseException | None = None
        self._closing = False

        self._provisioner = TopologyProvisioner(self)
        self._reconnect_lock = asyncio.Lock()
        self._stats = ConnectionStats()
        self._logger = logging.getLogger(__name__)

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def topology(self) -> Topology | None:
        return self._topology

    @property
    def provisioner(self) -> TopologyProvisioner:
        return self._provisioner

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def stats(self) -> ConnectionStats:
        return self._stats

    @property
    def connection(self) -> AbstractConnection:
        """The open connection. Raises NotConnectedError if there is none."""
        if self._connection is None or self._connection.is_closed:
            raise NotConnectedError("use connection")
        return self._connection

    @property
    def channel(self) -> AbstractChannel:
        """The open channel lent to other components. Raises NotConnectedError if there is none."""
        if self._channel is None or self._channel.is_closed:
            raise NotConnectedError("use channel")
        return self._channel

    def is_healthy(self) -> bool:
        """
        Check whether the connection and channel are usable.

        A pure state query: performs no I/O. Returns False if never
        connected, or if an error/close event fired since the last
        successful connect.
        """
        return (
            self._state is ConnectionState.CONNECTED
            and self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    async def connect(self) -> None:
        """
        Open a connection and channel, then provision the topology.

        Raises:
            BrokerConnectionError: If the broker is unreachable,
                authentication fails, or the connection drops while the
                topology is provisioned. Not retried here; see reconnect().
            TopologyError: If provisioning conflicts with existing broker
                objects. The connection is closed before raising.
        """
        if self.is_healthy():
            self._logger.warning("BrokerConnectionManager already connected")
            return

        # drop references to a connection lost since the last connect
        await self._release_resources()

        self._state = ConnectionState.CONNECTING
        self._stats.connect_attempts += 1
        connector = self._connector or aio_pika.connect

        self._logger.info(
            "Connecting to broker...",
            extra={"url": self._config.sanitized_url},
        )

        try:
            connection = await connector(self._config.url, **self._config.connect_kwargs())
        except (AMQPError, OSError, TimeoutError) as e:
            self._record_failure(e)
            raise BrokerConnectionError(self._config.sanitized_url, str(e) or type(e).__name__) from e

        try:
            channel = await connection.channel(publisher_confirms=False)
            await channel.set_qos(prefetch_count=self._config.prefetch_count)
        except (AMQPError, OSError, TimeoutError) as e:
            self._record_failure(e)
            await self._close_quietly(connection, "connection")
            raise BrokerConnectionError(self._config.sanitized_url, str(e) or type(e).__name__) from e

        connection.close_callbacks.add(self._on_connection_close)
        channel.close_callbacks.add(self._on_channel_close)

        self._connection = connection
        self._channel = channel
        self._state = ConnectionState.CONNECTED
        self._last_error = None
        self._stats.connects += 1
        self._stats.connected_at = datetime.now(UTC)

        self._logger.info(
            "Connected to broker successfully",
            extra={
                "url": self._config.sanitized_url,
                "prefetch_count": self._config.prefetch_count,
                "tls_enabled": self._config.uses_tls,
            },
        )

        if self._topology is not None:
            try:
                await self._provisioner.ensure(self._topology)
            except TopologyError:
                await self.close()
                raise
            except (BrokerConnectionError, NotConnectedError) as e:
                # lost mid-provisioning; retryable by reconnect()
                self._record_failure(e)
                await self.close()
                if isinstance(e, BrokerConnectionError):
                    raise
                raise BrokerConnectionError(self._config.sanitized_url, str(e)) from e

    async def reconnect(
        self,
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        """
        Restore the connection with a bounded number of attempts.

        While not healthy and fewer than max_retries attempts were made,
        calls connect(); after a failed attempt waits retry_delay seconds
        (a fixed interval unless the configured RetryPolicy says otherwise)
        before the next one. No wait follows the last attempt. Returns
        immediately when already healthy.

        Args:
            max_retries: Attempts for this call. Defaults to config.reconnect.max_retries.
            retry_delay: Wait between attempts. Defaults to config.reconnect.retry_delay.

        Raises:
            ReconnectExhaustedError: If every attempt failed. The manager
                does not retry further on its own.
            TopologyError: If provisioning conflicts after a successful connect.
        """
        policy = self._resolve_policy(max_retries, retry_delay)

        async with self._reconnect_lock:
            attempts = 0
            last_error: BaseException | None = None

            while attempts < policy.max_retries and not self.is_healthy():
                self._state = ConnectionState.RECONNECTING
                attempts += 1
                self._logger.info(
                    f"Attempting to reconnect ({attempts}/{policy.max_retries})...",
                    extra={"attempt": attempts, "max_retries": policy.max_retries},
                )
                try:
                    await self.connect()
                except BrokerConnectionError as e:
                    last_error = e
                    if attempts < policy.max_retries:
                        delay = policy.delay_for(attempts - 1)
                        self._logger.warning(
                            f"Reconnection failed, retrying in {delay:.2f}s",
                            extra={"attempt": attempts, "delay_seconds": delay, "error": str(e)},
                        )
                        await asyncio.sleep(delay)
                else:
                    self._stats.reconnections += 1
                    self._logger.info(
                        f"Reconnected to broker after {attempts} attempt(s)",
                        extra={"attempts": attempts, "reconnections": self._stats.reconnections},
                    )
                    return

            if self.is_healthy():
                return

            self._state = ConnectionState.FAILED
            self._stats.reconnect_failures += 1
            self._logger.error(
                f"Failed to reconnect to broker after {attempts} attempts",
                extra={"attempts": attempts, "error": str(last_error) if last_error else None},
            )
            raise ReconnectExhaustedError(attempts, last_error)

    async def close(self) -> None:
        """
        Close the channel, then the connection.

        Tolerates either being already closed or failing to close, and
        always leaves the manager DISCONNECTED. Closing the channel returns
        any unacknowledged deliveries to the broker.
        """
        self._closing = True
        try:
            await self._release_resources()
        finally:
            self._closing = False
            self._state = ConnectionState.DISCONNECTED
            self._stats.disconnects += 1
            self._stats.connected_at = None

        self._logger.info(
            "Disconnected from broker",
            extra={"url": self._config.sanitized_url},
        )

    async def health_check(self) -> HealthCheckResult:
        """Detailed health status. Like is_healthy(), performs no I/O."""
        if self._connection is None:
            connection_status = "disconnected"
        elif self._connection.is_closed:
            connection_status = "closed"
        else:
            connection_status = "connected"

        if self._channel is None:
            channel_status = "not_initialized"
        elif self._channel.is_closed:
            channel_status = "closed"
        else:
            channel_status = "open"

        details: dict[str, Any] = {
            "url": self._config.sanitized_url,
            "stats": dataclasses.asdict(self._stats),
        }
        if self._topology is not None:
            details["topology"] = {
                "exchanges": [e.name for e in self._topology.exchanges],
                "queues": [q.name for q in self._topology.queues],
                "bindings": len(self._topology.bindings),
            }

        return HealthCheckResult(
            healthy=self.is_healthy(),
            state=self._state.value,
            connection_status=connection_status,
            channel_status=channel_status,
            error=str(self._last_error) if self._last_error else None,
            details=details,
        )

    async def __aenter__(self) -> BrokerConnectionManager:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def _resolve_policy(self, max_retries: int | None, retry_delay: float | None) -> RetryPolicy:
        policy = self._config.reconnect
        changes: dict[str, Any] = {}
        if max_retries is not None:
            changes["max_retries"] = max_retries
        if retry_delay is not None:
            changes["retry_delay"] = retry_delay
        return dataclasses.replace(policy, **changes) if changes else policy

    def _record_failure(self, error: BaseException) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._last_error = error
        self._stats.last_error_at = datetime.now(UTC)
        self._logger.error(
            f"Failed to connect to broker: {error}",
            extra={
                "url": self._config.sanitized_url,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )

    async def _release_resources(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        if channel is not None and not channel.is_closed:
            await self._close_quietly(channel, "channel")
        if connection is not None and not connection.is_closed:
            await self._close_quietly(connection, "connection")

    async def _close_quietly(self, resource: AbstractChannel | AbstractConnection, kind: str) -> None:
        try:
            await resource.close()
        except Exception as e:
            self._logger.warning(
                f"Error closing {kind}: {e}",
                extra={"error": str(e), "error_type": type(e).__name__},
            )

    def _on_connection_close(
        self,
        connection: AbstractConnection | None,
        exception: BaseException | None = None,
    ) -> None:
        """Close observer registered on the connection (synchronous, as aio-pika requires)."""
        if connection is not None and connection is not self._connection:
            return
        self._mark_lost("connection", exception)

    def _on_channel_close(
        self,
        channel: AbstractChannel | None,
        exception: BaseException | None = None,
    ) -> None:
        """Close observer registered on the channel."""
        if channel is not None and channel is not self._channel:
            return
        self._mark_lost("channel", exception)

    def _mark_lost(self, kind: str, exception: BaseException | None) -> None:
        if self._closing:
            self._logger.debug(f"Broker {kind} closed")
            return

        if self._state is ConnectionState.CONNECTED:
            self._state = ConnectionState.DISCONNECTED
        self._stats.unexpected_closes += 1

        if exception is not None:
            self._last_error = exception
            self._stats.last_error_at = datetime.now(UTC)
            self._logger.warning(
                f"Broker {kind} closed unexpectedly: {exception}",
                extra={"error": str(exception), "error_type": type(exception).__name__},
            )
        else:
            self._logger.info(f"Broker {kind} closed")


__all__ = [
    "BrokerConnectionManager",
    "ConnectionState",
    "ConnectionStats",
    "Connector",
    "HealthCheckResult",
]
