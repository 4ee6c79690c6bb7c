"""
Declarative broker topology and its idempotent provisioning.

A Topology value lists the exchanges, queues and bindings a group of
services relies on. TopologyProvisioner makes the broker match it by
declaring exchanges first, then queues, then bindings. Every declaration is
idempotent: re-declaring an object with identical parameters is a no-op on
the broker, so provisioning runs at startup and again after every reconnect.

Routing keys are dot-separated words. In binding patterns ``*`` matches
exactly one word and ``#`` matches zero or more words.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from aio_pika import ExchangeType
from aio_pika.exceptions import (
    AMQPError,
    ChannelInvalidStateError,
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
)

from eventrelay.exceptions import BrokerConnectionError, TopologyError
from eventrelay.observability import (
    ATTR_MESSAGING_SYSTEM,
    ATTR_TOPOLOGY_BINDINGS,
    ATTR_TOPOLOGY_EXCHANGES,
    ATTR_TOPOLOGY_QUEUES,
    Tracer,
    create_tracer,
)

if TYPE_CHECKING:
    from eventrelay.broker.connection import BrokerConnectionManager

logger = logging.getLogger(__name__)

EXCHANGE_TYPES = {
    "topic": ExchangeType.TOPIC,
    "direct": ExchangeType.DIRECT,
    "fanout": ExchangeType.FANOUT,
    "headers": ExchangeType.HEADERS,
}

DLQ_SUFFIX = ".dlq"

_DECLARATION_ERRORS = (AMQPError, ChannelInvalidStateError, OSError, TimeoutError)


def routing_key_matches(pattern: str, routing_key: str) -> bool:
    """
    Check whether a topic binding pattern matches a routing key.

    Example:
        >>> routing_key_matches("email.*", "email.sent")
        True
        >>> routing_key_matches("email.*", "email.sent.retry")
        False
        >>> routing_key_matches("user.#", "user")
        True
    """
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: Sequence[str], words: Sequence[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        # zero or more words
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


def validate_binding_pattern(pattern: str) -> str:
    """
    Return the pattern unchanged or raise ValueError if it is malformed.

    The empty pattern is allowed (fanout and headers exchanges ignore it).
    """
    if pattern == "":
        return pattern
    for word in pattern.split("."):
        if not word:
            raise ValueError(f"Binding pattern {pattern!r} contains an empty segment")
        if ("*" in word or "#" in word) and word not in ("*", "#"):
            raise ValueError(
                f"Binding pattern {pattern!r}: wildcards must be whole segments, got {word!r}"
            )
    return pattern


@dataclass(frozen=True)
class ExchangeSpec:
    """A durable exchange. Topic by default."""

    name: str
    type: str = "topic"
    durable: bool = True
    auto_delete: bool = False
    arguments: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", str(self.name))
        if self.type not in EXCHANGE_TYPES:
            raise ValueError(f"Unknown exchange type {self.type!r} for {self.name!r}")


@dataclass(frozen=True)
class QueueSpec:
    """
    A durable queue. Queues are never auto-deleted.

    With dead_letter=True the queue is declared with dead-letter arguments
    pointing at the topology's dead-letter exchange, and a companion
    ``<name>.dlq`` queue receives everything rejected without requeue.
    """

    name: str
    durable: bool = True
    arguments: Mapping[str, Any] | None = None
    dead_letter: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", str(self.name))

    @property
    def dlq_name(self) -> str:
        return f"{self.name}{DLQ_SUFFIX}"


@dataclass(frozen=True)
class BindingSpec:
    """Routes messages from an exchange to a queue by routing-key pattern."""

    queue: str
    exchange: str
    pattern: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "queue", str(self.queue))
        object.__setattr__(self, "exchange", str(self.exchange))
        object.__setattr__(self, "pattern", validate_binding_pattern(str(self.pattern)))


@dataclass(frozen=True)
class Topology:
    """
    The declarative shape of the broker a set of services depends on.

    Example:
        >>> topology = Topology(
        ...     exchanges=(ExchangeSpec("email.events.exchange"),),
        ...     queues=(QueueSpec("email.responses"),),
        ...     bindings=(BindingSpec("email.responses", "email.events.exchange", "email.*"),),
        ... )
        >>> topology.routes("email.events.exchange", "email.sent")
        ['email.responses']
    """

    exchanges: tuple[ExchangeSpec, ...] = ()
    queues: tuple[QueueSpec, ...] = ()
    bindings: tuple[BindingSpec, ...] = ()
    dead_letter_exchange: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "exchanges", tuple(self.exchanges))
        object.__setattr__(self, "queues", tuple(self.queues))
        object.__setattr__(self, "bindings", tuple(self.bindings))
        if self.dead_letter_exchange is None and any(q.dead_letter for q in self.queues):
            raise ValueError("Queues with dead_letter=True require a dead_letter_exchange")

    def queue(self, name: str) -> QueueSpec | None:
        return next((q for q in self.queues if q.name == name), None)

    def routes(self, exchange: str, routing_key: str) -> list[str]:
        """Queues that receive one copy of a message published with routing_key."""
        spec = next((e for e in self.exchanges if e.name == exchange), None)
        exchange_type = spec.type if spec else "topic"
        matched: list[str] = []
        for binding in self.bindings:
            if binding.exchange != exchange or binding.queue in matched:
                continue
            if exchange_type == "fanout":
                matched.append(binding.queue)
            elif exchange_type == "direct" and binding.pattern == routing_key:
                matched.append(binding.queue)
            elif exchange_type == "topic" and routing_key_matches(binding.pattern, routing_key):
                matched.append(binding.queue)
        return matched


@dataclass
class ProvisionResult:
    """Names of the objects declared by one provisioning run."""

    exchanges: list[str] = field(default_factory=list)
    queues: list[str] = field(default_factory=list)
    bindings: list[tuple[str, str, str]] = field(default_factory=list)


class TopologyProvisioner:
    """
    Declares exchanges, queues and bindings on the manager's channel.

    The provisioner borrows the channel from the connection manager; it
    never opens or closes connections itself.

    Args:
        manager: Connection manager lending the channel
    """

    def __init__(
        self,
        manager: BrokerConnectionManager,
        *,
        tracer: Tracer | None = None,
    ) -> None:
        self._manager = manager
        self._tracer = tracer or create_tracer(__name__, manager.config.enable_tracing)
        self._logger = logging.getLogger(__name__)

    async def ensure_topology(
        self,
        exchanges: Iterable[ExchangeSpec],
        queues: Iterable[QueueSpec],
        bindings: Iterable[BindingSpec],
        *,
        dead_letter_exchange: str | None = None,
    ) -> ProvisionResult:
        """
        Declare every exchange, then every queue, then every binding.

        Raises:
            TopologyError: If a declaration conflicts with an existing,
                differently configured object or references a missing one
            BrokerConnectionError: If the connection or channel is lost
                while declaring
            NotConnectedError: If the manager holds no open channel
        """
        return await self.ensure(
            Topology(
                exchanges=tuple(exchanges),
                queues=tuple(queues),
                bindings=tuple(bindings),
                dead_letter_exchange=dead_letter_exchange,
            )
        )

    async def ensure(self, topology: Topology) -> ProvisionResult:
        """Declare a Topology value. See ensure_topology()."""
        result = ProvisionResult()

        with self._tracer.span(
            "eventrelay.provision",
            {
                ATTR_MESSAGING_SYSTEM: "rabbitmq",
                ATTR_TOPOLOGY_EXCHANGES: len(topology.exchanges),
                ATTR_TOPOLOGY_QUEUES: len(topology.queues),
                ATTR_TOPOLOGY_BINDINGS: len(topology.bindings),
            },
        ):
            if topology.dead_letter_exchange and any(q.dead_letter for q in topology.queues):
                await self._declare_exchange(
                    ExchangeSpec(topology.dead_letter_exchange, type="direct"), result
                )

            for exchange in topology.exchanges:
                await self._declare_exchange(exchange, result)

            for queue in topology.queues:
                if queue.dead_letter and topology.dead_letter_exchange:
                    await self._declare_dead_letter_queue(
                        queue, topology.dead_letter_exchange, result
                    )
                await self._declare_queue(queue, topology.dead_letter_exchange, result)

            for binding in topology.bindings:
                await self._bind(binding.queue, binding.exchange, binding.pattern, result)

        self._logger.info(
            "Topology ensured",
            extra={
                "exchanges": len(result.exchanges),
                "queues": len(result.queues),
                "bindings": len(result.bindings),
            },
        )
        return result

    async def _declare_exchange(self, spec: ExchangeSpec, result: ProvisionResult) -> None:
        channel = self._manager.channel
        try:
            await channel.declare_exchange(
                name=spec.name,
                type=EXCHANGE_TYPES[spec.type],
                durable=spec.durable,
                auto_delete=spec.auto_delete,
                arguments=dict(spec.arguments) if spec.arguments else None,
            )
        except _DECLARATION_ERRORS as e:
            raise self._translate(spec.name, "exchange", e) from e

        result.exchanges.append(spec.name)
        self._logger.debug(
            f"Declared exchange: {spec.name}",
            extra={"exchange_name": spec.name, "exchange_type": spec.type, "durable": spec.durable},
        )

    async def _declare_queue(
        self,
        spec: QueueSpec,
        dead_letter_exchange: str | None,
        result: ProvisionResult,
    ) -> None:
        channel = self._manager.channel
        arguments: dict[str, Any] = dict(spec.arguments or {})
        if spec.dead_letter and dead_letter_exchange:
            arguments["x-dead-letter-exchange"] = dead_letter_exchange
            arguments["x-dead-letter-routing-key"] = spec.name

        try:
            await channel.declare_queue(
                name=spec.name,
                durable=spec.durable,
                auto_delete=False,
                arguments=arguments or None,
            )
        except _DECLARATION_ERRORS as e:
            raise self._translate(spec.name, "queue", e) from e

        result.queues.append(spec.name)
        self._logger.debug(
            f"Declared queue: {spec.name}",
            extra={"queue_name": spec.name, "durable": spec.durable, "dead_letter": spec.dead_letter},
        )

    async def _declare_dead_letter_queue(
        self,
        spec: QueueSpec,
        dead_letter_exchange: str,
        result: ProvisionResult,
    ) -> None:
        await self._declare_queue(QueueSpec(spec.dlq_name, durable=spec.durable), None, result)
        await self._bind(spec.dlq_name, dead_letter_exchange, spec.name, result)

    async def _bind(
        self,
        queue_name: str,
        exchange_name: str,
        pattern: str,
        result: ProvisionResult,
    ) -> None:
        channel = self._manager.channel
        try:
            queue = await channel.get_queue(queue_name, ensure=False)
            await queue.bind(exchange_name, routing_key=pattern)
        except _DECLARATION_ERRORS as e:
            raise self._translate(f"{exchange_name} -> {queue_name}", "binding", e) from e

        result.bindings.append((exchange_name, queue_name, pattern))
        self._logger.debug(
            f"Bound queue {queue_name} to exchange {exchange_name} with routing key '{pattern}'",
            extra={"queue_name": queue_name, "exchange_name": exchange_name, "routing_key": pattern},
        )

    def _translate(
        self, name: str, kind: str, error: BaseException
    ) -> TopologyError | BrokerConnectionError:
        """
        Map a declaration failure to a conflict or a lost connection.

        Only precondition and not-found errors describe the topology itself.
        Anything else means the broker went away mid-declaration, which
        reconnect() retries.
        """
        if isinstance(error, ChannelPreconditionFailed):
            message = f"{kind} exists with different configuration ({error})"
        elif isinstance(error, ChannelNotFoundEntity):
            message = f"{kind} references an object that does not exist ({error})"
        else:
            self._logger.warning(
                f"Connection lost while declaring {kind} {name}: {error}",
                extra={
                    "object_name": name,
                    "kind": kind,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
            )
            reason = str(error) or type(error).__name__
            return BrokerConnectionError(
                self._manager.config.sanitized_url,
                f"connection lost while declaring {kind} {name!r} ({reason})",
            )

        self._logger.error(
            f"Topology declaration failed for {kind} {name}: {error}",
            extra={"object_name": name, "kind": kind, "error": str(error)},
        )
        return TopologyError(name, message)


__all__ = [
    "BindingSpec",
    "DLQ_SUFFIX",
    "EXCHANGE_TYPES",
    "ExchangeSpec",
    "ProvisionResult",
    "QueueSpec",
    "Topology",
    "TopologyProvisioner",
    "routing_key_matches",
    "validate_binding_pattern",
]
