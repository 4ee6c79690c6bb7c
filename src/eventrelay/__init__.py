"""
eventrelay - Reliable RabbitMQ messaging with correlation-tracked event envelopes.

This library provides:
- BrokerConnectionManager: one shared connection/channel with bounded reconnect
- TopologyProvisioner: idempotent exchange, queue and binding declaration
- Publisher / Consumer: persistent publishing and manually acknowledged
  consumption with bounded redelivery and dead-lettering
- EventEnvelope: the JSON wire schema, with correlation IDs threading a
  causal chain across services
- EventService: startup, supervision and graceful shutdown of a process
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("eventrelay")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from eventrelay.broker import (
    BindingSpec,
    BrokerConfig,
    BrokerConnectionManager,
    ConnectionState,
    ConnectionStats,
    Consumer,
    ConsumerStats,
    DeliveryHandle,
    ExchangeSpec,
    HandlerOutcome,
    HealthCheckResult,
    PublishOptions,
    Publisher,
    PublisherStats,
    QueueSpec,
    RetryPolicy,
    SubscribeOptions,
    Subscription,
    Topology,
    TopologyProvisioner,
    routing_key_matches,
)
from eventrelay.events import (
    SCHEMA_VERSION,
    CorrelationIdFilter,
    CorrelationTracker,
    EventEnvelope,
    correlation_scope,
    current_correlation_id,
    log_event,
    new_correlation_id,
)
from eventrelay.events.catalog import (
    EventTypes,
    Exchanges,
    Queues,
    RoutingKeys,
    default_topology,
)
from eventrelay.exceptions import (
    BrokerConnectionError,
    DeliveryAlreadyResolvedError,
    EventRelayError,
    MalformedMessageError,
    NotConnectedError,
    PublishRejectedError,
    ReconnectExhaustedError,
    SchemaValidationError,
    TopologyError,
)
from eventrelay.service import EventService

__all__ = [
    "__version__",
    # Broker
    "BindingSpec",
    "BrokerConfig",
    "BrokerConnectionManager",
    "ConnectionState",
    "ConnectionStats",
    "Consumer",
    "ConsumerStats",
    "DeliveryHandle",
    "ExchangeSpec",
    "HandlerOutcome",
    "HealthCheckResult",
    "PublishOptions",
    "Publisher",
    "PublisherStats",
    "QueueSpec",
    "RetryPolicy",
    "SubscribeOptions",
    "Subscription",
    "Topology",
    "TopologyProvisioner",
    "routing_key_matches",
    # Events
    "SCHEMA_VERSION",
    "CorrelationIdFilter",
    "CorrelationTracker",
    "EventEnvelope",
    "correlation_scope",
    "current_correlation_id",
    "log_event",
    "new_correlation_id",
    # Catalog
    "EventTypes",
    "Exchanges",
    "Queues",
    "RoutingKeys",
    "default_topology",
    # Exceptions
    "BrokerConnectionError",
    "DeliveryAlreadyResolvedError",
    "EventRelayError",
    "MalformedMessageError",
    "NotConnectedError",
    "PublishRejectedError",
    "ReconnectExhaustedError",
    "SchemaValidationError",
    "TopologyError",
    # Service
    "EventService",
]
