"""
RabbitMQ client: connection lifecycle, topology, publishing and consuming.

All components share one BrokerConnectionManager, passed in through their
constructors:

    >>> manager = BrokerConnectionManager(BrokerConfig.from_env(), topology=default_topology())
    >>> await manager.reconnect()
    >>> publisher = Publisher(manager)
    >>> consumer = Consumer(manager)
"""

from eventrelay.broker.config import BrokerConfig, BrokerSettings, sanitize_url
from eventrelay.broker.connection import (
    BrokerConnectionManager,
    ConnectionState,
    ConnectionStats,
    HealthCheckResult,
)
from eventrelay.broker.consumer import (
    Consumer,
    ConsumerStats,
    DeliveryHandle,
    Handler,
    HandlerOutcome,
    RedeliveryTracker,
    SubscribeOptions,
    Subscription,
)
from eventrelay.broker.publisher import PublishOptions, Publisher, PublisherStats
from eventrelay.broker.retry import BACKOFF_CONSTANT, BACKOFF_EXPONENTIAL, RetryPolicy
from eventrelay.broker.topology import (
    BindingSpec,
    ExchangeSpec,
    ProvisionResult,
    QueueSpec,
    Topology,
    TopologyProvisioner,
    routing_key_matches,
    validate_binding_pattern,
)

__all__ = [
    # Config
    "BrokerConfig",
    "BrokerSettings",
    "RetryPolicy",
    "BACKOFF_CONSTANT",
    "BACKOFF_EXPONENTIAL",
    "sanitize_url",
    # Connection
    "BrokerConnectionManager",
    "ConnectionState",
    "ConnectionStats",
    "HealthCheckResult",
    # Topology
    "BindingSpec",
    "ExchangeSpec",
    "ProvisionResult",
    "QueueSpec",
    "Topology",
    "TopologyProvisioner",
    "routing_key_matches",
    "validate_binding_pattern",
    # Publisher
    "PublishOptions",
    "Publisher",
    "PublisherStats",
    # Consumer
    "Consumer",
    "ConsumerStats",
    "DeliveryHandle",
    "Handler",
    "HandlerOutcome",
    "RedeliveryTracker",
    "SubscribeOptions",
    "Subscription",
]
