"""
Standard span attributes for eventrelay.

Messaging attributes follow OpenTelemetry semantic conventions; the
``eventrelay.*`` attributes describe envelopes and handlers.
"""

# =============================================================================
# Messaging Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (always 'rabbitmq')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination.name"
"""Exchange name for publish spans, queue name for consume spans."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""Messaging operation ('publish' or 'process')."""

ATTR_MESSAGING_MESSAGE_ID = "messaging.message.id"
"""Broker message id."""

ATTR_ROUTING_KEY = "messaging.rabbitmq.destination.routing_key"
"""Routing key of the published or delivered message."""

ATTR_DELIVERY_TAG = "messaging.rabbitmq.delivery_tag"
"""Delivery tag of a consumed message (integer)."""

# =============================================================================
# Envelope Attributes
# =============================================================================

ATTR_EVENT_TYPE = "eventrelay.event.type"
"""Envelope type constant (e.g. 'user.registered')."""

ATTR_CORRELATION_ID = "eventrelay.correlation_id"
"""Correlation ID threading the causal chain."""

ATTR_SCHEMA_VERSION = "eventrelay.schema_version"
"""Envelope schema version."""

# =============================================================================
# Topology Attributes
# =============================================================================

ATTR_TOPOLOGY_EXCHANGES = "eventrelay.topology.exchanges"
"""Number of exchanges in a provisioned topology (integer)."""

ATTR_TOPOLOGY_QUEUES = "eventrelay.topology.queues"
"""Number of queues in a provisioned topology (integer)."""

ATTR_TOPOLOGY_BINDINGS = "eventrelay.topology.bindings"
"""Number of bindings in a provisioned topology (integer)."""

# =============================================================================
# Consumer Attributes
# =============================================================================

ATTR_HANDLER_NAME = "eventrelay.handler.name"
"""Qualified name of the subscription handler."""

ATTR_HANDLER_OUTCOME = "eventrelay.handler.outcome"
"""How the delivery was resolved ('ack', 'requeue', 'reject', 'dead_letter')."""

ATTR_REDELIVERED = "eventrelay.delivery.redelivered"
"""True if the broker flagged the delivery as a redelivery."""

ATTR_DELIVERY_COUNT = "eventrelay.delivery.count"
"""Number of times this message has been delivered (integer)."""

ATTR_ERROR_TYPE = "eventrelay.error.type"
"""Exception class name of a failed operation."""

__all__ = [
    "ATTR_CORRELATION_ID",
    "ATTR_DELIVERY_COUNT",
    "ATTR_DELIVERY_TAG",
    "ATTR_ERROR_TYPE",
    "ATTR_EVENT_TYPE",
    "ATTR_HANDLER_NAME",
    "ATTR_HANDLER_OUTCOME",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_REDELIVERED",
    "ATTR_ROUTING_KEY",
    "ATTR_SCHEMA_VERSION",
    "ATTR_TOPOLOGY_BINDINGS",
    "ATTR_TOPOLOGY_EXCHANGES",
    "ATTR_TOPOLOGY_QUEUES",
]
