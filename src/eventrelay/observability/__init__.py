"""
Observability utilities for eventrelay.

Provides the composition-based Tracer used by the publisher and consumer,
standard span attribute names, and helpers that carry W3C trace context
through AMQP message headers.

Example:
    >>> from eventrelay.observability import create_tracer
    >>> tracer = create_tracer(__name__, enable_tracing=True)
"""

from eventrelay.observability.attributes import (
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
    ATTR_SCHEMA_VERSION,
    ATTR_TOPOLOGY_BINDINGS,
    ATTR_TOPOLOGY_EXCHANGES,
    ATTR_TOPOLOGY_QUEUES,
)
from eventrelay.observability.propagation import extract_context, inject_context
from eventrelay.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanKindEnum",
    "Tracer",
    "create_tracer",
    # Propagation
    "extract_context",
    "inject_context",
    # Attributes
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
