"""Event envelope, correlation tracking and the workflow event catalog."""

from eventrelay.events.correlation import (
    CorrelationIdFilter,
    CorrelationTracker,
    correlation_scope,
    current_correlation_id,
    new_correlation_id,
)
from eventrelay.events.envelope import SCHEMA_VERSION, EventEnvelope, log_event

__all__ = [
    "CorrelationIdFilter",
    "CorrelationTracker",
    "EventEnvelope",
    "SCHEMA_VERSION",
    "correlation_scope",
    "current_correlation_id",
    "log_event",
    "new_correlation_id",
]
