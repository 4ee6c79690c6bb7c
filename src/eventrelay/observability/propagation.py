"""Carry W3C trace context through AMQP message headers."""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.propagate import extract, inject


def inject_context(
    headers: MutableMapping[str, Any],
    span: Any | None = None,
) -> MutableMapping[str, Any]:
    """
    Write trace context (traceparent, tracestate) into headers.

    Uses the given span when provided, otherwise the active context.
    """
    carrier: dict[str, str] = {}
    context = trace.set_span_in_context(span) if span is not None else None
    inject(carrier, context=context)
    headers.update(carrier)
    return headers


def extract_context(headers: Mapping[str, Any] | None) -> Context:
    """Read trace context from message headers; AMQP may deliver values as bytes."""
    carrier: dict[str, str] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, bytes):
            carrier[key] = value.decode("utf-8", errors="replace")
        elif isinstance(value, str):
            carrier[key] = value
    return extract(carrier)


__all__ = ["extract_context", "inject_context"]
