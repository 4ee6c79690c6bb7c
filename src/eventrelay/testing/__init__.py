"""
Test utilities for eventrelay.

Components:
    InMemoryBroker: In-process broker with AMQP routing and acknowledgment semantics
    BrokerTestHarness: InMemoryBroker wired to a manager, publisher and consumer

Note:
    This module is intended for test code only. It should not be imported
    in production code paths.
"""

from eventrelay.testing.broker import (
    FakeChannel,
    FakeConnection,
    FakeIncomingMessage,
    InMemoryBroker,
    PublishedMessage,
    StoredMessage,
)
from eventrelay.testing.harness import BrokerTestHarness

__all__ = [
    "BrokerTestHarness",
    "FakeChannel",
    "FakeConnection",
    "FakeIncomingMessage",
    "InMemoryBroker",
    "PublishedMessage",
    "StoredMessage",
]
