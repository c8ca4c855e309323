"""Broker adapters (in-memory, Redis)."""

# Re-export convenience types for app assembly
from .inmemory import InMemoryBroker
from .redis import RedisBrokerConnector, RedisBrokerHub

__all__ = [
    "InMemoryBroker",
    "RedisBrokerHub",
    "RedisBrokerConnector",
]
