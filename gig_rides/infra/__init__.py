from gig_rides.infra.relay_client import (
    RelayClient,
    RelayError,
    RelayEvent,
    RelayFilter,
    build_tags,
)
from gig_rides.infra.memory_relay import InMemoryRelay, InMemoryRelayClient, compute_event_id

__all__ = [
    "RelayClient",
    "RelayError",
    "RelayEvent",
    "RelayFilter",
    "build_tags",
    "InMemoryRelay",
    "InMemoryRelayClient",
    "compute_event_id",
]
