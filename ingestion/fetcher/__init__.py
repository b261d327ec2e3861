"""
Rate-limited downloading of external resources.

Modules:
    policy: RetryPolicy and CircuitBreaker, shared by every external call
    slots: FIFO slot pool and download tickets
    http: Endpoints and response classification
    fetcher: RateLimitedFetcher tying the above together
"""

from ingestion.fetcher.policy import RetryPolicy, CircuitBreaker, CircuitState
from ingestion.fetcher.slots import SlotPool, DownloadTicket, TicketState
from ingestion.fetcher.http import OverpassEndpoint, PlanetEndpoint, build_client
from ingestion.fetcher.fetcher import RateLimitedFetcher, FetchOutcome, FetchReport

__all__ = [
    "RetryPolicy",
    "CircuitBreaker",
    "CircuitState",
    "SlotPool",
    "DownloadTicket",
    "TicketState",
    "OverpassEndpoint",
    "PlanetEndpoint",
    "build_client",
    "RateLimitedFetcher",
    "FetchOutcome",
    "FetchReport",
]
