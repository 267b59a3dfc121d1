"""
feeledger - Fee attribution and Proof-of-History ledger

Observes two custodial fee vaults, attributes every balance increment to the
tracked assets that generated it, and records each accepted allocation in a
hash-chained, append-only log that can be verified independently.

Main Components:
- Resilience: retry, circuit breaker, health check, rate limiter, TTL cache
- Entity store: tracked assets and their running statistics
- Attribution: per-cycle vault polling and allocation decisions
- History: Proof-of-History ledger with replay and chain verification
"""

__version__ = "0.1.0"
__author__ = "feeledger developers"

__all__ = []
