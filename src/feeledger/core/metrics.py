"""
Prometheus instrumentation for the fee ledger.

Each service instance owns its metrics; pass a registry to share one, or let
the class create a private CollectorRegistry.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from feeledger.resilience.circuit_breaker import CircuitBreakerState

_CIRCUIT_STATE_VALUES = {
    CircuitBreakerState.CLOSED: 0,
    CircuitBreakerState.HALF_OPEN: 1,
    CircuitBreakerState.OPEN: 2,
}


class FeeLedgerMetrics:
    """Counters and gauges for poll cycles, allocations and ledger growth."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self.cycles = Counter(
            "feeledger_poll_cycles_total",
            "Poll cycles by outcome",
            ["outcome"],
            registry=self.registry,
        )

        self.cycle_duration = Histogram(
            "feeledger_poll_cycle_seconds",
            "Poll cycle duration in seconds",
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
            registry=self.registry,
        )

        self.allocations = Counter(
            "feeledger_allocations_total",
            "Accepted allocation events",
            ["vault", "mode"],
            registry=self.registry,
        )

        self.attributed_amount = Counter(
            "feeledger_attributed_base_units_total",
            "Fee base units attributed to tracked assets",
            ["vault"],
            registry=self.registry,
        )

        self.ledger_entries = Gauge(
            "feeledger_history_entries",
            "Entries in the Proof-of-History log",
            registry=self.registry,
        )

        self.chain_valid = Gauge(
            "feeledger_history_chain_valid",
            "1 when the last chain verification succeeded",
            registry=self.registry,
        )

        self.tracked_assets = Gauge(
            "feeledger_tracked_assets",
            "Assets currently tracked",
            registry=self.registry,
        )

        self.circuit_state = Gauge(
            "feeledger_circuit_breaker_state",
            "Upstream circuit breaker state (0=closed, 1=half_open, 2=open)",
            registry=self.registry,
        )

        self.orphan_fees = Gauge(
            "feeledger_orphan_fees",
            "Fee base units observed in vault balances but not in transactions",
            registry=self.registry,
        )

    def record_cycle(self, outcome: str, duration: float) -> None:
        self.cycles.labels(outcome=outcome).inc()
        self.cycle_duration.observe(duration)

    def record_allocation(self, vault: str, mode: str, amount: int) -> None:
        self.allocations.labels(vault=vault, mode=mode).inc()
        if amount > 0:
            self.attributed_amount.labels(vault=vault).inc(amount)

    def set_circuit_state(self, state: CircuitBreakerState) -> None:
        self.circuit_state.set(_CIRCUIT_STATE_VALUES[state])

    def serve(self, port: int) -> None:
        """Expose the registry over HTTP for scraping."""
        start_http_server(port, registry=self.registry)
