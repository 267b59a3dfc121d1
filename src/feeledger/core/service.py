"""
Fee ledger service

Owns every piece of mutable state for one deployment: the guarded upstream,
the asset registry, the history ledger and the attribution engine. A daemon
thread runs one attribution cycle per poll interval; cycles never overlap.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from feeledger.core.attribution import AttributionEngine, CycleReport
from feeledger.core.config import AssetConfig, FeeLedgerConfig, IntegrityPolicy, load_config
from feeledger.core.entity_store import AssetRegistry, AssetStats, TrackedAsset
from feeledger.core.exceptions import LedgerWriteError, StateFileError
from feeledger.core.history import ChainValidationResult, HistoryLedger, HistoryMetadata, LogStore
from feeledger.core.logging_config import setup_logging
from feeledger.core.metrics import FeeLedgerMetrics
from feeledger.core.models import AllocationEvent, now_ms
from feeledger.core.tracker_state import (
    TrackerState,
    backup_tracker_state,
    load_tracker_state,
    save_tracker_state,
)
from feeledger.core.upstream import GuardedUpstream, VaultDataSource
from feeledger.resilience.cache import LRUCache
from feeledger.resilience.circuit_breaker import CircuitBreaker
from feeledger.resilience.rate_limiter import TokenBucketRateLimiter
from feeledger.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)

LOOP_ERRORS = (OSError, IOError, ValueError, TypeError, RuntimeError, KeyError, AttributeError)


def _tracked_asset(asset: AssetConfig | TrackedAsset | dict[str, Any]) -> TrackedAsset:
    if isinstance(asset, TrackedAsset):
        return asset
    if isinstance(asset, dict):
        asset = AssetConfig.model_validate(asset)
    return TrackedAsset(
        asset_id=asset.asset_id,
        label=asset.label,
        origin_pool=asset.origin_pool,
        destination_pool=asset.destination_pool or "",
        migrated=asset.migrated,
    )


class FeeLedgerService:
    """
    Polls both fee vaults, attributes fees and records them in the history log.

    Args:
        config: Validated configuration
        source: External ledger collaborator
        metrics: Prometheus metrics (a private registry is created when omitted)
        on_allocation_accepted: Called after each allocation is recorded
        on_asset_discovered: Called when discovery registers a new asset
        on_chain_validated: Called with the chain verification result at startup
        log_store: History persistence backend (local file by default)
        clock: Millisecond wall clock
        sleep: Sleep used by retry backoff and rate limiting
    """

    def __init__(
        self,
        config: FeeLedgerConfig,
        source: VaultDataSource,
        metrics: FeeLedgerMetrics | None = None,
        on_allocation_accepted: Callable[[AllocationEvent], None] | None = None,
        on_asset_discovered: Callable[[TrackedAsset], None] | None = None,
        on_chain_validated: Callable[[ChainValidationResult], None] | None = None,
        log_store: LogStore | None = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config
        self.metrics = metrics or FeeLedgerMetrics()
        self.on_chain_validated = on_chain_validated

        self.circuit_breaker = CircuitBreaker(
            name="upstream",
            failure_threshold=config.circuit_breaker.failure_threshold,
            reset_timeout_seconds=config.circuit_breaker.reset_timeout_seconds,
            half_open_success_threshold=config.circuit_breaker.half_open_success_threshold,
        )
        sleep = sleep or time.sleep
        self.upstream = GuardedUpstream(
            source,
            circuit_breaker=self.circuit_breaker,
            retry_policy=RetryPolicy(**config.retry.model_dump()),
            rate_limiter=TokenBucketRateLimiter(
                capacity=config.rate_limit.capacity,
                refill_rate=config.rate_limit.refill_rate,
                sleep=sleep,
            ),
            cache=LRUCache(max_size=config.cache.max_size, ttl_seconds=config.cache.ttl_seconds),
            read_timeout=config.read_timeout or None,
            sleep=sleep,
        )

        self.registry = AssetRegistry(_tracked_asset(asset) for asset in config.assets)
        self.ledger: HistoryLedger | None = None
        if config.history_file:
            self.ledger = HistoryLedger(
                config.history_file,
                creator=config.creator_address,
                origin_vault=config.origin_vault,
                destination_vault=config.destination_vault,
                store=log_store,
            )

        self.engine = AttributionEngine(
            self.upstream,
            self.registry,
            creator=config.creator_address,
            origin_vault=config.origin_vault,
            destination_vault=config.destination_vault,
            ledger=self.ledger,
            excluded_assets=config.excluded_assets,
            metrics=self.metrics,
            on_allocation_accepted=on_allocation_accepted,
            on_asset_discovered=on_asset_discovered,
            label_retry_cycles=config.label_retry_cycles,
            clock=clock,
        )

        self._clock = clock
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._prepared = False
        self._halted = False
        self._metrics_served = False
        self._last_report: CycleReport | None = None
        self._stats_lock = threading.Lock()
        self._stats: dict[str, Any] = {
            "cycles": 0,
            "skipped": 0,
            "degraded": 0,
            "failed": 0,
            "last_cycle_at": None,
            "last_outcome": None,
        }

    # ---------- lifecycle ----------

    def _prepare(self) -> bool:
        """Open the ledger, verify it and restore tracker state. Runs once per start."""
        if self._prepared:
            return not self._halted

        if self.ledger is not None:
            try:
                validation = self.ledger.init()
            except OSError as exc:
                raise LedgerWriteError(
                    f"Cannot open history log {self.ledger.file_path}: {exc}",
                    {"path": self.ledger.file_path},
                ) from exc
            metadata = self.ledger.get_metadata()
            self.metrics.chain_valid.set(1 if validation.valid else 0)
            self.metrics.ledger_entries.set(metadata.entry_count)
            if self.on_chain_validated is not None:
                self.on_chain_validated(validation)
            if not validation.valid and self.config.integrity_policy == IntegrityPolicy.HALT:
                logger.error(
                    "Refusing to poll: history chain invalid (%s)",
                    validation.error,
                    extra={"event": "service.integrity_halt", "sequence": validation.corrupted_at_sequence},
                )
                self._halted = True

        state = self._restore_state()
        if self.ledger is not None and not self._halted:
            self._catch_up_with_ledger(state is not None and state.ledger_sequence is None)
        if self.config.discover_on_start and not self._halted:
            self.engine.discover_creator_assets()
        self.metrics.tracked_assets.set(len(self.registry))
        self._prepared = True
        return not self._halted

    def _catch_up_with_ledger(self, assume_in_sync: bool) -> None:
        """Apply history entries that were appended after the tracker state was last saved."""
        metadata = self.ledger.get_metadata()
        if assume_in_sync:
            self.engine.ledger_sequence = metadata.entry_count
            return
        if metadata.entry_count <= self.engine.ledger_sequence:
            return
        if not self.ledger.is_chain_valid():
            logger.warning(
                "Not replaying %d history entries from an unverified chain",
                metadata.entry_count - self.engine.ledger_sequence,
                extra={"event": "service.replay_skipped", "sequence": self.engine.ledger_sequence},
            )
            return
        self.engine.replay_ledger_entries(self.ledger.read_entries())

    def _restore_state(self) -> TrackerState | None:
        path = self.config.state_file
        if not path:
            return None
        try:
            backup_tracker_state(path)
            state = load_tracker_state(path)
        except StateFileError as exc:
            logger.warning(
                "Starting without tracker state: %s",
                exc,
                extra={"event": "service.state_unavailable", "path": path},
            )
            return None
        if state is None:
            return None
        self.engine.restore_state(state.to_engine_state())
        logger.info(
            "Tracker state restored",
            extra={"event": "service.state_restored", "path": path, "assets": len(state.assets)},
        )
        return state

    def _persist_state(self) -> None:
        path = self.config.state_file
        if not path:
            return
        try:
            save_tracker_state(path, TrackerState.from_engine_state(self.engine.export_state()))
        except StateFileError as exc:
            logger.warning(
                "Tracker state not saved: %s",
                exc,
                extra={"event": "service.state_save_failed", "path": path},
            )

    def start(self) -> bool:
        """
        Start polling in a background thread.

        Returns:
            False when the integrity policy forbids polling, True otherwise
        """
        if self._thread and self._thread.is_alive():
            return True

        if self.config.enable_health_check:
            status = self.upstream.check_health(self.config.health_check_timeout)
            if not status.healthy:
                logger.warning(
                    "Upstream health check failed: %s",
                    status.error,
                    extra={"event": "service.health_check_failed", "latency": status.latency},
                )

        if not self._prepare():
            return False

        if self.config.metrics_port and not self._metrics_served:
            self.metrics.serve(self.config.metrics_port)
            self._metrics_served = True

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="feeledger-poller", daemon=True)
        self._thread.start()
        logger.info(
            "Fee ledger started",
            extra={
                "event": "service.started",
                "interval": self.config.poll_interval_seconds,
                "assets": len(self.registry),
            },
        )
        return True

    def stop(self) -> None:
        """Stop polling once the in-flight cycle finishes, then persist state and close the ledger."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        with self._cycle_lock:
            if self._prepared:
                self._persist_state()
            if self.ledger is not None:
                self.ledger.close()
            self._prepared = False
            self._halted = False
        logger.info("Fee ledger stopped", extra={"event": "service.stopped"})

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def run_once(self) -> CycleReport:
        """Run exactly one attribution cycle (useful for tests)."""
        with self._cycle_lock:
            if not self._prepare():
                return CycleReport(started_at=self._clock()).skip("integrity_halt")
            return self._run_cycle()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            start = time.time()
            try:
                with self._cycle_lock:
                    self._run_cycle()
            except LOOP_ERRORS as exc:
                logger.error(
                    "Poll iteration failed: %s",
                    exc,
                    extra={"event": "service.iteration_failed"},
                )
            elapsed = time.time() - start
            sleep_for = max(0.0, self.config.poll_interval_seconds - elapsed)
            if self._stop_event.wait(sleep_for):
                break

    def _run_cycle(self) -> CycleReport:
        started = time.time()
        try:
            report = self.engine.run_cycle()
        except LedgerWriteError as exc:
            logger.error(
                "History append failed, cycle aborted: %s",
                exc,
                extra={"event": "service.ledger_write_failed", **exc.details},
            )
            report = CycleReport(started_at=self._clock()).skip("ledger_write_failed")
            outcome = "failed"
        else:
            outcome = report.outcome

        self.metrics.record_cycle(outcome, time.time() - started)
        self.metrics.set_circuit_state(self.circuit_breaker.state)
        with self._stats_lock:
            self._stats["cycles"] += 1
            if outcome in ("skipped", "degraded", "failed"):
                self._stats[outcome] += 1
            self._stats["last_cycle_at"] = report.started_at
            self._stats["last_outcome"] = outcome
            self._last_report = report

        self._persist_state()
        return report

    # ---------- queries ----------

    def register_asset(self, asset: AssetConfig | TrackedAsset | dict[str, Any]) -> bool:
        """Start tracking an asset; returns False if it is already tracked."""
        registered = self.registry.register(_tracked_asset(asset))
        self.metrics.tracked_assets.set(len(self.registry))
        return registered

    def get_asset_stats(self) -> list[AssetStats]:
        return self.registry.stats()

    def get_chain_validation(self) -> ChainValidationResult:
        if self.ledger is None:
            return ChainValidationResult(valid=True, entries_checked=0)
        return self.ledger.get_chain_validation()

    def get_total_fees(self) -> int:
        return self.engine.total_fees()

    def get_orphan_fees(self) -> int:
        return self.engine.orphan_fees

    def get_history_metadata(self) -> HistoryMetadata | None:
        return self.ledger.get_metadata() if self.ledger is not None else None

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            return dict(self._stats)

    def get_status(self) -> dict[str, Any]:
        validation = self.get_chain_validation()
        metadata = self.get_history_metadata()
        with self._stats_lock:
            last_report = self._last_report.to_dict() if self._last_report else None
        return {
            "running": self.is_running(),
            "halted": self._halted,
            "integrity_policy": self.config.integrity_policy.value,
            "chain": validation.to_dict(),
            "history": metadata.to_dict() if metadata else None,
            "circuit_breaker": self.upstream.circuit_snapshot(),
            "tracked_assets": len(self.registry),
            "total_fees": self.get_total_fees(),
            "orphan_fees": self.engine.orphan_fees,
            "unattributed_fees": self.engine.unattributed_fees,
            "stats": self.get_stats(),
            "last_cycle": last_report,
        }


def build_service(
    source: VaultDataSource,
    config: FeeLedgerConfig | None = None,
    config_path: str | None = None,
    configure_logging: bool = False,
    **kwargs: Any,
) -> FeeLedgerService:
    """
    Create a service, loading configuration from file and environment when none is given.

    With ``configure_logging`` the package logger is given the JSON handlers
    described by ``log_level`` / ``log_file``; embedding applications that
    manage logging themselves leave it off.
    """
    if config is None:
        config = load_config(config_path)
    if configure_logging:
        setup_logging(level=config.log_level, log_file=config.log_file)
    return FeeLedgerService(config, source, **kwargs)
