"""
Fee attribution engine

Runs one poll cycle at a time:

1. Zero recent-activity accumulators whose 24h window elapsed
2. Sample both vault balances through the guarded upstream
3. Re-read pool reserves (activity signal, migration detection)
4. Walk new transactions per vault and attribute each inflow directly,
   through dynamic discovery, or to the vault's unattributed pool
5. Spread the unattributed pool over phase-matching assets
6. Append every accepted allocation to the history ledger

Per-item failures (one pool read, one discovery lookup) skip that item.
Cycle-level upstream failures end the cycle early; allocations already
accepted in that cycle stay accepted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

from feeledger.core.constants import (
    ACTIVITY_WINDOW_MS,
    LABEL_RETRY_CYCLES,
    MAX_PROCESSED_TRANSACTIONS,
    PROCESSED_TRANSACTION_TTL_SECONDS,
    UNATTRIBUTED_ASSET_ID,
    UNKNOWN_LABEL,
)
from feeledger.core.entity_store import AssetRegistry, TrackedAsset
from feeledger.core.exceptions import CircuitOpenError, LedgerWriteError, TransientUpstreamError
from feeledger.core.history import HistoryEntry, HistoryLedger
from feeledger.core.metrics import FeeLedgerMetrics
from feeledger.core.models import (
    AllocationEvent,
    AllocationMode,
    AssetPhase,
    EventType,
    TransactionEvidence,
    VaultKind,
    VaultObservation,
    now_ms,
)
from feeledger.core.upstream import GuardedUpstream
from feeledger.resilience.cache import LRUCache
from feeledger.resilience.retry import describe_error

logger = logging.getLogger(__name__)

# Failures an upstream read may surface once retries are exhausted
UPSTREAM_ERRORS = (
    TransientUpstreamError,
    ConnectionError,
    TimeoutError,
    OSError,
    ValueError,
    TypeError,
    KeyError,
    RuntimeError,
    AttributeError,
)

CALLBACK_ERRORS = (RuntimeError, ValueError, TypeError, KeyError, AttributeError, OSError)


# ==================== Distribution ====================


def split_equal(amount: int, recipients: Sequence[str]) -> list[tuple[str, int]]:
    """Split ``amount`` equally; the last recipient absorbs the remainder."""
    if not recipients:
        return []
    share = amount // len(recipients)
    shares = [(recipient, share) for recipient in recipients[:-1]]
    shares.append((recipients[-1], amount - share * (len(recipients) - 1)))
    return shares


def distribute_proportional(amount: int, weights: Sequence[tuple[str, int]]) -> list[tuple[str, int]]:
    """
    Split ``amount`` in proportion to integer ``weights`` with exact arithmetic.

    Each share is ``amount * weight // total``; the last recipient takes what
    is left so the shares always sum to ``amount``. Falls back to an equal
    split when the weights sum to zero.
    """
    if not weights:
        return []
    total = sum(max(0, weight) for _, weight in weights)
    if total <= 0:
        return split_equal(amount, [recipient for recipient, _ in weights])

    shares: list[tuple[str, int]] = []
    remaining = amount
    for index, (recipient, weight) in enumerate(weights):
        if index == len(weights) - 1:
            share = remaining
        else:
            share = amount * max(0, weight) // total
            remaining -= share
        shares.append((recipient, share))
    return shares


# ==================== Cycle bookkeeping ====================


@dataclass(frozen=True)
class VaultTarget:
    kind: VaultKind
    address: str


@dataclass
class VaultEvidence:
    """What one cycle learned from a vault's transactions."""

    last_position: int
    attributed: list[AllocationEvent] = field(default_factory=list)
    withdrawals: list[AllocationEvent] = field(default_factory=list)
    unattributed: int = 0
    pooled_tx_ids: list[str] = field(default_factory=list)
    net_through_sample: int = 0
    net_after_sample: int = 0
    transactions_seen: int = 0


@dataclass
class CycleReport:
    started_at: int
    skipped: bool = False
    skip_reason: str | None = None
    observations: dict[VaultKind, VaultObservation] = field(default_factory=dict)
    allocations: list[AllocationEvent] = field(default_factory=list)
    entries: list[HistoryEntry] = field(default_factory=list)
    reserve_activity: dict[str, int] = field(default_factory=dict)
    migrated: list[str] = field(default_factory=list)
    discovered: list[str] = field(default_factory=list)
    errors: int = 0

    @property
    def outcome(self) -> str:
        if self.skipped:
            return "skipped"
        return "degraded" if self.errors else "ok"

    def skip(self, reason: str) -> "CycleReport":
        self.skipped = True
        self.skip_reason = reason
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "outcome": self.outcome,
            "skip_reason": self.skip_reason,
            "balances": {kind.value: obs.balance for kind, obs in self.observations.items()},
            "allocations": [event.to_dict() for event in self.allocations],
            "entries": len(self.entries),
            "reserve_activity": dict(self.reserve_activity),
            "migrated": list(self.migrated),
            "discovered": list(self.discovered),
            "errors": self.errors,
        }


# ==================== Engine ====================


class AttributionEngine:
    """
    Turns raw vault balance deltas plus transaction evidence into per-asset
    allocations.

    The engine exclusively owns the tracked-asset state it mutates and the
    per-vault cursors (last processed position, last sampled balance).
    """

    def __init__(
        self,
        upstream: GuardedUpstream,
        registry: AssetRegistry,
        creator: str,
        origin_vault: str,
        destination_vault: str,
        ledger: HistoryLedger | None = None,
        excluded_assets: Iterable[str] = (),
        metrics: FeeLedgerMetrics | None = None,
        on_allocation_accepted: Callable[[AllocationEvent], None] | None = None,
        on_asset_discovered: Callable[[TrackedAsset], None] | None = None,
        activity_window_ms: int = ACTIVITY_WINDOW_MS,
        label_retry_cycles: int = LABEL_RETRY_CYCLES,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.upstream = upstream
        self.registry = registry
        self.creator = creator
        self.ledger = ledger
        self.metrics = metrics
        self.excluded_assets = set(excluded_assets)
        self.on_allocation_accepted = on_allocation_accepted
        self.on_asset_discovered = on_asset_discovered
        self.activity_window_ms = activity_window_ms
        self.label_retry_cycles = label_retry_cycles
        self._clock = clock

        self.vaults = (
            VaultTarget(VaultKind.ORIGIN, origin_vault),
            VaultTarget(VaultKind.DESTINATION, destination_vault),
        )
        self.last_positions: dict[VaultKind, int | None] = {kind: None for kind in VaultKind}
        self.last_balances: dict[VaultKind, int | None] = {kind: None for kind in VaultKind}
        # Net deltas of transactions newer than the balance sample they were fetched with
        self.carried_deltas: dict[VaultKind, int] = {kind: 0 for kind in VaultKind}
        self.orphan_fees = 0
        self.unattributed_fees = 0
        # Sequence of the newest history entry reflected in the counters above
        self.ledger_sequence = 0
        self._cycle_count = 0
        self._processed: LRUCache[str, bool] = LRUCache(
            max_size=MAX_PROCESSED_TRANSACTIONS, ttl_seconds=PROCESSED_TRANSACTION_TTL_SECONDS
        )

    # ---------- queries ----------

    def total_fees(self) -> int:
        return self.registry.total_fees() + self.unattributed_fees + self.orphan_fees

    # ---------- cycle ----------

    def run_cycle(self) -> CycleReport:
        timestamp = self._clock()
        report = CycleReport(started_at=timestamp)
        self.registry.decay_recent_activity(timestamp, self.activity_window_ms)
        self._cycle_count += 1
        if self.label_retry_cycles and self._cycle_count % self.label_retry_cycles == 0:
            self.refresh_labels()

        try:
            for vault in self.vaults:
                balance, position = self.upstream.sample_vault_balance(vault.address)
                report.observations[vault.kind] = VaultObservation(
                    vault_kind=vault.kind,
                    address=vault.address,
                    balance=balance,
                    position=position,
                    timestamp=timestamp,
                )
        except CircuitOpenError as exc:
            logger.warning(
                "Poll cycle skipped: %s",
                exc,
                extra={"event": "attribution.cycle_skipped", "reason": "circuit_open", "retry_after": exc.retry_after},
            )
            return report.skip("circuit_open")
        except UPSTREAM_ERRORS as exc:
            logger.warning(
                "Poll cycle skipped, vault sampling failed: %s",
                describe_error(exc),
                extra={"event": "attribution.cycle_skipped", "reason": "upstream_error", "error_type": type(exc).__name__},
            )
            return report.skip("upstream_error")

        self._refresh_pools(report, timestamp)

        for vault in self.vaults:
            observation = report.observations[vault.kind]
            try:
                evidence = self._collect_evidence(vault, observation, report, timestamp)
            except UPSTREAM_ERRORS as exc:
                report.errors += 1
                logger.warning(
                    "Transaction evidence for %s vault unavailable: %s",
                    vault.kind.value,
                    describe_error(exc),
                    extra={"event": "attribution.evidence_failed", "vault": vault.kind.value, "error_type": type(exc).__name__},
                )
                continue

            self._apply_evidence(vault, observation, evidence, report, timestamp)
            self._reconcile_balance(vault, observation, evidence)
            self.last_positions[vault.kind] = evidence.last_position
            self.last_balances[vault.kind] = observation.balance

        if self.metrics is not None:
            self.metrics.tracked_assets.set(len(self.registry))
            self.metrics.orphan_fees.set(self.orphan_fees)
        return report

    # ---------- step 3: pool reserves ----------

    def _refresh_pools(self, report: CycleReport, timestamp: int) -> None:
        for asset in self.registry.assets():
            if asset.migrated:
                self._ensure_destination_pool(asset, report)
                pool, kind = asset.destination_pool, VaultKind.DESTINATION
            else:
                pool, kind = asset.origin_pool, VaultKind.ORIGIN
            if not pool:
                continue
            try:
                reserves = self.upstream.resolve_pool_reserves(pool)
            except UPSTREAM_ERRORS as exc:
                report.errors += 1
                logger.debug(
                    "Reserve read failed for %s: %s",
                    asset.asset_id,
                    describe_error(exc),
                    extra={"event": "attribution.reserves_failed", "asset_id": asset.asset_id},
                )
                continue
            if reserves is None:
                continue

            change = self.registry.update_reserves(asset.asset_id, kind, reserves.reserve_value)
            if change:
                self.registry.record_activity(asset.asset_id, change, kind, timestamp)
                report.reserve_activity[asset.asset_id] = change

            if kind == VaultKind.ORIGIN and reserves.completed:
                if self.registry.mark_migrated(asset.asset_id):
                    report.migrated.append(asset.asset_id)
                    self._ensure_destination_pool(asset, report)

    def _ensure_destination_pool(self, asset: TrackedAsset, report: CycleReport) -> str:
        """Derive and record the destination pool of a migrated asset that has none yet."""
        if asset.destination_pool:
            return asset.destination_pool
        try:
            pool = self.upstream.derive_destination_pool(asset.asset_id)
        except UPSTREAM_ERRORS as exc:
            report.errors += 1
            logger.debug(
                "Destination pool derivation failed for %s: %s",
                asset.asset_id,
                describe_error(exc),
                extra={"event": "attribution.destination_pool_failed", "asset_id": asset.asset_id},
            )
            return ""
        if pool and self.registry.set_destination_pool(asset.asset_id, pool):
            logger.info(
                "Asset %s trades in destination pool %s",
                asset.asset_id,
                pool,
                extra={"event": "attribution.destination_pool", "asset_id": asset.asset_id, "pool": pool},
            )
        return pool

    # ---------- step 4: transaction evidence ----------

    def _collect_evidence(
        self,
        vault: VaultTarget,
        observation: VaultObservation,
        report: CycleReport,
        timestamp: int,
    ) -> VaultEvidence:
        since = self.last_positions[vault.kind]
        if since is None:
            # First sighting of this vault: start from the current position
            return VaultEvidence(last_position=observation.position)

        transactions = self.upstream.fetch_recent_transactions(vault.address, since)
        evidence = VaultEvidence(last_position=max(since, observation.position))

        # Ids are marked processed only once their allocation is durably recorded
        seen: set[str] = set()
        for tx in transactions:
            evidence.last_position = max(evidence.last_position, tx.position)
            if tx.tx_id in seen or self._processed.has(tx.tx_id):
                continue
            seen.add(tx.tx_id)
            evidence.transactions_seen += 1

            if tx.position <= observation.position:
                evidence.net_through_sample += tx.net_amount
            else:
                evidence.net_after_sample += tx.net_amount

            if tx.net_amount == 0:
                self._processed.set(tx.tx_id, True)
            elif tx.net_amount > 0:
                asset, mode = self._attribute(tx, report)
                if asset is None:
                    evidence.unattributed += tx.net_amount
                    evidence.pooled_tx_ids.append(tx.tx_id)
                    continue
                evidence.attributed.append(
                    AllocationEvent(
                        asset_id=asset.asset_id,
                        amount=tx.net_amount,
                        vault_kind=vault.kind,
                        position=tx.position,
                        timestamp=timestamp,
                        mode=mode,
                        label=asset.label,
                        vault_address=vault.address,
                        tx_id=tx.tx_id,
                    )
                )
            elif tx.net_amount < 0:
                evidence.withdrawals.append(
                    AllocationEvent(
                        asset_id=UNATTRIBUTED_ASSET_ID,
                        amount=tx.net_amount,
                        vault_kind=vault.kind,
                        position=tx.position,
                        timestamp=timestamp,
                        event_type=EventType.CLAIM,
                        mode=AllocationMode.WITHDRAWAL,
                        vault_address=vault.address,
                        tx_id=tx.tx_id,
                    )
                )
        return evidence

    def _attribute(
        self, tx: TransactionEvidence, report: CycleReport
    ) -> tuple[TrackedAsset | None, AllocationMode]:
        """Resolve the asset responsible for one inflow, most specific evidence first."""
        assets = self.registry.assets()

        accounts = set(tx.accounts)
        for asset in assets:
            if any(pool in accounts for pool in asset.pool_addresses()):
                return asset, AllocationMode.DIRECT

        changed = [asset_id for asset_id in tx.changed_assets() if asset_id not in self.excluded_assets]
        for asset in assets:
            if asset.asset_id in changed:
                return asset, AllocationMode.DIRECT

        for asset_id in changed:
            if asset_id in self.registry:
                continue
            discovered = self._discover(asset_id, report)
            if discovered is not None:
                return discovered, AllocationMode.DISCOVERED

        return None, AllocationMode.UNATTRIBUTED

    def _discover(self, asset_id: str, report: CycleReport) -> TrackedAsset | None:
        try:
            pool = self.upstream.derive_candidate_pool(asset_id)
            if not pool or not self.upstream.verify_provenance(pool, self.creator):
                return None
            reserves = self.upstream.resolve_pool_reserves(pool)
            destination_pool = self.upstream.derive_destination_pool(asset_id)
        except UPSTREAM_ERRORS as exc:
            report.errors += 1
            logger.debug(
                "Discovery lookup failed for %s: %s",
                asset_id,
                describe_error(exc),
                extra={"event": "attribution.discovery_failed", "asset_id": asset_id},
            )
            return None

        asset = TrackedAsset(
            asset_id=asset_id,
            label=self._lookup_label(asset_id) or UNKNOWN_LABEL,
            origin_pool=pool,
            destination_pool=destination_pool,
            migrated=bool(reserves and reserves.completed),
            last_origin_reserves=reserves.reserve_value if reserves else 0,
        )
        if not self._track_discovered(asset):
            return self.registry.get(asset_id)
        report.discovered.append(asset_id)
        return asset

    def _track_discovered(self, asset: TrackedAsset) -> bool:
        if not self.registry.register(asset):
            return False
        logger.info(
            "Discovered asset %s",
            asset.asset_id,
            extra={"event": "attribution.asset_discovered", "asset_id": asset.asset_id, "pool": asset.origin_pool},
        )
        if self.on_asset_discovered is not None:
            try:
                self.on_asset_discovered(asset)
            except CALLBACK_ERRORS as exc:
                logger.debug(
                    "Asset discovery callback raised",
                    extra={"event": "attribution.callback_failed", "error_type": type(exc).__name__},
                    exc_info=True,
                )
        return True

    def discover_creator_assets(self) -> list[str]:
        """
        Register every pool the creator has launched that is not tracked yet.

        Enumeration failures are not fatal: assets are then found dynamically,
        the first time one of their transactions reaches a vault.
        """
        try:
            pools = self.upstream.enumerate_creator_pools(self.creator)
        except UPSTREAM_ERRORS as exc:
            logger.warning(
                "Creator pool enumeration failed, relying on dynamic discovery: %s",
                describe_error(exc),
                extra={"event": "attribution.enumeration_failed", "error_type": type(exc).__name__},
            )
            return []

        added: list[str] = []
        for pool in pools:
            if pool.asset_id in self.registry or pool.asset_id in self.excluded_assets:
                continue
            asset = TrackedAsset(
                asset_id=pool.asset_id,
                label=self._lookup_label(pool.asset_id) or UNKNOWN_LABEL,
                origin_pool=pool.pool,
                migrated=pool.completed,
                last_origin_reserves=pool.reserve_value,
            )
            if self._track_discovered(asset):
                added.append(asset.asset_id)
        logger.info(
            "Creator pool enumeration found %d pools, %d new",
            len(pools),
            len(added),
            extra={"event": "attribution.enumerated", "pools": len(pools), "added": len(added)},
        )
        return added

    def _lookup_label(self, asset_id: str) -> str | None:
        try:
            return self.upstream.resolve_asset_label(asset_id)
        except UPSTREAM_ERRORS as exc:
            logger.debug(
                "Label lookup failed for %s: %s",
                asset_id,
                describe_error(exc),
                extra={"event": "attribution.label_failed", "asset_id": asset_id},
            )
            return None

    def refresh_labels(self) -> int:
        """Retry label lookups for assets still labelled UNKNOWN. Returns how many resolved."""
        resolved = 0
        for asset in self.registry.unlabelled():
            label = self._lookup_label(asset.asset_id)
            if label and self.registry.set_label(asset.asset_id, label):
                resolved += 1
        return resolved

    # ---------- steps 5 and 6: distribution and recording ----------

    def distribute_unattributed(
        self,
        amount: int,
        vault: VaultTarget,
        position: int,
        timestamp: int,
    ) -> list[AllocationEvent]:
        """
        Allocate an unattributed inflow across assets in the vault's phase.

        Returns one event per phase-matching asset (zero shares included), or
        a single UNATTRIBUTED event when no asset is in that phase.
        """
        phase = AssetPhase.for_vault(vault.kind)
        candidates = self.registry.in_phase(phase)
        if not candidates:
            return [
                AllocationEvent(
                    asset_id=UNATTRIBUTED_ASSET_ID,
                    amount=amount,
                    vault_kind=vault.kind,
                    position=position,
                    timestamp=timestamp,
                    mode=AllocationMode.UNATTRIBUTED,
                    vault_address=vault.address,
                )
            ]

        weights = [(asset.asset_id, asset.recent_activity(phase)) for asset in candidates]
        if any(weight > 0 for _, weight in weights):
            shares = distribute_proportional(amount, weights)
            mode = AllocationMode.PROPORTIONAL
        else:
            shares = split_equal(amount, [asset.asset_id for asset in candidates])
            mode = AllocationMode.EQUAL

        labels = {asset.asset_id: asset.label for asset in candidates}
        return [
            AllocationEvent(
                asset_id=asset_id,
                amount=share,
                vault_kind=vault.kind,
                position=position,
                timestamp=timestamp,
                mode=mode,
                label=labels[asset_id],
                vault_address=vault.address,
            )
            for asset_id, share in shares
        ]

    def _apply_evidence(
        self,
        vault: VaultTarget,
        observation: VaultObservation,
        evidence: VaultEvidence,
        report: CycleReport,
        timestamp: int,
    ) -> None:
        """
        Record the vault's allocations in position order, then its pooled split.

        If an append fails part-way, the balance baseline moves by exactly what
        was recorded and the vault cursor stays put, so the next cycle retries
        only the transactions that were not recorded.
        """
        previous = self.last_balances[vault.kind]
        running_balance = observation.balance if previous is None else previous

        try:
            direct = sorted(evidence.attributed + evidence.withdrawals, key=lambda event: event.position)
            for event in direct:
                running_balance = self._accept(event, running_balance, report)

            if evidence.unattributed > 0:
                allocations = self.distribute_unattributed(
                    evidence.unattributed, vault, evidence.last_position, timestamp
                )
                if allocations[0].flagged:
                    logger.warning(
                        "Distributed %d unattributed base units on %s vault (%s)",
                        evidence.unattributed,
                        vault.kind.value,
                        allocations[0].mode.value,
                        extra={
                            "event": "attribution.heuristic_split",
                            "flagged": True,
                            "vault": vault.kind.value,
                            "amount": evidence.unattributed,
                            "mode": allocations[0].mode.value,
                            "recipients": len(allocations),
                        },
                    )
                for event in allocations:
                    if event.amount != 0:
                        running_balance = self._accept(event, running_balance, report)
                        # Once any share is recorded the pooled amount must not be split again
                        self._mark_processed(evidence.pooled_tx_ids)
        except LedgerWriteError:
            if previous is not None:
                self.last_balances[vault.kind] = running_balance
            raise

    def _mark_processed(self, tx_ids: Iterable[str | None]) -> None:
        for tx_id in tx_ids:
            if tx_id:
                self._processed.set(tx_id, True)

    def _accept(self, event: AllocationEvent, balance_before: int, report: CycleReport) -> int:
        """Record one allocation durably, then apply it. Returns the balance after it."""
        balance_after = balance_before + event.amount

        if self.ledger is not None:
            entry = self.ledger.add_entry(
                event_type=event.event_type,
                vault_kind=event.vault_kind,
                vault=event.vault_address,
                amount=event.amount,
                balance_before=balance_before,
                balance_after=balance_after,
                position=event.position,
                timestamp=event.timestamp,
                asset_id=None if event.is_unattributed else event.asset_id,
                label=event.label,
            )
            report.entries.append(entry)
            self.ledger_sequence = entry.sequence
            if self.metrics is not None:
                self.metrics.ledger_entries.set(entry.sequence)

        self._mark_processed([event.tx_id])

        if event.event_type == EventType.FEE:
            if event.is_unattributed:
                self.unattributed_fees += event.amount
            else:
                self.registry.record_fee(event.asset_id, event.amount, event.vault_kind, event.timestamp)

        report.allocations.append(event)
        if self.metrics is not None:
            self.metrics.record_allocation(event.vault_kind.value, event.mode.value, event.amount)

        logger.info(
            "%s %d on %s vault -> %s",
            event.event_type.value,
            event.amount,
            event.vault_kind.value,
            event.label or event.asset_id,
            extra={
                "event": "attribution.allocation",
                "asset_id": event.asset_id,
                "amount": event.amount,
                "vault": event.vault_kind.value,
                "mode": event.mode.value,
                "flagged": event.flagged,
                "position": event.position,
            },
        )

        if self.on_allocation_accepted is not None:
            try:
                self.on_allocation_accepted(event)
            except CALLBACK_ERRORS as exc:
                logger.debug(
                    "Allocation callback raised",
                    extra={"event": "attribution.callback_failed", "error_type": type(exc).__name__},
                    exc_info=True,
                )
        return balance_after

    # ---------- balance reconciliation ----------

    def _reconcile_balance(
        self, vault: VaultTarget, observation: VaultObservation, evidence: VaultEvidence
    ) -> None:
        """
        Compare the sampled balance with the previous sample plus observed deltas.

        A surplus means fees arrived without a visible transaction and is
        counted as orphan fees; a deficit first cancels earlier orphan fees
        (the missing transaction showed up later).
        """
        previous = self.last_balances[vault.kind]
        carried = self.carried_deltas[vault.kind]
        self.carried_deltas[vault.kind] = evidence.net_after_sample
        if previous is None:
            return

        expected = previous + carried + evidence.net_through_sample
        difference = observation.balance - expected
        if difference > 0:
            self.orphan_fees += difference
            logger.info(
                "%s vault surplus of %d recorded as orphan fees",
                vault.kind.value,
                difference,
                extra={"event": "attribution.orphan_surplus", "vault": vault.kind.value, "amount": difference},
            )
        elif difference < 0 and self.orphan_fees > 0:
            resolved = min(self.orphan_fees, -difference)
            self.orphan_fees -= resolved
            logger.info(
                "%s vault deficit resolved %d orphan fees",
                vault.kind.value,
                resolved,
                extra={"event": "attribution.orphan_resolved", "vault": vault.kind.value, "amount": resolved},
            )

    # ---------- persistence ----------

    def export_state(self) -> dict[str, Any]:
        return {
            "last_positions": {kind.value: value for kind, value in self.last_positions.items()},
            "last_balances": {kind.value: value for kind, value in self.last_balances.items()},
            "carried_deltas": {kind.value: value for kind, value in self.carried_deltas.items()},
            "orphan_fees": self.orphan_fees,
            "unattributed_fees": self.unattributed_fees,
            "ledger_sequence": self.ledger_sequence,
            "assets": [asset.to_dict() for asset in self.registry.snapshot()],
        }

    def restore_state(self, state: dict[str, Any]) -> None:
        for kind in VaultKind:
            self.last_positions[kind] = state.get("last_positions", {}).get(kind.value)
            self.last_balances[kind] = state.get("last_balances", {}).get(kind.value)
            self.carried_deltas[kind] = int(state.get("carried_deltas", {}).get(kind.value) or 0)
        self.orphan_fees = int(state.get("orphan_fees") or 0)
        self.unattributed_fees = int(state.get("unattributed_fees") or 0)
        if state.get("ledger_sequence") is not None:
            self.ledger_sequence = int(state["ledger_sequence"])
        for data in state.get("assets", []):
            asset = TrackedAsset.from_dict(data)
            existing = self.registry.get(asset.asset_id)
            if existing is None:
                self.registry.register(asset)
            else:
                self.registry.merge_statistics(asset)

    def replay_ledger_entries(self, entries: Sequence[HistoryEntry]) -> int:
        """
        Apply history entries newer than ``ledger_sequence`` to the counters.

        Entries are appended before the tracker state is saved, so after a
        crash between the two the log is ahead of the restored state. Replaying
        the missing entries moves the cursors and balance baselines past them,
        which keeps their transactions from being recorded a second time.
        Returns the number of entries applied.
        """
        replayed = 0
        for entry in entries:
            if entry.sequence <= self.ledger_sequence:
                continue
            kind = VaultKind(entry.vault_type)
            if entry.event_type == EventType.FEE.value:
                if entry.asset_id is None:
                    self.unattributed_fees += entry.amount
                else:
                    if entry.asset_id not in self.registry:
                        self.registry.register(
                            TrackedAsset(asset_id=entry.asset_id, label=entry.label or UNKNOWN_LABEL)
                        )
                    self.registry.record_fee(entry.asset_id, entry.amount, kind, entry.timestamp)
            cursor = self.last_positions[kind]
            self.last_positions[kind] = entry.position if cursor is None else max(cursor, entry.position)
            self.last_balances[kind] = entry.balance_after
            self.carried_deltas[kind] = 0
            self.ledger_sequence = entry.sequence
            replayed += 1

        if replayed:
            logger.warning(
                "Replayed %d history entries missing from tracker state",
                replayed,
                extra={"event": "attribution.ledger_replayed", "entries": replayed, "sequence": self.ledger_sequence},
            )
        return replayed
