"""
Tracked-asset registry.

In-memory store of every asset whose fee accrual is attributed individually,
with the running statistics the attribution engine maintains. The poll loop
is the only writer; status and export queries read copies taken under a short
lock, so they always see a point-in-time snapshot.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

from feeledger.core.constants import ACTIVITY_WINDOW_MS, UNKNOWN_LABEL
from feeledger.core.models import AssetPhase, VaultKind, now_ms

logger = logging.getLogger(__name__)


@dataclass
class TrackedAsset:
    """One asset monitored for fee accrual."""

    asset_id: str
    label: str = UNKNOWN_LABEL
    origin_pool: str = ""
    destination_pool: str = ""
    migrated: bool = False
    last_origin_reserves: int = 0
    last_destination_reserves: int = 0
    total_fees: int = 0
    fee_count: int = 0
    last_fee_timestamp: int = 0
    recent_origin_activity: int = 0
    recent_origin_reset_at: int = field(default_factory=now_ms)
    recent_destination_activity: int = 0
    recent_destination_reset_at: int = field(default_factory=now_ms)

    @property
    def phase(self) -> AssetPhase:
        return AssetPhase.MIGRATED if self.migrated else AssetPhase.ORIGIN

    def pool_addresses(self) -> list[str]:
        return [pool for pool in (self.origin_pool, self.destination_pool) if pool]

    def recent_activity(self, phase: AssetPhase) -> int:
        if phase == AssetPhase.ORIGIN:
            return self.recent_origin_activity
        return self.recent_destination_activity

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackedAsset":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(frozen=True)
class AssetStats:
    """Read-only statistics row exposed to collaborators."""

    asset_id: str
    label: str
    total_fees: int
    fee_count: int
    last_fee_timestamp: int
    migrated: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AssetRegistry:
    """Registry of tracked assets keyed by asset id, iterated in registration order."""

    def __init__(self, assets: Iterable[TrackedAsset] | None = None) -> None:
        self._lock = threading.RLock()
        self._assets: dict[str, TrackedAsset] = {}
        self._pool_index: dict[str, str] = {}
        for asset in assets or []:
            self.register(asset)

    def __len__(self) -> int:
        with self._lock:
            return len(self._assets)

    def __contains__(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._assets

    def register(self, asset: TrackedAsset) -> bool:
        """Add ``asset``; returns False if an asset with the same id is already tracked."""
        with self._lock:
            if asset.asset_id in self._assets:
                return False
            self._assets[asset.asset_id] = asset
            for pool in asset.pool_addresses():
                self._pool_index[pool] = asset.asset_id
        logger.info(
            "Tracking asset %s (%s)",
            asset.asset_id,
            asset.label,
            extra={"event": "registry.asset_registered", "asset_id": asset.asset_id, "migrated": asset.migrated},
        )
        return True

    def get(self, asset_id: str) -> TrackedAsset | None:
        with self._lock:
            return self._assets.get(asset_id)

    def find_by_pool(self, address: str) -> TrackedAsset | None:
        with self._lock:
            asset_id = self._pool_index.get(address)
            return self._assets.get(asset_id) if asset_id else None

    def assets(self) -> list[TrackedAsset]:
        with self._lock:
            return list(self._assets.values())

    def in_phase(self, phase: AssetPhase) -> list[TrackedAsset]:
        with self._lock:
            return [asset for asset in self._assets.values() if asset.phase == phase]

    def mark_migrated(self, asset_id: str, destination_pool: str | None = None) -> bool:
        """Move an asset to the MIGRATED phase. The transition is one-way."""
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None or asset.migrated:
                return False
            asset.migrated = True
            if destination_pool:
                self._index_destination(asset, destination_pool)
        logger.info(
            "Asset %s migrated to destination pool",
            asset_id,
            extra={"event": "registry.asset_migrated", "asset_id": asset_id},
        )
        return True

    def set_destination_pool(self, asset_id: str, destination_pool: str) -> bool:
        """Record where an asset's liquidity lives after migration. Returns False if unchanged."""
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None or not destination_pool or asset.destination_pool == destination_pool:
                return False
            self._index_destination(asset, destination_pool)
        return True

    def _index_destination(self, asset: TrackedAsset, destination_pool: str) -> None:
        if asset.destination_pool:
            self._pool_index.pop(asset.destination_pool, None)
        asset.destination_pool = destination_pool
        self._pool_index[destination_pool] = asset.asset_id

    def set_label(self, asset_id: str, label: str) -> bool:
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None or not label or asset.label == label:
                return False
            asset.label = label
        logger.info(
            "Asset %s labelled %s",
            asset_id,
            label,
            extra={"event": "registry.asset_labelled", "asset_id": asset_id, "label": label},
        )
        return True

    def unlabelled(self) -> list[TrackedAsset]:
        with self._lock:
            return [asset for asset in self._assets.values() if asset.label == UNKNOWN_LABEL]

    def update_reserves(self, asset_id: str, vault_kind: VaultKind, reserve_value: int) -> int:
        """
        Store the latest reserve reading for the pool on ``vault_kind``'s side.

        Returns the absolute change since the previous reading, or 0 when no
        earlier reading exists.
        """
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None:
                return 0
            if vault_kind == VaultKind.ORIGIN:
                previous = asset.last_origin_reserves
                asset.last_origin_reserves = reserve_value
            else:
                previous = asset.last_destination_reserves
                asset.last_destination_reserves = reserve_value
        if previous <= 0:
            return 0
        return abs(reserve_value - previous)

    def merge_statistics(self, restored: TrackedAsset) -> None:
        """Carry persisted statistics onto an asset registered from configuration."""
        with self._lock:
            asset = self._assets.get(restored.asset_id)
            if asset is None:
                return
            asset.total_fees = restored.total_fees
            asset.fee_count = restored.fee_count
            asset.last_fee_timestamp = restored.last_fee_timestamp
            asset.last_origin_reserves = restored.last_origin_reserves
            asset.last_destination_reserves = restored.last_destination_reserves
            asset.recent_origin_activity = restored.recent_origin_activity
            asset.recent_origin_reset_at = restored.recent_origin_reset_at
            asset.recent_destination_activity = restored.recent_destination_activity
            asset.recent_destination_reset_at = restored.recent_destination_reset_at
            if restored.migrated and not asset.migrated:
                asset.migrated = True
            if not asset.destination_pool and restored.destination_pool:
                self._index_destination(asset, restored.destination_pool)
            if asset.label == UNKNOWN_LABEL and restored.label:
                asset.label = restored.label

    def record_activity(self, asset_id: str, amount: int, vault_kind: VaultKind, timestamp: int) -> None:
        """Credit ``amount`` to the recent-activity accumulator of the vault's phase."""
        if amount <= 0:
            return
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None:
                return
            if vault_kind == VaultKind.ORIGIN:
                asset.recent_origin_activity += amount
            else:
                asset.recent_destination_activity += amount

    def record_fee(self, asset_id: str, amount: int, vault_kind: VaultKind, timestamp: int) -> TrackedAsset | None:
        """Apply an accepted fee allocation to the asset's running statistics."""
        if amount < 0:
            raise ValueError("Fee allocations cannot be negative")
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None:
                return None
            asset.total_fees += amount
            asset.fee_count += 1
            asset.last_fee_timestamp = timestamp
            self.record_activity(asset_id, amount, vault_kind, timestamp)
            return asset

    def decay_recent_activity(self, now: int | None = None, window_ms: int = ACTIVITY_WINDOW_MS) -> int:
        """Zero accumulators whose window elapsed. Returns how many were reset."""
        now = now_ms() if now is None else now
        reset = 0
        with self._lock:
            for asset in self._assets.values():
                if now - asset.recent_origin_reset_at >= window_ms:
                    asset.recent_origin_activity = 0
                    asset.recent_origin_reset_at = now
                    reset += 1
                if now - asset.recent_destination_reset_at >= window_ms:
                    asset.recent_destination_activity = 0
                    asset.recent_destination_reset_at = now
                    reset += 1
        return reset

    def snapshot(self) -> list[TrackedAsset]:
        with self._lock:
            return [copy.copy(asset) for asset in self._assets.values()]

    def stats(self) -> list[AssetStats]:
        with self._lock:
            return [
                AssetStats(
                    asset_id=asset.asset_id,
                    label=asset.label,
                    total_fees=asset.total_fees,
                    fee_count=asset.fee_count,
                    last_fee_timestamp=asset.last_fee_timestamp,
                    migrated=asset.migrated,
                )
                for asset in self._assets.values()
            ]

    def total_fees(self) -> int:
        with self._lock:
            return sum(asset.total_fees for asset in self._assets.values())
