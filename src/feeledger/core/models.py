"""
Value types passed between the upstream boundary, the attribution engine and
the history ledger.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from feeledger.core.constants import UNATTRIBUTED_ASSET_ID


def now_ms() -> int:
    """Wall-clock time in integer milliseconds since the epoch."""
    return int(time.time() * 1000)


class VaultKind(Enum):
    ORIGIN = "origin"  # Collects fees from origin-phase pools
    DESTINATION = "destination"  # Collects fees from pools assets migrated into


class AssetPhase(Enum):
    ORIGIN = "origin"
    MIGRATED = "migrated"

    @classmethod
    def for_vault(cls, vault_kind: VaultKind) -> "AssetPhase":
        return cls.ORIGIN if vault_kind == VaultKind.ORIGIN else cls.MIGRATED


class EventType(Enum):
    FEE = "FEE"
    CLAIM = "CLAIM"


class AllocationMode(Enum):
    DIRECT = "direct"  # Pool address or asset id found in the transaction
    DISCOVERED = "discovered"  # Attributed to a newly discovered asset
    PROPORTIONAL = "proportional"  # Split by recent activity
    EQUAL = "equal"  # Split equally, no recent activity in the phase
    UNATTRIBUTED = "unattributed"  # No phase-matching asset at all
    WITHDRAWAL = "withdrawal"  # Net balance decrease


@dataclass(frozen=True)
class VaultObservation:
    """One balance sample of a vault at an external-ledger position."""

    vault_kind: VaultKind
    address: str
    balance: int
    position: int
    timestamp: int


@dataclass(frozen=True)
class BalanceChange:
    asset: str
    delta: int


@dataclass(frozen=True)
class TransactionEvidence:
    """Normalized view of one upstream transaction touching a vault."""

    tx_id: str
    position: int
    accounts: tuple[str, ...] = ()
    balance_changes: tuple[BalanceChange, ...] = ()
    net_amount: int = 0

    def changed_assets(self) -> list[str]:
        seen: list[str] = []
        for change in self.balance_changes:
            if change.asset not in seen:
                seen.append(change.asset)
        return seen


@dataclass(frozen=True)
class PoolReserves:
    reserve_value: int
    completed: bool = False


@dataclass(frozen=True)
class CreatorPool:
    """An origin pool created by the tracked creator, as listed at startup."""

    asset_id: str
    pool: str
    reserve_value: int = 0
    completed: bool = False


@dataclass
class AllocationEvent:
    """The outcome of one attribution decision for one asset."""

    asset_id: str
    amount: int
    vault_kind: VaultKind
    position: int
    timestamp: int
    event_type: EventType = EventType.FEE
    mode: AllocationMode = AllocationMode.DIRECT
    label: str | None = None
    vault_address: str = ""
    tx_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_unattributed(self) -> bool:
        return self.asset_id == UNATTRIBUTED_ASSET_ID

    @property
    def flagged(self) -> bool:
        """True when the allocation came from a heuristic rather than direct evidence."""
        return self.mode in (
            AllocationMode.PROPORTIONAL,
            AllocationMode.EQUAL,
            AllocationMode.UNATTRIBUTED,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["vault_kind"] = self.vault_kind.value
        data["event_type"] = self.event_type.value
        data["mode"] = self.mode.value
        data["flagged"] = self.flagged
        return data
