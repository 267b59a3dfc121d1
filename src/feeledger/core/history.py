"""
feeledger - Proof-of-History Ledger

Append-only, hash-chained record of every accepted allocation:
- One newline-delimited JSON record per line ({"type": ..., "data": ...})
- Metadata header written once when the log is created
- Each entry commits to its predecessor's hash (genesis constant for the first)
- Crash recovery by replaying the log and re-verifying the chain

Verification never raises; it returns a ChainValidationResult naming the first
broken entry and why, and the caller decides whether to keep polling.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Protocol, Sequence

from feeledger.core.constants import GENESIS_HASH, HISTORY_LOG_VERSION
from feeledger.core.exceptions import LedgerWriteError
from feeledger.core.models import EventType, VaultKind, now_ms

logger = logging.getLogger(__name__)


def _iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()


# ==================== Records ====================


@dataclass(frozen=True)
class HistoryEntry:
    """Persisted, hash-chained representation of one allocation event."""

    sequence: int
    prev_hash: str
    hash: str
    event_type: str
    vault_type: str
    vault: str
    amount: int
    balance_before: int
    balance_after: int
    position: int
    timestamp: int
    asset_id: str | None = None
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        """Parse a stored record; raises KeyError/TypeError/ValueError on malformed data."""
        return cls(
            sequence=int(data["sequence"]),
            prev_hash=str(data["prev_hash"]),
            hash=str(data["hash"]),
            event_type=str(data["event_type"]),
            vault_type=str(data["vault_type"]),
            vault=str(data["vault"]),
            amount=int(data["amount"]),
            balance_before=int(data["balance_before"]),
            balance_after=int(data["balance_after"]),
            position=int(data["position"]),
            timestamp=int(data["timestamp"]),
            asset_id=data.get("asset_id"),
            label=data.get("label"),
        )


def compute_entry_hash(entry: HistoryEntry | dict[str, Any]) -> str:
    """
    SHA-256 over the entry's fields in a fixed order, excluding ``hash``.

    The field order is part of the on-disk format; changing it invalidates
    every existing log.
    """
    data = entry.to_dict() if isinstance(entry, HistoryEntry) else entry
    payload = "|".join(
        [
            str(data["sequence"]),
            str(data["prev_hash"]),
            str(data["event_type"]),
            str(data["vault_type"]),
            str(data["vault"]),
            str(data.get("asset_id") or ""),
            str(data.get("label") or ""),
            str(data["amount"]),
            str(data["balance_before"]),
            str(data["balance_after"]),
            str(data["position"]),
            str(data["timestamp"]),
        ]
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class HistoryMetadata:
    """Summary cache; always equal to a fold over the entries."""

    creator: str
    origin_vault: str
    destination_vault: str
    version: str = HISTORY_LOG_VERSION
    started_at: str = field(default_factory=lambda: _iso(now_ms()))
    last_updated: str = field(default_factory=lambda: _iso(now_ms()))
    total_fees: int = 0
    entry_count: int = 0
    latest_hash: str = GENESIS_HASH

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def merge(self, data: dict[str, Any]) -> None:
        for key in ("version", "creator", "origin_vault", "destination_vault", "started_at"):
            if key in data and data[key] is not None:
                setattr(self, key, str(data[key]))


@dataclass
class HistoryLog:
    """Whole log loaded into memory, for independent verification and export."""

    metadata: HistoryMetadata
    entries: list[HistoryEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = self.metadata.to_dict()
        data["entries"] = [entry.to_dict() for entry in self.entries]
        return data


# ==================== Verification ====================


class ChainViolation(Enum):
    GENESIS = "genesis"
    SEQUENCE = "sequence"
    HASH = "hash"
    LINK = "link"


@dataclass
class ChainValidationResult:
    valid: bool
    entries_checked: int = 0
    error: str | None = None
    reason: ChainViolation | None = None
    entry_index: int | None = None
    corrupted_at_sequence: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "entries_checked": self.entries_checked,
            "error": self.error,
            "reason": self.reason.value if self.reason else None,
            "entry_index": self.entry_index,
            "corrupted_at_sequence": self.corrupted_at_sequence,
        }


def _violation(
    reason: ChainViolation, index: int, entry: HistoryEntry, message: str
) -> ChainValidationResult:
    return ChainValidationResult(
        valid=False,
        entries_checked=index + 1,
        error=message,
        reason=reason,
        entry_index=index,
        corrupted_at_sequence=entry.sequence,
    )


def verify_chain(entries: Sequence[HistoryEntry]) -> ChainValidationResult:
    """
    Walk ``entries`` in order and stop at the first violation.

    Checks, per entry: the first entry links to GENESIS_HASH, ``sequence``
    equals the 1-based position, the stored hash equals a recomputed one, and
    ``prev_hash`` equals the previous entry's hash. An empty chain is valid.
    """
    if not entries:
        return ChainValidationResult(valid=True, entries_checked=0)

    if entries[0].prev_hash != GENESIS_HASH:
        return _violation(
            ChainViolation.GENESIS, 0, entries[0], "First entry does not link to genesis hash"
        )

    for index, entry in enumerate(entries):
        expected_sequence = index + 1
        if entry.sequence != expected_sequence:
            return _violation(
                ChainViolation.SEQUENCE,
                index,
                entry,
                f"Invalid sequence {entry.sequence}, expected {expected_sequence}",
            )

        computed = compute_entry_hash(entry)
        if computed != entry.hash:
            return _violation(
                ChainViolation.HASH,
                index,
                entry,
                f"Invalid hash at sequence {entry.sequence}: expected {computed}, got {entry.hash}",
            )

        if index > 0 and entry.prev_hash != entries[index - 1].hash:
            return _violation(
                ChainViolation.LINK,
                index,
                entry,
                f"Broken chain at sequence {entry.sequence}: prev_hash mismatch",
            )

    return ChainValidationResult(valid=True, entries_checked=len(entries))


# ==================== Persistence collaborator ====================


class LogStore(Protocol):
    """Line-oriented storage used by the ledger. Implementations own durability."""

    def append(self, path: str, line: str) -> None:
        ...

    def exists(self, path: str) -> bool:
        ...

    def read_all_lines(self, path: str) -> list[str]:
        ...

    def repair_tail(self, path: str) -> int:
        """Drop a trailing partial line left by an interrupted append; returns bytes removed."""
        ...

    def close(self) -> None:
        ...


class FileLogStore:
    """
    Local-file LogStore.

    Keeps one append handle per path open for the life of the store and
    flushes + fsyncs after every line, so a returned ``append`` is durable.
    """

    def __init__(self) -> None:
        self._handles: dict[str, Any] = {}
        self._lock = threading.Lock()

    def append(self, path: str, line: str) -> None:
        if not line.endswith("\n"):
            line += "\n"
        with self._lock:
            handle = self._handles.get(path)
            if handle is None:
                directory = os.path.dirname(os.path.abspath(path))
                os.makedirs(directory, exist_ok=True)
                handle = open(path, "a", encoding="utf-8")
                self._handles[path] = handle
            handle.write(line)
            handle.flush()
            os.fsync(handle.fileno())

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def read_all_lines(self, path: str) -> list[str]:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read().splitlines()

    def repair_tail(self, path: str) -> int:
        with self._lock:
            with open(path, "rb+") as handle:
                data = handle.read()
                if not data or data.endswith(b"\n"):
                    return 0
                keep = data.rfind(b"\n") + 1
                handle.truncate(keep)
                handle.flush()
                os.fsync(handle.fileno())
            return len(data) - keep

    def close(self) -> None:
        with self._lock:
            for handle in self._handles.values():
                handle.close()
            self._handles.clear()


def _parse_records(lines: Iterable[str], source: str) -> tuple[dict[str, Any], list[HistoryEntry]]:
    """Split raw log lines into merged metadata and parsed entries. Malformed lines are skipped."""
    metadata: dict[str, Any] = {}
    entries: list[HistoryEntry] = []
    for line_number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
            record_type = record.get("type")
            if record_type == "metadata":
                metadata.update(record.get("data") or {})
            elif record_type == "entry":
                entries.append(HistoryEntry.from_dict(record["data"]))
            else:
                raise ValueError(f"unknown record type {record_type!r}")
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning(
                "Malformed line %d in history file %s: %s",
                line_number,
                source,
                exc,
                extra={"event": "history.malformed_line", "path": source, "line": line_number},
            )
    return metadata, entries


def _fold_summary(metadata: HistoryMetadata, entries: Sequence[HistoryEntry]) -> None:
    metadata.total_fees = 0
    metadata.entry_count = 0
    metadata.latest_hash = GENESIS_HASH
    for entry in entries:
        metadata.entry_count = entry.sequence
        metadata.latest_hash = entry.hash
        metadata.last_updated = _iso(entry.timestamp)
        if entry.event_type == EventType.FEE.value:
            metadata.total_fees += abs(entry.amount)


# ==================== Ledger ====================


class HistoryLedger:
    """
    Proof-of-History ledger backed by a newline-delimited JSON file.

    The poll loop is the single writer. ``init`` must run before the first
    ``add_entry``; it is also the only time the file is read.
    """

    def __init__(
        self,
        file_path: str,
        creator: str,
        origin_vault: str,
        destination_vault: str,
        store: LogStore | None = None,
    ) -> None:
        self.file_path = file_path
        self.store: LogStore = store or FileLogStore()
        self._metadata = HistoryMetadata(
            creator=creator, origin_vault=origin_vault, destination_vault=destination_vault
        )
        self._validation = ChainValidationResult(valid=True, entries_checked=0)
        self._lock = threading.Lock()
        self._initialized = False

    def init(self) -> ChainValidationResult:
        """
        Create the log or replay an existing one.

        Returns:
            The chain verification result for the replayed entries
        """
        with self._lock:
            if self.store.exists(self.file_path):
                self._restore_state()
            else:
                self.store.append(
                    self.file_path,
                    json.dumps({"type": "metadata", "data": self._metadata.to_dict()}),
                )
                self._validation = ChainValidationResult(valid=True, entries_checked=0)
                logger.info(
                    "Created history log %s",
                    self.file_path,
                    extra={"event": "history.created", "path": self.file_path},
                )
            self._initialized = True
            return self._copy_validation()

    def _restore_state(self) -> None:
        # An append interrupted mid-line leaves a fragment the next append would merge into
        dropped = self.store.repair_tail(self.file_path)
        if dropped:
            logger.warning(
                "Truncated %d bytes of incomplete record at end of %s",
                dropped,
                self.file_path,
                extra={"event": "history.torn_tail_truncated", "path": self.file_path, "bytes": dropped},
            )

        lines = self.store.read_all_lines(self.file_path)
        stored_metadata, entries = _parse_records(lines, self.file_path)
        if not stored_metadata:
            self.store.append(
                self.file_path,
                json.dumps({"type": "metadata", "data": self._metadata.to_dict()}),
            )
        self._metadata.merge(stored_metadata)
        _fold_summary(self._metadata, entries)
        self._validation = verify_chain(entries)

        if self._validation.valid:
            logger.info(
                "History log restored: %d entries, chain valid",
                len(entries),
                extra={
                    "event": "history.restored",
                    "entries": len(entries),
                    "latest_hash": self._metadata.latest_hash,
                },
            )
        else:
            logger.error(
                "History chain verification failed: %s",
                self._validation.error,
                extra={
                    "event": "history.chain_invalid",
                    "reason": self._validation.reason.value if self._validation.reason else None,
                    "sequence": self._validation.corrupted_at_sequence,
                },
            )

    def add_entry(
        self,
        event_type: EventType,
        vault_kind: VaultKind,
        vault: str,
        amount: int,
        balance_before: int,
        balance_after: int,
        position: int,
        timestamp: int,
        asset_id: str | None = None,
        label: str | None = None,
    ) -> HistoryEntry:
        """
        Append one entry; returns only after the line is flushed to disk.

        Raises:
            LedgerWriteError: If the ledger is not initialized or the write fails.
                The summary is left untouched in that case.
        """
        with self._lock:
            if not self._initialized:
                raise LedgerWriteError("History ledger used before init()")

            fields: dict[str, Any] = {
                "sequence": self._metadata.entry_count + 1,
                "prev_hash": self._metadata.latest_hash,
                "event_type": event_type.value,
                "vault_type": vault_kind.value,
                "vault": vault,
                "amount": int(amount),
                "balance_before": int(balance_before),
                "balance_after": int(balance_after),
                "position": int(position),
                "timestamp": int(timestamp),
                "asset_id": asset_id,
                "label": label,
            }
            entry = HistoryEntry(hash=compute_entry_hash(fields), **fields)

            try:
                self.store.append(
                    self.file_path, json.dumps({"type": "entry", "data": entry.to_dict()})
                )
            except OSError as exc:
                raise LedgerWriteError(
                    f"Failed to append history entry {entry.sequence}: {exc}",
                    {"path": self.file_path, "sequence": entry.sequence},
                ) from exc

            self._metadata.entry_count = entry.sequence
            self._metadata.latest_hash = entry.hash
            self._metadata.last_updated = _iso(entry.timestamp)
            if event_type == EventType.FEE:
                self._metadata.total_fees += abs(entry.amount)
            return entry

    def read_entries(self) -> list[HistoryEntry]:
        with self._lock:
            if not self.store.exists(self.file_path):
                return []
            _, entries = _parse_records(self.store.read_all_lines(self.file_path), self.file_path)
            return entries

    def get_metadata(self) -> HistoryMetadata:
        with self._lock:
            return HistoryMetadata(**self._metadata.to_dict())

    def _copy_validation(self) -> ChainValidationResult:
        return ChainValidationResult(**self._validation.__dict__)

    def get_chain_validation(self) -> ChainValidationResult:
        with self._lock:
            return self._copy_validation()

    def is_chain_valid(self) -> bool:
        return self.get_chain_validation().valid

    def close(self) -> None:
        with self._lock:
            self.store.close()
            self._initialized = False


# ==================== Standalone helpers ====================


def load_history_log(file_path: str) -> HistoryLog:
    """Read a newline-delimited history file into memory."""
    with open(file_path, "r", encoding="utf-8") as handle:
        lines = handle.read().splitlines()
    stored_metadata, entries = _parse_records(lines, file_path)
    metadata = HistoryMetadata(
        creator=str(stored_metadata.get("creator", "")),
        origin_vault=str(stored_metadata.get("origin_vault", "")),
        destination_vault=str(stored_metadata.get("destination_vault", "")),
    )
    metadata.merge(stored_metadata)
    _fold_summary(metadata, entries)
    return HistoryLog(metadata=metadata, entries=entries)


def verify_history_file(file_path: str) -> ChainValidationResult:
    return verify_chain(load_history_log(file_path).entries)


def export_history_log(log: HistoryLog, file_path: str) -> None:
    """Write ``log`` as a single JSON document (atomic replace)."""
    directory = os.path.dirname(os.path.abspath(file_path))
    os.makedirs(directory, exist_ok=True)
    tmp_path = f"{file_path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(log.to_dict(), handle, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, file_path)
