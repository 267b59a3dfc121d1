"""
Tracker state persistence

The engine's cursors, orphan/unattributed counters and tracked-asset
statistics are written as one JSON document between runs. Writes go to a
temporary file that is fsynced and then atomically renamed.

A numbered backup is taken once per start, before loading. On load the
primary file is validated, and if it is unreadable or fails the schema the
backups are tried newest first.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from feeledger.core.constants import STATE_BACKUP_COUNT, TRACKER_STATE_VERSION
from feeledger.core.exceptions import StateFileError
from feeledger.core.models import now_ms

logger = logging.getLogger(__name__)


class VaultCursors(BaseModel):
    origin: Optional[int] = None
    destination: Optional[int] = None


class TrackedAssetState(BaseModel):
    model_config = ConfigDict(extra="allow")

    asset_id: str = Field(min_length=1)
    label: str = "UNKNOWN"
    origin_pool: str = ""
    destination_pool: str = ""
    migrated: bool = False
    total_fees: int = Field(default=0, ge=0)
    fee_count: int = Field(default=0, ge=0)
    last_fee_timestamp: int = 0


class TrackerState(BaseModel):
    """Schema of the persisted tracker state document."""

    model_config = ConfigDict(extra="ignore")

    version: int = TRACKER_STATE_VERSION
    saved_at: int = Field(default_factory=now_ms)
    last_positions: VaultCursors = Field(default_factory=VaultCursors)
    last_balances: VaultCursors = Field(default_factory=VaultCursors)
    carried_deltas: dict[str, int] = Field(default_factory=dict)
    orphan_fees: int = Field(default=0, ge=0)
    unattributed_fees: int = Field(default=0, ge=0)
    # None means unknown: the history log is then assumed to match the state
    ledger_sequence: Optional[int] = Field(default=None, ge=0)
    assets: list[TrackedAssetState] = Field(default_factory=list)

    @classmethod
    def from_engine_state(cls, state: dict[str, Any]) -> "TrackerState":
        return cls.model_validate(state)

    def to_engine_state(self) -> dict[str, Any]:
        return self.model_dump(exclude={"version", "saved_at"})


def _backup_path(file_path: str, index: int) -> str:
    return f"{file_path}.bak.{index}"


def backup_tracker_state(file_path: str, max_backups: int = STATE_BACKUP_COUNT) -> str | None:
    """
    Shift ``file.bak.N`` up by one and copy the current file to ``file.bak.1``.

    Returns the new backup path, or None when there is nothing to back up.
    """
    if max_backups <= 0 or not os.path.exists(file_path):
        return None
    backup = _backup_path(file_path, 1)
    try:
        oldest = _backup_path(file_path, max_backups)
        if os.path.exists(oldest):
            os.remove(oldest)
        for index in range(max_backups - 1, 0, -1):
            source = _backup_path(file_path, index)
            if os.path.exists(source):
                os.replace(source, _backup_path(file_path, index + 1))
        shutil.copy2(file_path, backup)
    except OSError as exc:
        raise StateFileError(f"Failed to back up tracker state {file_path}: {exc}", {"path": file_path}) from exc
    return backup


def save_tracker_state(file_path: str, state: TrackerState) -> None:
    """
    Persist ``state`` atomically.

    Raises:
        StateFileError: If the document cannot be written
    """
    tmp_path = f"{file_path}.tmp"
    try:
        directory = os.path.dirname(os.path.abspath(file_path))
        os.makedirs(directory, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(state.model_dump_json(indent=2))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, file_path)
    except OSError as exc:
        raise StateFileError(
            f"Failed to save tracker state to {file_path}: {exc}", {"path": file_path}
        ) from exc

    logger.debug(
        "Tracker state saved",
        extra={"event": "state.saved", "path": file_path, "assets": len(state.assets)},
    )


def _read_state(path: str) -> TrackerState:
    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    state = TrackerState.model_validate(data)
    if state.version > TRACKER_STATE_VERSION:
        raise ValueError(f"Unsupported tracker state version {state.version}")
    return state


def load_tracker_state(
    file_path: str,
    max_backups: int = STATE_BACKUP_COUNT,
) -> TrackerState | None:
    """
    Load the newest valid state document.

    Returns None when neither the primary file nor any backup exists.

    Raises:
        StateFileError: If files exist but none of them is valid
    """
    candidates = [file_path] + [_backup_path(file_path, index) for index in range(1, max_backups + 1)]
    existing = [path for path in candidates if os.path.exists(path)]
    if not existing:
        return None

    for path in existing:
        try:
            state = _read_state(path)
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning(
                "Ignoring unreadable tracker state %s: %s",
                path,
                exc,
                extra={"event": "state.invalid", "path": path},
            )
            continue
        if path != file_path:
            logger.warning(
                "Recovered tracker state from backup %s",
                path,
                extra={"event": "state.recovered_from_backup", "path": path},
            )
        return state

    raise StateFileError(
        f"No valid tracker state found for {file_path}",
        {"path": file_path, "checked": existing},
    )
