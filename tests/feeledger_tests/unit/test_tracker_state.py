import json
import os

import pytest

from feeledger.core.exceptions import StateFileError
from feeledger.core.tracker_state import (
    TrackerState,
    backup_tracker_state,
    load_tracker_state,
    save_tracker_state,
)

from feeledger_fakes import tracked


def _state(orphan_fees=0):
    return TrackerState.from_engine_state(
        {
            "last_positions": {"origin": 120, "destination": 80},
            "last_balances": {"origin": 5000, "destination": None},
            "carried_deltas": {"origin": 0, "destination": 15},
            "orphan_fees": orphan_fees,
            "unattributed_fees": 40,
            "assets": [tracked("A", total_fees=300, fee_count=2).to_dict()],
        }
    )


def test_save_and_load_round_trip(tmp_path):
    path = str(tmp_path / "state" / "tracker.json")
    save_tracker_state(path, _state(orphan_fees=7))

    loaded = load_tracker_state(path)
    assert loaded.last_positions.origin == 120
    assert loaded.last_balances.destination is None
    assert loaded.orphan_fees == 7

    engine_state = loaded.to_engine_state()
    assert engine_state["assets"][0]["total_fees"] == 300
    assert engine_state["assets"][0]["recent_origin_activity"] == 0
    assert "version" not in engine_state
    assert not os.path.exists(path + ".tmp")


def test_ledger_sequence_is_optional(tmp_path):
    path = str(tmp_path / "tracker.json")
    assert _state().ledger_sequence is None

    state = _state()
    state.ledger_sequence = 4
    save_tracker_state(path, state)
    assert load_tracker_state(path).to_engine_state()["ledger_sequence"] == 4


def test_missing_state_returns_none(tmp_path):
    assert load_tracker_state(str(tmp_path / "absent.json")) is None


def test_backups_rotate_and_keep_three(tmp_path):
    path = str(tmp_path / "tracker.json")
    for orphan in range(5):
        save_tracker_state(path, _state(orphan_fees=orphan))
        backup_tracker_state(path)

    assert os.path.exists(path + ".bak.1")
    assert os.path.exists(path + ".bak.3")
    assert not os.path.exists(path + ".bak.4")
    with open(path + ".bak.3", encoding="utf-8") as handle:
        assert json.load(handle)["orphan_fees"] == 2


def test_backup_without_state_is_noop(tmp_path):
    assert backup_tracker_state(str(tmp_path / "absent.json")) is None


def test_invalid_primary_falls_back_to_backup(tmp_path):
    path = str(tmp_path / "tracker.json")
    save_tracker_state(path, _state(orphan_fees=11))
    backup_tracker_state(path)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write('{"orphan_fees": -5}')

    loaded = load_tracker_state(path)
    assert loaded.orphan_fees == 11


def test_all_files_invalid_raises(tmp_path):
    path = tmp_path / "tracker.json"
    path.write_text("{broken", encoding="utf-8")
    with pytest.raises(StateFileError):
        load_tracker_state(str(path))


def test_newer_version_rejected(tmp_path):
    path = tmp_path / "tracker.json"
    path.write_text(json.dumps({"version": 99}), encoding="utf-8")
    with pytest.raises(StateFileError):
        load_tracker_state(str(path))
