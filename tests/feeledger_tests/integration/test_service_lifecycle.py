import json
import time

import pytest

from feeledger.core.config import FeeLedgerConfig
from feeledger.core.history import ChainValidationResult
from feeledger.core.service import FeeLedgerService, build_service

from feeledger_fakes import (
    CREATOR,
    DESTINATION_VAULT,
    ORIGIN_VAULT,
    FakeVaultDataSource,
    asset_id,
    no_sleep,
    pool_address,
)

pytestmark = pytest.mark.integration


def _config(tmp_path, **overrides):
    data = {
        "creator_address": CREATOR,
        "origin_vault": ORIGIN_VAULT,
        "destination_vault": DESTINATION_VAULT,
        "poll_interval_seconds": 1,
        "history_file": str(tmp_path / "history.jsonl"),
        "state_file": str(tmp_path / "state.json"),
        "read_timeout": 0,
        "retry": {"max_retries": 0, "base_delay": 0.01, "max_delay": 0.1, "jitter": 0},
        "assets": [
            {"asset_id": asset_id("A"), "label": "TOKENA", "origin_pool": pool_address("A")},
        ],
    }
    data.update(overrides)
    return FeeLedgerConfig.build(data)


def _service(tmp_path, source, **kwargs):
    config = kwargs.pop("config", None) or _config(tmp_path)
    return FeeLedgerService(config, source, sleep=no_sleep, **kwargs)


def test_run_once_attributes_and_reports_status(tmp_path):
    source = FakeVaultDataSource()
    accepted = []
    service = _service(tmp_path, source, on_allocation_accepted=accepted.append)

    service.run_once()
    source.deposit(ORIGIN_VAULT, 500, "sig1", accounts=(pool_address("A"),))
    report = service.run_once()

    assert report.outcome == "ok"
    assert [event.amount for event in accepted] == [500]
    stats = service.get_asset_stats()
    assert stats[0].asset_id == asset_id("A")
    assert stats[0].total_fees == 500
    assert service.get_total_fees() == 500
    assert service.get_orphan_fees() == 0
    assert service.get_history_metadata().entry_count == 1

    status = service.get_status()
    assert status["chain"]["valid"] is True
    assert status["stats"]["cycles"] == 2
    assert status["circuit_breaker"]["state"] == "CLOSED"
    assert status["last_cycle"]["outcome"] == "ok"
    service.stop()


def test_state_survives_restart(tmp_path):
    source = FakeVaultDataSource()
    service = _service(tmp_path, source)
    service.run_once()
    source.deposit(ORIGIN_VAULT, 500, "sig1", accounts=(pool_address("A"),))
    service.run_once()
    service.stop()

    with open(tmp_path / "state.json", encoding="utf-8") as handle:
        saved = json.load(handle)
    assert saved["last_positions"]["origin"] == 101

    source.deposit(ORIGIN_VAULT, 250, "sig2", accounts=(pool_address("A"),))
    restarted = _service(tmp_path, source)
    report = restarted.run_once()

    assert [event.amount for event in report.allocations] == [250]
    assert restarted.get_total_fees() == 750
    metadata = restarted.get_history_metadata()
    assert metadata.entry_count == 2
    assert restarted.get_chain_validation().valid is True
    assert (tmp_path / "state.json.bak.1").exists()
    restarted.stop()


def test_entries_appended_after_last_state_save_are_not_counted_twice(tmp_path):
    source = FakeVaultDataSource()
    service = _service(tmp_path, source)
    service.run_once()
    service.stop()
    stale_state = (tmp_path / "state.json").read_text(encoding="utf-8")

    source.deposit(ORIGIN_VAULT, 500, "sig1", accounts=(pool_address("A"),))
    service = _service(tmp_path, source)
    service.run_once()
    service.stop()
    # The process died after the history append but before the state save
    (tmp_path / "state.json").write_text(stale_state, encoding="utf-8")

    restarted = _service(tmp_path, source)
    report = restarted.run_once()

    assert report.allocations == []
    assert restarted.get_total_fees() == 500
    assert restarted.get_orphan_fees() == 0
    assert restarted.get_asset_stats()[0].total_fees == 500
    assert restarted.get_history_metadata().entry_count == 1
    restarted.stop()


def test_lost_state_file_is_rebuilt_from_history(tmp_path):
    source = FakeVaultDataSource()
    service = _service(tmp_path, source)
    service.run_once()
    source.deposit(ORIGIN_VAULT, 500, "sig1", accounts=(pool_address("A"),))
    source.deposit(ORIGIN_VAULT, 70, "sig2")
    service.run_once()
    service.stop()
    (tmp_path / "state.json").unlink()

    restarted = _service(tmp_path, source)
    report = restarted.run_once()

    assert report.allocations == []
    assert restarted.get_total_fees() == 570
    assert restarted.get_orphan_fees() == 0
    assert restarted.get_history_metadata().entry_count == 2
    restarted.stop()


def test_creator_pools_are_tracked_from_startup(tmp_path):
    source = FakeVaultDataSource()
    source.creator_pools = [{"asset_id": asset_id("B"), "pool": pool_address("B"), "reserve_value": 900}]
    source.labels[asset_id("B")] = "TOKENB"
    service = _service(tmp_path, source)

    service.run_once()
    source.deposit(ORIGIN_VAULT, 120, "sig1", accounts=(pool_address("B"),))
    service.run_once()

    stats = {row.asset_id: row for row in service.get_asset_stats()}
    assert set(stats) == {asset_id("A"), asset_id("B")}
    assert stats[asset_id("B")].label == "TOKENB"
    assert stats[asset_id("B")].total_fees == 120
    service.stop()


def test_startup_enumeration_can_be_disabled(tmp_path):
    source = FakeVaultDataSource()
    source.creator_pools = [{"asset_id": asset_id("B"), "pool": pool_address("B")}]
    service = _service(tmp_path, source, config=_config(tmp_path, discover_on_start=False))

    service.run_once()

    assert source.calls["enumerate_creator_pools"] == 0
    assert [row.asset_id for row in service.get_asset_stats()] == [asset_id("A")]
    service.stop()


def test_register_asset_at_runtime(tmp_path):
    service = _service(tmp_path, FakeVaultDataSource())
    assert service.register_asset(
        {"asset_id": asset_id("B"), "label": "TOKENB", "origin_pool": pool_address("B")}
    ) is True
    assert service.register_asset(
        {"asset_id": asset_id("B"), "origin_pool": pool_address("B")}
    ) is False
    assert {row.asset_id for row in service.get_asset_stats()} == {asset_id("A"), asset_id("B")}


def _corrupt_history(tmp_path):
    source = FakeVaultDataSource()
    service = _service(tmp_path, source)
    service.run_once()
    source.deposit(ORIGIN_VAULT, 500, "sig1", accounts=(pool_address("A"),))
    service.run_once()
    service.stop()

    path = tmp_path / "history.jsonl"
    lines = path.read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[1])
    record["data"]["amount"] = 5
    lines[1] = json.dumps(record)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return source


def test_degraded_policy_keeps_polling_after_failed_verification(tmp_path):
    source = _corrupt_history(tmp_path)
    validations = []
    service = _service(tmp_path, source, on_chain_validated=validations.append)

    report = service.run_once()

    assert report.skipped is False
    assert isinstance(validations[0], ChainValidationResult)
    assert validations[0].valid is False
    assert service.get_status()["chain"]["corrupted_at_sequence"] == 1
    assert service.get_status()["halted"] is False
    service.stop()


def test_halt_policy_refuses_to_poll(tmp_path):
    source = _corrupt_history(tmp_path)
    service = _service(tmp_path, source, config=_config(tmp_path, integrity_policy="halt"))

    assert service.start() is False
    assert service.is_running() is False
    report = service.run_once()
    assert report.skip_reason == "integrity_halt"
    assert service.get_status()["halted"] is True
    service.stop()


def test_start_and_stop_background_polling(tmp_path):
    source = FakeVaultDataSource()
    service = _service(tmp_path, source)

    assert service.start() is True
    assert service.start() is True
    deadline = time.time() + 5
    while service.get_stats()["cycles"] < 1 and time.time() < deadline:
        time.sleep(0.05)
    assert service.is_running() is True
    service.stop()

    assert service.is_running() is False
    assert service.get_stats()["cycles"] >= 1
    assert (tmp_path / "state.json").exists()


def test_unhealthy_upstream_does_not_abort_start(tmp_path):
    source = FakeVaultDataSource()
    source.failing.add("current_position")
    service = _service(tmp_path, source)

    assert service.start() is True
    service.stop()


def test_build_service_loads_config_from_file(tmp_path):
    path = tmp_path / "feeledger.yaml"
    path.write_text(
        "\n".join(
            [
                f"creator_address: {CREATOR}",
                f"origin_vault: {ORIGIN_VAULT}",
                f"destination_vault: {DESTINATION_VAULT}",
                "enable_health_check: false",
            ]
        ),
        encoding="utf-8",
    )
    service = build_service(FakeVaultDataSource(), config_path=str(path))
    assert service.ledger is None
    assert service.run_once().outcome == "ok"
    assert service.get_chain_validation().valid is True
    assert service.get_history_metadata() is None
