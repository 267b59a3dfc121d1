import json
import logging

from feeledger.core.config import FeeLedgerConfig
from feeledger.core.logging_config import CustomJsonFormatter, setup_logging
from feeledger.core.service import build_service

from feeledger_fakes import CREATOR, DESTINATION_VAULT, ORIGIN_VAULT, FakeVaultDataSource


def _flush_and_reset(logger):
    for handler in logger.handlers:
        handler.flush()
        handler.close()
    logger.handlers = []


def test_json_log_file_contains_structured_fields(tmp_path):
    log_file = tmp_path / "logs" / "feeledger.json"
    logger = setup_logging(
        name="feeledger.test_json",
        log_file=str(log_file),
        level="DEBUG",
        environment="test",
        enable_console=False,
    )

    logger.info("Allocation recorded", extra={"event": "attribution.allocation", "amount": 500})
    _flush_and_reset(logger)

    record = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert record["message"] == "Allocation recorded"
    assert record["event"] == "attribution.allocation"
    assert record["amount"] == 500
    assert record["environment"] == "test"
    assert record["service"] == "feeledger"
    assert record["level"] == "info"
    assert record["timestamp"]
    assert record["source"]["function"] == "test_json_log_file_contains_structured_fields"


def test_setup_logging_replaces_handlers():
    logger = setup_logging(name="feeledger.test_replace")
    setup_logging(name="feeledger.test_replace")
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, CustomJsonFormatter)
    logger.handlers = []


def test_level_from_environment(monkeypatch):
    monkeypatch.setenv("FEELEDGER_LOG_LEVEL", "warning")
    logger = setup_logging(name="feeledger.test_env")
    assert logger.level == logging.WARNING
    logger.handlers = []


def test_unknown_level_falls_back_to_info():
    logger = setup_logging(name="feeledger.test_unknown", level="chatty")
    assert logger.level == logging.INFO
    logger.handlers = []


def test_build_service_configures_package_logger(tmp_path, monkeypatch):
    monkeypatch.delenv("FEELEDGER_LOG_LEVEL", raising=False)
    log_file = tmp_path / "daemon.json"
    config = FeeLedgerConfig(
        creator_address=CREATOR,
        origin_vault=ORIGIN_VAULT,
        destination_vault=DESTINATION_VAULT,
        enable_health_check=False,
        log_level="debug",
        log_file=str(log_file),
    )
    build_service(FakeVaultDataSource(), config=config, configure_logging=True)

    package_logger = logging.getLogger("feeledger")
    try:
        assert package_logger.level == logging.DEBUG
        logging.getLogger("feeledger.core.attribution").info(
            "Cycle finished", extra={"event": "attribution.cycle"}
        )
    finally:
        _flush_and_reset(package_logger)
        package_logger.setLevel(logging.NOTSET)

    record = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert record["name"] == "feeledger.core.attribution"
    assert record["event"] == "attribution.cycle"
