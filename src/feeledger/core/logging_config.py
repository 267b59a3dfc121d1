"""
JSON log output for the feeledger daemon.

Modules log through ``logging.getLogger(__name__)`` with structured context in
``extra={"event": ...}``. ``setup_logging`` only decides where those records
go (stdout and an optional rotating file) and renders each one as a JSON
object carrying service, environment and source location.
"""

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

LOG_FORMAT = "%(timestamp)s %(level)s %(name)s %(message)s"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds service, environment, level, UTC timestamp and source location to every record."""

    def __init__(self, environment: str = "production", service_name: str = "feeledger") -> None:
        super().__init__(fmt=LOG_FORMAT)
        self.environment = environment
        self.service_name = service_name

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        # Format fields not supplied by the record arrive as None
        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        if not log_record.get("level"):
            log_record["level"] = record.levelname.lower()
        log_record["environment"] = self.environment
        log_record["service"] = self.service_name
        log_record["source"] = {
            "function": record.funcName,
            "module": record.module,
            "line": record.lineno,
        }


def setup_logging(
    name: str = "feeledger",
    log_file: Optional[str] = None,
    level: Optional[str] = None,
    environment: str = "production",
    enable_console: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Install JSON handlers on the ``name`` logger, replacing any it already has.

    Args:
        name: Logger to configure; the package root captures every module logger
        log_file: Rotating JSON log file (falls back to FEELEDGER_LOG_FILE; none when unset)
        level: Level name (falls back to FEELEDGER_LOG_LEVEL, then INFO)
        environment: Value of the ``environment`` field
        enable_console: Whether to also write to stdout
        max_bytes: File size that triggers rotation
        backup_count: Rotated files kept

    Returns:
        The configured logger
    """
    level_name = (level or os.getenv("FEELEDGER_LOG_LEVEL") or "INFO").upper()
    log_file = log_file or os.getenv("FEELEDGER_LOG_FILE") or None
    numeric_level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)
    logger.handlers = []

    formatter = CustomJsonFormatter(environment=environment, service_name=name.split(".")[0])
    handlers: list[logging.Handler] = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                logging.handlers.RotatingFileHandler(
                    filename=log_file, maxBytes=max_bytes, backupCount=backup_count
                )
            )
        except OSError as exc:
            logger.warning(
                "Could not open log file %s: %s",
                log_file,
                exc,
                extra={"event": "logging.file_handler_failed"},
            )

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
