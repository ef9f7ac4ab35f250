"""Process-wide logging setup for the CLI entry point."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_HANDLER_NAME = "transcribe_queue"


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Install console and optional rotating file handlers on the root logger.

    Calling it again replaces the handlers installed by a previous call
    instead of stacking duplicates.
    """

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if (handler.get_name() or "").startswith(_HANDLER_NAME):
            root_logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name(f"{_HANDLER_NAME}.console")
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        # 5MB per file, 2 backups
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=2,
            encoding="utf-8",
        )
        file_handler.set_name(f"{_HANDLER_NAME}.file")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    root_logger.setLevel(level.upper())
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)
