"""POS ledger reconciliation and validation engine.

Importing the package configures the shared ``log`` logger: a rotating file
under ``.logs/`` at the project root receives INFO and above, while the
console only shows warnings unless :func:`set_console_level` lowers it.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "pos_ledger.log"
CONSOLE_HANDLER_NAME = "pos_ledger.console"


def _configure_logging() -> logging.Logger:
    """Attach the rotating file handler and the console handler once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize ledger log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name(CONSOLE_HANDLER_NAME)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def set_console_level(level: int) -> None:
    """Change the threshold of the console handler only."""

    for handler in log.handlers:
        if handler.get_name() == CONSOLE_HANDLER_NAME:
            handler.setLevel(level)


log = _configure_logging()
log.info("Logger initialized for the 'pos_ledger' package.")
