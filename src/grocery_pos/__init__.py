"""Grocery point-of-sale ledger, checkout engine and reporting.

Importing the package configures the shared ``grocery_pos`` logger that every
module logs through. The log directory and level can be overridden with the
``GROCERY_POS_LOG_DIR`` and ``GROCERY_POS_LOG_LEVEL`` environment variables.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("GROCERY_POS_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "grocery_pos.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _resolve_level(default: int = logging.INFO) -> int:
    """Map ``GROCERY_POS_LOG_LEVEL`` onto a logging level, ignoring bad values."""

    name = os.environ.get("GROCERY_POS_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


def _build_file_handler(formatter: logging.Formatter, level: int) -> logging.Handler | None:
    """Return a rotating handler for ``LOG_FILE`` or ``None`` if it is unwritable."""

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the file and console handlers once per process.

    The file receives the full audit trail of mutations; the console only
    shows warnings and errors so CLI output stays readable.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _resolve_level()
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _build_file_handler(formatter, level)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(max(level, logging.WARNING))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'grocery_pos' package (version %s).", __version__)
