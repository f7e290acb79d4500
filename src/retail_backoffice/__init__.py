"""Order fulfillment and payment lifecycle engine for the retail back office.

Importing the package configures the shared ``retail_backoffice`` logger once.
Every module logs through :data:`log`; observers and the service facade rely on
it for the audit trail of committed state transitions.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("RETAIL_BACKOFFICE_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "retail_backoffice.log"
LOG_LEVEL_ENV = "RETAIL_BACKOFFICE_LOG_LEVEL"


def _resolve_level() -> int:
    """Return the level named by ``RETAIL_BACKOFFICE_LOG_LEVEL`` (default INFO)."""

    name = os.environ.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _configure_logging() -> logging.Logger:
    """Attach a rotating audit file and a stderr stream to the package logger."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _resolve_level()
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        audit_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        audit_handler.setLevel(level)
        audit_handler.setFormatter(formatter)
        logger.addHandler(audit_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: audit log unavailable at '{LOG_FILE}', console only: {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'retail_backoffice' package.")
