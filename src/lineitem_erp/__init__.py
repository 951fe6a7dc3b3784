"""Line-item engine: derived grid fields, stock and cheque reconciliation.

Importing the package configures the shared ``lineitem_erp`` logger. Records
go to stderr and to a rotating file under ``.logs`` (override the folder with
``LINEITEM_LOG_DIR`` and the threshold with ``LINEITEM_LOG_LEVEL``).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("LINEITEM_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "lineitem_erp.log"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"lineitem_erp: file logging disabled ({LOG_FILE}: {exc})", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach the package handlers once and apply ``level``."""

    logger = logging.getLogger(__name__)
    logger.setLevel(level or os.environ.get("LINEITEM_LOG_LEVEL", "INFO").upper())
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    file_handler = _file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)
    return logger


log = configure_logging()
log.debug("Logging configured for '%s'", __name__)
