"""
Logging configuration for openmeal.

Suppress verbose library output by default for better UX.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "openmeal-ops.log"

# Third-party loggers that are chatty at INFO
_LIBRARY_LOGGERS = ("httpx", "httpcore", "google_genai", "google.auth")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    This silences:
    - HTTP request lines from httpx/httpcore
    - google-genai client notices
    - Library warnings (deprecation, etc.)

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        # Suppress Python warnings (including deprecation warnings)
        warnings.filterwarnings("ignore")

        for name in _LIBRARY_LOGGERS:
            logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    # Re-enable warnings
    warnings.filterwarnings("default")

    # Configure root logger for debug output
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("openmeal",) + _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> RotatingFileHandler:
    """Configure a persistent operations log for a meal store.

    Writes to {store_path}/openmeal-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    store_path = Path(store_path)
    store_path.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(store_path / OPS_LOG_FILENAME),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    openmeal_logger = logging.getLogger("openmeal")
    openmeal_logger.addHandler(handler)
    # Ensure openmeal logger allows INFO through even in quiet mode
    if openmeal_logger.level == logging.NOTSET or openmeal_logger.level > logging.INFO:
        openmeal_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler: logging.Handler) -> None:
    """Detach and close a handler returned by configure_ops_log."""
    logging.getLogger("openmeal").removeHandler(handler)
    handler.close()
