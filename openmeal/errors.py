"""
Exception types and error logging for openmeal.

Validation errors reach the immediate caller. Analysis failures are absorbed
by the pipeline into record state. The CLI logs full stack traces for
debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class OpenMealError(Exception):
    """Base class for all openmeal errors."""


class ValidationError(OpenMealError, ValueError):
    """Missing required fields, malformed ids, or an unknown time range."""


class NotFoundError(OpenMealError, KeyError):
    """A record id that is not in the store."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else "not found"


class BlobCopyError(OpenMealError, OSError):
    """An image could not be read or copied into managed storage."""


class StoreWriteError(OpenMealError, OSError):
    """A record or index file could not be written."""


class AnalysisFailure(OpenMealError):
    """The inference collaborator failed or returned something unusable."""


class SyncError(OpenMealError):
    """The external health datastore rejected or failed a write."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting OPENMEAL_STORE_PATH."""
    store = os.environ.get("OPENMEAL_STORE_PATH")
    if store:
        return Path(store) / "openmeal-errors.log"
    return Path.home() / ".openmeal" / "openmeal-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Append a crash report for ``exc`` to the store's error log.

    The CLI shows users a one-line message; the traceback goes here. The
    log is owner-only (0600) since meal comments can end up in messages.
    Failing to write the log is not itself an error.

    Returns:
        Path of the error log, whether or not the write succeeded
    """
    log_path = _error_log_path()
    header = f"[{datetime.now(timezone.utc).isoformat()}]"
    if context:
        header += f" {context}"
    report = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    entry = f"\n{'=' * 60}\n{header}\n{report}"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        pass
    return log_path
