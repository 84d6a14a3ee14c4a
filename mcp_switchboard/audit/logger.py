"""Structured observability recorder.

The proxy logic never writes diagnostics to the console itself; it calls an
injected :class:`Recorder`. :class:`AuditRecorder` turns every event into a
compact JSON line emitted through a dedicated logger, optionally also
written to a rotating file.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# Must not be an ancestor of this module's logger: the event file holds
# JSON lines only.
AUDIT_LOGGER_NAME = "mcp_switchboard.events"

# ── Defaults ─────────────────────────────────────────────────────────────

DEFAULT_AUDIT_FILE = "switchboard-events.jsonl"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5


@runtime_checkable
class Recorder(Protocol):
    """Receives structured proxy events."""

    def record(self, event: str, fields: Mapping[str, Any]) -> None: ...


class NullRecorder:
    """Recorder that drops every event."""

    def record(self, event: str, fields: Mapping[str, Any]) -> None:
        return None


class AuditRecorder:
    """JSON-line event writer.

    Parameters
    ----------
    log_dir:
        When set, events are also appended to ``log_dir/filename`` with
        size-based rotation.
    filename:
        Name of the event log file.
    max_bytes:
        Maximum file size before rotation.
    backup_count:
        Number of rotated files to keep.
    level:
        Level used for the emitted log records.
    """

    def __init__(
        self,
        *,
        log_dir: Optional[str] = None,
        filename: str = DEFAULT_AUDIT_FILE,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        level: int = logging.INFO,
    ) -> None:
        self._level = level
        self._file_handler: Optional[RotatingFileHandler] = None
        self._audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)

        if log_dir is not None:
            os.makedirs(log_dir, exist_ok=True)
            filepath = os.path.join(log_dir, filename)
            self._file_handler = RotatingFileHandler(
                filepath,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            self._file_handler.setLevel(level)
            # Raw JSON lines
            self._file_handler.setFormatter(logging.Formatter("%(message)s"))
            self._audit_logger.addHandler(self._file_handler)
            if self._audit_logger.getEffectiveLevel() > level:
                self._audit_logger.setLevel(level)
            logger.info(
                "Event recorder writing to %s (max %d MB, %d backups)",
                filepath,
                max_bytes // (1024 * 1024),
                backup_count,
            )

    def record(self, event: str, fields: Mapping[str, Any]) -> None:
        """Write one event as a JSON line."""
        data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            **fields,
        }
        try:
            line = json.dumps(data, default=str, separators=(",", ":"))
            self._audit_logger.log(self._level, line)
        except Exception:
            logger.exception("Failed to record event '%s'", event)

    def close(self) -> None:
        """Close the file handler."""
        if self._file_handler is not None:
            self._file_handler.close()
            self._audit_logger.removeHandler(self._file_handler)
            self._file_handler = None


def safe_record(recorder: Recorder, event: str, **fields: Any) -> None:
    """Call *recorder* and never let its failure reach proxy logic."""
    try:
        recorder.record(event, fields)
    except Exception:
        logger.warning("Recorder %r failed on event '%s'", recorder, event, exc_info=True)
