"""Activity Log — recovery log lines on disk and on the event stream.

Two handlers are attached to the ``lifeboat`` logger:

  - DailyFileHandler appends to ``recovery-YYYY-MM-DD.log`` (one file per
    UTC calendar day), lines formatted ``[<iso-timestamp>] [<LEVEL>] <message>``.
  - BroadcastHandler keeps the most recent lines in memory and publishes
    each one as a ``log`` event.
"""

import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

LOGGER_NAME = "lifeboat"
MAX_RECENT = 1000


def _timestamp(record):
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat(
        timespec="milliseconds"
    )


def format_line(record):
    """Return the on-disk representation of *record* (no newline)."""
    return f"[{_timestamp(record)}] [{record.levelname}] {record.getMessage()}"


class DailyFileHandler(logging.Handler):
    """Append log lines to one file per calendar day."""

    def __init__(self, logs_dir, prefix="recovery"):
        super().__init__()
        self.logs_dir = Path(logs_dir)
        self.prefix = prefix
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, record):
        day = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d")
        return self.logs_dir / f"{self.prefix}-{day}.log"

    def emit(self, record):
        try:
            with open(self.path_for(record), "a", encoding="utf-8") as fh:
                fh.write(format_line(record) + "\n")
        except Exception:
            self.handleError(record)


class BroadcastHandler(logging.Handler):
    """Keep recent log lines and publish them as ``log`` events."""

    def __init__(self, broadcaster, maxlen=MAX_RECENT):
        super().__init__()
        self._broadcaster = broadcaster
        self._recent = deque(maxlen=maxlen)

    def emit(self, record):
        try:
            entry = {
                "level": record.levelname.lower(),
                "time": _timestamp(record),
                "message": record.getMessage(),
            }
            self._recent.append(entry)
            self._broadcaster.publish("log", {"level": entry["level"], "message": entry["message"]})
        except Exception:
            self.handleError(record)

    def recent(self, limit=100):
        """Return up to *limit* of the newest entries, oldest first."""
        entries = list(self._recent)
        return entries[-limit:] if limit else entries


def install(broadcaster, logs_dir, level=logging.INFO):
    """Attach fresh activity handlers to the ``lifeboat`` logger.

    Handlers from an earlier call are detached first so that building
    several apps (tests) never duplicates lines.

    Returns:
        The BroadcastHandler, for reading recent lines.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if isinstance(handler, (DailyFileHandler, BroadcastHandler)):
            logger.removeHandler(handler)
            handler.close()

    file_handler = DailyFileHandler(logs_dir)
    broadcast_handler = BroadcastHandler(broadcaster)
    for handler in (file_handler, broadcast_handler):
        handler.setLevel(level)
        logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    return broadcast_handler
