"""Recovery History — one row per finished recovery session, in SQLite.

Database: data/recovery_history.db
"""

import json
import logging
import sqlite3
import threading

import config

log = logging.getLogger(__name__)

_DB_PATH = config.DATA_DIR / "recovery_history.db"
_lock = threading.Lock()

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    state TEXT NOT NULL,
    message TEXT,
    test_mode INTEGER NOT NULL,
    errors INTEGER NOT NULL,
    steps_failed INTEGER NOT NULL,
    warnings TEXT,
    backup_path TEXT
);
"""


def _connect():
    """Return a SQLite connection (creates table on first call)."""
    conn = sqlite3.connect(str(_DB_PATH))
    conn.row_factory = sqlite3.Row
    conn.execute(_CREATE_TABLE)
    return conn


def record_session(session):
    """Store the outcome of a finished RecoverySession.

    Returns:
        The row dict that was written.
    """
    row = {
        "id": session.id,
        "started_at": session.started_at_iso,
        "finished_at": session.finished_at_iso,
        "state": session.state.value,
        "message": session.message,
        "test_mode": 1 if session.test_mode else 0,
        "errors": len(session.diagnostics),
        "steps_failed": sum(1 for s in session.steps if s.status.value == "failed"),
        "warnings": json.dumps(session.warnings),
        "backup_path": session.backup.get("path"),
    }

    try:
        with _lock, _connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO sessions
                   (id, started_at, finished_at, state, message, test_mode,
                    errors, steps_failed, warnings, backup_path)
                   VALUES (:id, :started_at, :finished_at, :state, :message,
                           :test_mode, :errors, :steps_failed, :warnings,
                           :backup_path)""",
                row,
            )
        log.info("Session %s recorded (%s).", session.id, row["state"])
    except Exception as exc:
        log.error("Failed to record session %s: %s", session.id, exc)

    return row


def get_sessions(limit=50):
    """Return the most recent sessions, newest first."""
    try:
        with _connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions ORDER BY started_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
    except Exception as exc:
        log.error("Failed to read recovery history: %s", exc)
        return []

    sessions = []
    for r in rows:
        entry = dict(r)
        entry["test_mode"] = bool(entry["test_mode"])
        entry["warnings"] = json.loads(entry["warnings"] or "[]")
        sessions.append(entry)
    return sessions


def clear_all():
    """Delete all history. Used in testing only."""
    try:
        with _lock, _connect() as conn:
            conn.execute("DELETE FROM sessions")
    except Exception as exc:
        log.error("Failed to clear recovery history: %s", exc)
