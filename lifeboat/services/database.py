"""Database connectivity checks and schema migration.

``ping()`` performs a ``SELECT 1`` round-trip.  Supported URLs:

    sqlite:///relative/path.db   sqlite:////absolute/path.db
    postgres://...               postgresql://...
"""

import logging
import shlex
import sqlite3
import subprocess
from urllib.parse import urlparse

import config
from lifeboat.errors import DatabaseUnavailable, MigrationFailed

log = logging.getLogger(__name__)


def _sqlite_path(url):
    # sqlite:///data.db → data.db, sqlite:////tmp/data.db → /tmp/data.db
    path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else ""
    if not path:
        raise DatabaseUnavailable(f"Malformed SQLite URL: {url}")
    return path


def ping(url, timeout=None):
    """Run ``SELECT 1`` against *url*.

    Raises:
        DatabaseUnavailable: no URL, unsupported scheme, or the round-trip
            failed.
    """
    if not url:
        raise DatabaseUnavailable("DATABASE_URL is not set.")

    timeout = config.DATABASE_TIMEOUT if timeout is None else timeout
    scheme = urlparse(url).scheme

    if scheme == "sqlite":
        path = _sqlite_path(url)
        try:
            # mode=rw: a missing file is an outage, not a new empty database.
            conn = sqlite3.connect(f"file:{path}?mode=rw", uri=True, timeout=timeout)
            try:
                conn.execute("SELECT 1").fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise DatabaseUnavailable(f"SQLite round-trip failed: {exc}") from exc
        return

    if scheme in ("postgres", "postgresql"):
        import psycopg2

        try:
            conn = psycopg2.connect(url, connect_timeout=int(timeout))
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
            finally:
                conn.close()
        except psycopg2.Error as exc:
            raise DatabaseUnavailable(f"PostgreSQL round-trip failed: {exc}") from exc
        return

    raise DatabaseUnavailable(f"Unsupported database scheme: {scheme or '(none)'}")


def is_reachable(url, timeout=None):
    """Return True if ``ping(url)`` succeeds."""
    try:
        ping(url, timeout=timeout)
        return True
    except DatabaseUnavailable as exc:
        log.debug("Database not reachable: %s", exc)
        return False


def migrate(command, cwd=None, timeout=120):
    """Run the schema migration *command* and return its stdout.

    Raises:
        MigrationFailed: the command is missing, exits non-zero or times out.
    """
    argv = shlex.split(command) if isinstance(command, str) else list(command)
    if not argv:
        raise MigrationFailed("No migration command configured.")

    log.info("Running migration: %s", " ".join(argv))
    try:
        result = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise MigrationFailed(f"Migration could not run: {exc}") from exc

    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip().splitlines()
        raise MigrationFailed(
            f"Migration exited with {result.returncode}: {detail[-1] if detail else 'no output'}"
        )
    return result.stdout
