"""Backup Store — snapshot configuration files before recovery.

Each backup is a directory ``backup-<timestamp>/`` under the backup root,
holding copies of the configured files (relative paths preserved) and a
``backup-info.json`` manifest::

    {
      "timestamp": "...",
      "files": [...copied...],
      "missing": [...skipped...],
      "recovery": {"state": ..., "diagnosticResults": ..., "stats": ...}
    }

Missing source files are skipped, never fatal.
"""

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

log = logging.getLogger(__name__)

MANIFEST = "backup-info.json"
PREFIX = "backup-"


class BackupStore:
    """Create, list and restore file backups."""

    def __init__(self, backup_dir, source_root, files):
        self.backup_dir = Path(backup_dir)
        self.source_root = Path(source_root)
        self.files = list(files)

    def create(self, recovery=None):
        """Copy the configured files into a new timestamped backup.

        Args:
            recovery: JSON-safe snapshot of the recovery session, stored in
                the manifest.

        Returns:
            Path of the backup directory.
        """
        log.info("Creating system backups")
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        target = self.backup_dir / f"{PREFIX}{timestamp}"
        target.mkdir(parents=True, exist_ok=False)

        copied, missing = [], []
        for rel in self.files:
            source = self.source_root / rel
            if not source.is_file():
                log.warning("Backup file not found: %s", rel)
                missing.append(rel)
                continue
            try:
                dest = target / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
                copied.append(rel)
                log.info("Backed up %s", rel)
            except OSError as exc:
                log.error("Error backing up %s: %s", rel, exc)
                missing.append(rel)

        manifest = {
            "timestamp": timestamp,
            "files": copied,
            "missing": missing,
            "recovery": recovery or {},
        }
        with open(target / MANIFEST, "w", encoding="utf-8") as fh:
            json.dump(manifest, fh, indent=2, default=str)

        log.info("System backup created at %s", target)
        return target

    def latest(self):
        """Return the newest backup directory, or None."""
        if not self.backup_dir.is_dir():
            return None
        dirs = sorted(
            p for p in self.backup_dir.iterdir()
            if p.is_dir() and p.name.startswith(PREFIX) and (p / MANIFEST).is_file()
        )
        return dirs[-1] if dirs else None

    def restore(self, path=None):
        """Copy files from *path* (default: the newest backup) back in place.

        Returns:
            List of restored relative paths.

        Raises:
            FileNotFoundError: there is no backup, or its manifest is missing.
        """
        path = Path(path) if path else self.latest()
        if path is None:
            raise FileNotFoundError(f"No backups found in {self.backup_dir}")

        log.info("Restoring from backup: %s", path)
        with open(path / MANIFEST, "r", encoding="utf-8") as fh:
            manifest = json.load(fh)

        restored = []
        for rel in manifest.get("files", []):
            source = path / rel
            if not source.is_file():
                log.warning("Backup file not found: %s", rel)
                continue
            try:
                dest = self.source_root / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
                restored.append(rel)
                log.info("Restored %s", rel)
            except OSError as exc:
                log.error("Error restoring %s: %s", rel, exc)

        log.info("System restored from backup")
        return restored

    def list(self):
        """Return manifests of every backup, newest first."""
        if not self.backup_dir.is_dir():
            return []
        backups = []
        for path in sorted(self.backup_dir.iterdir(), reverse=True):
            if not (path.is_dir() and path.name.startswith(PREFIX)):
                continue
            try:
                with open(path / MANIFEST, "r", encoding="utf-8") as fh:
                    manifest = json.load(fh)
            except (OSError, ValueError) as exc:
                log.warning("Unreadable backup manifest in %s: %s", path, exc)
                continue
            backups.append({
                "path": str(path),
                "timestamp": manifest.get("timestamp"),
                "files": manifest.get("files", []),
                "missing": manifest.get("missing", []),
                "state": manifest.get("recovery", {}).get("state"),
            })
        return backups
