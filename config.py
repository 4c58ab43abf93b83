"""Lifeboat configuration — loads from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("LIFEBOAT_DATA_DIR", str(BASE_DIR / "data")))
LOGS_DIR = Path(os.getenv("LIFEBOAT_LOGS_DIR", str(BASE_DIR / "recovery-logs")))
BACKUP_DIR = Path(os.getenv("LIFEBOAT_BACKUP_DIR", str(BASE_DIR / "backups")))
REGISTRY_PATH = Path(os.getenv("LIFEBOAT_REGISTRY", str(BASE_DIR / "registry.yaml")))

# Files listed in the registry's backup_files are resolved against this root.
PROJECT_ROOT = Path(os.getenv("LIFEBOAT_PROJECT_ROOT", str(BASE_DIR)))

# Ensure runtime directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)
BACKUP_DIR.mkdir(parents=True, exist_ok=True)

# Recovery console API
PORT = int(os.getenv("LIFEBOAT_PORT", "7777"))
HOST = os.getenv("LIFEBOAT_HOST", "127.0.0.1")
LOG_LEVEL = os.getenv("LIFEBOAT_LOG_LEVEL", "INFO")

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "")
MIGRATION_COMMAND = os.getenv("LIFEBOAT_MIGRATION_COMMAND", "")
DATABASE_TIMEOUT = int(os.getenv("LIFEBOAT_DATABASE_TIMEOUT", "5"))

# Port probing
PROBE_HOST = os.getenv("LIFEBOAT_PROBE_HOST", "127.0.0.1")
PROBE_TIMEOUT = float(os.getenv("LIFEBOAT_PROBE_TIMEOUT", "1.0"))
PORT_RELEASE_TIMEOUT = float(os.getenv("LIFEBOAT_PORT_RELEASE_TIMEOUT", "5"))

# Recovery
SPAWN_GRACE_SECONDS = float(os.getenv("LIFEBOAT_SPAWN_GRACE_SECONDS", "2"))
SERVICE_QUORUM = float(os.getenv("LIFEBOAT_SERVICE_QUORUM", "0.8"))
RESYNC_STAGE_DELAY = float(os.getenv("LIFEBOAT_RESYNC_STAGE_DELAY", "1"))
STATS_INTERVAL = int(os.getenv("LIFEBOAT_STATS_INTERVAL", "5"))

# Test mode & fault injection
TEST_MODE = os.getenv("LIFEBOAT_TEST_MODE", "false").lower() in ("1", "true", "yes")
FAULT_INJECTORS = [
    name.strip()
    for name in os.getenv("LIFEBOAT_FAULT_INJECTORS", "dependency-sync-lag").split(",")
    if name.strip()
]

# Event stream
EVENT_QUEUE_SIZE = int(os.getenv("LIFEBOAT_EVENT_QUEUE_SIZE", "100"))
EVENT_KEEPALIVE = int(os.getenv("LIFEBOAT_EVENT_KEEPALIVE", "15"))

# Notifications
NOTIFY_URL = os.getenv("LIFEBOAT_NOTIFY_URL", "")

# Version
VERSION = "1.0.0"
