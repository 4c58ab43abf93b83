"""Status endpoints for the recovery console.

Endpoints:
    GET /api/status         → current session state, stats, diagnostics, steps
    GET /api/health         → console liveness
    GET /api/logs           → recent log lines (query: limit)
    GET /api/notifications  → notifications sent so far
"""

import time

from flask import Blueprint, current_app, jsonify, request

import config

status_bp = Blueprint("status", __name__)

# Recorded at module load for uptime.
_start_time = time.time()


def _mgr():
    """Retrieve the RecoveryManager from the app context."""
    return current_app.config["RECOVERY_MANAGER"]


@status_bp.route("/api/status", methods=["GET"])
def status():
    """Return the latest known recovery state."""
    return jsonify(_mgr().status())


@status_bp.route("/api/health", methods=["GET"])
def health():
    """Return console health status."""
    mgr = _mgr()
    session = mgr.session
    return jsonify(
        {
            "status": "operational",
            "uptime_seconds": round(time.time() - _start_time, 1),
            "version": config.VERSION,
            "services_total": len(mgr.registry),
            "recovery_active": bool(session and session.is_active),
        }
    )


@status_bp.route("/api/logs", methods=["GET"])
def logs():
    """Return the most recent log lines, oldest first."""
    limit = request.args.get("limit", 100, type=int)
    feed = current_app.config.get("LOG_FEED")
    return jsonify(feed.recent(limit) if feed else [])


@status_bp.route("/api/notifications", methods=["GET"])
def notifications():
    """Return every notification kept in memory."""
    return jsonify(_mgr().notifier.all())
