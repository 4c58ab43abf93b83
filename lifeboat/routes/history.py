"""Recovery history and backup API routes.

Endpoints:
    GET /api/history  → finished recovery sessions (query: limit)
    GET /api/backups  → backup manifests, newest first
"""

from flask import Blueprint, current_app, jsonify, request

from lifeboat.services import history

history_bp = Blueprint("history", __name__)


@history_bp.route("/api/history", methods=["GET"])
def list_history():
    """Return recent recovery sessions, newest first."""
    limit = request.args.get("limit", 50, type=int)
    return jsonify(history.get_sessions(limit=limit))


@history_bp.route("/api/backups", methods=["GET"])
def list_backups():
    """Return every backup the console has taken."""
    mgr = current_app.config["RECOVERY_MANAGER"]
    return jsonify(mgr.backups.list())
