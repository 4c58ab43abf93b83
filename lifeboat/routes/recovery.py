"""Recovery control API routes.

Endpoints:
    POST /api/start-recovery    → start a recovery session   {testMode}
    POST /api/toggle-test-mode  → enable/disable fault injection {testMode}
    POST /api/fix-error         → remediate a single error    {errorId}
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from lifeboat.errors import CatastrophicFailure, RemediationFailure, SessionConflict

log = logging.getLogger(__name__)

recovery_bp = Blueprint("recovery", __name__)


def _mgr():
    """Retrieve the RecoveryManager from the app context."""
    return current_app.config["RECOVERY_MANAGER"]


def _body():
    """Return the JSON object body, or None if it is not an object."""
    body = request.get_json(silent=True)
    if body is None and not request.data:
        return {}
    return body if isinstance(body, dict) else None


@recovery_bp.route("/api/start-recovery", methods=["POST"])
def start_recovery():
    """Start a recovery session in the background."""
    body = _body()
    if body is None:
        return jsonify({"success": False, "error": "Invalid request data"}), 400

    test_mode = body.get("testMode")
    try:
        session = _mgr().start(test_mode=None if test_mode is None else bool(test_mode))
    except SessionConflict as exc:
        return jsonify({"success": False, "error": str(exc)}), 409

    return jsonify({"success": True, "sessionId": session.id, "state": session.state.value}), 202


@recovery_bp.route("/api/toggle-test-mode", methods=["POST"])
def toggle_test_mode():
    """Turn synthetic fault injection on or off."""
    body = _body()
    if body is None or "testMode" not in body:
        return jsonify({"success": False, "error": "Invalid request data"}), 400

    enabled = _mgr().toggle_test_mode(bool(body["testMode"]))
    return jsonify({"success": True, "testMode": enabled})


@recovery_bp.route("/api/fix-error", methods=["POST"])
def fix_error():
    """Remediate one diagnostic error outside of a full session."""
    body = _body()
    error_id = (body or {}).get("errorId")
    if not error_id:
        return jsonify({"success": False, "error": "No errorId provided."}), 400

    try:
        error = _mgr().fix_error(error_id)
    except KeyError:
        return jsonify({"success": False, "error": "Error not found"}), 404
    except SessionConflict as exc:
        return jsonify({"success": False, "error": str(exc)}), 409
    except (RemediationFailure, CatastrophicFailure) as exc:
        log.warning("Fix for %s failed: %s", error_id, exc)
        return jsonify({"success": False, "error": str(exc)}), 500

    return jsonify({"success": True, "error": error.to_dict()})
