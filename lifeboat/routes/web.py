"""Browser status page.

Serves a Jinja2 HTML page at the root (/) showing the recovery state,
stats, diagnostics and steps.  ``?format=json`` returns the same data
as ``/api/status``.
"""

from flask import Blueprint, current_app, jsonify, render_template, request

web_bp = Blueprint("web", __name__)


@web_bp.route("/", methods=["GET"])
def dashboard():
    """Render the status dashboard."""
    mgr = current_app.config["RECOVERY_MANAGER"]
    status = mgr.status()
    if request.args.get("format") == "json":
        return jsonify(status)
    return render_template(
        "dashboard.html",
        status=status,
        services=mgr.registry.list(),
    )
