"""Server-sent event stream.

Endpoint:
    GET /events → ``text/event-stream`` of broadcaster events

The subscription is opened when the client starts reading and closed when
the response is closed (client disconnect).  Idle periods are filled with
keep-alive comments so proxies do not cut the connection.
"""

from flask import Blueprint, Response, current_app

import config

events_bp = Blueprint("events", __name__)

RETRY_MS = 10000


def stream(broadcaster, keepalive):
    """Yield SSE frames from a fresh subscription until closed."""
    with broadcaster.subscribe() as sub:
        yield f"retry: {RETRY_MS}\n\n"
        for event in sub.events(timeout=keepalive):
            yield event.encode() if event is not None else ": keep-alive\n\n"


@events_bp.route("/events", methods=["GET"])
def events():
    """Open a long-lived event stream."""
    broadcaster = current_app.config["RECOVERY_MANAGER"].broadcaster
    return Response(
        stream(broadcaster, config.EVENT_KEEPALIVE),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
