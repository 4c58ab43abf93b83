"""Notifier — stakeholder notifications for recovery milestones.

Every notification is kept in memory, published as a ``notification``
event and, when a webhook URL is configured, POSTed there.  A webhook
that is down never affects the recovery run.
"""

import logging
import threading
from collections import deque
from datetime import datetime

import requests

log = logging.getLogger(__name__)


class Notifier:
    """Send and remember notifications."""

    def __init__(self, broadcaster, webhook_url="", maxlen=100):
        self._broadcaster = broadcaster
        self._webhook_url = webhook_url
        self._items = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def notify(self, message, kind="system"):
        """Record and publish *message*.  Returns the notification dict."""
        notification = {
            "type": kind,
            "message": message,
            "time": datetime.now().strftime("%H:%M"),
        }
        with self._lock:
            self._items.append(notification)

        self._broadcaster.publish("notification", notification)
        log.info("Notification sent: %s", message)

        if self._webhook_url:
            self._post(notification)
        return notification

    def all(self):
        with self._lock:
            return list(self._items)

    def _post(self, notification):
        try:
            requests.post(
                self._webhook_url,
                json={"source": "lifeboat", **notification},
                timeout=5,
            )
        except requests.RequestException as exc:
            log.warning("Could not deliver notification webhook: %s", exc)
