"""Event Broadcaster — fan-out of live recovery updates.

Every subscriber owns a bounded queue.  ``publish()`` never blocks: when a
subscriber's queue is full its oldest event is dropped to make room.  A
closed subscription is removed on the next publish (or immediately on
``close()``).

Events published by the console:
    state-change, diagnostics-update, recovery-update, stats-update,
    log, notification, backup-update
"""

import json
import queue
import threading
from dataclasses import dataclass

import config

EVENT_NAMES = (
    "state-change",
    "diagnostics-update",
    "recovery-update",
    "stats-update",
    "log",
    "notification",
    "backup-update",
)


@dataclass(frozen=True)
class Event:
    name: str
    payload: object

    def encode(self):
        """Render as a server-sent-event frame."""
        return f"event: {self.name}\ndata: {json.dumps(self.payload, default=str)}\n\n"


class Subscription:
    """One consumer's view of the event stream."""

    def __init__(self, broadcaster, maxsize):
        self._broadcaster = broadcaster
        self._queue = queue.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def _offer(self, event):
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout=None):
        """Return the next Event, or None if *timeout* elapses first."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self, timeout=None):
        """Yield events until closed; yields None on every idle *timeout*."""
        while not self.closed:
            yield self.get(timeout=timeout)

    def close(self):
        self.closed = True
        self._broadcaster._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class EventBroadcaster:
    """Publish/subscribe channel with a bounded queue per subscriber."""

    def __init__(self, queue_size=None):
        self._queue_size = queue_size or config.EVENT_QUEUE_SIZE
        self._subscribers = []
        self._lock = threading.Lock()

    def subscribe(self):
        sub = Subscription(self, self._queue_size)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def publish(self, name, payload):
        """Deliver *payload* as event *name* to every open subscriber."""
        event = Event(name, payload)
        # Offered under the lock: every subscriber sees one order.
        with self._lock:
            self._subscribers = [s for s in self._subscribers if not s.closed]
            for sub in self._subscribers:
                sub._offer(event)

    def _remove(self, sub):
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    @property
    def subscriber_count(self):
        with self._lock:
            return sum(1 for s in self._subscribers if not s.closed)
