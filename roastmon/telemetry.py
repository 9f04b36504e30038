"""
Fan-out of live link status and temperature readings to connected viewers.

The hub keeps the latest status and reading so that a viewer joining
mid-roast sees the current values immediately instead of a stale default.
Delivery is best-effort: a subscriber that raises is logged and skipped.
"""

import logging
import threading

from roastmon.metrics import TELEMETRY_SUBSCRIBERS

STATUS_EVENT = "portStatus"
READING_EVENT = "temperatureUpdate"
PORTS_EVENT = "portsList"

telemetry_logger = logging.getLogger("roastmon.telemetry")


class Subscription:
    """Cancellation handle returned by TelemetryHub.subscribe()."""

    def __init__(self, hub, callback):
        self._hub = hub
        self.callback = callback
        self.active = True

    def cancel(self):
        if self.active:
            self.active = False
            self._hub._remove(self)


class TelemetryHub:
    """Publish/subscribe registry for live telemetry."""

    def __init__(self, initial_status=None):
        self._lock = threading.RLock()
        self._subscribers: list[Subscription] = []
        self.latest_status = dict(initial_status or {"status": "disconnected"})
        self.latest_reading = None

    def subscribe(self, callback) -> Subscription:
        """
        Register a viewer callback.

        The callback receives ``(event, payload)``. The cached status, and the
        cached reading when one exists, are delivered to this subscriber only
        before the handle is returned.
        """
        subscription = Subscription(self, callback)
        with self._lock:
            self._subscribers.append(subscription)
            TELEMETRY_SUBSCRIBERS.set(len(self._subscribers))
            self._deliver(subscription, STATUS_EVENT, dict(self.latest_status))
            if self.latest_reading is not None:
                self._deliver(subscription, READING_EVENT, self.latest_reading)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        subscription.cancel()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish_status(self, status: dict):
        with self._lock:
            self.latest_status = dict(status)
            self._broadcast(STATUS_EVENT, dict(status))

    def publish_reading(self, temperature_c: float):
        with self._lock:
            self.latest_reading = temperature_c
            self._broadcast(READING_EVENT, temperature_c)

    def _broadcast(self, event, payload):
        for subscription in list(self._subscribers):
            if subscription.active:
                self._deliver(subscription, event, payload)

    def _deliver(self, subscription, event, payload):
        try:
            subscription.callback(event, payload)
        except Exception:
            telemetry_logger.exception(f"Failed to deliver {event} to subscriber")

    def _remove(self, subscription):
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
            TELEMETRY_SUBSCRIBERS.set(len(self._subscribers))
