"""
Exception types shared across the roast monitor backend.

Device-side errors (PortOpenError, PortIOError, NoPortAvailable) are caught
inside SerialLinkManager and surface as status broadcasts. ParseError never
leaves the serial layer. The remaining errors are raised to callers.
"""


class RoastMonitorError(Exception):
    """Base class for all roast monitor errors."""


class PortOpenError(RoastMonitorError):
    """The serial device could not be opened."""


class PortIOError(RoastMonitorError):
    """Read or write failure on an open serial connection."""


class NoPortAvailable(RoastMonitorError):
    """Auto-selection found no serial port to open."""


class ParseError(RoastMonitorError):
    """A reply line from the probe is not a finite decimal number."""


class ValidationError(RoastMonitorError):
    """A session payload failed schema validation."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid payload")


class PersistenceIOError(RoastMonitorError):
    """The session collection could not be read from or written to storage."""


class SessionNotFound(RoastMonitorError, KeyError):
    """No session with the requested id exists."""


class LoadCancelled(RoastMonitorError):
    """A session load was cancelled before it completed."""


class AlreadyRecording(RoastMonitorError):
    """start() was called while a recording is active."""
