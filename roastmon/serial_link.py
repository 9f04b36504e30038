"""
Ownership of the single serial connection to the temperature probe.

SerialLinkManager is a small state machine:

    Disconnected/Error -> Connecting -> Connected -> Disconnected | Error

Only an explicit connect() leaves Disconnected or Error. While a connection
is open a poll timer writes the poll command once per interval and a reader
task decodes reply lines. Every device-level failure ends up as a status
broadcast through the TelemetryHub; nothing here raises to the caller.

Each open connection is represented by a ``_Link``. Callbacks from the
reader and the poll timer carry their link and are ignored once that link
is no longer the current one, so a late callback from an old connection can
never touch the state of a newer one.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from functools import partial

import serial
from serial.tools import list_ports as serial_list_ports

from roastmon.errors import NoPortAvailable, ParseError, PortIOError, PortOpenError
from roastmon.metrics import (
    SERIAL_LINK_STATE,
    SERIAL_MALFORMED_LINES_TOTAL,
    SERIAL_READINGS_TOTAL,
)
from roastmon.protocol import DEFAULT_POLL_COMMAND, LineBuffer, decode, encode_poll
from roastmon.scheduling import PeriodicTask, spawn_thread
from roastmon.telemetry import READING_EVENT, STATUS_EVENT

DEFAULT_BAUD_RATE = 9600
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_READ_TIMEOUT = 0.2

# Lower-case substrings identifying USB-serial adapters and Arduino boards.
DEFAULT_SIGNATURES = (
    "ttyusb",
    "ttyacm",
    "usbserial",
    "usbmodem",
    "wchusbserial",
    "ch340",
    "cp210",
    "ftdi",
    "silicon labs",
    "arduino",
)

serial_logger = logging.getLogger("roastmon.serial")


@dataclass(frozen=True)
class PortDescriptor:
    """A candidate serial device as reported by the port lister."""

    path: str
    manufacturer: str | None = None

    def to_dict(self):
        return {"path": self.path, "manufacturer": self.manufacturer}


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


def list_serial_ports() -> list[PortDescriptor]:
    """List serial ports visible to pyserial."""
    return [
        PortDescriptor(path=p.device, manufacturer=p.manufacturer)
        for p in serial_list_ports.comports()
    ]


def open_serial_port(path, baud_rate, timeout):
    """Open ``path`` with pyserial. Raises serial.SerialException on failure."""
    return serial.Serial(port=path, baudrate=baud_rate, timeout=timeout)


def select_port(ports, signatures=DEFAULT_SIGNATURES) -> PortDescriptor:
    """
    Pick the port to open when the caller did not name one.

    Ports are checked in list order; the first whose path or manufacturer
    contains a known signature wins. With no match the first port is used.

    Raises:
        NoPortAvailable: If ``ports`` is empty.
    """
    ports = list(ports)
    if not ports:
        raise NoPortAvailable("No serial ports available")

    for port in ports:
        path = (port.path or "").lower()
        manufacturer = (port.manufacturer or "").lower()
        if any(sig in path or sig in manufacturer for sig in signatures):
            return port
    return ports[0]


def _is_device_removed(exc) -> bool:
    """
    True when a read failure means the device was unplugged.

    pyserial reports removal as a SerialException saying the device was
    ready to read but returned no data, and leaves the port marked open.
    """
    message = str(exc).lower()
    return "returned no data" in message or "device disconnected" in message


class _Link:
    """One open connection: the port handle and its line buffer."""

    def __init__(self, path, port):
        self.path = path
        self.port = port
        self.buffer = LineBuffer()


class SerialLinkManager:
    """
    Owns at most one open serial connection and its poll timer.

    Status and readings are published to ``hub`` (a TelemetryHub). The
    collaborators default to pyserial and real background threads; tests pass
    fakes for all of them.
    """

    def __init__(
        self,
        hub,
        baud_rate=DEFAULT_BAUD_RATE,
        poll_interval=DEFAULT_POLL_INTERVAL,
        poll_command=DEFAULT_POLL_COMMAND,
        read_timeout=DEFAULT_READ_TIMEOUT,
        signatures=DEFAULT_SIGNATURES,
        list_ports=None,
        port_factory=None,
        timer_factory=None,
        spawn=None,
    ):
        """
        Args:
            hub (TelemetryHub): Receives status and reading events.
            baud_rate (int): Baud rate used for every open.
            poll_interval (float): Seconds between poll commands.
            poll_command (str): Single character sent to request a reading.
            read_timeout (float): pyserial read timeout for the reader task.
            signatures (tuple[str]): Lower-case substrings used by auto-selection.
            list_ports (callable, optional): Returns PortDescriptor objects.
            port_factory (callable, optional): ``(path, baud_rate, timeout)`` -> open port.
            timer_factory (callable, optional): ``(interval, callback)`` -> unstarted timer
                                                with start()/cancel().
            spawn (callable, optional): ``(fn, *args)``; runs fn in the background.
        """
        self.hub = hub
        self.baud_rate = baud_rate
        self.poll_interval = poll_interval
        self.signatures = tuple(s.lower() for s in signatures)
        self.read_timeout = read_timeout
        self._poll_bytes = encode_poll(poll_command)

        self._list_ports = list_ports or list_serial_ports
        self._port_factory = port_factory or open_serial_port
        self._spawn = spawn or spawn_thread
        self._timer_factory = timer_factory or self._default_timer

        self._lock = threading.RLock()
        self._link: _Link | None = None
        # Token of the connect() attempt allowed to install the next link.
        self._attempt = None
        self._poll_timer = None
        self._state = ConnectionState.DISCONNECTED
        self._latest_reading = None
        SERIAL_LINK_STATE.state(self._state.value)

    # --- Introspection -------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def path(self) -> str | None:
        link = self._link
        return link.path if link else None

    @property
    def latest_reading(self):
        return self._latest_reading

    @property
    def poll_timer(self):
        return self._poll_timer

    def list_ports(self) -> list[PortDescriptor]:
        """Return the current port list, or an empty list if listing fails."""
        try:
            return list(self._list_ports())
        except Exception:
            serial_logger.exception("Error listing ports")
            return []

    # --- Operator commands ---------------------------------------------------

    def connect(self, requested_path=None, reply=None) -> ConnectionState:
        """
        Open the probe connection.

        Args:
            requested_path (str, optional): Device path; auto-selected when omitted.
            reply (callable, optional): ``(event, payload)`` sink for the caller only.
                                        Used for the idempotent re-announce and the
                                        duplicate-attempt echo.

        Returns:
            ConnectionState: The state after the attempt.
        """
        with self._lock:
            if self._state is ConnectionState.CONNECTED:
                serial_logger.info(f"Already connected to {self.path}; re-announcing to caller")
                self._announce(reply)
                return self._state
            if self._state is ConnectionState.CONNECTING:
                serial_logger.info("Connect request ignored, attempt already in progress")
                self._reply(reply, STATUS_EVENT, {"status": ConnectionState.CONNECTING.value})
                return self._state
            previous = self._detach_link()
            attempt = object()
            self._attempt = attempt
            self._set_state(ConnectionState.CONNECTING)

        if previous is not None:
            serial_logger.info(f"Closing existing port {previous.path}")
            self._close_port(previous)

        path = requested_path
        if not path:
            try:
                path = select_port(self.list_ports(), self.signatures).path
            except NoPortAvailable as exc:
                self._fail_attempt(attempt, exc)
                return self._state
            serial_logger.info(f"Auto-selected port {path}")

        with self._lock:
            if self._attempt is not attempt:
                return self._state
            self.hub.publish_status({"status": ConnectionState.CONNECTING.value, "path": path})

        serial_logger.info(f"Attempting to connect to port {path}")
        try:
            port = self._port_factory(path, self.baud_rate, self.read_timeout)
        except (serial.SerialException, OSError, ValueError) as exc:
            self._fail_attempt(attempt, PortOpenError(f"Failed to open {path}: {exc}"))
            return self._state

        link = _Link(path, port)
        with self._lock:
            if self._attempt is attempt:
                self._attempt = None
                self._link = link
                self._handle_open(link)
                return self._state

        # disconnect() or a newer connect() superseded this attempt while the
        # device was opening.
        serial_logger.info(f"Connect to {path} abandoned, closing port")
        self._close_port(link)
        return self._state

    def disconnect(self) -> ConnectionState:
        """Close the connection. Safe in every state; always ends Disconnected."""
        with self._lock:
            link = self._link
            if link is None and self._state is ConnectionState.DISCONNECTED:
                return self._state
            self._handle_close(link)
            return self._state

    def status_payload(self) -> dict:
        payload = {"status": self._state.value}
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED) and self.path:
            payload["path"] = self.path
        return payload

    # --- Event handlers ------------------------------------------------------

    def _handle_open(self, link):
        serial_logger.info(f"Port {link.path} opened")
        self._set_state(ConnectionState.CONNECTED)
        self.hub.publish_status({"status": ConnectionState.CONNECTED.value, "path": link.path})
        self._start_poll_timer(link)
        self._spawn(self._read_loop, link)

    def _handle_line(self, link, line):
        try:
            reading = decode(line)
        except ParseError as exc:
            SERIAL_MALFORMED_LINES_TOTAL.inc()
            serial_logger.debug(f"Dropping malformed line: {exc}")
            return

        with self._lock:
            if link is not self._link:
                return
            self._latest_reading = reading
            SERIAL_READINGS_TOTAL.inc()
            self.hub.publish_reading(reading.temperature_c)

    def _handle_error(self, link, exc):
        with self._lock:
            if link is None or link is not self._link:
                return
            serial_logger.error(f"Port error: {exc}")
            self._detach_link()
            self._set_state(ConnectionState.ERROR)
            self.hub.publish_status({"status": ConnectionState.ERROR.value, "message": str(exc)})
            self._close_port(link)

    def _fail_attempt(self, attempt, exc):
        with self._lock:
            if attempt is not self._attempt:
                serial_logger.info(f"Ignoring failure of a superseded connect attempt: {exc}")
                return
            serial_logger.error(f"Port error: {exc}")
            self._detach_link()
            self._set_state(ConnectionState.ERROR)
            self.hub.publish_status({"status": ConnectionState.ERROR.value, "message": str(exc)})

    def _handle_close(self, link):
        with self._lock:
            if link is not self._link:
                return
            self._detach_link()
            self._set_state(ConnectionState.DISCONNECTED)
            self.hub.publish_status({"status": ConnectionState.DISCONNECTED.value})
            if link is not None:
                serial_logger.info(f"Port {link.path} closed")
                self._close_port(link)

    # --- Background work -----------------------------------------------------

    def _poll(self, link):
        with self._lock:
            if link is not self._link or not link.port.is_open:
                return
            try:
                link.port.write(self._poll_bytes)
            except (serial.SerialException, OSError) as exc:
                self._handle_error(link, PortIOError(f"Write to {link.path} failed: {exc}"))

    def _read_loop(self, link):
        while self._is_current(link):
            port = link.port
            if not port.is_open:
                self._handle_close(link)
                return
            try:
                data = port.read(port.in_waiting or 1)
            except serial.SerialException as exc:
                if _is_device_removed(exc):
                    serial_logger.warning(f"Port {link.path} went away: {exc}")
                    self._handle_close(link)
                else:
                    self._handle_error(link, PortIOError(f"Read from {link.path} failed: {exc}"))
                return
            except (OSError, TypeError) as exc:
                self._handle_error(link, PortIOError(f"Read from {link.path} failed: {exc}"))
                return
            for line in link.buffer.feed(data):
                self._handle_line(link, line)

    # --- Helpers (call with the lock held) -----------------------------------

    def _default_timer(self, interval, callback):
        return PeriodicTask(interval, callback, spawn=self._spawn, name="serial-poll")

    def _start_poll_timer(self, link):
        self._cancel_poll_timer()
        self._poll_timer = self._timer_factory(self.poll_interval, partial(self._poll, link))
        self._poll_timer.start()

    def _cancel_poll_timer(self):
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None

    def _detach_link(self):
        link = self._link
        self._cancel_poll_timer()
        self._link = None
        self._attempt = None
        return link

    def _is_current(self, link) -> bool:
        with self._lock:
            return link is self._link

    def _set_state(self, new_state):
        old_state = self._state
        self._state = new_state
        if old_state is not new_state:
            serial_logger.info(f"state_transition: {old_state.value} -> {new_state.value}")
        SERIAL_LINK_STATE.state(new_state.value)

    def _announce(self, reply):
        self._reply(reply, STATUS_EVENT, {"status": ConnectionState.CONNECTED.value, "path": self.path})
        if self._latest_reading is not None:
            self._reply(reply, READING_EVENT, self._latest_reading.temperature_c)

    def _reply(self, reply, event, payload):
        if reply is None:
            return
        try:
            reply(event, payload)
        except Exception:
            serial_logger.exception(f"Failed to reply {event} to caller")

    def _close_port(self, link):
        try:
            if link.port.is_open:
                link.port.close()
        except (serial.SerialException, OSError) as exc:
            serial_logger.warning(f"Error closing port {link.path}: {exc}")
