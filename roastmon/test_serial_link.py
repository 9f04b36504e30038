import threading
import unittest
from unittest.mock import MagicMock

import serial

from roastmon.errors import NoPortAvailable
from roastmon.serial_link import (
    ConnectionState,
    PortDescriptor,
    SerialLinkManager,
    select_port,
)
from roastmon.telemetry import TelemetryHub


class FakePort:
    def __init__(self, path, reads=None):
        self.path = path
        self.is_open = True
        self.in_waiting = 0
        self.writes = []
        self.reads = list(reads or [])
        self.write_error = None

    def write(self, data):
        if self.write_error:
            raise self.write_error
        self.writes.append(data)
        return len(data)

    def read(self, size=1):
        if not self.reads:
            raise serial.SerialException("read failed: [Errno 5] Input/output error")
        item = self.reads.pop(0)
        if isinstance(item, Exception):
            raise item
        if item is None:
            self.is_open = False
            return b""
        return item

    def close(self):
        self.is_open = False


class FakeTimer:
    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    @property
    def active(self):
        return self.started and not self.cancelled


class SerialLinkTestBase(unittest.TestCase):
    def setUp(self):
        self.hub = TelemetryHub()
        self.events = []
        self.hub.subscribe(lambda event, payload: self.events.append((event, payload)))
        self.events.clear()

        self.ports = [PortDescriptor("/dev/ttyUSB0")]
        self.opened = []
        self.timers = []
        self.spawned = []
        self.open_error = None

        self.manager = SerialLinkManager(
            self.hub,
            list_ports=lambda: self.ports,
            port_factory=self._open,
            timer_factory=self._make_timer,
            spawn=lambda fn, *args: self.spawned.append((fn, args)),
        )

    def _open(self, path, baud_rate, timeout):
        if self.open_error:
            raise self.open_error
        port = FakePort(path)
        port.baud_rate = baud_rate
        self.opened.append(port)
        return port

    def _make_timer(self, interval, callback):
        timer = FakeTimer(interval, callback)
        self.timers.append(timer)
        return timer

    def active_timers(self):
        return [t for t in self.timers if t.active]

    def statuses(self):
        return [p for e, p in self.events if e == "portStatus"]


class TestConnect(SerialLinkTestBase):
    def test_initial_state(self):
        self.assertEqual(self.manager.state, ConnectionState.DISCONNECTED)
        self.assertIsNone(self.manager.latest_reading)

    def test_connect_explicit_path(self):
        state = self.manager.connect("/dev/ttyACM0")

        self.assertEqual(state, ConnectionState.CONNECTED)
        self.assertEqual(len(self.opened), 1)
        self.assertEqual(self.opened[0].path, "/dev/ttyACM0")
        self.assertEqual(self.opened[0].baud_rate, 9600)
        self.assertEqual(
            self.statuses(),
            [
                {"status": "connecting", "path": "/dev/ttyACM0"},
                {"status": "connected", "path": "/dev/ttyACM0"},
            ],
        )
        self.assertEqual(len(self.active_timers()), 1)
        self.assertEqual(self.active_timers()[0].interval, 1.0)
        # Reader task handed to the background runner.
        self.assertEqual(len(self.spawned), 1)

    def test_poll_timer_writes_command(self):
        self.manager.connect("/dev/ttyUSB0")
        timer = self.active_timers()[0]

        timer.callback()
        timer.callback()

        self.assertEqual(self.opened[0].writes, [b"t\n", b"t\n"])

    def test_poll_skipped_when_port_closed(self):
        self.manager.connect("/dev/ttyUSB0")
        timer = self.active_timers()[0]
        self.opened[0].is_open = False

        timer.callback()

        self.assertEqual(self.opened[0].writes, [])

    def test_connect_when_connected_reannounces_to_caller_only(self):
        self.manager.connect("/dev/ttyUSB0")
        link = self.manager._link
        self.manager._handle_line(link, b"201.5\r\n")
        self.events.clear()
        reply = MagicMock()

        state = self.manager.connect("/dev/ttyACM9", reply=reply)

        self.assertEqual(state, ConnectionState.CONNECTED)
        self.assertEqual(len(self.opened), 1)
        self.assertEqual(len(self.timers), 1)
        self.assertEqual(len(self.active_timers()), 1)
        self.assertEqual(self.events, [])
        reply.assert_any_call("portStatus", {"status": "connected", "path": "/dev/ttyUSB0"})
        reply.assert_any_call("temperatureUpdate", 201.5)
        self.assertEqual(reply.call_count, 2)

    def test_duplicate_connect_while_connecting_is_rejected(self):
        replies = []

        def open_with_second_request(path, baud_rate, timeout):
            # A second viewer asks to connect while the device is still opening.
            inner_state = self.manager.connect(
                "/dev/ttyUSB1", reply=lambda e, p: replies.append((e, p))
            )
            self.assertEqual(inner_state, ConnectionState.CONNECTING)
            port = FakePort(path)
            self.opened.append(port)
            return port

        self.manager._port_factory = open_with_second_request
        self.manager.connect("/dev/ttyUSB0")

        self.assertEqual(replies, [("portStatus", {"status": "connecting"})])
        self.assertEqual([p.path for p in self.opened], ["/dev/ttyUSB0"])
        self.assertEqual(self.manager.state, ConnectionState.CONNECTED)

    def test_connect_disconnect_connect_leaves_one_timer(self):
        self.manager.connect("/dev/ttyUSB0")
        self.manager.disconnect()
        self.manager.connect("/dev/ttyUSB0")

        self.assertEqual(len(self.timers), 2)
        self.assertEqual(len(self.active_timers()), 1)
        self.assertIs(self.manager.poll_timer, self.active_timers()[0])
        self.assertFalse(self.opened[0].is_open)
        self.assertTrue(self.opened[1].is_open)

    def test_disconnect_during_open_abandons_connection(self):
        def open_then_disconnect(path, baud_rate, timeout):
            port = FakePort(path)
            self.opened.append(port)
            self.manager.disconnect()
            return port

        self.manager._port_factory = open_then_disconnect
        state = self.manager.connect("/dev/ttyUSB0")

        self.assertEqual(state, ConnectionState.DISCONNECTED)
        self.assertFalse(self.opened[0].is_open)
        self.assertEqual(self.active_timers(), [])
        self.assertEqual(self.statuses()[-1], {"status": "disconnected"})


class TestAutoSelect(SerialLinkTestBase):
    def test_list_order_wins_over_manufacturer(self):
        ports = [
            PortDescriptor("/dev/ttyUSB0"),
            PortDescriptor("/dev/ttyACM1", manufacturer="Arduino"),
        ]
        self.assertEqual(select_port(ports).path, "/dev/ttyUSB0")

    def test_manufacturer_match(self):
        ports = [
            PortDescriptor("/dev/ttyS0"),
            PortDescriptor("/dev/ttyS5", manufacturer="Arduino (www.arduino.cc)"),
        ]
        self.assertEqual(select_port(ports).path, "/dev/ttyS5")

    def test_case_insensitive_path_match(self):
        ports = [PortDescriptor("COM1"), PortDescriptor("/dev/cu.USBSERIAL-10")]
        self.assertEqual(select_port(ports).path, "/dev/cu.USBSERIAL-10")

    def test_falls_back_to_first_port(self):
        ports = [PortDescriptor("/dev/ttyS0"), PortDescriptor("/dev/ttyS1")]
        self.assertEqual(select_port(ports).path, "/dev/ttyS0")

    def test_empty_list_raises(self):
        with self.assertRaises(NoPortAvailable):
            select_port([])

    def test_connect_without_path_uses_auto_select(self):
        self.ports = [
            PortDescriptor("/dev/ttyS0"),
            PortDescriptor("/dev/ttyACM1", manufacturer="Arduino"),
        ]
        self.manager.connect()

        self.assertEqual(self.opened[0].path, "/dev/ttyACM1")
        self.assertEqual(self.manager.path, "/dev/ttyACM1")

    def test_connect_without_ports_reports_error(self):
        self.ports = []

        state = self.manager.connect()

        self.assertEqual(state, ConnectionState.ERROR)
        self.assertEqual(self.opened, [])
        last = self.statuses()[-1]
        self.assertEqual(last["status"], "error")
        self.assertIn("No serial ports", last["message"])

    def test_port_listing_failure_is_not_raised(self):
        def broken():
            raise OSError("udev unavailable")

        self.manager._list_ports = broken
        self.assertEqual(self.manager.list_ports(), [])


class TestFailures(SerialLinkTestBase):
    def test_open_failure_becomes_error_status(self):
        self.open_error = serial.SerialException("could not open port /dev/ttyUSB0")

        state = self.manager.connect("/dev/ttyUSB0")

        self.assertEqual(state, ConnectionState.ERROR)
        self.assertEqual(self.timers, [])
        last = self.statuses()[-1]
        self.assertEqual(last["status"], "error")
        self.assertIn("could not open port", last["message"])

    def test_reconnect_after_error(self):
        self.open_error = OSError(2, "No such file or directory")
        self.manager.connect("/dev/ttyUSB0")
        self.open_error = None

        state = self.manager.connect("/dev/ttyUSB0")

        self.assertEqual(state, ConnectionState.CONNECTED)

    def test_write_failure_stops_timer_and_reports_error(self):
        self.manager.connect("/dev/ttyUSB0")
        timer = self.active_timers()[0]
        self.opened[0].write_error = serial.SerialException("write failed")

        timer.callback()

        self.assertEqual(self.manager.state, ConnectionState.ERROR)
        self.assertTrue(timer.cancelled)
        self.assertFalse(self.opened[0].is_open)
        self.assertIsNone(self.manager._link)
        self.assertEqual(self.statuses()[-1]["status"], "error")

    def test_error_is_not_retried(self):
        self.manager.connect("/dev/ttyUSB0")
        self.opened[0].write_error = serial.SerialException("write failed")
        self.active_timers()[0].callback()

        self.assertEqual(len(self.opened), 1)
        self.assertEqual(self.active_timers(), [])


class TestReadings(SerialLinkTestBase):
    def test_reading_updates_cache_and_broadcasts(self):
        self.manager.connect("/dev/ttyUSB0")
        self.events.clear()

        self.manager._handle_line(self.manager._link, b"210.5")

        self.assertEqual(self.manager.latest_reading.temperature_c, 210.5)
        self.assertEqual(self.hub.latest_reading, 210.5)
        self.assertEqual(self.events, [("temperatureUpdate", 210.5)])

    def test_malformed_line_is_dropped(self):
        self.manager.connect("/dev/ttyUSB0")
        self.manager._handle_line(self.manager._link, b"200.0")
        self.events.clear()

        for line in (b"ERR", b"", b"nan", b"12abc"):
            self.manager._handle_line(self.manager._link, line)

        self.assertEqual(self.events, [])
        self.assertEqual(self.manager.latest_reading.temperature_c, 200.0)

    def test_stale_link_reading_ignored(self):
        self.manager.connect("/dev/ttyUSB0")
        old_link = self.manager._link
        self.manager.disconnect()
        self.events.clear()

        self.manager._handle_line(old_link, b"150.0")

        self.assertEqual(self.events, [])
        self.assertIsNone(self.manager.latest_reading)

    def test_read_loop_decodes_then_reports_io_error(self):
        self.manager.connect("/dev/ttyUSB0")
        port = self.opened[0]
        port.reads = [b"21", b"0.5\r\n", b"garbage\r\n", b"", b"212.0\r\n"]
        self.events.clear()
        reader, args = self.spawned[0]

        reader(*args)

        readings = [p for e, p in self.events if e == "temperatureUpdate"]
        self.assertEqual(readings, [210.5, 212.0])
        self.assertEqual(self.manager.state, ConnectionState.ERROR)
        self.assertIn("Read from /dev/ttyUSB0 failed", self.statuses()[-1]["message"])

    def test_read_loop_reports_spontaneous_close(self):
        self.manager.connect("/dev/ttyUSB0")
        port = self.opened[0]
        port.reads = [b"199.0\r\n", None]
        reader, args = self.spawned[0]

        reader(*args)

        self.assertEqual(self.manager.state, ConnectionState.DISCONNECTED)
        self.assertEqual(self.statuses()[-1], {"status": "disconnected"})
        self.assertEqual(self.active_timers(), [])

    def test_read_loop_exits_quietly_for_stale_link(self):
        self.manager.connect("/dev/ttyUSB0")
        reader, args = self.spawned[0]
        self.manager.disconnect()
        self.events.clear()

        reader(*args)

        self.assertEqual(self.events, [])

    def test_read_loop_treats_unplug_as_close(self):
        self.manager.connect("/dev/ttyUSB0")
        port = self.opened[0]
        port.reads = [
            b"199.0\r\n",
            serial.SerialException(
                "device reports readiness to read but returned no data "
                "(device disconnected or multiple access on port?)"
            ),
        ]
        reader, args = self.spawned[0]

        reader(*args)

        self.assertEqual(self.manager.state, ConnectionState.DISCONNECTED)
        self.assertEqual(self.statuses()[-1], {"status": "disconnected"})
        self.assertFalse(port.is_open)
        self.assertEqual(self.active_timers(), [])


class TestSupersededConnect(SerialLinkTestBase):
    """Two connect attempts racing on separate threads with a gated open."""

    def setUp(self):
        super().setUp()
        self.entered = {"/dev/A": threading.Event(), "/dev/B": threading.Event()}
        self.release = {"/dev/A": threading.Event(), "/dev/B": threading.Event()}
        self.failing = set()
        self.manager._port_factory = self._gated_open

    def _gated_open(self, path, baud_rate, timeout):
        self.entered[path].set()
        self.assertTrue(self.release[path].wait(5))
        if path in self.failing:
            raise serial.SerialException(f"could not open port {path}")
        port = FakePort(path)
        self.opened.append(port)
        return port

    def _connect_in_thread(self, path):
        thread = threading.Thread(target=self.manager.connect, args=(path,), daemon=True)
        thread.start()
        self.assertTrue(self.entered[path].wait(5))
        return thread

    def _race(self):
        first = self._connect_in_thread("/dev/A")
        self.manager.disconnect()
        second = self._connect_in_thread("/dev/B")

        self.release["/dev/A"].set()
        first.join(5)
        self.release["/dev/B"].set()
        second.join(5)
        self.assertFalse(first.is_alive())
        self.assertFalse(second.is_alive())

    def test_abandoned_open_does_not_take_over_newer_attempt(self):
        self._race()

        self.assertEqual(self.manager.state, ConnectionState.CONNECTED)
        self.assertEqual(self.manager.path, "/dev/B")
        ports = {p.path: p for p in self.opened}
        self.assertFalse(ports["/dev/A"].is_open)
        self.assertTrue(ports["/dev/B"].is_open)
        self.assertEqual(len(self.active_timers()), 1)
        self.assertNotIn({"status": "connected", "path": "/dev/A"}, self.statuses())
        self.assertEqual(self.statuses()[-1], {"status": "connected", "path": "/dev/B"})

    def test_abandoned_open_failure_does_not_fail_newer_attempt(self):
        self.failing.add("/dev/A")

        self._race()

        self.assertEqual(self.manager.state, ConnectionState.CONNECTED)
        self.assertEqual(self.manager.path, "/dev/B")
        self.assertNotIn("error", [s["status"] for s in self.statuses()])


class TestDisconnect(SerialLinkTestBase):
    def test_disconnect_closes_port_and_timer(self):
        self.manager.connect("/dev/ttyUSB0")
        timer = self.active_timers()[0]

        state = self.manager.disconnect()

        self.assertEqual(state, ConnectionState.DISCONNECTED)
        self.assertTrue(timer.cancelled)
        self.assertFalse(self.opened[0].is_open)
        self.assertEqual(self.statuses()[-1], {"status": "disconnected"})

    def test_disconnect_is_idempotent(self):
        self.manager.connect("/dev/ttyUSB0")
        self.manager.disconnect()
        self.manager.disconnect()

        self.assertEqual(self.statuses().count({"status": "disconnected"}), 1)

    def test_disconnect_from_initial_state_is_silent(self):
        self.assertEqual(self.manager.disconnect(), ConnectionState.DISCONNECTED)
        self.assertEqual(self.events, [])

    def test_disconnect_after_error(self):
        self.open_error = serial.SerialException("boom")
        self.manager.connect("/dev/ttyUSB0")

        self.assertEqual(self.manager.disconnect(), ConnectionState.DISCONNECTED)
        self.assertEqual(self.statuses()[-1], {"status": "disconnected"})
        self.assertEqual(self.active_timers(), [])

    def test_independent_managers(self):
        other_hub = TelemetryHub()
        other = SerialLinkManager(
            other_hub,
            list_ports=lambda: [],
            port_factory=self._open,
            timer_factory=self._make_timer,
            spawn=lambda fn, *args: None,
        )
        self.manager.connect("/dev/ttyUSB0")

        self.assertEqual(other.state, ConnectionState.DISCONNECTED)
        self.assertEqual(other_hub.latest_status, {"status": "disconnected"})


if __name__ == '__main__':
    unittest.main()
