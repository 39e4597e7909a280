import os
import socket
import struct
import sys
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import kmbox_protocol as kp
from kmbox_client import KmBoxClient
from kmbox_monitor import ListenerState, ReportListener


def free_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def report_bytes(x=0, y=0, key=0) -> bytes:
    mouse = struct.pack("<BBhhh", 1, 0, x, y, 0)
    keyboard = bytes([2, 0, key] + [0] * 9)
    return mouse + keyboard


class TestReportListener(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.port = free_port() - 1
        self.client.enable_monitor.return_value = True
        self.reports = []
        self.received = threading.Event()
        self.sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def tearDown(self):
        self.sender.close()

    def on_report(self, report):
        self.reports.append(report)
        self.received.set()

    def make_listener(self, callback=None):
        listener = ReportListener(self.client, callback or self.on_report, bind_host="127.0.0.1")
        self.addCleanup(listener.stop)
        return listener

    def send_report(self, listener, data):
        self.sender.sendto(data, ("127.0.0.1", listener.port))

    def test_start_enables_monitor_and_delivers_reports(self):
        listener = self.make_listener()
        self.assertEqual(listener.state, ListenerState.IDLE)
        self.assertTrue(listener.start())
        self.assertTrue(listener.running)
        self.client.enable_monitor.assert_called_once_with(True)

        self.send_report(listener, report_bytes(x=-5, y=7, key=0x04))
        self.assertTrue(self.received.wait(2.0))
        report = self.reports[0]
        self.assertEqual((report.mouse.x, report.mouse.y), (-5, 7))
        self.assertTrue(report.keyboard.is_key_pressed(0x04))

    def test_malformed_report_is_dropped(self):
        listener = self.make_listener()
        listener.start()
        self.send_report(listener, bytes(10))
        self.send_report(listener, report_bytes(x=1))
        self.assertTrue(self.received.wait(2.0))
        self.assertEqual(len(self.reports), 1)
        self.assertEqual(self.reports[0].mouse.x, 1)

    def test_stop_is_prompt_and_idempotent(self):
        listener = self.make_listener()
        listener.start()

        started = time.monotonic()
        listener.stop()
        self.assertLess(time.monotonic() - started, 1.0)
        self.assertTrue(listener.stopped)
        self.client.enable_monitor.assert_called_with(False)
        self.assertEqual(self.client.enable_monitor.call_count, 2)

        listener.stop()
        self.assertEqual(self.client.enable_monitor.call_count, 2)
        self.assertTrue(listener.wait(0))

    def test_stop_releases_port(self):
        listener = self.make_listener()
        listener.start()
        listener.stop()
        probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            probe.bind(("127.0.0.1", listener.port))
        finally:
            probe.close()

    def test_stop_survives_failed_monitor_off(self):
        listener = self.make_listener()
        listener.start()
        self.client.enable_monitor.side_effect = OSError("network down")
        listener.stop()
        self.assertTrue(listener.stopped)

    def test_start_twice_fails(self):
        listener = self.make_listener()
        listener.start()
        with self.assertRaises(kp.ListenerStateError):
            listener.start()

    def test_cannot_restart_after_stop(self):
        listener = self.make_listener()
        listener.start()
        listener.stop()
        with self.assertRaises(kp.ListenerStateError):
            listener.start()

    def test_unacknowledged_start(self):
        self.client.enable_monitor.return_value = False
        listener = self.make_listener()
        self.assertFalse(listener.start())
        self.assertTrue(listener.stopped)

    def test_start_transport_error(self):
        self.client.enable_monitor.side_effect = OSError("unreachable")
        listener = self.make_listener()
        with self.assertRaises(OSError):
            listener.start()
        self.assertTrue(listener.stopped)

    def test_callback_error_stops_listener(self):
        def boom(report):
            raise RuntimeError("callback failed")

        listener = self.make_listener(callback=boom)
        listener.start()
        self.send_report(listener, report_bytes())
        self.assertTrue(listener.wait(2.0))
        self.assertIsInstance(listener.error, RuntimeError)
        self.assertTrue(listener.stopped)

    def test_context_manager_stops(self):
        with self.make_listener() as listener:
            listener.start()
            self.assertTrue(listener.running)
        self.assertTrue(listener.stopped)


class TestClientListener(unittest.TestCase):
    def setUp(self):
        self.client = KmBoxClient("192.168.2.188", free_port() - 1, "417F0CD3")
        patcher = patch.object(KmBoxClient, "enable_monitor", return_value=True)
        self.enable_monitor = patcher.start()
        self.addCleanup(patcher.stop)

    def test_only_one_active_listener(self):
        first = self.client.create_report_listener()
        self.addCleanup(first.stop)
        self.assertTrue(first.start())

        with self.assertRaises(kp.ListenerStateError):
            self.client.create_report_listener()

        first.stop()
        second = self.client.create_report_listener()
        self.assertIsNot(second, first)
        self.assertEqual(second.state, ListenerState.IDLE)

    def test_close_stops_listener(self):
        listener = self.client.create_report_listener()
        listener.start()
        self.client.close()
        self.assertTrue(listener.stopped)
        self.enable_monitor.assert_called_with(False)


if __name__ == '__main__':
    unittest.main()
