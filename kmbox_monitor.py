"""Monitor mode report listener.

While monitor mode is on, the box sends a 20-byte CompositeReport datagram to
UDP port ``client.port + 1`` whenever its physical mouse or keyboard state
changes. ReportListener receives them on a worker thread and hands each one
to a callback.

The worker blocks in select() on the report socket and on a wake-up socket,
so stop() returns promptly even when no report is arriving.
"""
from __future__ import annotations

import enum
import logging
import select
import socket
import threading
from typing import Callable, Optional

import kmbox_protocol as kp
from kmbox_protocol import CompositeReport


logger = logging.getLogger(__name__)

REPORT_BUFFER_SIZE = 2048


class ListenerState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ReportListener:
    """Receives the box's mouse/keyboard reports. Single use.

    Create it with ``KmBoxClient.create_report_listener()``. Once stopped it
    cannot be started again; create a new one instead.
    """

    def __init__(self, client, callback: Optional[Callable[[CompositeReport], None]] = None,
                 bind_host: str = "0.0.0.0"):
        self.client = client
        self.callback = callback
        self.bind_host = bind_host
        self.error: Optional[BaseException] = None

        self._state = ListenerState.IDLE
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self._stopped = threading.Event()
        self._sock: Optional[socket.socket] = None
        self._wake_r: Optional[socket.socket] = None
        self._wake_w: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "ReportListener":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is ListenerState.RUNNING

    @property
    def stopped(self) -> bool:
        return self._state is ListenerState.STOPPED

    @property
    def port(self) -> int:
        return self.client.port + 1

    def start(self) -> bool:
        """Bind the report socket and turn monitor mode on.

        Returns False (and ends up stopped) if the box does not acknowledge.
        """
        with self._state_lock:
            if self._state is not ListenerState.IDLE:
                raise kp.ListenerStateError(f"Listener cannot start from state {self._state.value}")
            self._state = ListenerState.STARTING

        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self._sock = sock
            sock.bind((self.bind_host, self.port))
            self._wake_r, self._wake_w = socket.socketpair()

            if not self.client.enable_monitor(True):
                logger.warning("KMBox did not acknowledge monitor mode")
                self._finish()
                return False
        except BaseException:
            self._finish()
            raise

        self._thread = threading.Thread(target=self._run, name="KmBoxMonitor", daemon=True)
        with self._state_lock:
            cancelled = self._state is not ListenerState.STARTING
            if not cancelled:
                self._state = ListenerState.RUNNING
                self._thread.start()
        if cancelled:
            # stop() was called while starting
            self.client.enable_monitor(False)
            self._finish()
            return False
        logger.info("Listening for reports on %s:%d", self.bind_host, self.port)
        return True

    def stop(self) -> None:
        """Turn monitor mode off and stop the worker. Calling it again does nothing."""
        with self._state_lock:
            if self._state in (ListenerState.STOPPING, ListenerState.STOPPED):
                return
            was_running = self._state is ListenerState.RUNNING
            self._state = ListenerState.STOPPING

        if was_running:
            try:
                if not self.client.enable_monitor(False):
                    logger.warning("KMBox did not acknowledge monitor mode off")
            except (OSError, kp.KmBoxError) as e:
                logger.warning("Failed to turn monitor mode off: %s", e)

        self._cancel.set()
        wake = self._wake_w
        if wake is not None:
            try:
                wake.send(b"\x00")
            except OSError:
                # Worker already closed it on its way out
                pass

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._finish()
        logger.info("Report listener stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the listener has stopped. Returns False on timeout."""
        return self._stopped.wait(timeout)

    def _run(self) -> None:
        sock = self._sock
        watch = [sock, self._wake_r]
        try:
            while not self._cancel.is_set():
                readable, _, _ = select.select(watch, [], [])
                if self._cancel.is_set() or self._wake_r in readable:
                    break
                if sock not in readable:
                    continue

                data = sock.recv(REPORT_BUFFER_SIZE)
                try:
                    report = CompositeReport.from_bytes(data)
                except kp.DecodeError as e:
                    logger.warning("Dropping malformed report: %s", e)
                    continue

                if self.callback is not None:
                    self.callback(report)
        except Exception as e:
            if not self._cancel.is_set():
                self.error = e
                logger.exception("Report listener failed")
        finally:
            if not self._cancel.is_set():
                # Ended on its own (callback or socket error)
                self._finish()

    def _finish(self) -> None:
        with self._state_lock:
            self._state = ListenerState.STOPPED
            for s in (self._sock, self._wake_r, self._wake_w):
                if s is not None:
                    s.close()
            self._sock = self._wake_r = self._wake_w = None
        self._stopped.set()
