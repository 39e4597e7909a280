"""KMBox Net UDP client.

Each call performs exactly one request/reply exchange with the box (the
image upload performs one per screen line). A reply that does not echo the
request's command and sequence index is reported as ``False``, not raised.

The box keeps only the newest mouse and keyboard state: pressing the right
button after the left one releases the left one, and the same goes for keys.
"""
from __future__ import annotations

import logging
import secrets
import socket
import threading
import time
from typing import Callable, Iterable, Optional

import kmbox_protocol as kp
from kmbox_keys import plan_keystrokes
from kmbox_monitor import ReportListener
from kmbox_protocol import (
    CommandHeader,
    CompositeReport,
    KeyboardAction,
    MouseAction,
    Payload,
    ScreenLine,
    SetConfigPayload,
)
from kmbox_screen import split_lines


logger = logging.getLogger(__name__)

RECV_BUFFER_SIZE = 2048


class KmBoxClient:
    def __init__(self, host: str, port: int, mac: str, timeout: Optional[float] = None):
        """Create a client for the box at ``host``:``port``.

        Args:
            host: Box IP address, e.g. "192.168.2.188".
            port: Box command port.
            mac: Box UUID as printed on its screen, e.g. "417F0CD3".
            timeout: Seconds to wait for each reply. None waits forever.
        """
        self.host = host
        self.port = port
        self.mac = mac
        self.timeout = timeout
        self._device_id = kp.mac_to_uint(mac)

        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()
        self._index = 0
        self._listener = None

    def __enter__(self) -> "KmBoxClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def device_id(self) -> int:
        return self._device_id

    # -- Dispatcher --

    def open(self) -> None:
        if self._sock is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout(self.timeout)
        self._sock = sock

    def close(self) -> None:
        if self._listener is not None and not self._listener.stopped:
            self._listener.stop()
        if self._sock is None:
            return
        self._sock.close()
        self._sock = None

    def connect(self) -> bool:
        """Point the command socket at the box and perform the handshake."""
        self.open()
        self._sock.connect((self.host, self.port))
        ok = self.send(self.next_header(kp.CMD_CONNECT))
        if ok:
            logger.info("Connected to KMBox at %s:%d", self.host, self.port)
        else:
            logger.warning("KMBox at %s:%d did not acknowledge connect", self.host, self.port)
        return ok

    def next_header(self, cmd: int) -> CommandHeader:
        with self._lock:
            header = CommandHeader(
                mac=self._device_id,
                rand=secrets.randbelow(0x7FFFFFFF),
                indexpts=self._index,
                cmd=cmd,
            )
            self._index = (self._index + 1) & kp.UINT32_MASK
        return header

    def send(self, header: CommandHeader, payload: Optional[Payload] = None) -> bool:
        """Send one request and wait for its echo.

        Returns True if the reply carries the request's command code and
        sequence index. Echoes of earlier requests that timed out are
        dropped while waiting.

        Raises:
            RuntimeError: the client is not connected.
            ResponseTimeout: no reply within ``timeout`` seconds.
            DecodeError: the reply is shorter than a header.
            OSError: the socket failed.
        """
        packet = kp.encode(header, payload)
        with self._lock:
            if self._sock is None:
                raise RuntimeError("client not connected")
            logger.debug(
                "TX %s idx=%d rand=0x%08X len=%d",
                kp.command_name(header.cmd), header.indexpts, header.rand, len(packet),
            )
            self._sock.send(packet)
            try:
                response = self._receive(header)
            except socket.timeout as e:
                raise kp.ResponseTimeout(
                    f"No reply to {kp.command_name(header.cmd)} idx={header.indexpts} "
                    f"within {self.timeout}s"
                ) from e

        if not header.matches(response):
            logger.warning(
                "Reply mismatch: sent %s idx=%d, got %s idx=%d",
                kp.command_name(header.cmd), header.indexpts,
                kp.command_name(response.cmd), response.indexpts,
            )
            return False
        return True

    def _receive(self, header: CommandHeader) -> CommandHeader:
        # Caller holds self._lock
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        try:
            while True:
                response = kp.decode(CommandHeader, self._sock.recv(RECV_BUFFER_SIZE))
                logger.debug("RX %s idx=%d", kp.command_name(response.cmd), response.indexpts)
                if not header.is_stale(response):
                    return response

                logger.info(
                    "Dropping late reply to %s idx=%d",
                    kp.command_name(response.cmd), response.indexpts,
                )
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise socket.timeout("timed out")
                    self._sock.settimeout(remaining)
        finally:
            if deadline is not None:
                self._sock.settimeout(self.timeout)

    def _command(self, cmd: int, payload: Optional[Payload] = None, rand: Optional[int] = None) -> bool:
        header = self.next_header(cmd)
        if rand is not None:
            header = header.with_rand(rand)
        return self.send(header, payload)

    # -- Mouse --

    def mouse_move(self, x: int, y: int) -> bool:
        """Move the cursor by (x, y) at once."""
        return self._command(kp.CMD_MOUSE_MOVE, MouseAction(x=x, y=y))

    def mouse_move_auto(self, x: int, y: int, ms: int) -> bool:
        """Move the cursor by (x, y), interpolated by the box over ``ms`` milliseconds."""
        return self._command(kp.CMD_MOUSE_AUTOMOVE, MouseAction(x=x, y=y), rand=ms)

    def mouse_move_bezier(self, x: int, y: int, ms: int, x1: int, y1: int, x2: int, y2: int) -> bool:
        """Move the cursor by (x, y) along a cubic Bezier curve over ``ms`` milliseconds.

        (x1, y1) and (x2, y2) are the two control points.
        """
        action = MouseAction(x=x, y=y)
        action.points[0:4] = [x1, y1, x2, y2]
        return self._command(kp.CMD_BEZIER_MOVE, action, rand=ms)

    def mouse_click(self, *buttons: int) -> bool:
        """Hold the given MOUSE_* buttons; no buttons releases all of them."""
        action = MouseAction()
        for button in buttons:
            action.buttons |= button
        # The box does not care which click command carries the button bits
        return self._command(kp.CMD_MOUSE_LEFT, action)

    def mouse_left_click(self) -> bool:
        return self.mouse_click(kp.MOUSE_LEFT)

    def mouse_right_click(self) -> bool:
        return self.mouse_click(kp.MOUSE_RIGHT)

    def mouse_middle_click(self) -> bool:
        return self.mouse_click(kp.MOUSE_MIDDLE)

    def all_mouse_buttons_up(self) -> bool:
        return self.mouse_click()

    def mouse_wheel(self, wheel: int) -> bool:
        return self._command(kp.CMD_MOUSE_WHEEL, MouseAction(wheel=wheel))

    def send_raw_mouse(self, cmd: int, action: MouseAction) -> bool:
        return self._command(cmd, action)

    # -- Keyboard --

    def keyboard_button_down(self, key: int, modifiers: int = 0) -> bool:
        """Press ``key`` (HID usage code) with optional MODIFIER_* bits."""
        action = KeyboardAction()
        action.set_buttons(key, modifiers)
        return self._command(kp.CMD_KEYBOARD_ALL, action)

    def keyboard_buttons_down(self, keys: Iterable[int], modifiers: int = 0) -> bool:
        """Press up to 10 keys at the same time."""
        keys = [k & 0xFF for k in keys]
        if len(keys) > kp.KEY_SLOTS:
            raise ValueError(f"At most {kp.KEY_SLOTS} keys can be held at once, got {len(keys)}")
        action = KeyboardAction(modifiers=modifiers & 0xFF)
        action.keys[:len(keys)] = keys
        return self._command(kp.CMD_KEYBOARD_ALL, action)

    def all_keyboard_buttons_up(self) -> bool:
        return self._command(kp.CMD_KEYBOARD_ALL, KeyboardAction())

    def send_raw_keyboard(self, cmd: int, action: KeyboardAction) -> bool:
        return self._command(cmd, action)

    def type_text(self, text: str, delay_ms: int = 80) -> bool:
        """Type ``text`` one character at a time.

        Args:
            text: Characters from kmbox_keys.CHAR_TO_KEY.
            delay_ms: Pause after each key press. 0 disables it.

        Returns:
            False as soon as a key press or release is not acknowledged,
            True otherwise.

        Raises:
            UnsupportedCharacterError: before anything is sent, if ``text``
                contains a character with no key mapping.
        """
        steps = plan_keystrokes(text)
        delay = delay_ms / 1000.0 if delay_ms else 0

        for step in steps[:-1]:
            if step.is_release:
                if not self.all_keyboard_buttons_up():
                    return False
                continue
            if not self.keyboard_button_down(step.key, step.modifiers):
                return False
            if delay:
                time.sleep(delay)

        return self.all_keyboard_buttons_up()

    # -- Device --

    def set_config(self, address: str, port: int) -> bool:
        """Change the box's IP address and port.

        The box must be rebooted (manually or with ``reboot()``) to apply it.
        The address must stay inside 192.168.2.0/24.
        """
        ip = kp.parse_ipv4(address)
        if not kp.is_in_device_subnet(ip):
            raise ValueError(f"Must be in KMBox's subnet! Subnet expected: 192.168.2.*, got {ip}")
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"port must be 0..65535, got {port}")
        return self._command(kp.CMD_SET_CONFIG, SetConfigPayload(port), rand=kp.config_nonce(ip))

    def set_image(self, buffer: bytes) -> bool:
        """Draw a 128x160 RGB565 image (40960 bytes) on the box's screen.

        See kmbox_screen.rgb_to_rgb565 to build the buffer. Stops at the first
        line the box does not acknowledge.
        """
        lines = split_lines(buffer)
        for line, chunk in lines:
            if not self._command(kp.CMD_SHOW_PICTURE, ScreenLine(chunk), rand=line * 4):
                logger.warning("Screen upload aborted at line %d/%d", line, len(lines))
                return False
        return True

    def reboot(self) -> bool:
        return self._command(kp.CMD_REBOOT)

    def enable_monitor(self, enable: bool) -> bool:
        """Turn monitor mode on or off.

        While on, the box streams its physical mouse and keyboard state to
        UDP port ``port + 1`` of this host.
        """
        return self._command(kp.CMD_MONITOR, rand=kp.monitor_nonce(self.port, enable))

    def mask_mouse_input(self, masks: int) -> bool:
        """Block physical mouse input for the given MASK_* bits."""
        return self._command(kp.CMD_MASK, rand=masks)

    def mask_keyboard_button(self, key: int) -> bool:
        """Block one physical keyboard key."""
        return self._command(kp.CMD_MASK, rand=(key & 0xFF) << 8)

    def unmask_all_input(self) -> bool:
        return self._command(kp.CMD_UNMASK_ALL, rand=0)

    # -- Monitor --

    def create_report_listener(
        self, callback: Optional[Callable[[CompositeReport], None]] = None
    ) -> ReportListener:
        """Create a listener for the box's input reports.

        Only one listener per client may be active; stop the previous one first.
        """
        if self._listener is not None and not self._listener.stopped:
            raise kp.ListenerStateError("Last report listener was not stopped. Can not create a new one!")
        self._listener = ReportListener(self, callback)
        return self._listener
