"""KMBox Net UDP wire format.

Every request is a 16-byte command header, optionally followed by one
fixed-size payload. The box answers each request by echoing the header.
All multi-byte fields are little-endian except the SetConfig port, which
the firmware expects high byte first.
"""
from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass, field
from typing import Optional, Union


# -- Command codes --
CMD_CONNECT = 0xAF3C2828
CMD_MOUSE_MOVE = 0xAEDE7345
CMD_MOUSE_LEFT = 0x9823AE8D
CMD_MOUSE_MIDDLE = 0x97A3AE8D
CMD_MOUSE_RIGHT = 0x238D8212
CMD_MOUSE_WHEEL = 0xFFEEAD38
CMD_MOUSE_AUTOMOVE = 0xAEDE7346
CMD_KEYBOARD_ALL = 0x123C2C2F
CMD_REBOOT = 0xAA8855AA
CMD_BEZIER_MOVE = 0xA238455A
CMD_MONITOR = 0x27388020
CMD_DEBUG = 0x27382021  # Not used by the client
CMD_MASK = 0x23234343
CMD_UNMASK_ALL = 0x23344343
CMD_SET_CONFIG = 0x1D3D3323
CMD_SHOW_PICTURE = 0x12334883

COMMAND_NAMES = {
    CMD_CONNECT: "connect",
    CMD_MOUSE_MOVE: "mouse_move",
    CMD_MOUSE_LEFT: "mouse_left",
    CMD_MOUSE_MIDDLE: "mouse_middle",
    CMD_MOUSE_RIGHT: "mouse_right",
    CMD_MOUSE_WHEEL: "mouse_wheel",
    CMD_MOUSE_AUTOMOVE: "mouse_automove",
    CMD_KEYBOARD_ALL: "keyboard_all",
    CMD_REBOOT: "reboot",
    CMD_BEZIER_MOVE: "bezier_move",
    CMD_MONITOR: "monitor",
    CMD_DEBUG: "debug",
    CMD_MASK: "mask",
    CMD_UNMASK_ALL: "unmask_all",
    CMD_SET_CONFIG: "set_config",
    CMD_SHOW_PICTURE: "show_picture",
}

# Mouse button bits (MouseAction.buttons)
MOUSE_LEFT = 1 << 0
MOUSE_RIGHT = 1 << 1
MOUSE_MIDDLE = 1 << 2

# Mouse mask bits, sent in the header nonce with CMD_MASK
MASK_LEFT = 1 << 0
MASK_RIGHT = 1 << 1
MASK_MIDDLE = 1 << 2
MASK_SIDE1 = 1 << 3
MASK_SIDE2 = 1 << 4
MASK_X = 1 << 5
MASK_Y = 1 << 6
MASK_WHEEL = 1 << 7

# Monitor mode: nonce = (port + 1) | MONITOR_MAGIC << 16
MONITOR_MAGIC = 0xAA55

# The box only accepts addresses in its own /24
DEVICE_SUBNET = ipaddress.IPv4Network("192.168.2.0/255.255.255.0")

# LCD: 128x160 RGB565, uploaded in 40 lines of 1024 bytes
SCREEN_WIDTH = 128
SCREEN_HEIGHT = 160
SCREEN_BUFFER_LEN = SCREEN_WIDTH * SCREEN_HEIGHT * 2
SCREEN_LINE_LEN = 1024
SCREEN_LINE_COUNT = SCREEN_BUFFER_LEN // SCREEN_LINE_LEN

KEY_SLOTS = 10
CURVE_POINTS = 10

UINT32_MASK = 0xFFFFFFFF
INT32_MIN = -(1 << 31)
INT32_MAX = (1 << 31) - 1


class KmBoxError(Exception):
    """Base class for errors raised by the KMBox client."""


class DecodeError(KmBoxError, ValueError):
    """A buffer is too short for the layout it is decoded as."""


class ResponseTimeout(KmBoxError, TimeoutError):
    """The box did not answer within the configured timeout."""


class UnsupportedCharacterError(KmBoxError, ValueError):
    def __init__(self, character: str, index: int):
        super().__init__(f"Character {character!r} at index {index} is not supported")
        self.character = character
        self.index = index


class ListenerStateError(KmBoxError, RuntimeError):
    """Report listener started, or created, while another one is active."""


@dataclass(frozen=True)
class CommandHeader:
    mac: int
    rand: int
    indexpts: int
    cmd: int

    FORMAT = "<IIII"
    SIZE = 16

    def to_bytes(self) -> bytes:
        for name in ("mac", "rand", "indexpts", "cmd"):
            _check_range(name, getattr(self, name), 0, UINT32_MASK)
        return struct.pack(self.FORMAT, self.mac, self.rand, self.indexpts, self.cmd)

    @classmethod
    def from_bytes(cls, data: bytes) -> "CommandHeader":
        _check_size(cls, data)
        return cls(*struct.unpack_from(cls.FORMAT, data))

    def with_rand(self, rand: int) -> "CommandHeader":
        """Copy of this header with the nonce replaced by an out-of-band value."""
        return CommandHeader(self.mac, rand & UINT32_MASK, self.indexpts, self.cmd)

    def matches(self, response: "CommandHeader") -> bool:
        """True if ``response`` acknowledges this request."""
        return self.cmd == response.cmd and self.indexpts == response.indexpts

    def is_stale(self, response: "CommandHeader") -> bool:
        """True if ``response`` echoes a request sent before this one.

        Such a reply arrived after its own request timed out. Unknown command
        codes are never treated as stale.
        """
        if response.cmd not in COMMAND_NAMES:
            return False
        behind = (self.indexpts - response.indexpts) & UINT32_MASK
        return 0 < behind <= INT32_MAX


@dataclass
class MouseAction:
    """Mouse payload.

    ``points`` holds Bezier control points for CMD_BEZIER_MOVE; the other
    mouse commands leave it zeroed.
    """
    buttons: int = 0
    x: int = 0
    y: int = 0
    wheel: int = 0
    points: list[int] = field(default_factory=lambda: [0] * CURVE_POINTS)

    FORMAT = "<4i10i"
    SIZE = 56

    def to_bytes(self) -> bytes:
        if len(self.points) != CURVE_POINTS:
            raise ValueError(f"points must have {CURVE_POINTS} entries, got {len(self.points)}")
        for name in ("buttons", "x", "y", "wheel"):
            _check_range(name, getattr(self, name), INT32_MIN, INT32_MAX)
        for i, point in enumerate(self.points):
            _check_range(f"points[{i}]", point, INT32_MIN, INT32_MAX)
        return struct.pack(self.FORMAT, self.buttons, self.x, self.y, self.wheel, *self.points)

    @classmethod
    def from_bytes(cls, data: bytes) -> "MouseAction":
        _check_size(cls, data)
        values = struct.unpack_from(cls.FORMAT, data)
        return cls(values[0], values[1], values[2], values[3], list(values[4:]))


@dataclass
class KeyboardAction:
    modifiers: int = 0
    keys: list[int] = field(default_factory=lambda: [0] * KEY_SLOTS)

    FORMAT = "<BB10B"
    SIZE = 12

    def to_bytes(self) -> bytes:
        if len(self.keys) != KEY_SLOTS:
            raise ValueError(f"keys must have {KEY_SLOTS} slots, got {len(self.keys)}")
        _check_range("modifiers", self.modifiers, 0, 0xFF)
        for i, key in enumerate(self.keys):
            _check_range(f"keys[{i}]", key, 0, 0xFF)
        return struct.pack(self.FORMAT, self.modifiers, 0, *self.keys)

    @classmethod
    def from_bytes(cls, data: bytes) -> "KeyboardAction":
        _check_size(cls, data)
        values = struct.unpack_from(cls.FORMAT, data)
        return cls(values[0], list(values[2:]))

    def set_buttons(self, key: int, modifiers: int = 0) -> None:
        self.keys[0] = key & 0xFF
        self.modifiers = modifiers & 0xFF

    def reset_buttons(self) -> None:
        self.keys = [0] * KEY_SLOTS


@dataclass(frozen=True)
class SetConfigPayload:
    port: int

    # High byte first, unlike every other field on the wire
    FORMAT = ">H"
    SIZE = 2

    def to_bytes(self) -> bytes:
        _check_range("port", self.port, 0, 0xFFFF)
        return struct.pack(self.FORMAT, self.port)

    @classmethod
    def from_bytes(cls, data: bytes) -> "SetConfigPayload":
        _check_size(cls, data)
        return cls(*struct.unpack_from(cls.FORMAT, data))


@dataclass(frozen=True)
class ScreenLine:
    data: bytes

    SIZE = SCREEN_LINE_LEN

    def to_bytes(self) -> bytes:
        if len(self.data) != self.SIZE:
            raise ValueError(f"screen line must be {self.SIZE} bytes, got {len(self.data)}")
        return bytes(self.data)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ScreenLine":
        _check_size(cls, data)
        return cls(bytes(data[:cls.SIZE]))


@dataclass(frozen=True)
class MouseReport:
    report_id: int
    buttons: int
    x: int
    y: int
    wheel: int

    FORMAT = "<BBhhh"
    SIZE = 8

    @classmethod
    def from_bytes(cls, data: bytes) -> "MouseReport":
        _check_size(cls, data)
        return cls(*struct.unpack_from(cls.FORMAT, data))

    def __str__(self) -> str:
        return f"{self.report_id}: Buttons={self.buttons}, X={self.x}, Y={self.y}, Wheel={self.wheel}"


@dataclass(frozen=True)
class KeyboardReport:
    report_id: int
    modifiers: int
    keys: tuple[int, ...]

    FORMAT = "<BB10B"
    SIZE = 12

    @classmethod
    def from_bytes(cls, data: bytes) -> "KeyboardReport":
        _check_size(cls, data)
        values = struct.unpack_from(cls.FORMAT, data)
        return cls(values[0], values[1], tuple(values[2:]))

    def is_key_pressed(self, key: int) -> bool:
        return key != 0 and key in self.keys

    @property
    def pressed_keys(self) -> tuple[int, ...]:
        return tuple(k for k in self.keys if k)

    def __str__(self) -> str:
        keys = ", ".join(str(k) for k in self.keys)
        return f"{self.report_id}: Modifiers={self.modifiers}, Keys=({keys})"


@dataclass(frozen=True)
class CompositeReport:
    """Mouse and keyboard state streamed by the box in monitor mode."""
    mouse: MouseReport
    keyboard: KeyboardReport

    SIZE = MouseReport.SIZE + KeyboardReport.SIZE

    @classmethod
    def from_bytes(cls, data: bytes) -> "CompositeReport":
        _check_size(cls, data)
        return cls(
            MouseReport.from_bytes(data[:MouseReport.SIZE]),
            KeyboardReport.from_bytes(data[MouseReport.SIZE:cls.SIZE]),
        )

    def __str__(self) -> str:
        return f"{self.mouse}\n{self.keyboard}"


Payload = Union[MouseAction, KeyboardAction, SetConfigPayload, ScreenLine]


def _check_size(cls, data: bytes) -> None:
    if len(data) < cls.SIZE:
        raise DecodeError(f"{cls.__name__} needs {cls.SIZE} bytes, got {len(data)}")


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise ValueError(f"{name} must be in {low}..{high}, got {value}")


def encode_header(header: CommandHeader) -> bytes:
    return header.to_bytes()


def encode(header: CommandHeader, payload: Optional[Payload] = None) -> bytes:
    """Build the datagram for a request: header bytes, then payload bytes."""
    if payload is None:
        return header.to_bytes()
    return header.to_bytes() + payload.to_bytes()


def decode(cls, data: bytes):
    """Decode ``data`` as ``cls``, e.g. ``decode(CommandHeader, reply)``.

    Raises DecodeError when ``data`` is shorter than the layout of ``cls``.
    Trailing bytes are ignored.
    """
    return cls.from_bytes(data)


def command_name(cmd: int) -> str:
    return COMMAND_NAMES.get(cmd, f"0x{cmd:08X}")


def mac_to_uint(mac: str) -> int:
    """Convert the box's 8-character UUID (e.g. "417F0CD3") to its 32-bit id.

    The digits are decoded pairwise by hand, case-insensitive, and the first
    four bytes are packed high byte first.
    """
    if len(mac) != 8 or any(c not in "0123456789abcdefABCDEF" for c in mac):
        raise ValueError(f"mac must be 8 hex characters, got {mac!r}")

    def nibble(c: str) -> int:
        value = ord(c.upper()) - 0x30
        if value > 9:
            value -= 7
        return value

    raw = bytearray(4)
    for i in range(4):
        raw[i] = (nibble(mac[2 * i]) * 16 + nibble(mac[2 * i + 1])) & 0xFF
    return (raw[0] << 24) | (raw[1] << 16) | (raw[2] << 8) | raw[3]


def parse_ipv4(address) -> ipaddress.IPv4Address:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError as e:
        raise ValueError(f"Invalid IP address: {address!r}") from e
    if not isinstance(ip, ipaddress.IPv4Address):
        raise ValueError(f"IPv4 address expected, got {address!r}")
    return ip


def is_in_device_subnet(address) -> bool:
    """True if ``address`` masked with 255.255.255.0 equals 192.168.2.0."""
    return parse_ipv4(address) in DEVICE_SUBNET


def monitor_nonce(port: int, enable: bool) -> int:
    if not enable:
        return 0
    return (((port + 1) & 0xFFFF) | (MONITOR_MAGIC << 16)) & UINT32_MASK


def config_nonce(address) -> int:
    """Pack an IPv4 address so its octets go out on the wire in network order."""
    return int.from_bytes(parse_ipv4(address).packed, "little")
