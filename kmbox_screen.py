"""LCD image helpers.

The box's 128x160 screen takes a raw RGB565 buffer ("Horizon Scan", 16-bit
true color, as exported by Image2Lcd with every checkbox off, i.e. low byte
first). ``rgb_to_rgb565`` produces that buffer from an ordinary RGB array.
"""
from __future__ import annotations

import numpy as np

from kmbox_protocol import (
    SCREEN_BUFFER_LEN,
    SCREEN_HEIGHT,
    SCREEN_LINE_COUNT,
    SCREEN_LINE_LEN,
    SCREEN_WIDTH,
)


def rgb_to_rgb565(pixels, byteorder: str = "little") -> bytes:
    """Pack a (160, 128, 3) uint8 RGB array into the 40960-byte screen buffer.

    Args:
        pixels: Array-like of shape (SCREEN_HEIGHT, SCREEN_WIDTH, 3), row-major.
        byteorder: "little" (default, what the box expects) or "big".
    """
    arr = np.asarray(pixels)
    if arr.shape != (SCREEN_HEIGHT, SCREEN_WIDTH, 3):
        raise ValueError(
            f"image must have shape ({SCREEN_HEIGHT}, {SCREEN_WIDTH}, 3), got {arr.shape}"
        )
    if byteorder not in ("little", "big"):
        raise ValueError(f"byteorder must be 'little' or 'big', got {byteorder!r}")

    arr = arr.astype(np.uint16)
    r = (arr[..., 0] >> 3) & 0x1F
    g = (arr[..., 1] >> 2) & 0x3F
    b = (arr[..., 2] >> 3) & 0x1F
    packed = (r << 11) | (g << 5) | b

    dtype = "<u2" if byteorder == "little" else ">u2"
    return packed.astype(dtype).tobytes()


def solid_color(r: int, g: int, b: int) -> bytes:
    """Screen buffer filled with one color."""
    pixels = np.empty((SCREEN_HEIGHT, SCREEN_WIDTH, 3), dtype=np.uint8)
    pixels[...] = (r & 0xFF, g & 0xFF, b & 0xFF)
    return rgb_to_rgb565(pixels)


def split_lines(buffer: bytes) -> list[tuple[int, bytes]]:
    """Return (line_index, chunk) for the 40 line transfers of a screen buffer."""
    if len(buffer) != SCREEN_BUFFER_LEN:
        raise ValueError(
            f"Image buffer must be exactly {SCREEN_BUFFER_LEN} bytes in length, got {len(buffer)}"
        )
    data = bytes(buffer)
    return [
        (line, data[line * SCREEN_LINE_LEN:(line + 1) * SCREEN_LINE_LEN])
        for line in range(SCREEN_LINE_COUNT)
    ]
