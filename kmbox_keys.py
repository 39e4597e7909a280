"""HID keyboard usage codes and the text-to-keystroke table (US layout)."""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Optional

from kmbox_protocol import UnsupportedCharacterError


# Modifier key bit flags (standard HID modifier byte)
MODIFIER_LEFT_CTRL = 0x01
MODIFIER_LEFT_SHIFT = 0x02
MODIFIER_LEFT_ALT = 0x04
MODIFIER_LEFT_GUI = 0x08
MODIFIER_RIGHT_CTRL = 0x10
MODIFIER_RIGHT_SHIFT = 0x20
MODIFIER_RIGHT_ALT = 0x40
MODIFIER_RIGHT_GUI = 0x80

# HID keyboard usage codes
HID_KEY_USAGE = MappingProxyType({
    # Letters A-Z
    **{chr(ord("A") + i): 0x04 + i for i in range(26)},
    # Numbers 1-9, 0
    "1": 0x1E, "2": 0x1F, "3": 0x20, "4": 0x21, "5": 0x22,
    "6": 0x23, "7": 0x24, "8": 0x25, "9": 0x26, "0": 0x27,
    # Function keys
    "F1": 0x3A, "F2": 0x3B, "F3": 0x3C, "F4": 0x3D, "F5": 0x3E, "F6": 0x3F,
    "F7": 0x40, "F8": 0x41, "F9": 0x42, "F10": 0x43, "F11": 0x44, "F12": 0x45,
    # Special keys
    "Enter": 0x28, "Escape": 0x29, "Backspace": 0x2A, "Tab": 0x2B, "Space": 0x2C,
    "Minus": 0x2D, "Equal": 0x2E, "LeftBracket": 0x2F, "RightBracket": 0x30,
    "Backslash": 0x31, "Semicolon": 0x33, "Quote": 0x34, "Grave": 0x35,
    "Comma": 0x36, "Period": 0x37, "Slash": 0x38, "CapsLock": 0x39,
    # Navigation
    "Insert": 0x49, "Home": 0x4A, "PageUp": 0x4B,
    "Delete": 0x4C, "End": 0x4D, "PageDown": 0x4E,
    "Right": 0x4F, "Left": 0x50, "Down": 0x51, "Up": 0x52,
    # System
    "PrintScreen": 0x46, "ScrollLock": 0x47, "Pause": 0x48,
    "Menu": 0x65, "NumLock": 0x53,
    # Keypad
    "Keypad /": 0x54, "Keypad *": 0x55, "Keypad -": 0x56, "Keypad +": 0x57,
    "Keypad Enter": 0x58, "Keypad .": 0x63,
    "Keypad 1": 0x59, "Keypad 2": 0x5A, "Keypad 3": 0x5B,
    "Keypad 4": 0x5C, "Keypad 5": 0x5D, "Keypad 6": 0x5E,
    "Keypad 7": 0x5F, "Keypad 8": 0x60, "Keypad 9": 0x61,
    "Keypad 0": 0x62,
    # Modifiers as keys
    "LeftCtrl": 0xE0, "LeftShift": 0xE1, "LeftAlt": 0xE2, "LeftGui": 0xE3,
    "RightCtrl": 0xE4, "RightShift": 0xE5, "RightAlt": 0xE6, "RightGui": 0xE7,
})

_SHIFT = MODIFIER_LEFT_SHIFT

# Maps char -> (keycode, modifier_mask)
CHAR_TO_KEY = MappingProxyType({
    # Lowercase
    **{chr(ord('a') + i): (0x04 + i, 0) for i in range(26)},
    # Uppercase (Shift)
    **{chr(ord('A') + i): (0x04 + i, _SHIFT) for i in range(26)},
    # Numbers
    '1': (0x1E, 0), '2': (0x1F, 0), '3': (0x20, 0), '4': (0x21, 0), '5': (0x22, 0),
    '6': (0x23, 0), '7': (0x24, 0), '8': (0x25, 0), '9': (0x26, 0), '0': (0x27, 0),
    # Shifted digits
    '!': (0x1E, _SHIFT), '@': (0x1F, _SHIFT), '#': (0x20, _SHIFT),
    '$': (0x21, _SHIFT), '%': (0x22, _SHIFT), '^': (0x23, _SHIFT),
    '&': (0x24, _SHIFT), '*': (0x25, _SHIFT), '(': (0x26, _SHIFT),
    ')': (0x27, _SHIFT),
    # Punctuation
    ' ': (0x2C, 0), '.': (0x37, 0), ',': (0x36, 0), '?': (0x38, _SHIFT),
    '/': (0x38, 0), ';': (0x33, 0), ':': (0x33, _SHIFT), "'": (0x34, 0),
    '"': (0x34, _SHIFT), '[': (0x2F, 0), '{': (0x2F, _SHIFT),
    ']': (0x30, 0), '}': (0x30, _SHIFT), '\\': (0x31, 0), '|': (0x31, _SHIFT),
    '-': (0x2D, 0), '_': (0x2D, _SHIFT), '=': (0x2E, 0), '+': (0x2E, _SHIFT),
    '`': (0x35, 0), '~': (0x35, _SHIFT),
    '<': (0x36, _SHIFT), '>': (0x37, _SHIFT),
    '\n': (0x28, 0),  # Enter
    '\t': (0x2B, 0),
})


@dataclass(frozen=True)
class Keystroke:
    """One keyboard command of a typing plan.

    ``key`` is None for an "all keys up" command.
    """
    key: Optional[int] = None
    modifiers: int = 0

    @property
    def is_release(self) -> bool:
        return self.key is None


RELEASE = Keystroke()


def plan_keystrokes(text: str) -> list[Keystroke]:
    """Turn ``text`` into the ordered keyboard commands that type it.

    The whole text is checked before anything is planned, so an unsupported
    character means no command is sent at all.

    The box only sees keyboard state, so pressing the same key twice in a row
    reads as one long press. A release is inserted between repeated
    characters, and the plan always ends with a release.
    """
    for index, character in enumerate(text):
        if character not in CHAR_TO_KEY:
            raise UnsupportedCharacterError(character, index)

    steps: list[Keystroke] = []
    last = None
    for character in text:
        key, modifiers = CHAR_TO_KEY[character]
        if character == last:
            steps.append(RELEASE)
        steps.append(Keystroke(key, modifiers))
        last = character
    steps.append(RELEASE)
    return steps
