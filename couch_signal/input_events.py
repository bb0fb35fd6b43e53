"""
Input events sent from the controller to the host over the ``input``
data channel.

Coordinates are normalized (0-1) to the remote frame. Key codes are macOS
virtual key codes, since the host injects them with CoreGraphics.
"""

from enum import Enum, IntEnum, IntFlag
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class InputEventType(str, Enum):
    MOUSE_MOVE = "mouse_move"
    MOUSE_DOWN = "mouse_down"
    MOUSE_UP = "mouse_up"
    MOUSE_SCROLL = "mouse_scroll"
    KEY_DOWN = "key_down"
    KEY_UP = "key_up"


class MouseButton(IntEnum):
    LEFT = 0
    RIGHT = 1
    MIDDLE = 2


class Modifier(IntFlag):
    NONE = 0
    SHIFT = 1
    CONTROL = 2
    ALT = 4
    COMMAND = 8


UNMAPPED_KEY = 0xFF


class InputEvent(BaseModel):
    """
    One input event.

    Zero-valued fields are left out of the encoded form; the host treats a
    missing field as zero.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: InputEventType
    x: float = 0.0
    y: float = 0.0
    button: int = 0
    key_code: int = Field(default=0, alias="keyCode")
    modifiers: int = 0
    scroll_dx: float = Field(default=0.0, alias="scrollDX")
    scroll_dy: float = Field(default=0.0, alias="scrollDY")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_defaults=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_defaults=True)


def mouse_move(x: float, y: float) -> InputEvent:
    return InputEvent(type=InputEventType.MOUSE_MOVE, x=x, y=y)


def mouse_down(x: float, y: float, button: MouseButton = MouseButton.LEFT) -> InputEvent:
    return InputEvent(type=InputEventType.MOUSE_DOWN, x=x, y=y, button=int(button))


def mouse_up(x: float, y: float, button: MouseButton = MouseButton.LEFT) -> InputEvent:
    return InputEvent(type=InputEventType.MOUSE_UP, x=x, y=y, button=int(button))


def scroll(dx: float, dy: float) -> InputEvent:
    return InputEvent(type=InputEventType.MOUSE_SCROLL, scroll_dx=dx, scroll_dy=dy)


def key_down(key: str, modifiers: Modifier = Modifier.NONE) -> InputEvent:
    """Key press for a web key name (``"a"``, ``"Enter"``, ``"ArrowUp"``)."""
    return InputEvent(type=InputEventType.KEY_DOWN, key_code=translate_key(key), modifiers=int(modifiers))


def key_up(key: str, modifiers: Modifier = Modifier.NONE) -> InputEvent:
    return InputEvent(type=InputEventType.KEY_UP, key_code=translate_key(key), modifiers=int(modifiers))


# Key name mapping from web key names to macOS virtual key codes
KEY_MAP = {
    "a": 0x00, "s": 0x01, "d": 0x02, "f": 0x03,
    "h": 0x04, "g": 0x05, "z": 0x06, "x": 0x07,
    "c": 0x08, "v": 0x09, "b": 0x0B, "q": 0x0C,
    "w": 0x0D, "e": 0x0E, "r": 0x0F, "y": 0x10,
    "t": 0x11, "o": 0x1F, "u": 0x20, "i": 0x22,
    "p": 0x23, "l": 0x25, "j": 0x26, "k": 0x28,
    "n": 0x2D, "m": 0x2E,
    "1": 0x12, "2": 0x13, "3": 0x14, "4": 0x15,
    "6": 0x16, "5": 0x17, "9": 0x19, "7": 0x1A,
    "8": 0x1C, "0": 0x1D,
    "Enter": 0x24,
    "Tab": 0x30,
    " ": 0x31,
    "Backspace": 0x33,
    "Escape": 0x35,
    "ArrowLeft": 0x7B,
    "ArrowRight": 0x7C,
    "ArrowDown": 0x7D,
    "ArrowUp": 0x7E,
    "F1": 0x7A, "F2": 0x78, "F3": 0x63, "F4": 0x76,
    "F5": 0x60, "F6": 0x61, "F7": 0x62, "F8": 0x64,
    "F9": 0x65, "F10": 0x6D, "F11": 0x67, "F12": 0x6F,
    "Delete": 0x75,
    "Home": 0x73,
    "End": 0x77,
    "PageUp": 0x74,
    "PageDown": 0x79,
}


def translate_key(web_key: str) -> int:
    """Translate a web key name to a macOS key code (0xFF if unmapped)."""
    if len(web_key) == 1:
        web_key = web_key.lower()
    return KEY_MAP.get(web_key, UNMAPPED_KEY)


def modifiers_from_flags(shift: bool = False, ctrl: bool = False,
                         alt: bool = False, meta: bool = False) -> Modifier:
    """Build the modifier bitfield from browser style flags."""
    flags = Modifier.NONE
    if shift:
        flags |= Modifier.SHIFT
    if ctrl:
        flags |= Modifier.CONTROL
    if alt:
        flags |= Modifier.ALT
    if meta:
        flags |= Modifier.COMMAND
    return flags
