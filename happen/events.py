from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .feeds import Item, now_utc


class EventKind(str, Enum):
    KEY = "key"
    TICK = "tick"
    DATA_READY = "data_ready"
    FETCH_FAILED = "fetch_failed"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    key: str = ""
    items: tuple[Item, ...] = ()
    error: str = ""
    at: datetime | None = None

    @classmethod
    def key_pressed(cls, key: str) -> Event:
        return cls(EventKind.KEY, key=key, at=now_utc())

    @classmethod
    def tick(cls) -> Event:
        return cls(EventKind.TICK, at=now_utc())

    @classmethod
    def data_ready(cls, items: tuple[Item, ...]) -> Event:
        return cls(EventKind.DATA_READY, items=items, at=now_utc())

    @classmethod
    def fetch_failed(cls, error: str) -> Event:
        return cls(EventKind.FETCH_FAILED, error=error, at=now_utc())


ESCAPE_SEQUENCES = {
    "[A": "UP",
    "[B": "DOWN",
    "OA": "UP",
    "OB": "DOWN",
    "[5~": "PGUP",
    "[6~": "PGDN",
    "[H": "HOME",
    "[F": "END",
    "OH": "HOME",
    "OF": "END",
    "[1~": "HOME",
    "[4~": "END",
    "[7~": "HOME",
    "[8~": "END",
}

SINGLE_KEYS = {
    "\r": "ENTER",
    "\n": "ENTER",
    "\x7f": "BACKSPACE",
    "\b": "BACKSPACE",
    "\x03": "QUIT",
}


# xterm button reporting with SGR encoding: ESC [ < button ; x ; y (M|m)
MOUSE_REPORTING_ON = "\x1b[?1000h\x1b[?1006h"
MOUSE_REPORTING_OFF = "\x1b[?1006l\x1b[?1000l"
SGR_MOUSE_RE = re.compile(r"\[<(\d+);\d+;\d+[Mm]")
WHEEL_FLAG = 64
MODIFIER_BITS = 4 | 8 | 16
MAX_SEQUENCE_LENGTH = 16


def sequence_complete(sequence: str) -> bool:
    """True once the bytes after ESC form a whole CSI/SS3 or SGR mouse sequence."""
    if len(sequence) >= MAX_SEQUENCE_LENGTH:
        return True
    # The introducer ("[" or "O") is never the final byte.
    if len(sequence) < 2:
        return False
    return sequence[-1].isalpha() or sequence.endswith("~")


def decode_mouse(sequence: str) -> str | None:
    match = SGR_MOUSE_RE.fullmatch(sequence)
    if match is None:
        return None
    button = int(match.group(1)) & ~MODIFIER_BITS
    if button == WHEEL_FLAG:
        return "WHEELUP"
    if button == WHEEL_FLAG + 1:
        return "WHEELDOWN"
    return "MOUSE"


def decode_key(key: str, sequence: str = "") -> str:
    """Map a raw byte (plus any escape sequence that followed it) to a key name."""
    if key == "\x1b":
        return decode_mouse(sequence) or ESCAPE_SEQUENCES.get(sequence, "ESC")
    return SINGLE_KEYS.get(key, key)
