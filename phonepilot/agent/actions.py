from __future__ import annotations

import json
from dataclasses import dataclass
from typing import ClassVar, Dict, Union

# Model coordinates live on a 0..VIRTUAL_MAX grid on both axes (inclusive),
# independent of the device's pixel resolution.
VIRTUAL_MAX = 1000

DEFAULT_SWIPE_MS = 300
DEFAULT_LONG_PRESS_MS = 800
MAX_DURATION_MS = 60000

# Android KeyEvent codes
KEY_CODES: Dict[str, int] = {
    "HOME": 3,
    "BACK": 4,
    "CALL": 5,
    "ENDCALL": 6,
    "VOLUME_UP": 24,
    "VOLUME_DOWN": 25,
    "POWER": 26,
    "CAMERA": 27,
    "TAB": 61,
    "SPACE": 62,
    "ENTER": 66,
    "DEL": 67,
    "BACKSPACE": 67,
    "MENU": 82,
    "SEARCH": 84,
    "ESCAPE": 111,
    "ESC": 111,
    "APP_SWITCH": 187,
    "RECENTS": 187,
}
_KEY_NAMES = {}
for _name, _code in KEY_CODES.items():
    _KEY_NAMES.setdefault(_code, _name)


def _q(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


def _short(s: str, n: int = 40) -> str:
    return s if len(s) <= n else s[:n] + "…"


def key_name(code: int) -> str:
    return _KEY_NAMES.get(code, str(code))


@dataclass(frozen=True)
class Tap:
    kind: ClassVar[str] = "tap"
    x: int
    y: int

    def format_for_display(self) -> str:
        return f"Tap ({self.x}, {self.y})"

    def to_command(self) -> str:
        return f'do(action="Tap", element=[{self.x},{self.y}])'


@dataclass(frozen=True)
class DoubleTap:
    kind: ClassVar[str] = "double_tap"
    x: int
    y: int

    def format_for_display(self) -> str:
        return f"Double tap ({self.x}, {self.y})"

    def to_command(self) -> str:
        return f'do(action="Double Tap", element=[{self.x},{self.y}])'


@dataclass(frozen=True)
class LongPress:
    kind: ClassVar[str] = "long_press"
    x: int
    y: int
    duration_ms: int = DEFAULT_LONG_PRESS_MS

    def format_for_display(self) -> str:
        return f"Long press ({self.x}, {self.y}) for {self.duration_ms}ms"

    def to_command(self) -> str:
        return f'do(action="Long Press", element=[{self.x},{self.y}], duration_ms={self.duration_ms})'


@dataclass(frozen=True)
class Swipe:
    kind: ClassVar[str] = "swipe"
    x1: int
    y1: int
    x2: int
    y2: int
    duration_ms: int = DEFAULT_SWIPE_MS

    def format_for_display(self) -> str:
        return f"Swipe ({self.x1}, {self.y1}) -> ({self.x2}, {self.y2})"

    def to_command(self) -> str:
        return (
            f'do(action="Swipe", start=[{self.x1},{self.y1}], end=[{self.x2},{self.y2}], '
            f"duration_ms={self.duration_ms})"
        )


@dataclass(frozen=True)
class TypeText:
    kind: ClassVar[str] = "type_text"
    text: str

    def format_for_display(self) -> str:
        return f"Type {_q(_short(self.text))}"

    def to_command(self) -> str:
        return f'do(action="Type", text={_q(self.text)})'


@dataclass(frozen=True)
class LaunchApp:
    kind: ClassVar[str] = "launch_app"
    app_name: str

    def format_for_display(self) -> str:
        return f"Launch {self.app_name}"

    def to_command(self) -> str:
        return f'do(action="Launch", app={_q(self.app_name)})'


@dataclass(frozen=True)
class KeyPress:
    kind: ClassVar[str] = "key_press"
    key_code: int

    def format_for_display(self) -> str:
        return f"Press {key_name(self.key_code)}"

    def to_command(self) -> str:
        return f'do(action="Key", key={self.key_code})'


@dataclass(frozen=True)
class Wait:
    kind: ClassVar[str] = "wait"
    ms: int

    def format_for_display(self) -> str:
        return f"Wait {self.ms}ms"

    def to_command(self) -> str:
        return f'do(action="Wait", ms={self.ms})'


@dataclass(frozen=True)
class Finish:
    kind: ClassVar[str] = "finish"
    message: str = ""

    def format_for_display(self) -> str:
        return f"Finish: {self.message}" if self.message else "Finish"

    def to_command(self) -> str:
        return f"finish(message={_q(self.message)})"


@dataclass(frozen=True)
class Invalid:
    kind: ClassVar[str] = "invalid"
    reason: str

    def format_for_display(self) -> str:
        return f"Invalid action: {self.reason}"

    def to_command(self) -> str:
        return ""


Action = Union[Tap, DoubleTap, LongPress, Swipe, TypeText, LaunchApp, KeyPress, Wait, Finish, Invalid]

