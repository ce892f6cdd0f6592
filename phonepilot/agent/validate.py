from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from phonepilot.agent.actions import (
    DEFAULT_LONG_PRESS_MS,
    DEFAULT_SWIPE_MS,
    KEY_CODES,
    MAX_DURATION_MS,
    VIRTUAL_MAX,
    Action,
    DoubleTap,
    Finish,
    Invalid,
    KeyPress,
    LaunchApp,
    LongPress,
    Swipe,
    Tap,
    TypeText,
    Wait,
)

MAX_TEXT_LEN = 2000

DANGER_PATTERNS = [
    "rm -", "rm -rf", "del /", "format ", "mkfs", "shutdown", "reboot",
    "passwd", "net user", "reg delete", "diskpart", "bcdedit", "factory reset",
]


class ParseError(ValueError):
    pass


# ── Tokenizer ────────────────────────────────────────────────────────────────

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>[-+]?(?:\d+\.\d*|\.\d+|\d+))
  | (?P<ident>[A-Za-z_][A-Za-z0-9_ \-]*[A-Za-z0-9_]|[A-Za-z_])
  | (?P<punct>[()\[\],=])
  | (?P<quote>["'])
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}


@dataclass(frozen=True)
class Token:
    type: str
    value: Any
    pos: int


def _read_string(text: str, start: int) -> Tuple[str, int]:
    quote = text[start]
    out: List[str] = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            out.append(_ESCAPES.get(nxt, "\\" + nxt))
            i += 2
            continue
        if ch == quote:
            return "".join(out), i + 1
        out.append(ch)
        i += 1
    raise ParseError(f"unterminated string starting at {start}")


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    while i < len(text):
        m = _TOKEN_RE.match(text, i)
        if not m:
            raise ParseError(f"unexpected character {text[i]!r} at {i}")
        kind = m.lastgroup
        if kind == "ws":
            i = m.end()
            continue
        if kind == "quote":
            s, i = _read_string(text, i)
            tokens.append(Token("string", s, m.start()))
            continue
        raw = m.group(kind)
        if kind == "number":
            value: Any = float(raw) if "." in raw else int(raw)
        elif kind == "ident":
            value = raw.strip()
        else:
            value = raw
        tokens.append(Token(kind, value, m.start()))
        i = m.end()
    return tokens


# ── Grammar ──────────────────────────────────────────────────────────────────

@dataclass
class Command:
    name: str
    positional: List[Any]
    named: Dict[str, Any]


class _Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.i = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _next(self) -> Token:
        tok = self._peek()
        if tok is None:
            raise ParseError("unexpected end of input")
        self.i += 1
        return tok

    def _expect(self, value: str) -> None:
        tok = self._next()
        if tok.type != "punct" or tok.value != value:
            raise ParseError(f"expected {value!r} at {tok.pos}, got {tok.value!r}")

    def _value(self) -> Any:
        tok = self._next()
        if tok.type in ("number", "string"):
            return tok.value
        if tok.type == "punct" and tok.value == "[":
            items: List[Any] = []
            if self._peek() is not None and self._peek().value == "]":
                self.i += 1
                return items
            while True:
                item = self._next()
                if item.type != "number":
                    raise ParseError(f"list items must be numbers (at {item.pos})")
                items.append(item.value)
                sep = self._next()
                if sep.type == "punct" and sep.value == "]":
                    return items
                if not (sep.type == "punct" and sep.value == ","):
                    raise ParseError(f"expected ',' or ']' at {sep.pos}")
        raise ParseError(f"unexpected token {tok.value!r} at {tok.pos}")

    def command(self) -> Command:
        head = self._next()
        if head.type != "ident":
            raise ParseError("command must start with a name")
        self._expect("(")

        positional: List[Any] = []
        named: Dict[str, Any] = {}
        tok = self._peek()
        if tok is not None and tok.type == "punct" and tok.value == ")":
            self.i += 1
        else:
            while True:
                tok = self._peek()
                after = self.tokens[self.i + 1] if self.i + 1 < len(self.tokens) else None
                if (
                    tok is not None
                    and tok.type == "ident"
                    and after is not None
                    and after.type == "punct"
                    and after.value == "="
                ):
                    self.i += 2
                    key = _norm_name(tok.value)
                    if key in named:
                        raise ParseError(f"duplicate argument {tok.value!r}")
                    named[key] = self._value()
                else:
                    if named:
                        raise ParseError("positional argument after named argument")
                    positional.append(self._value())
                sep = self._next()
                if sep.type == "punct" and sep.value == ")":
                    break
                if not (sep.type == "punct" and sep.value == ","):
                    raise ParseError(f"expected ',' or ')' at {sep.pos}")

        if self._peek() is not None:
            raise ParseError(f"trailing input at {self._peek().pos}")
        return Command(name=head.value, positional=positional, named=named)


def _norm_name(name: str) -> str:
    return re.sub(r"[\s_\-]", "", name).lower()


# ── Binding ──────────────────────────────────────────────────────────────────

_VOCAB = {
    "tap": "tap",
    "swipe": "swipe",
    "longpress": "long_press",
    "doubletap": "double_tap",
    "type": "type_text",
    "typetext": "type_text",
    "launch": "launch_app",
    "launchapp": "launch_app",
    "key": "key_press",
    "keypress": "key_press",
    "presskey": "key_press",
    "back": "back",
    "home": "home",
    "wait": "wait",
    "finish": "finish",
}


class _Args:
    def __init__(self, positional: List[Any], named: Dict[str, Any]) -> None:
        self.pos = list(positional)
        self.named = dict(named)

    def _pop_named(self, *names: str) -> Tuple[bool, Any]:
        for n in names:
            if n in self.named:
                return True, self.named.pop(n)
        return False, None

    def point(self, names: Tuple[str, ...], xy: Tuple[str, str], what: str) -> Tuple[int, int]:
        found, val = self._pop_named(*names)
        if not found and xy[0] in self.named and xy[1] in self.named:
            val = [self.named.pop(xy[0]), self.named.pop(xy[1])]
            found = True
        if not found:
            if self.pos and isinstance(self.pos[0], list):
                val = self.pos.pop(0)
            elif len(self.pos) >= 2:
                val = [self.pos.pop(0), self.pos.pop(0)]
            else:
                raise ParseError(f"missing {what} coordinates")
        if not isinstance(val, list) or len(val) != 2:
            raise ParseError(f"{what} must be [x,y]")
        x, y = (_coord(v, what) for v in val)
        return x, y

    def string(self, names: Tuple[str, ...], what: str, required: bool = True) -> Optional[str]:
        found, val = self._pop_named(*names)
        if not found and self.pos:
            val = self.pos.pop(0)
            found = True
        if not found:
            if required:
                raise ParseError(f"missing {what}")
            return None
        if not isinstance(val, str):
            raise ParseError(f"{what} must be a string")
        return val

    def duration(self, names: Tuple[str, ...], default: int, what: str) -> int:
        found, val = self._pop_named(*names)
        if not found and self.pos:
            val = self.pos.pop(0)
            found = True
        if not found:
            return default
        return _duration_ms(val, what, default_unit="ms")

    def done(self) -> None:
        if self.pos:
            raise ParseError(f"too many arguments ({len(self.pos)} unused)")
        if self.named:
            raise ParseError(f"unexpected argument(s): {', '.join(sorted(self.named))}")


def _coord(v: Any, what: str) -> int:
    if isinstance(v, bool) or not isinstance(v, int):
        raise ParseError(f"{what} coordinate {v!r} is not an integer")
    if v < 0 or v > VIRTUAL_MAX:
        raise ParseError(f"{what} coordinate {v} outside 0..{VIRTUAL_MAX}")
    return v


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|secs?|seconds?)?\s*$", re.IGNORECASE)


def _duration_ms(val: Any, what: str, default_unit: str) -> int:
    if isinstance(val, bool):
        raise ParseError(f"{what} must be a number")
    if isinstance(val, (int, float)):
        if val < 0:
            raise ParseError(f"{what} must not be negative")
        ms = val * 1000 if default_unit == "s" else val
    elif isinstance(val, str):
        m = _DURATION_RE.match(val)
        if not m:
            raise ParseError(f"cannot read {what} from {val!r}")
        num = float(m.group(1))
        unit = (m.group(2) or default_unit).lower()
        ms = num if unit.startswith("m") else num * 1000
    else:
        raise ParseError(f"{what} must be a number or string")
    ms = int(round(ms))
    if ms > MAX_DURATION_MS:
        raise ParseError(f"{what} {ms}ms exceeds {MAX_DURATION_MS}ms")
    return ms


def _key_code(val: Any) -> int:
    if isinstance(val, bool):
        raise ParseError("key must be a key code or key name")
    if isinstance(val, int):
        if val < 0 or val > 400:
            raise ParseError(f"key code {val} out of range")
        return val
    if isinstance(val, str):
        name = val.strip().upper().replace(" ", "_")
        if name.startswith("KEYCODE_"):
            name = name[len("KEYCODE_"):]
        if name in KEY_CODES:
            return KEY_CODES[name]
        raise ParseError(f"unknown key {val!r}")
    raise ParseError("key must be a key code or key name")


def _bind(variant: str, args: _Args) -> Action:
    if variant == "tap":
        x, y = args.point(("element", "point", "coordinate", "coordinates"), ("x", "y"), "tap")
        args.done()
        return Tap(x, y)

    if variant == "double_tap":
        x, y = args.point(("element", "point", "coordinate", "coordinates"), ("x", "y"), "double tap")
        args.done()
        return DoubleTap(x, y)

    if variant == "long_press":
        x, y = args.point(("element", "point", "coordinate", "coordinates"), ("x", "y"), "long press")
        ms = args.duration(("durationms", "duration", "ms"), DEFAULT_LONG_PRESS_MS, "long press duration")
        args.done()
        return LongPress(x, y, ms)

    if variant == "swipe":
        x1, y1 = args.point(("start", "from"), ("x1", "y1"), "swipe start")
        x2, y2 = args.point(("end", "to"), ("x2", "y2"), "swipe end")
        ms = args.duration(("durationms", "duration", "ms"), DEFAULT_SWIPE_MS, "swipe duration")
        args.done()
        return Swipe(x1, y1, x2, y2, ms)

    if variant == "type_text":
        text = args.string(("text", "content"), "text")
        args.done()
        if len(text) > MAX_TEXT_LEN:
            raise ParseError(f"text longer than {MAX_TEXT_LEN} characters")
        return TypeText(text)

    if variant == "launch_app":
        app = args.string(("app", "appname", "name", "package"), "app name")
        args.done()
        if not app.strip():
            raise ParseError("app name is empty")
        return LaunchApp(app.strip())

    if variant == "key_press":
        found, val = args._pop_named("key", "keycode", "code")
        if not found:
            if not args.pos:
                raise ParseError("missing key")
            val = args.pos.pop(0)
        args.done()
        return KeyPress(_key_code(val))

    if variant in ("back", "home"):
        args.done()
        return KeyPress(KEY_CODES[variant.upper()])

    if variant == "wait":
        found, val = args._pop_named("ms", "durationms")
        if found:
            ms = _duration_ms(val, "wait duration", default_unit="ms")
        else:
            found, val = args._pop_named("duration", "seconds", "time")
            if not found:
                if not args.pos:
                    raise ParseError("missing wait duration")
                val = args.pos.pop(0)
            ms = _duration_ms(val, "wait duration", default_unit="s")
        args.done()
        return Wait(ms)

    if variant == "finish":
        message = args.string(("message", "msg", "summary"), "message", required=False)
        args.done()
        return Finish(message or "")

    raise ParseError(f"unknown command {variant!r}")


def parse_command(text: str) -> Command:
    """Tokenize and parse one command. Raises ParseError."""
    return _Parser(tokenize(text.strip())).command()


def parse_action(text: str) -> Action:
    """
    Parse one action command into a typed Action.

    Never raises: anything that does not match the grammar, names an unknown
    command, has the wrong arguments, or carries an out-of-range coordinate
    comes back as Invalid(reason).
    """
    if not isinstance(text, str) or not text.strip():
        return Invalid("empty action text")
    try:
        cmd = parse_command(text)
        args = _Args(cmd.positional, cmd.named)
        name = _norm_name(cmd.name)
        shown = cmd.name

        if name == "do":
            found, target = args._pop_named("action")
            if not found:
                if not args.pos:
                    raise ParseError("do() requires action=")
                target = args.pos.pop(0)
            if not isinstance(target, str):
                raise ParseError("action must be a string")
            name = _norm_name(target)
            shown = target

        variant = _VOCAB.get(name)
        if variant is None:
            raise ParseError(f"unknown command {shown!r}")
        return _bind(variant, args)
    except ParseError as e:
        return Invalid(str(e))
    except (ValueError, TypeError, RecursionError) as e:
        return Invalid(f"malformed action: {e}")


def is_dangerous_text(text: str) -> bool:
    t = text.lower()
    return any(p in t for p in DANGER_PATTERNS)
