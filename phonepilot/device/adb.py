from __future__ import annotations

import asyncio
import re
import shlex
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from phonepilot.agent.actions import KEY_CODES, VIRTUAL_MAX
from phonepilot.errors import ExecutorError, TransientExecutorError
from phonepilot.util.log import get_logger

log = get_logger("phonepilot.device.adb")

# adb stderr fragments that mean "try again", not "this will never work"
TRANSIENT_MARKERS = (
    "device offline",
    "device not found",
    "no devices/emulators found",
    "connection reset",
    "closed",
    "protocol fault",
    "cannot connect",
)

_SIZE_RE = re.compile(r"(\d+)x(\d+)")

# Text that `adb shell input text` cannot carry reliably.
_NEEDS_IME = re.compile(r"[^\x20-\x7e]")


@dataclass
class AdbDevice:
    serial: Optional[str] = None
    adb_path: str = "adb"
    timeout_s: float = 15.0

    def _argv(self, *args: str) -> List[str]:
        argv = [self.adb_path]
        if self.serial:
            argv += ["-s", self.serial]
        return argv + list(args)

    async def run(self, *args: str, timeout_s: Optional[float] = None) -> bytes:
        argv = self._argv(*args)
        log.debug("adb: %s", " ".join(shlex.quote(a) for a in argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ExecutorError(f"adb binary not found: {self.adb_path}") from e

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_s or self.timeout_s)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            raise

        if proc.returncode != 0:
            msg = (err or out).decode("utf-8", errors="replace").strip()
            if any(m in msg.lower() for m in TRANSIENT_MARKERS):
                raise TransientExecutorError(f"adb {args[0]}: {msg}")
            raise ExecutorError(f"adb {args[0]} exited {proc.returncode}: {msg}")
        return out

    async def shell(self, *args: str, timeout_s: Optional[float] = None) -> str:
        out = await self.run("shell", *args, timeout_s=timeout_s)
        return out.decode("utf-8", errors="replace")

    async def screen_size(self) -> Tuple[int, int]:
        out = await self.shell("wm", "size")
        # "Override size" wins over "Physical size" when both are present
        sizes = _SIZE_RE.findall(out)
        if not sizes:
            raise ExecutorError(f"cannot read screen size from: {out.strip()!r}")
        w, h = sizes[-1]
        return int(w), int(h)


@dataclass
class AdbExecutor:
    """
    Executes actions on an Android device through adb shell `input`.

    Coordinates arrive on the 0..VIRTUAL_MAX grid and are scaled to the
    device's pixel size (queried once, then cached).
    """

    device: AdbDevice = field(default_factory=AdbDevice)
    apps: Dict[str, str] = field(default_factory=dict)
    double_tap_gap_s: float = 0.08
    _size: Optional[Tuple[int, int]] = field(default=None, init=False, repr=False)

    async def _to_px(self, x: int, y: int) -> Tuple[int, int]:
        if self._size is None:
            self._size = await self.device.screen_size()
            log.info("Device screen size: %dx%d", *self._size)
        w, h = self._size
        px = int(round(x / VIRTUAL_MAX * (w - 1)))
        py = int(round(y / VIRTUAL_MAX * (h - 1)))
        return px, py

    async def tap(self, x: int, y: int) -> None:
        px, py = await self._to_px(x, y)
        await self.device.shell("input", "tap", str(px), str(py))

    async def double_tap(self, x: int, y: int) -> None:
        px, py = await self._to_px(x, y)
        await self.device.shell("input", "tap", str(px), str(py))
        await asyncio.sleep(self.double_tap_gap_s)
        await self.device.shell("input", "tap", str(px), str(py))

    async def long_press(self, x: int, y: int, duration_ms: int) -> None:
        px, py = await self._to_px(x, y)
        await self.device.shell("input", "swipe", str(px), str(py), str(px), str(py), str(duration_ms))

    async def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int) -> None:
        a = await self._to_px(x1, y1)
        b = await self._to_px(x2, y2)
        await self.device.shell("input", "swipe", str(a[0]), str(a[1]), str(b[0]), str(b[1]), str(duration_ms))

    async def type_text(self, text: str) -> None:
        if _NEEDS_IME.search(text):
            raise ExecutorError("non-ASCII text needs an input-method bridge; adb input cannot type it")
        # `input text` treats space as an argument separator; %s is its escape
        escaped = text.replace("%", "\\%").replace(" ", "%s")
        await self.device.shell("input", "text", shlex.quote(escaped))

    async def press_key(self, key_code: int) -> None:
        await self.device.shell("input", "keyevent", str(key_code))

    def resolve_package(self, app_name: str) -> str:
        for name, pkg in self.apps.items():
            if name.lower() == app_name.lower():
                return pkg
        if "." in app_name and " " not in app_name:
            return app_name
        raise ExecutorError(f"unknown app {app_name!r}; add it to the apps map")

    async def launch_app(self, app_name: str) -> None:
        pkg = self.resolve_package(app_name)
        out = await self.device.shell("monkey", "-p", pkg, "-c", "android.intent.category.LAUNCHER", "1")
        if "No activities found" in out or "monkey aborted" in out.lower():
            raise ExecutorError(f"cannot launch {pkg}: {out.strip()}")


@dataclass
class AdbTaskPrep:
    """
    Gets the phone ready before a task and undoes it afterwards.

    Before: wake the screen, keep it on while plugged in, dismiss a
    non-secure keyguard, wait for the unlock, press Home and let the launcher
    settle. After: stop keeping the screen on. Device errors are logged and
    the task goes ahead regardless.
    """

    device: AdbDevice
    executor: Any
    unlock_wait_s: float = 1.0
    home_settle_s: float = 0.5

    async def _try(self, what: str, aw: Awaitable[Any]) -> None:
        try:
            await aw
        except Exception as e:
            log.warning("Could not %s: %s", what, str(e) or type(e).__name__)

    async def before(self, sleep: Callable[[float], Awaitable[None]]) -> None:
        await self._try("wake the screen", self.device.shell("input", "keyevent", "KEYCODE_WAKEUP"))
        await self._try("keep the screen on", self.device.shell("svc", "power", "stayon", "true"))
        await self._try("dismiss the keyguard", self.device.shell("wm", "dismiss-keyguard"))
        await sleep(self.unlock_wait_s)

        await self._try("return to Home", self.executor.press_key(KEY_CODES["HOME"]))
        await sleep(self.home_settle_s)
        log.info("Device ready: awake, on the home screen")

    async def after(self) -> None:
        await self._try("release stay-on", self.device.shell("svc", "power", "stayon", "false"))
