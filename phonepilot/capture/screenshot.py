from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from phonepilot.device.adb import AdbDevice
from phonepilot.util.image import get_image_size
from phonepilot.util.log import get_logger
from phonepilot.util.paths import LATEST_PNG

log = get_logger("phonepilot.capture")


@dataclass(frozen=True)
class Screenshot:
    data: bytes = field(repr=False)
    mime_type: str
    width: int
    height: int
    ref: str


def make_screenshot(data: bytes, mime_type: str = "image/png") -> Screenshot:
    w, h = get_image_size(data)
    ref = f"{int(time.time() * 1000)}-{hashlib.sha256(data).hexdigest()[:12]}"
    return Screenshot(data=data, mime_type=mime_type, width=w, height=h, ref=ref)


class ScreenshotProvider(Protocol):
    async def capture(self) -> Screenshot: ...


@dataclass
class AdbScreenshotProvider:
    device: AdbDevice = field(default_factory=AdbDevice)
    timeout_s: float = 10.0

    async def capture(self) -> Screenshot:
        data = await self.device.run("exec-out", "screencap", "-p", timeout_s=self.timeout_s)
        if not data.startswith(b"\x89PNG"):
            raise IOError(f"screencap returned {len(data)}B that is not a PNG")
        return make_screenshot(data, "image/png")


@dataclass
class FileScreenshotProvider:
    """Reads the most recent frame that an external capture process keeps writing."""

    path: Path = LATEST_PNG
    max_age_s: float = 0.0

    def _read(self) -> bytes:
        if not self.path.exists():
            raise FileNotFoundError(f"latest frame missing: {self.path}")
        if self.max_age_s > 0:
            age = time.time() - self.path.stat().st_mtime
            if age > self.max_age_s:
                raise IOError(f"frame {self.path} is stale ({age:.1f}s old)")
        return self.path.read_bytes()

    async def capture(self) -> Screenshot:
        data = await asyncio.to_thread(self._read)
        mime = "image/jpeg" if data[:2] == b"\xff\xd8" else "image/png"
        return make_screenshot(data, mime)
