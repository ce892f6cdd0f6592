from __future__ import annotations

import asyncio
import threading
from io import BytesIO
from typing import Any, List, Optional

import pytest
from PIL import Image

from phonepilot.agent.events import AgentEvent, EventBus, TaskListener
from phonepilot.agent.runner import AgentConfig, TaskAgent
from phonepilot.capture.screenshot import make_screenshot


def png_bytes(w: int = 36, h: int = 64, color=(20, 40, 60)) -> bytes:
    out = BytesIO()
    Image.new("RGB", (w, h), color).save(out, format="PNG")
    return out.getvalue()


PNG = png_bytes()


def reply(thinking: str, command: str) -> List[str]:
    """A well-formed reply split into uneven fragments, markers included."""
    text = f"<think>{thinking}</think><answer>{command}</answer>"
    return [text[i:i + 7] for i in range(0, len(text), 7)]


class MemoryScreenshots:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0

    async def capture(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise IOError("no frame yet")
        return make_screenshot(PNG)


class ScriptedTransport:
    """
    Plays back replies in order; the last one repeats. A reply is a list of
    fragments, a plain string, or an exception to raise.
    """

    def __init__(self, replies: List[Any], gate: Optional[asyncio.Event] = None) -> None:
        self.replies = list(replies)
        self.requests: List[list] = []
        self.gate = gate

    async def stream_chat(self, turns):
        self.requests.append(list(turns))
        item = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            item = [item]
        for fragment in item:
            await asyncio.sleep(0)
            yield fragment


class HangingTransport:
    """Sends part of the thinking, then never finishes."""

    def __init__(self) -> None:
        self.requests: List[list] = []
        self.closed = False

    async def stream_chat(self, turns):
        self.requests.append(list(turns))
        try:
            yield "<think>looking"
            await asyncio.Event().wait()
        finally:
            self.closed = True


class RecordingExecutor:
    def __init__(self, errors: Optional[List[Exception]] = None) -> None:
        self.calls: List[tuple] = []
        self.errors = list(errors or [])

    async def _record(self, *call) -> None:
        self.calls.append(call)
        if self.errors:
            raise self.errors.pop(0)

    async def tap(self, x, y):
        await self._record("tap", x, y)

    async def double_tap(self, x, y):
        await self._record("double_tap", x, y)

    async def long_press(self, x, y, duration_ms):
        await self._record("long_press", x, y, duration_ms)

    async def swipe(self, x1, y1, x2, y2, duration_ms):
        await self._record("swipe", x1, y1, x2, y2, duration_ms)

    async def type_text(self, text):
        await self._record("type_text", text)

    async def launch_app(self, app_name):
        await self._record("launch_app", app_name)

    async def press_key(self, key_code):
        await self._record("press_key", key_code)


class FakeDevice:
    """Stands in for AdbDevice: records shell calls, optionally failing each one."""

    def __init__(self, size=(1081, 2401), out: str = "", error: Optional[Exception] = None) -> None:
        self.size = size
        self.out = out
        self.error = error
        self.shell_calls: List[tuple] = []

    async def screen_size(self):
        return self.size

    async def shell(self, *args, timeout_s=None):
        self.shell_calls.append(args)
        if self.error is not None:
            raise self.error
        return self.out


class RecordingListener(TaskListener):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[AgentEvent] = []

    def on_event(self, event: AgentEvent) -> None:
        with self._lock:
            self.events.append(event)

    def names(self) -> List[str]:
        with self._lock:
            return [e.name for e in self.events]

    def of(self, name: str) -> List[dict]:
        with self._lock:
            return [e.args for e in self.events if e.name == name]


class RecordingHistory:
    def __init__(self) -> None:
        self.records: List[tuple] = []
        self.done = threading.Event()

    def record(self, task, steps, state, message) -> None:
        self.records.append((task, list(steps), state, message))
        self.done.set()


def fast_config(**overrides) -> AgentConfig:
    base = dict(
        step_delay_s=0.0,
        retry_backoff_s=0.0,
        dispatch_backoff_s=0.0,
        cancel_grace_s=0.5,
    )
    base.update(overrides)
    return AgentConfig(**base)


class Rig:
    def __init__(self, transport, screenshots=None, executor=None, history=None, prep=None, **cfg) -> None:
        self.transport = transport
        self.screenshots = screenshots or MemoryScreenshots()
        self.executor = executor or RecordingExecutor()
        self.history = history
        self.bus = EventBus()
        self.listener = RecordingListener()
        self.bus.subscribe(self.listener)
        self.agent = TaskAgent(
            transport=self.transport,
            screenshots=self.screenshots,
            executor=self.executor,
            cfg=fast_config(**cfg),
            bus=self.bus,
            history=self.history,
            prep=prep,
        )

    async def run(self, description: str = "open settings", timeout: float = 5.0):
        self.agent.start(description)
        state = await asyncio.wait_for(self.agent.wait(), timeout)
        self.flush()
        return state

    def flush(self) -> None:
        assert self.bus.flush(timeout=2.0)


async def until(cond, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while not cond():
        if loop.time() > end:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def rig_factory():
    rigs: List[Rig] = []

    def make(*args, **kwargs) -> Rig:
        r = Rig(*args, **kwargs)
        rigs.append(r)
        return r

    yield make
    for r in rigs:
        r.bus.close()
