from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingExecutor
from phonepilot.agent.actions import (
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
from phonepilot.agent.dispatch import Dispatcher, Outcome
from phonepilot.errors import ExecutorError, TransientExecutorError


class Sleeps:
    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.mark.asyncio
async def test_routes_each_variant():
    ex = RecordingExecutor()
    d = Dispatcher(ex, sleep=Sleeps())
    for action in (
        Tap(1, 2),
        DoubleTap(3, 4),
        LongPress(5, 6, 700),
        Swipe(1, 2, 3, 4, 200),
        TypeText("hello"),
        LaunchApp("Maps"),
        KeyPress(4),
    ):
        result = await d.dispatch(action)
        assert result.outcome is Outcome.SUCCESS
        assert result.attempts == 1

    assert ex.calls == [
        ("tap", 1, 2),
        ("double_tap", 3, 4),
        ("long_press", 5, 6, 700),
        ("swipe", 1, 2, 3, 4, 200),
        ("type_text", "hello"),
        ("launch_app", "Maps"),
        ("press_key", 4),
    ]


@pytest.mark.asyncio
async def test_wait_finish_and_invalid_bypass_executor():
    ex = RecordingExecutor()
    sleeps = Sleeps()
    d = Dispatcher(ex, sleep=sleeps)

    assert (await d.dispatch(Wait(1500))).ok
    assert sleeps.calls == [1.5]
    assert (await d.dispatch(Finish("done"))).outcome is Outcome.SUCCESS
    assert (await d.dispatch(Invalid("nope"))).outcome is Outcome.FATAL_FAILURE
    assert ex.calls == []


@pytest.mark.asyncio
async def test_transient_errors_retry_with_exponential_backoff():
    ex = RecordingExecutor(errors=[TransientExecutorError("offline"), ConnectionError("reset")])
    sleeps = Sleeps()
    d = Dispatcher(ex, retries=2, backoff_s=0.5, backoff="exponential", sleep=sleeps)

    result = await d.dispatch(Tap(1, 1))
    assert result.outcome is Outcome.SUCCESS
    assert result.attempts == 3
    assert sleeps.calls == [0.5, 1.0]


@pytest.mark.asyncio
async def test_fixed_backoff_and_exhaustion():
    ex = RecordingExecutor(errors=[TransientExecutorError("offline")] * 5)
    sleeps = Sleeps()
    d = Dispatcher(ex, retries=2, backoff_s=0.25, backoff="fixed", sleep=sleeps)

    result = await d.dispatch(Tap(1, 1))
    assert result.outcome is Outcome.FATAL_FAILURE
    assert result.retries_exhausted
    assert result.attempts == 3
    assert "offline" in result.detail
    assert sleeps.calls == [0.25, 0.25]


@pytest.mark.asyncio
async def test_timeout_is_transient():
    class Slow(RecordingExecutor):
        async def tap(self, x, y):
            await asyncio.sleep(5)

    d = Dispatcher(Slow(), retries=1, timeout_s=0.01, sleep=Sleeps())
    result = await d.dispatch(Tap(1, 1))
    assert result.outcome is Outcome.FATAL_FAILURE
    assert result.retries_exhausted
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_executor_error_is_fatal_without_retry():
    ex = RecordingExecutor(errors=[ExecutorError("unknown app")])
    d = Dispatcher(ex, retries=3, sleep=Sleeps())
    result = await d.dispatch(LaunchApp("Nope"))
    assert result.outcome is Outcome.FATAL_FAILURE
    assert not result.retries_exhausted
    assert result.detail == "unknown app"
    assert len(ex.calls) == 1


@pytest.mark.asyncio
async def test_unexpected_exception_is_fatal():
    ex = RecordingExecutor(errors=[KeyError("boom")])
    result = await Dispatcher(ex, sleep=Sleeps()).dispatch(Tap(1, 1))
    assert result.outcome is Outcome.FATAL_FAILURE
    assert "KeyError" in result.detail


@pytest.mark.asyncio
async def test_dangerous_text_needs_permission():
    ex = RecordingExecutor()
    d = Dispatcher(ex, sleep=Sleeps())
    result = await d.dispatch(TypeText("rm -rf /sdcard"))
    assert result.outcome is Outcome.FATAL_FAILURE
    assert ex.calls == []

    asked = []

    async def approve(action):
        asked.append(action)
        return True

    d = Dispatcher(ex, confirm=approve, sleep=Sleeps())
    assert (await d.dispatch(TypeText("rm -rf /sdcard"))).ok
    assert asked == [TypeText("rm -rf /sdcard")]

    d = Dispatcher(ex, allow_danger=True, sleep=Sleeps())
    assert (await d.dispatch(TypeText("rm -rf /sdcard"))).ok
    assert len(ex.calls) == 2


@pytest.mark.asyncio
async def test_dry_run_skips_executor():
    ex = RecordingExecutor()
    result = await Dispatcher(ex, dry_run=True, sleep=Sleeps()).dispatch(Tap(1, 1))
    assert result.ok and result.detail == "dry-run"
    assert ex.calls == []


def test_rejects_unknown_backoff():
    with pytest.raises(ValueError):
        Dispatcher(RecordingExecutor(), backoff="random")
