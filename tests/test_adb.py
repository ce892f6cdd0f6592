from __future__ import annotations

import pytest

from conftest import FakeDevice, RecordingExecutor
from phonepilot.device.adb import AdbExecutor, AdbTaskPrep
from phonepilot.errors import ExecutorError


@pytest.mark.asyncio
async def test_virtual_coordinates_scale_to_pixels():
    dev = FakeDevice()
    ex = AdbExecutor(dev)
    await ex.tap(0, 0)
    await ex.tap(1000, 1000)
    await ex.tap(500, 500)
    assert dev.shell_calls == [
        ("input", "tap", "0", "0"),
        ("input", "tap", "1080", "2400"),
        ("input", "tap", "540", "1200"),
    ]


@pytest.mark.asyncio
async def test_swipe_long_press_and_keys():
    dev = FakeDevice(size=(1001, 1001))
    ex = AdbExecutor(dev)
    await ex.swipe(100, 800, 100, 200, 300)
    await ex.long_press(10, 20, 900)
    await ex.press_key(4)
    assert dev.shell_calls == [
        ("input", "swipe", "100", "800", "100", "200", "300"),
        ("input", "swipe", "10", "20", "10", "20", "900"),
        ("input", "keyevent", "4"),
    ]


@pytest.mark.asyncio
async def test_type_text_escapes_spaces():
    dev = FakeDevice()
    ex = AdbExecutor(dev)
    await ex.type_text("hi there")
    assert dev.shell_calls == [("input", "text", "hi%sthere")]

    with pytest.raises(ExecutorError):
        await ex.type_text("héllo")


@pytest.mark.asyncio
async def test_launch_app_resolution():
    dev = FakeDevice(out="Events injected: 1")
    ex = AdbExecutor(dev, apps={"Settings": "com.android.settings"})
    await ex.launch_app("settings")
    await ex.launch_app("org.example.notes")
    assert dev.shell_calls[0][:3] == ("monkey", "-p", "com.android.settings")
    assert dev.shell_calls[1][:3] == ("monkey", "-p", "org.example.notes")

    with pytest.raises(ExecutorError):
        await ex.launch_app("Some Unknown App")

    dev.out = "** No activities found to run, monkey aborted."
    with pytest.raises(ExecutorError):
        await ex.launch_app("settings")


@pytest.mark.asyncio
async def test_task_prep_wakes_then_goes_home():
    dev = FakeDevice()
    ex = RecordingExecutor()
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    prep = AdbTaskPrep(dev, ex, unlock_wait_s=1.0, home_settle_s=0.5)
    await prep.before(sleep)
    assert dev.shell_calls == [
        ("input", "keyevent", "KEYCODE_WAKEUP"),
        ("svc", "power", "stayon", "true"),
        ("wm", "dismiss-keyguard"),
    ]
    assert ex.calls == [("press_key", 3)]
    assert sleeps == [1.0, 0.5]

    await prep.after()
    assert dev.shell_calls[-1] == ("svc", "power", "stayon", "false")


@pytest.mark.asyncio
async def test_task_prep_logs_device_errors_and_carries_on():
    dev = FakeDevice(error=ExecutorError("adb shell exited 1: error: closed"))
    ex = RecordingExecutor(errors=[ExecutorError("keyevent refused")])
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    prep = AdbTaskPrep(dev, ex, unlock_wait_s=0.2, home_settle_s=0.1)
    await prep.before(sleep)
    await prep.after()

    assert len(dev.shell_calls) == 4
    assert ex.calls == [("press_key", 3)]
    assert sleeps == [0.2, 0.1]
