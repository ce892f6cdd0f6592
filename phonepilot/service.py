from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from phonepilot.agent.actions import Action
from phonepilot.agent.events import EventBus
from phonepilot.agent.runner import TaskAgent
from phonepilot.capture.screenshot import AdbScreenshotProvider, FileScreenshotProvider, ScreenshotProvider
from phonepilot.config import Settings
from phonepilot.device.adb import AdbDevice, AdbExecutor, AdbTaskPrep
from phonepilot.errors import AlreadyRunning, DependencyNotReady
from phonepilot.gemini.client import GeminiTransport
from phonepilot.history import JsonHistorySink, step_to_dict
from phonepilot.util.log import get_logger

log = get_logger("phonepilot.service")


def build_screenshots(s: Settings, device: AdbDevice) -> ScreenshotProvider:
    if s.screenshot_source == "adb":
        return AdbScreenshotProvider(device)
    return FileScreenshotProvider(Path(s.screenshot_source).expanduser())


def build_agent(
    s: Settings,
    bus: Optional[EventBus] = None,
    confirm: Optional[Callable[[Action], Awaitable[bool]]] = None,
) -> TaskAgent:
    """Wires the Gemini transport and ADB adapters into a TaskAgent."""
    device = AdbDevice(serial=s.adb_serial, adb_path=s.adb_path)
    executor = AdbExecutor(device, apps=s.apps)
    return TaskAgent(
        transport=GeminiTransport(model=s.model, thinking_level=s.thinking_level, api_key=s.api_key),
        screenshots=build_screenshots(s, device),
        executor=executor,
        cfg=s.agent,
        bus=bus,
        history=JsonHistorySink() if s.save_history else None,
        confirm=confirm,
        prep=AdbTaskPrep(device, executor) if s.prepare_device and not s.agent.dry_run else None,
    )


class TaskService:
    """
    Control surface used by the CLI and HTTP server.

    Every method returns immediately; progress arrives through registered
    listeners. `agent` may be None until the caller has configured one, in
    which case `start_task` reports "Agent not initialized".
    """

    def __init__(self, agent: Optional[TaskAgent] = None, bus: Optional[EventBus] = None) -> None:
        if agent is not None and bus is not None and agent.bus is not bus:
            raise ValueError("agent and service must share one event bus")
        self.bus = bus or (agent.bus if agent is not None else EventBus())
        self.agent = agent

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Lets `start_task` be called from threads that run no event loop."""
        if self.agent is not None:
            self.agent.attach_loop(loop)

    def start_task(self, description: str) -> bool:
        if not description or not description.strip():
            log.warning("Refusing to start a task with an empty description")
            return False

        agent = self.agent
        try:
            if agent is None:
                raise DependencyNotReady("no agent configured")
            if agent.state.terminal:
                agent.reset()
            agent.start(description)
        except DependencyNotReady as e:
            log.error("Cannot start task: %s", e.describe())
            self.bus.publish("task_failed", error="Agent not initialized", step_count=0)
            return False
        except AlreadyRunning as e:
            log.warning("Cannot start task: %s", e.describe())
            return False
        return True

    def pause_task(self) -> bool:
        return self.agent.pause() if self.agent is not None else False

    def resume_task(self) -> bool:
        return self.agent.resume() if self.agent is not None else False

    def cancel_task(self) -> None:
        if self.agent is not None:
            self.agent.cancel()

    def is_task_running(self) -> bool:
        return self.agent is not None and self.agent.is_running()

    def register_listener(self, listener: Any):
        return self.bus.subscribe(listener)

    def unregister_listener(self, listener: Any) -> bool:
        return self.bus.unsubscribe(listener)

    def snapshot(self, last_steps: int = 5) -> Dict[str, Any]:
        agent = self.agent
        if agent is None:
            return {"state": "IDLE", "ready": False, "task": None, "step_count": 0, "steps": []}

        task = agent.task
        steps = agent.steps
        return {
            "state": agent.state.value,
            "ready": agent.ready(),
            "task": None
            if task is None
            else {"id": task.id, "description": task.description, "created_at": task.created_at},
            "step_count": len(steps),
            "steps": [step_to_dict(s) for s in steps[-last_steps:]] if last_steps > 0 else [],
        }
