from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from phonepilot.agent.events import AgentEvent, TaskListener
from phonepilot.config import load_settings
from phonepilot.errors import ConfigError
from phonepilot.service import TaskService, build_agent
from phonepilot.util.log import get_logger, setup_logging

log = get_logger("phonepilot.server")


# Global state
class AppState:
    service: Optional[TaskService] = None
    verbose: bool = False


state = AppState()


def _default_service() -> TaskService:
    try:
        settings = load_settings()
    except ConfigError as e:
        log.error("Agent not configured: %s", e.describe())
        return TaskService()
    return TaskService(build_agent(settings))


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(verbose=state.verbose)
    if state.service is None:
        state.service = _default_service()
    state.service.attach_loop(asyncio.get_running_loop())
    log.info("Server starting...")
    yield
    log.info("Server shutting down...")
    svc = state.service
    if svc is not None and svc.agent is not None and svc.is_task_running():
        svc.cancel_task()
        try:
            await asyncio.wait_for(svc.agent.wait(), timeout=svc.agent.cfg.cancel_grace_s + 1.0)
        except asyncio.TimeoutError:
            log.warning("Task did not stop before shutdown")


app = FastAPI(lifespan=lifespan)


def _service() -> TaskService:
    if state.service is None:
        state.service = TaskService()
    return state.service


class TaskRequest(BaseModel):
    description: str


@app.post("/api/tasks")
async def start_task(req: TaskRequest):
    svc = _service()
    if not req.description.strip():
        return JSONResponse({"started": False, "error": "description is empty"}, status_code=400)
    if not svc.start_task(req.description):
        snap = svc.snapshot(last_steps=0)
        return JSONResponse(
            {"started": False, "error": "task not started", "state": snap["state"], "ready": snap["ready"]},
            status_code=409,
        )
    return {"started": True}


@app.post("/api/pause")
async def pause_task():
    return {"ok": _service().pause_task()}


@app.post("/api/resume")
async def resume_task():
    return {"ok": _service().resume_task()}


@app.post("/api/cancel")
async def cancel_task():
    _service().cancel_task()
    return {"status": "cancelling"}


@app.get("/api/state")
async def get_state() -> Dict[str, Any]:
    return _service().snapshot()


class _SocketListener(TaskListener):
    """Moves events from the bus delivery thread onto the server loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, q: "asyncio.Queue[Dict[str, Any]]") -> None:
        self.loop = loop
        self.q = q

    def on_event(self, event: AgentEvent) -> None:
        self.loop.call_soon_threadsafe(self.q.put_nowait, event.to_dict())


@app.websocket("/ws/events")
async def websocket_events(websocket: WebSocket):
    svc = _service()
    q: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    sub = svc.register_listener(_SocketListener(asyncio.get_running_loop(), q))
    await websocket.accept()

    async def _pump() -> None:
        while True:
            await websocket.send_json(await q.get())

    sender = asyncio.create_task(_pump())
    try:
        # Incoming messages are ignored; receiving only detects disconnects.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        svc.unregister_listener(sub)


def main(host: str = "0.0.0.0", port: int = 8000):
    import uvicorn
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
