from __future__ import annotations

import itertools
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from phonepilot.util.log import get_logger

log = get_logger("phonepilot.agent.events")

EVENT_NAMES = (
    "task_started",
    "step_started",
    "thinking_update",
    "action_executed",
    "task_paused",
    "task_resumed",
    "task_completed",
    "task_failed",
    "status_changed",
)

_seq = itertools.count(1)


@dataclass(frozen=True)
class AgentEvent:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    seq: int = field(default_factory=lambda: next(_seq))

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, "seq": self.seq, **self.args}


class TaskListener:
    """Progress observer. Override any subset; every method is optional."""

    def on_task_started(self, description: str) -> None: ...
    def on_step_started(self, step_index: int) -> None: ...
    def on_thinking_update(self, partial_text: str) -> None: ...
    def on_action_executed(self, action_display_text: str) -> None: ...
    def on_task_paused(self, step_index: int) -> None: ...
    def on_task_resumed(self, step_index: int) -> None: ...
    def on_task_completed(self, success: bool, message: str, step_count: int) -> None: ...
    def on_task_failed(self, error: str, step_count: int) -> None: ...
    def on_status_changed(self, status: str) -> None: ...

    def on_event(self, event: AgentEvent) -> None:
        """Called after the specific handler, for every event."""


_STOP = object()


class Subscription:
    def __init__(self, listener: Any, name: str) -> None:
        self.listener = listener
        self._q: "queue.Queue[Any]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def put(self, item: Any) -> None:
        self._q.put_nowait(item)

    def stop(self) -> None:
        self._q.put_nowait(_STOP)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until everything queued so far has been delivered."""
        marker = threading.Event()
        self._q.put_nowait(marker)
        return marker.wait(timeout)

    def _run(self) -> None:
        while True:
            item = self._q.get()
            if item is _STOP:
                return
            if isinstance(item, threading.Event):
                item.set()
                continue
            self._deliver(item)

    def _deliver(self, event: AgentEvent) -> None:
        for attr in ("on_" + event.name, "on_event"):
            handler = getattr(self.listener, attr, None)
            if handler is None:
                continue
            try:
                if attr == "on_event":
                    handler(event)
                else:
                    handler(**event.args)
            except Exception:
                log.exception("Listener %r failed on %s", self.listener, event.name)


class EventBus:
    """
    Multi-subscriber event channel.

    Each subscriber gets its own queue and delivery thread: publishing never
    blocks, a slow or raising listener only delays itself, and every
    subscriber sees events in publish order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: List[Subscription] = []
        self._n = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)

    def subscribe(self, listener: Any) -> Subscription:
        with self._lock:
            self._n += 1
            sub = Subscription(listener, name=f"phonepilot-listener-{self._n}")
            self._subs.append(sub)
        return sub

    def unsubscribe(self, target: Any) -> bool:
        """Accepts a Subscription or the listener object it wraps."""
        with self._lock:
            for sub in self._subs:
                if sub is target or sub.listener is target:
                    self._subs.remove(sub)
                    sub.stop()
                    return True
        return False

    def publish(self, name: str, **args: Any) -> AgentEvent:
        if name not in EVENT_NAMES:
            raise ValueError(f"unknown event {name!r}")
        with self._lock:
            event = AgentEvent(name, args)
            for sub in self._subs:
                sub.put(event)
        return event

    def flush(self, timeout: float = 5.0) -> bool:
        with self._lock:
            subs = list(self._subs)
        return all(sub.drain(timeout) for sub in subs)

    def close(self) -> None:
        with self._lock:
            subs, self._subs = self._subs, []
        for sub in subs:
            sub.stop()
