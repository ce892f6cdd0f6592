from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from phonepilot.agent.actions import (
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
from phonepilot.agent.validate import is_dangerous_text
from phonepilot.errors import ExecutorError, TransientExecutorError
from phonepilot.util.log import get_logger

log = get_logger("phonepilot.agent.dispatch")


class Outcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    FATAL_FAILURE = "FATAL_FAILURE"


@dataclass(frozen=True)
class DispatchResult:
    outcome: Outcome
    detail: str = ""
    attempts: int = 0
    retries_exhausted: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS


class Executor(Protocol):
    async def tap(self, x: int, y: int) -> None: ...
    async def double_tap(self, x: int, y: int) -> None: ...
    async def long_press(self, x: int, y: int, duration_ms: int) -> None: ...
    async def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int) -> None: ...
    async def type_text(self, text: str) -> None: ...
    async def launch_app(self, app_name: str) -> None: ...
    async def press_key(self, key_code: int) -> None: ...


# Exceptions that make an attempt eligible for retry.
TRANSIENT_ERRORS = (asyncio.TimeoutError, ConnectionError, TransientExecutorError)


class Dispatcher:
    def __init__(
        self,
        executor: Executor,
        retries: int = 2,
        backoff_s: float = 0.5,
        backoff: str = "exponential",
        timeout_s: float = 15.0,
        allow_danger: bool = False,
        dry_run: bool = False,
        confirm: Optional[Callable[[Action], Awaitable[bool]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if backoff not in ("fixed", "exponential"):
            raise ValueError(f"backoff must be 'fixed' or 'exponential', got {backoff!r}")
        self.executor = executor
        self.retries = max(0, retries)
        self.backoff_s = backoff_s
        self.backoff = backoff
        self.timeout_s = timeout_s
        self.allow_danger = allow_danger
        self.dry_run = dry_run
        self.confirm = confirm
        self.sleep = sleep

    def _delay(self, attempt: int) -> float:
        if self.backoff == "exponential":
            return self.backoff_s * (2 ** attempt)
        return self.backoff_s

    def _call(self, action: Action) -> Awaitable[None]:
        ex = self.executor
        if isinstance(action, Tap):
            return ex.tap(action.x, action.y)
        if isinstance(action, DoubleTap):
            return ex.double_tap(action.x, action.y)
        if isinstance(action, LongPress):
            return ex.long_press(action.x, action.y, action.duration_ms)
        if isinstance(action, Swipe):
            return ex.swipe(action.x1, action.y1, action.x2, action.y2, action.duration_ms)
        if isinstance(action, TypeText):
            return ex.type_text(action.text)
        if isinstance(action, LaunchApp):
            return ex.launch_app(action.app_name)
        if isinstance(action, KeyPress):
            return ex.press_key(action.key_code)
        raise TypeError(f"no executor call for {type(action).__name__}")

    async def _allowed(self, action: Action) -> Optional[str]:
        if not isinstance(action, TypeText) or self.allow_danger or not is_dangerous_text(action.text):
            return None
        if self.confirm is not None:
            try:
                if await self.confirm(action):
                    return None
            except Exception as e:
                log.warning("Confirmation callback failed: %s", e)
        return f"Refused dangerous text without allow_danger: {action.text!r}"

    async def dispatch(self, action: Action, deadline_s: Optional[float] = None) -> DispatchResult:
        """
        Run one action against the executor with timeout and bounded retries.

        `deadline_s` caps each executor call; it defaults to the dispatcher's
        `timeout_s`.
        """
        if isinstance(action, Finish):
            return DispatchResult(Outcome.SUCCESS, "finish", 0)
        if isinstance(action, Invalid):
            return DispatchResult(Outcome.FATAL_FAILURE, f"invalid action: {action.reason}", 0)
        if isinstance(action, Wait):
            await self.sleep(action.ms / 1000.0)
            return DispatchResult(Outcome.SUCCESS, f"waited {action.ms}ms", 0)

        refused = await self._allowed(action)
        if refused:
            log.warning(refused)
            return DispatchResult(Outcome.FATAL_FAILURE, refused, 0)

        if self.dry_run:
            log.info("dry-run: %s", action.format_for_display())
            return DispatchResult(Outcome.SUCCESS, "dry-run", 0)

        timeout = deadline_s if deadline_s is not None else self.timeout_s
        last = ""
        for attempt in range(self.retries + 1):
            try:
                await asyncio.wait_for(self._call(action), timeout=timeout)
                return DispatchResult(Outcome.SUCCESS, "ok", attempt + 1)
            except TRANSIENT_ERRORS as e:
                last = str(e) or type(e).__name__
                if attempt >= self.retries:
                    break
                delay = self._delay(attempt)
                log.warning(
                    "%s failed transiently (attempt %d/%d): %s; retrying in %.2fs",
                    action.format_for_display(), attempt + 1, self.retries + 1, last, delay,
                )
                await self.sleep(delay)
            except ExecutorError as e:
                log.error("%s failed: %s", action.format_for_display(), e)
                return DispatchResult(Outcome.FATAL_FAILURE, str(e), attempt + 1)
            except Exception as e:
                log.exception("Executor raised unexpectedly for %s", action.format_for_display())
                return DispatchResult(Outcome.FATAL_FAILURE, f"{type(e).__name__}: {e}", attempt + 1)

        return DispatchResult(
            Outcome.FATAL_FAILURE,
            f"transient failure persisted after {self.retries + 1} attempts: {last}",
            self.retries + 1,
            retries_exhausted=True,
        )
