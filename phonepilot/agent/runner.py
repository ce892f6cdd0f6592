from __future__ import annotations

import asyncio
import enum
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Tuple

from phonepilot.agent.actions import Action, Finish, Invalid
from phonepilot.agent.assembler import AssemblyError, ResponseAssembler
from phonepilot.agent.context import ChatTurn, ContextTurn, ConversationContext, render_response
from phonepilot.agent.dispatch import Dispatcher, DispatchResult, Executor, Outcome
from phonepilot.agent.events import EventBus
from phonepilot.agent.validate import parse_action
from phonepilot.capture.screenshot import Screenshot, ScreenshotProvider
from phonepilot.errors import (
    ActionParseFailure,
    AlreadyRunning,
    CaptureFailure,
    DependencyNotReady,
    DispatchFatalFailure,
    DispatchTransientFailure,
    PhonePilotError,
    StepBudgetExceeded,
    StreamFailure,
)
from phonepilot.util.log import get_logger
from phonepilot.util.markdown import strip_markdown

log = get_logger("phonepilot.agent")


class AgentState(str, enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in (AgentState.COMPLETED, AgentState.FAILED, AgentState.CANCELLED)

    @property
    def active(self) -> bool:
        return self in (AgentState.RUNNING, AgentState.PAUSED)


@dataclass(frozen=True)
class Task:
    id: str
    description: str
    created_at: float


@dataclass(frozen=True)
class Step:
    index: int
    screenshot_ref: Optional[str]
    raw_model_response: str
    thinking_text: str
    action_text: str
    parsed_action: Optional[Action]
    dispatch_result: Optional[DispatchResult]
    timestamp: float


@dataclass
class AgentConfig:
    max_steps: int = 50

    # Bounded retries
    capture_retries: int = 2
    stream_retries: int = 2
    reprompt_limit: int = 2
    retry_backoff_s: float = 1.0
    dispatch_retries: int = 2
    dispatch_backoff_s: float = 0.5
    dispatch_backoff: str = "exponential"

    # Timeouts
    capture_timeout_s: float = 10.0
    dispatch_timeout_s: float = 15.0
    stream_timeout_s: float = 120.0
    cancel_grace_s: float = 2.0

    step_delay_s: float = 0.5

    # Conversation context
    max_context_turns: int = 12
    max_context_chars: int = 24000
    keep_images: int = 1

    allow_danger: bool = False
    dry_run: bool = False


class ModelTransport(Protocol):
    def stream_chat(self, turns: List[ChatTurn]) -> AsyncIterator[str]: ...


class HistorySink(Protocol):
    def record(self, task: Task, steps: List[Step], state: AgentState, message: str) -> None: ...


class TaskPrep(Protocol):
    """Device preparation around a task. Implementations log failures instead of raising."""

    async def before(self, sleep: Callable[[float], Awaitable[None]]) -> None: ...

    async def after(self) -> None: ...


class _Cancelled(Exception):
    pass


REPROMPT = (
    "Your previous reply could not be used: {reason}. "
    "Reply again with <think>short reasoning</think> followed by "
    "<answer>exactly one command</answer>."
)


class TaskAgent:
    """
    Perceive -> decide -> act loop for one task at a time.

    Control methods (`start`, `pause`, `resume`, `cancel`) are synchronous and
    return immediately; the loop itself runs as an asyncio task. Pause and
    cancel take effect at suspension points: before each capture, model
    request, action and terminal transition, and inside every wait.
    """

    def __init__(
        self,
        transport: Optional[ModelTransport],
        screenshots: Optional[ScreenshotProvider],
        executor: Optional[Executor],
        cfg: Optional[AgentConfig] = None,
        bus: Optional[EventBus] = None,
        history: Optional[HistorySink] = None,
        dispatcher: Optional[Dispatcher] = None,
        parser: Callable[[str], Action] = parse_action,
        assembler_factory: Callable[[], ResponseAssembler] = ResponseAssembler,
        context_factory: Optional[Callable[[str], ConversationContext]] = None,
        confirm: Optional[Callable[[Action], Awaitable[bool]]] = None,
        prep: Optional[TaskPrep] = None,
    ) -> None:
        self.cfg = cfg or AgentConfig()
        self.transport = transport
        self.screenshots = screenshots
        self.executor = executor
        self.bus = bus or EventBus()
        self.history = history
        self.prep = prep
        self.parser = parser
        self.assembler_factory = assembler_factory
        self.context_factory = context_factory or self._default_context

        if dispatcher is None and executor is not None:
            dispatcher = Dispatcher(
                executor,
                retries=self.cfg.dispatch_retries,
                backoff_s=self.cfg.dispatch_backoff_s,
                backoff=self.cfg.dispatch_backoff,
                timeout_s=self.cfg.dispatch_timeout_s,
                allow_danger=self.cfg.allow_danger,
                dry_run=self.cfg.dry_run,
                confirm=confirm,
                sleep=self._sleep,
            )
        self.dispatcher = dispatcher

        self._lock = threading.RLock()
        self._state = AgentState.IDLE
        self._task: Optional[Task] = None
        self._steps: List[Step] = []
        self._context: Optional[ConversationContext] = None
        self._current_index = 0
        self._capture_failures = 0

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._runner: Optional[asyncio.Task] = None
        self._launched: Optional[asyncio.Event] = None
        self._resume_event: Optional[asyncio.Event] = None
        self._cancel_event: Optional[asyncio.Event] = None
        self._cancel_requested = False

    def _default_context(self, description: str) -> ConversationContext:
        return ConversationContext(
            description,
            max_turns=self.cfg.max_context_turns,
            max_chars=self.cfg.max_context_chars,
            keep_images=self.cfg.keep_images,
        )

    # ── Read-only views ──────────────────────────────────────────────────────

    @property
    def state(self) -> AgentState:
        with self._lock:
            return self._state

    @property
    def task(self) -> Optional[Task]:
        with self._lock:
            return self._task

    @property
    def steps(self) -> Tuple[Step, ...]:
        with self._lock:
            return tuple(self._steps)

    @property
    def context(self) -> Optional[ConversationContext]:
        return self._context

    @property
    def current_step(self) -> int:
        with self._lock:
            return len(self._steps)

    def is_running(self) -> bool:
        return self.state.active

    def is_paused(self) -> bool:
        return self.state is AgentState.PAUSED

    def ready(self) -> bool:
        return self.transport is not None and self.screenshots is not None and self.dispatcher is not None

    # ── State transitions ────────────────────────────────────────────────────

    def _transition(self, new: AgentState, *events: Tuple[str, dict]) -> None:
        # Events are published under the same lock as the state change.
        with self._lock:
            old = self._state
            self._state = new
            for name, args in events:
                self.bus.publish(name, **args)
            self.bus.publish("status_changed", status=new.value)
        log.info("State %s -> %s", old.value, new.value)

    def _signal(self, fn: Callable[[], Any]) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn()
        else:
            loop.call_soon_threadsafe(fn)

    # ── Control surface ──────────────────────────────────────────────────────

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Binds the loop that `start` schedules onto when called from another thread."""
        with self._lock:
            self._loop = loop

    def start(self, description: str) -> Task:
        """
        Begin a task and return immediately.

        Called inside an event loop, the task runs on that loop. Called from
        any other thread, it is handed to the attached loop (see
        `attach_loop`, or the loop of the previous task).

        Raises DependencyNotReady (including when there is no loop to run
        on), AlreadyRunning, or ValueError for a blank description.
        """
        if not description or not description.strip():
            raise ValueError("task description is empty")
        if not self.ready():
            raise DependencyNotReady("model transport, screenshot provider and executor are required")

        try:
            running: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        loop = running or self._loop
        if loop is None or loop.is_closed():
            raise DependencyNotReady("no event loop to run on; call from a loop or attach_loop() first")

        with self._lock:
            if self._state.active:
                raise AlreadyRunning(f"task {self._task.id if self._task else '?'} is {self._state.value}")

            task = Task(id=uuid.uuid4().hex, description=description.strip(), created_at=time.time())
            self._task = task
            self._steps = []
            self._context = self.context_factory(task.description)
            self._current_index = 0
            self._capture_failures = 0
            self._cancel_requested = False
            self._loop = loop
            self._resume_event = asyncio.Event()
            self._resume_event.set()
            self._cancel_event = asyncio.Event()
            self._runner = None
            self._launched = asyncio.Event()

            self._transition(AgentState.RUNNING, ("task_started", {"description": task.description}))
            if running is loop:
                self._launch(task)
            else:
                loop.call_soon_threadsafe(self._launch, task)

        log.info("Task %s started: %s", task.id[:8], task.description)
        return task

    def _launch(self, task: Task) -> None:
        self._runner = self._loop.create_task(self._run(task), name=f"phonepilot-task-{task.id[:8]}")
        self._launched.set()

    def pause(self) -> bool:
        with self._lock:
            if self._state is not AgentState.RUNNING:
                return False
            self._signal(self._resume_event.clear)
            self._transition(AgentState.PAUSED, ("task_paused", {"step_index": self._current_index}))
        return True

    def resume(self) -> bool:
        with self._lock:
            if self._state is not AgentState.PAUSED:
                return False
            self._signal(self._resume_event.set)
            self._transition(AgentState.RUNNING, ("task_resumed", {"step_index": self._current_index}))
        return True

    def cancel(self) -> None:
        with self._lock:
            if not self._state.active or self._cancel_requested:
                return
            self._cancel_requested = True
            self._signal(self._cancel_event.set)
        log.info("Cancellation requested")

    def reset(self) -> bool:
        with self._lock:
            if self._state.active:
                return False
            if self._state is AgentState.IDLE:
                return True
            self._task = None
            self._steps = []
            self._context = None
            self._current_index = 0
            self._transition(AgentState.IDLE)
        return True

    async def wait(self) -> AgentState:
        """Wait for the current loop to finish and return the final state."""
        launched = self._launched
        if launched is not None:
            await launched.wait()
        runner = self._runner
        if runner is not None:
            await asyncio.shield(runner)
        return self.state

    # ── Suspension points ────────────────────────────────────────────────────

    async def _guard(self, aw: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """
        Await `aw` unless cancellation is requested first. On cancel the
        operation is cancelled and given `cancel_grace_s` to unwind before it
        is abandoned.
        """
        op = asyncio.ensure_future(aw)
        stopper = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({op, stopper}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            op.cancel()
            stopper.cancel()
            raise
        stopper.cancel()

        if op in done:
            return op.result()

        op.cancel()
        finished, _ = await asyncio.wait({op}, timeout=self.cfg.cancel_grace_s)
        if not finished:
            log.warning("In-flight operation did not stop within %.1fs; abandoning it", self.cfg.cancel_grace_s)
        elif not op.cancelled() and op.exception() is not None:
            log.debug("In-flight operation ended with %r after cancel", op.exception())

        if self._cancel_event.is_set():
            raise _Cancelled()
        raise asyncio.TimeoutError(f"operation exceeded {timeout:.1f}s")

    async def _checkpoint(self) -> None:
        if self._cancel_requested:
            raise _Cancelled()
        while self.state is AgentState.PAUSED:
            await self._guard(self._resume_event.wait())
        if self._cancel_requested:
            raise _Cancelled()

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await self._checkpoint()
            return
        await self._guard(asyncio.sleep(seconds))

    # ── Loop ─────────────────────────────────────────────────────────────────

    def _append_step(self, step: Step) -> None:
        with self._lock:
            self._steps.append(step)

    async def _capture(self, index: int) -> Optional[Screenshot]:
        await self._checkpoint()
        try:
            shot = await self._guard(self.screenshots.capture(), timeout=self.cfg.capture_timeout_s)
        except _Cancelled:
            raise
        except Exception as e:
            self._capture_failures += 1
            detail = f"screenshot capture failed: {str(e) or type(e).__name__}"
            log.warning("%s (%d/%d)", detail, self._capture_failures, self.cfg.capture_retries + 1)
            self._append_step(
                Step(
                    index=index,
                    screenshot_ref=None,
                    raw_model_response="",
                    thinking_text="",
                    action_text="",
                    parsed_action=None,
                    dispatch_result=DispatchResult(Outcome.TRANSIENT_FAILURE, detail, self._capture_failures),
                    timestamp=time.time(),
                )
            )
            if self._capture_failures > self.cfg.capture_retries:
                raise CaptureFailure(f"{detail} ({self._capture_failures} consecutive attempts)")
            return None
        self._capture_failures = 0
        return shot

    async def _consume(self, turns: List[ChatTurn]) -> ResponseAssembler:
        assembler = self.assembler_factory()
        stream = self.transport.stream_chat(turns)
        try:
            async for fragment in stream:
                partial = assembler.feed(fragment)
                if partial is not None:
                    self.bus.publish("thinking_update", partial_text=partial)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return assembler

    async def _stream(self, turns: List[ChatTurn]) -> ResponseAssembler:
        last = ""
        for attempt in range(self.cfg.stream_retries + 1):
            await self._checkpoint()
            try:
                return await self._guard(self._consume(turns), timeout=self.cfg.stream_timeout_s)
            except _Cancelled:
                raise
            except Exception as e:
                last = str(e) or type(e).__name__
                log.warning(
                    "Model stream failed (attempt %d/%d): %s",
                    attempt + 1, self.cfg.stream_retries + 1, last,
                )
                if attempt < self.cfg.stream_retries:
                    await self._sleep(self.cfg.retry_backoff_s)
        raise StreamFailure(f"model stream failed after {self.cfg.stream_retries + 1} attempts: {last}")

    async def _decide(self, index: int, shot: Screenshot) -> Tuple[str, str, str, Action]:
        """Returns (raw, thinking, action_text, action). Invalid only after re-prompts are exhausted."""
        turns = self._context.build_request(shot, index)
        extra: List[ChatTurn] = []
        raw = thinking = action_text = ""
        action: Action = Invalid("no response")

        for attempt in range(self.cfg.reprompt_limit + 1):
            assembler = await self._stream(turns + extra)
            raw = assembler.raw
            try:
                assembled = assembler.finish()
            except AssemblyError as e:
                thinking, action_text = "", ""
                action = Invalid(str(e))
            else:
                thinking, action_text = assembled.thinking, assembled.action
                action = self.parser(action_text)

            if not isinstance(action, Invalid):
                return raw, thinking, action_text, action

            log.warning(
                "Step %d: unusable model reply (attempt %d/%d): %s",
                index, attempt + 1, self.cfg.reprompt_limit + 1, action.reason,
            )
            extra = [
                ChatTurn("model", raw or "(empty)"),
                ChatTurn("user", REPROMPT.format(reason=action.reason)),
            ]

        return raw, thinking, action_text, action

    async def _step(self, index: int) -> Optional[Step]:
        self._current_index = index
        self.bus.publish("step_started", step_index=index)

        shot = await self._capture(index)
        if shot is None:
            return None

        await self._checkpoint()
        raw, thinking, action_text, action = await self._decide(index, shot)

        if isinstance(action, Invalid):
            self._append_step(
                Step(index, shot.ref, raw, thinking, action_text, action, None, time.time())
            )
            raise ActionParseFailure(
                f"no usable action after {self.cfg.reprompt_limit + 1} attempts: {action.reason}"
            )

        await self._checkpoint()
        if isinstance(action, Finish):
            result = DispatchResult(Outcome.SUCCESS, "finish", 0)
        else:
            result = await self._guard(self.dispatcher.dispatch(action, self.cfg.dispatch_timeout_s))

        step = Step(index, shot.ref, raw, thinking, action_text, action, result, time.time())
        self._append_step(step)
        self._context.append(
            ContextTurn(
                step_index=index,
                screenshot=shot,
                response=render_response(thinking, action.to_command()),
                outcome=f"{result.outcome.value}: {result.detail}" if result.detail else result.outcome.value,
            )
        )
        self.bus.publish("action_executed", action_display_text=action.format_for_display())

        if not result.ok:
            if result.retries_exhausted:
                raise DispatchTransientFailure(result.detail)
            raise DispatchFatalFailure(result.detail)
        return step

    async def _drive(self, task: Task) -> Tuple[AgentState, str]:
        """Runs steps until the task settles; returns the terminal state and its message."""
        try:
            if self.prep is not None:
                await self.prep.before(self._sleep)

            while True:
                await self._checkpoint()
                index = self.current_step + 1
                step = await self._step(index)

                if step is not None and isinstance(step.parsed_action, Finish):
                    return AgentState.COMPLETED, strip_markdown(step.parsed_action.message)

                if index >= self.cfg.max_steps:
                    raise StepBudgetExceeded(f"no finish after {self.cfg.max_steps} steps")

                await self._sleep(self.cfg.retry_backoff_s if step is None else self.cfg.step_delay_s)

        except PhonePilotError as e:
            log.error("Task %s failed: %s", task.id[:8], e.describe())
            return AgentState.FAILED, e.describe()
        finally:
            if self.prep is not None:
                await self._restore()

    async def _restore(self) -> None:
        try:
            await asyncio.wait_for(self.prep.after(), timeout=self.cfg.cancel_grace_s)
        except Exception as e:
            log.warning("Device restore after task failed: %s", str(e) or type(e).__name__)

    async def _run(self, task: Task) -> None:
        try:
            state, message = await self._drive(task)
            # A paused task settles only once resumed.
            await self._checkpoint()
        except _Cancelled:
            self._end(task, AgentState.CANCELLED, "cancelled")
        except asyncio.CancelledError:
            self._end(task, AgentState.CANCELLED, "loop cancelled")
            raise
        except Exception as e:
            log.exception("Task %s crashed", task.id[:8])
            self._end(task, AgentState.FAILED, f"Unexpected error: {type(e).__name__}: {e}")
        else:
            self._end(task, state, message)

    def _end(self, task: Task, state: AgentState, message: str) -> None:
        with self._lock:
            count = len(self._steps)
            if state is AgentState.COMPLETED:
                events = [("task_completed", {"success": True, "message": message, "step_count": count})]
            elif state is AgentState.FAILED:
                events = [("task_failed", {"error": message, "step_count": count})]
            else:
                events = []
            self._transition(state, *events)
            steps = list(self._steps)
        log.info("Task %s ended %s after %d step(s)", task.id[:8], state.value, count)
        self._record_history(task, steps, state, message)

    def _record_history(self, task: Task, steps: List[Step], state: AgentState, message: str) -> None:
        if self.history is None:
            return

        def _write() -> None:
            try:
                self.history.record(task, steps, state, message)
            except Exception:
                log.exception("History sink failed for task %s", task.id[:8])

        try:
            asyncio.get_running_loop().run_in_executor(None, _write)
        except RuntimeError:
            _write()
