from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Tuple

from phonepilot.capture.screenshot import Screenshot
from phonepilot.util.log import get_logger

log = get_logger("phonepilot.agent.context")


@dataclass(frozen=True)
class ChatTurn:
    role: str  # "user" | "model"
    text: str
    image: Optional[Screenshot] = None


@dataclass(frozen=True)
class ContextTurn:
    step_index: int
    screenshot: Optional[Screenshot]
    response: str
    outcome: str

    def size(self) -> int:
        return len(self.response) + len(self.outcome)


def render_response(thinking: str, action_text: str) -> str:
    return f"<think>{thinking}</think>\n<answer>{action_text}</answer>"


class ConversationContext:
    """
    Multi-turn exchange for one task.

    The task description is pinned and always sent first. Step turns are kept
    FIFO and the oldest are dropped once either `max_turns` or `max_chars`
    (total text of kept step turns) is exceeded.
    """

    def __init__(
        self,
        task_description: str,
        max_turns: int = 12,
        max_chars: int = 24000,
        keep_images: int = 1,
    ) -> None:
        if max_turns < 0:
            raise ValueError("max_turns must be >= 0")
        self.task_description = task_description
        self.max_turns = max_turns
        self.max_chars = max_chars
        self.keep_images = max(1, keep_images)
        self._turns: Deque[ContextTurn] = deque()
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> Tuple[ContextTurn, ...]:
        return tuple(self._turns)

    def pinned_text(self) -> str:
        return f"Task: {self.task_description}"

    def _chars(self) -> int:
        return sum(t.size() for t in self._turns)

    def append(self, turn: ContextTurn) -> None:
        self._turns.append(turn)
        while self._turns and (
            len(self._turns) > self.max_turns or (self.max_chars > 0 and self._chars() > self.max_chars)
        ):
            dropped = self._turns.popleft()
            self.evicted += 1
            log.debug("Context evicted step %d (kept %d turns)", dropped.step_index, len(self._turns))

    def build_request(self, screenshot: Screenshot, step_index: int, note: str = "") -> List[ChatTurn]:
        """Turns to send for `step_index`: pinned task, kept history, then the current screen."""
        out: List[ChatTurn] = [ChatTurn("user", self.pinned_text())]

        history = list(self._turns)
        with_images = self.keep_images - 1
        for i, t in enumerate(history):
            img = t.screenshot if i >= len(history) - with_images else None
            out.append(ChatTurn("user", f"Step {t.step_index}: screen observed.", img))
            out.append(ChatTurn("model", t.response))
            out.append(ChatTurn("user", f"Result of step {t.step_index}: {t.outcome}"))

        current = f"Step {step_index}: current screen."
        if self.evicted:
            current += f" ({self.evicted} earlier step(s) omitted.)"
        if note:
            current += f"\nNote: {note}"
        out.append(ChatTurn("user", current, screenshot))
        return out
