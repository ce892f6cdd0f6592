from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

# Response layout, version 1:
#
#   <think>reasoning, free text</think>
#   <answer>do(action="Tap", element=[500,320])</answer>
#
# <think> is optional; everything before <answer> is thinking text.
# The action section runs to </answer> or the end of the stream.
DELIMITER_VERSION = 1

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
ANSWER_OPEN = "<answer>"
ANSWER_CLOSE = "</answer>"

_MARKERS = (THINK_OPEN, THINK_CLOSE, ANSWER_OPEN)


class AssemblyError(ValueError):
    pass


@dataclass(frozen=True)
class AssembledResponse:
    thinking: str
    action: str
    raw: str


def _held_tail(text: str) -> int:
    """Length of the longest suffix of `text` that could still grow into a marker."""
    best = 0
    for marker in _MARKERS:
        for n in range(min(len(marker) - 1, len(text)), best, -1):
            if marker.startswith(text[-n:]):
                best = n
                break
    return best


def _clean_thinking(text: str) -> str:
    return text.replace(THINK_OPEN, "").replace(THINK_CLOSE, "").strip()


class ResponseAssembler:
    """
    Incrementally splits one streamed model response into thinking text and
    action text. One instance serves exactly one model request.
    """

    def __init__(self) -> None:
        self._raw = ""
        self._answer_at: Optional[int] = None
        self._thinking_sent = ""
        self._finished = False

    @property
    def raw(self) -> str:
        return self._raw

    @property
    def in_action(self) -> bool:
        return self._answer_at is not None

    def feed(self, fragment: str) -> Optional[str]:
        """
        Add one fragment. Returns the cumulative thinking text if it grew
        since the previous call, otherwise None.
        """
        if self._finished:
            raise RuntimeError("assembler already finished")
        if not fragment:
            return None

        self._raw += fragment

        if self._answer_at is not None:
            return None

        # The marker may straddle the previous fragment boundary.
        search_from = max(0, len(self._raw) - len(fragment) - len(ANSWER_OPEN))
        idx = self._raw.find(ANSWER_OPEN, search_from)
        if idx >= 0:
            self._answer_at = idx
            visible = self._raw[:idx]
        else:
            visible = self._raw[: len(self._raw) - _held_tail(self._raw)]

        thinking = _clean_thinking(visible)
        if thinking and thinking != self._thinking_sent:
            self._thinking_sent = thinking
            return thinking
        return None

    def finish(self) -> AssembledResponse:
        if self._finished:
            raise RuntimeError("assembler already finished")
        self._finished = True

        if self._answer_at is None:
            raise AssemblyError(f"no {ANSWER_OPEN} section in model response")

        thinking = _clean_thinking(self._raw[: self._answer_at])
        body = self._raw[self._answer_at + len(ANSWER_OPEN):]
        end = body.find(ANSWER_CLOSE)
        if end >= 0:
            body = body[:end]
        action = body.strip()
        if not action:
            raise AssemblyError(f"empty {ANSWER_OPEN} section in model response")
        return AssembledResponse(thinking=thinking, action=action, raw=self._raw)


def assemble(fragments) -> AssembledResponse:
    """Convenience wrapper for an already-complete sequence of fragments."""
    a = ResponseAssembler()
    for f in fragments:
        a.feed(f)
    return a.finish()
