from __future__ import annotations

import re

# Order matters: bold before italic, fenced code before inline code.
_RULES = [
    (re.compile(r"```[\s\S]*?```"), ""),
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),
    (re.compile(r"__(.+?)__"), r"\1"),
    (re.compile(r"(?<!\*)\*(?!\*)(.+?)(?<!\*)\*(?!\*)"), r"\1"),
    (re.compile(r"(?<![_\w])_(?!_)(.+?)(?<!_)_(?![_\w])"), r"\1"),
    (re.compile(r"~~(.+?)~~"), r"\1"),
    (re.compile(r"`(.+?)`"), r"\1"),
    (re.compile(r"^#{1,6}\s+(.*)$", re.MULTILINE), r"\1"),
    (re.compile(r"\[(.+?)\]\(.+?\)"), r"\1"),
    (re.compile(r"^>\s+(.*)$", re.MULTILINE), r"\1"),
    (re.compile(r"^([-*_]){3,}\s*$", re.MULTILINE), ""),
    (re.compile(r"^[-*+]\s+", re.MULTILINE), "• "),
    (re.compile(r"^\d+\.\s+", re.MULTILINE), ""),
    (re.compile(r"\n{3,}"), "\n\n"),
]


def strip_markdown(text: str) -> str:
    """
    Reduce common Markdown (emphasis, code, headers, links, quotes, lists)
    to plain text for status lines and completion messages.
    """
    out = text or ""
    for rx, repl in _RULES:
        out = rx.sub(repl, out)
    return out.strip()
