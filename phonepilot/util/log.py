from __future__ import annotations

import logging
import sys

_ROOT = "phonepilot"
_configured = False


def get_logger(name: str) -> logging.Logger:
    if name != _ROOT and not name.startswith(_ROOT + "."):
        name = f"{_ROOT}.{name}"
    return logging.getLogger(name)


def setup_logging(verbose: bool = False) -> None:
    global _configured
    root = logging.getLogger(_ROOT)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    if _configured:
        return

    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(h)
    root.propagate = False
    _configured = True
