from __future__ import annotations

import json
import os
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from phonepilot.util.log import get_logger
from phonepilot.util.paths import HISTORY_DIR

log = get_logger("phonepilot.history")


def _action_dict(action: Any) -> Optional[Dict[str, Any]]:
    if action is None:
        return None
    d = asdict(action) if is_dataclass(action) else {}
    d["type"] = getattr(action, "kind", type(action).__name__)
    d["display"] = action.format_for_display()
    return d


def step_to_dict(step: Any) -> Dict[str, Any]:
    result = step.dispatch_result
    return {
        "index": step.index,
        "timestamp": step.timestamp,
        "screenshot_ref": step.screenshot_ref,
        "thinking": step.thinking_text,
        "action_text": step.action_text,
        "raw": step.raw_model_response,
        "action": _action_dict(step.parsed_action),
        "result": None
        if result is None
        else {"outcome": result.outcome.value, "detail": result.detail, "attempts": result.attempts},
    }


class JsonHistorySink:
    """Writes one `<task id>.json` file per finished task."""

    def __init__(self, directory: Path = HISTORY_DIR) -> None:
        self.directory = Path(directory)

    def path_for(self, task_id: str) -> Path:
        return self.directory / f"{task_id}.json"

    def record(self, task: Any, steps: List[Any], state: Any, message: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        doc = {
            "task": {"id": task.id, "description": task.description, "created_at": task.created_at},
            "state": getattr(state, "value", str(state)),
            "message": message,
            "steps": [step_to_dict(s) for s in steps],
        }
        path = self.path_for(task.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(doc, ensure_ascii=False, indent=2))
        os.replace(tmp, path)
        log.info("Saved history for task %s (%d steps) to %s", task.id[:8], len(steps), path)

    def load(self, task_id: str) -> Dict[str, Any]:
        return json.loads(self.path_for(task_id).read_text())
