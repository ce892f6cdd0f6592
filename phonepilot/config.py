from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import ConfigDict, ValidationError, create_model

from phonepilot.agent.runner import AgentConfig
from phonepilot.errors import ConfigError
from phonepilot.gemini.client import DEFAULT_MODEL
from phonepilot.util.log import get_logger
from phonepilot.util.paths import CONFIG_FILE

log = get_logger("phonepilot.config")


@dataclass
class Settings:
    model: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    thinking_level: Optional[str] = None

    adb_serial: Optional[str] = None
    adb_path: str = "adb"
    # "adb" or a path to a PNG/JPEG that something else keeps fresh
    screenshot_source: str = "adb"
    apps: Dict[str, str] = field(default_factory=dict)

    save_history: bool = True
    # Wake, keep awake and return to Home before each task
    prepare_device: bool = True
    agent: AgentConfig = field(default_factory=AgentConfig)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        d = asdict(self)
        if redact and d.get("api_key"):
            d["api_key"] = d["api_key"][:4] + "..."
        return d


_TOP_KEYS = {f.name for f in fields(Settings)} - {"agent"}
_AGENT_FIELDS = {f.name: f for f in fields(AgentConfig)}

# Strict: "10" is not an int and "yes" is not a bool; ints are accepted for floats.
AgentSection = create_model(
    "AgentSection",
    __config__=ConfigDict(strict=True, extra="ignore"),
    **{
        name: ((Literal["fixed", "exponential"] if name == "dispatch_backoff" else type(f.default)), f.default)
        for name, f in _AGENT_FIELDS.items()
    },
)

ENV_KEYS = {
    "GEMINI_API_KEY": "api_key",
    "GOOGLE_API_KEY": "api_key",
    "PHONEPILOT_MODEL": "model",
    "PHONEPILOT_ADB_SERIAL": "adb_serial",
}


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(default, str):
        if isinstance(value, str):
            return value
    else:
        return value
    raise ConfigError(f"{name}: expected {type(default).__name__}, got {value!r}")


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    where = ".".join(str(p) for p in err["loc"])
    return f"agent.{where}: {err['msg']}, got {err.get('input')!r}"


def agent_config_from(data: Mapping[str, Any], base: Optional[AgentConfig] = None) -> AgentConfig:
    base = base or AgentConfig()
    for k in data:
        if k not in _AGENT_FIELDS:
            log.warning("Ignoring unknown agent setting %r", k)
    try:
        section = AgentSection.model_validate({**asdict(base), **data})
    except ValidationError as e:
        raise ConfigError(_first_error(e)) from e
    return replace(base, **{k: getattr(section, k) for k in _AGENT_FIELDS})


def settings_from_dict(data: Mapping[str, Any]) -> Settings:
    if not isinstance(data, Mapping):
        raise ConfigError("config root must be a JSON object")

    s = Settings()
    for k, v in data.items():
        if k == "agent":
            if not isinstance(v, Mapping):
                raise ConfigError("agent: expected an object")
            s.agent = agent_config_from(v)
        elif k == "apps":
            if not isinstance(v, Mapping) or not all(isinstance(x, str) for x in v.values()):
                raise ConfigError("apps: expected an object of app name -> package name")
            s.apps = {str(name): pkg for name, pkg in v.items()}
        elif k in _TOP_KEYS:
            if v is None:
                setattr(s, k, None)
            else:
                setattr(s, k, _coerce(k, v, getattr(s, k) if getattr(s, k) is not None else ""))
        else:
            log.warning("Ignoring unknown setting %r", k)
    return s


def load_settings(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Config file (optional) overlaid with environment variables.
    CLI flags are applied afterwards with `apply_overrides`.
    """
    path = Path(path) if path is not None else CONFIG_FILE
    env = os.environ if env is None else env

    data: Dict[str, Any] = {}
    if path.exists():
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path}: invalid JSON: {e}") from e
        except OSError as e:
            raise ConfigError(f"{path}: cannot read: {e}") from e
        log.debug("Loaded config from %s", path)

    s = settings_from_dict(data)

    for var, attr in ENV_KEYS.items():
        val = env.get(var)
        # GEMINI_API_KEY wins over GOOGLE_API_KEY
        if val and not (attr == "api_key" and var == "GOOGLE_API_KEY" and env.get("GEMINI_API_KEY")):
            setattr(s, attr, val)
    return s


def apply_overrides(s: Settings, **overrides: Any) -> Settings:
    """Applies non-None overrides; keys naming AgentConfig fields go to `s.agent`."""
    agent_changes = {}
    for k, v in overrides.items():
        if v is None:
            continue
        if k in _AGENT_FIELDS:
            agent_changes[k] = v
        elif k in _TOP_KEYS:
            setattr(s, k, v)
        else:
            raise ConfigError(f"unknown override {k!r}")
    if agent_changes:
        s.agent = agent_config_from(agent_changes, base=s.agent)
    return s
