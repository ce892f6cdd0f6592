from __future__ import annotations

import json

import pytest

from phonepilot.agent.runner import AgentConfig
from phonepilot.config import Settings, apply_overrides, load_settings
from phonepilot.errors import ConfigError
from phonepilot.gemini.client import DEFAULT_MODEL


def test_defaults_without_file(tmp_path):
    s = load_settings(tmp_path / "missing.json", env={})
    assert s.model == DEFAULT_MODEL
    assert s.api_key is None
    assert s.screenshot_source == "adb"
    assert s.agent == AgentConfig()
    assert s.agent.max_steps == 50
    assert s.agent.dispatch_backoff == "exponential"


def test_file_then_env(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "model": "gemini-from-file",
                "adb_serial": "emulator-5554",
                "apps": {"Settings": "com.android.settings"},
                "agent": {"max_steps": 10, "step_delay_s": 1, "dry_run": True},
                "colour": "blue",
            }
        )
    )
    env = {"PHONEPILOT_MODEL": "gemini-from-env", "GOOGLE_API_KEY": "g-key", "GEMINI_API_KEY": "m-key"}
    s = load_settings(path, env=env)

    assert s.model == "gemini-from-env"
    assert s.api_key == "m-key"
    assert s.adb_serial == "emulator-5554"
    assert s.apps == {"Settings": "com.android.settings"}
    assert s.agent.max_steps == 10
    assert s.agent.step_delay_s == 1.0
    assert s.agent.dry_run is True
    assert s.agent.stream_retries == 2


def test_invalid_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError):
        load_settings(path, env={})


@pytest.mark.parametrize(
    "doc",
    [
        [],
        {"agent": {"max_steps": "ten"}},
        {"agent": {"dry_run": "yes"}},
        {"agent": {"dispatch_backoff": "random"}},
        {"agent": 3},
        {"apps": {"Maps": 1}},
        {"model": 5},
    ],
)
def test_bad_values(tmp_path, doc):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(doc))
    with pytest.raises(ConfigError):
        load_settings(path, env={})


def test_overrides_route_to_agent():
    s = apply_overrides(Settings(), model="m", max_steps=7, dry_run=True, thinking_level=None)
    assert s.model == "m"
    assert s.thinking_level is None
    assert s.agent.max_steps == 7
    assert s.agent.dry_run is True

    with pytest.raises(ConfigError):
        apply_overrides(Settings(), warp_speed=9)


def test_to_dict_redacts_key():
    s = Settings(api_key="abcdefgh")
    assert s.to_dict()["api_key"] == "abcd..."
    assert s.to_dict(redact=False)["api_key"] == "abcdefgh"
    assert s.to_dict()["agent"]["max_steps"] == 50


def test_agent_errors_name_the_field(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"agent": {"max_steps": "ten"}}))
    with pytest.raises(ConfigError) as exc:
        load_settings(path, env={})
    assert "agent.max_steps" in str(exc.value)


def test_agent_section_ignores_unknown_keys_and_keeps_base():
    s = apply_overrides(Settings(), max_steps=9)
    s = apply_overrides(s, dispatch_backoff="fixed")
    assert s.agent.max_steps == 9
    assert s.agent.dispatch_backoff == "fixed"


def test_prepare_device_flag(tmp_path):
    assert Settings().prepare_device is True
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"prepare_device": False}))
    assert load_settings(path, env={}).prepare_device is False
    assert apply_overrides(Settings(), prepare_device=False).prepare_device is False
