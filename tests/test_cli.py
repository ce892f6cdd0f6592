from __future__ import annotations

import json

from phonepilot.cli import ConsoleListener, build_parser, main


def test_parse_command_prints_action(capsys):
    assert main(["parse", 'do(action="Tap", element=[500,320])']) == 0
    out = capsys.readouterr().out.splitlines()
    assert out == ["Tap (500, 320)", 'do(action="Tap", element=[500,320])']


def test_parse_command_invalid(capsys):
    assert main(["parse", "tap(5000, 1)"]) == 2
    assert capsys.readouterr().out.startswith("Invalid action:")


def test_config_command(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.delenv("PHONEPILOT_MODEL", raising=False)
    monkeypatch.delenv("PHONEPILOT_ADB_SERIAL", raising=False)
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"adb_serial": "abc", "agent": {"max_steps": 9}}))

    assert main(["--config", str(path), "config"]) == 0
    doc = json.loads(capsys.readouterr().out)
    assert doc["adb_serial"] == "abc"
    assert doc["agent"]["max_steps"] == 9


def test_config_command_bad_file(tmp_path, capsys):
    path = tmp_path / "config.json"
    path.write_text("{")
    assert main(["--config", str(path), "config"]) == 2
    assert "ConfigError" in capsys.readouterr().err


def test_run_arguments():
    args = build_parser().parse_args(["run", "open settings", "--max-steps", "5", "--dry-run", "--no-prepare"])
    assert args.task == "open settings"
    assert args.max_steps == 5
    assert args.dry_run is True
    assert args.no_prepare is True
    assert args.step_delay is None


def test_console_listener_output(capsys):
    c = ConsoleListener()
    c.on_task_started("open clock")
    c.on_step_started(1)
    c.on_thinking_update("Clock icon")
    c.on_thinking_update("Clock icon is on the home screen")
    c.on_action_executed("Tap (10, 20)")
    c.on_task_completed(True, "done", 1)
    out = capsys.readouterr().out
    assert "Task: open clock" in out
    assert "thinking: Clock icon is on the home screen" in out
    assert "action:   Tap (10, 20)" in out
    assert "Done after 1 step(s): done" in out
