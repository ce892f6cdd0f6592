from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

from phonepilot.agent.actions import Action, Invalid
from phonepilot.agent.events import EventBus, TaskListener
from phonepilot.agent.runner import AgentState
from phonepilot.agent.validate import parse_action
from phonepilot.config import apply_overrides, load_settings
from phonepilot.device.adb import AdbDevice
from phonepilot.errors import ConfigError, PhonePilotError
from phonepilot.service import build_agent, build_screenshots
from phonepilot.util.log import get_logger, setup_logging
from phonepilot.util.paths import RUN_DIR

log = get_logger("phonepilot.cli")


class ConsoleListener(TaskListener):
    def __init__(self, out=None) -> None:
        self.out = out or sys.stdout
        self.thinking = ""

    def _print(self, *parts) -> None:
        print(*parts, file=self.out, flush=True)

    def on_task_started(self, description: str) -> None:
        self._print(f"Task: {description}")

    def on_step_started(self, step_index: int) -> None:
        self.thinking = ""
        self._print(f"\n[step {step_index}]")

    def on_thinking_update(self, partial_text: str) -> None:
        self.thinking = partial_text

    def on_action_executed(self, action_display_text: str) -> None:
        if self.thinking:
            self._print(f"  thinking: {self.thinking}")
        self._print(f"  action:   {action_display_text}")

    def on_task_paused(self, step_index: int) -> None:
        self._print(f"Paused at step {step_index}")

    def on_task_resumed(self, step_index: int) -> None:
        self._print(f"Resumed at step {step_index}")

    def on_task_completed(self, success: bool, message: str, step_count: int) -> None:
        self._print(f"\nDone after {step_count} step(s): {message}")

    def on_task_failed(self, error: str, step_count: int) -> None:
        self._print(f"\nFailed after {step_count} step(s): {error}")


async def _confirm(action: Action) -> bool:
    print("\nThe agent wants to run:")
    print(f"  {action.format_for_display()}")
    ans = await asyncio.to_thread(input, "Proceed? [y/N] ")
    return ans.strip().lower() in ("y", "yes")


def _settings(args):
    s = load_settings(args.config)
    return apply_overrides(
        s,
        model=getattr(args, "model", None),
        thinking_level=getattr(args, "thinking_level", None),
        adb_serial=getattr(args, "serial", None),
        screenshot_source=getattr(args, "screenshot_source", None),
        max_steps=getattr(args, "max_steps", None),
        step_delay_s=getattr(args, "step_delay", None),
        allow_danger=True if getattr(args, "allow_danger", False) else None,
        dry_run=True if getattr(args, "dry_run", False) else None,
        prepare_device=False if getattr(args, "no_prepare", False) else None,
    )


async def _run_task(args, settings) -> int:
    bus = EventBus()
    bus.subscribe(ConsoleListener())
    agent = build_agent(settings, bus=bus, confirm=_confirm if args.confirm else None)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, agent.cancel)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        agent.start(args.task)
        final = await agent.wait()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        bus.flush()
        bus.close()

    if final is AgentState.COMPLETED:
        return 0
    return 130 if final is AgentState.CANCELLED else 1


def cmd_run(args) -> int:
    setup_logging(args.verbose)
    try:
        settings = _settings(args)
        return asyncio.run(_run_task(args, settings))
    except (ConfigError, ValueError) as e:
        msg = e.describe() if isinstance(e, PhonePilotError) else str(e)
        print(f"ERROR: {msg}", file=sys.stderr)
        return 2


def cmd_serve(args) -> int:
    import uvicorn
    from phonepilot.server import app, state

    state.verbose = args.verbose
    print(f"Starting server on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def cmd_parse(args) -> int:
    action = parse_action(args.text)
    print(action.format_for_display())
    if isinstance(action, Invalid):
        return 2
    print(action.to_command())
    return 0


def cmd_screenshot(args) -> int:
    setup_logging(args.verbose)
    try:
        s = _settings(args)
    except ConfigError as e:
        print(f"ERROR: {e.describe()}", file=sys.stderr)
        return 2

    provider = build_screenshots(s, AdbDevice(serial=s.adb_serial, adb_path=s.adb_path))
    try:
        shot = asyncio.run(provider.capture())
    except Exception as e:
        print(f"ERROR: capture failed: {e}", file=sys.stderr)
        return 1

    ext = ".jpg" if shot.mime_type == "image/jpeg" else ".png"
    out = Path(args.out) if args.out else RUN_DIR / f"screenshot{ext}"
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(shot.data)
    print(f"{out} ({shot.width}x{shot.height}, {len(shot.data)}B, ref {shot.ref})")
    return 0


def cmd_config(args) -> int:
    try:
        s = _settings(args)
    except ConfigError as e:
        print(f"ERROR: {e.describe()}", file=sys.stderr)
        return 2
    print(json.dumps(s.to_dict(redact=not args.show_secrets), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="phonepilot")
    p.add_argument("-v", "--verbose", action="store_true")
    p.add_argument("--config", type=Path, default=None, help="Config file (default ~/.config/phonepilot/config.json)")

    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("run", help='Run one task: phonepilot run "..."')
    sp.add_argument("task")
    sp.add_argument("--model")
    sp.add_argument("--thinking-level", help="minimal/low/medium/high")
    sp.add_argument("--serial", help="adb device serial")
    sp.add_argument("--screenshot-source", help='"adb" or a path to a frame file')
    sp.add_argument("--max-steps", type=int)
    sp.add_argument("--step-delay", type=float)
    sp.add_argument("--dry-run", action="store_true")
    sp.add_argument("--confirm", action="store_true", help="Ask before typing dangerous text")
    sp.add_argument("--allow-danger", action="store_true")
    sp.add_argument("--no-prepare", action="store_true", help="Skip waking the phone and pressing Home first")
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("serve", help="Run the HTTP/WebSocket control server")
    sp.add_argument("--host", default="0.0.0.0")
    sp.add_argument("--port", type=int, default=8000)
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("parse", help='Parse an action command: phonepilot parse \'tap(500, 300)\'')
    sp.add_argument("text")
    sp.set_defaults(func=cmd_parse)

    sp = sub.add_parser("screenshot", help="Capture one frame through the configured provider")
    sp.add_argument("--out")
    sp.add_argument("--serial", help="adb device serial")
    sp.add_argument("--screenshot-source", help='"adb" or a path to a frame file')
    sp.set_defaults(func=cmd_screenshot)

    sp = sub.add_parser("config", help="Print the effective configuration")
    sp.add_argument("--show-secrets", action="store_true")
    sp.set_defaults(func=cmd_config)

    return p


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "verbose"):
        args.verbose = False
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
