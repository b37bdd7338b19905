"""
codexbridge CLI entry point.

Usage:
  1. Optionally put CODEX_BRIDGE_* settings in a .env file next to this script.
  2. pip install -e .
  3. python main.py --mode interactive --workdir ~/projects/demo
     python main.py --thread review --timeout-ms 120000

Type a prompt and press Enter; it is sent to the current thread's session and
the output is streamed back. Slash commands manage sessions:
  /start            start (or reuse) the current thread's session
  /status           show the current thread's session
  /stop             stop the current thread's session
  /sessions         list live sessions
  /thread <id>      switch to another thread
Type "exit" or "quit" to leave; every session is stopped on the way out.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

# Load .env from the project root
from dotenv import load_dotenv

_env_path = Path(__file__).parent / ".env"
load_dotenv(_env_path)

from codexbridge.config import MODE_INTERACTIVE, MODE_STRUCTURED, BridgeConfig  # noqa: E402
from codexbridge.errors import BridgeError  # noqa: E402
from codexbridge.manager import SessionManager  # noqa: E402
from codexbridge.tools import execute_codex_action  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="codexbridge persistent session CLI")
    parser.add_argument("--thread", default="main", help="Thread id to start with")
    parser.add_argument("--workdir", default=None, help="Working directory for the CLI process")
    parser.add_argument("--mode", choices=[MODE_STRUCTURED, MODE_INTERACTIVE], default=None)
    parser.add_argument("--command", default=None, help="CLI executable (default: codex)")
    parser.add_argument("--timeout-ms", type=int, default=None)
    parser.add_argument("--idle-ms", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    return parser.parse_args()


def build_config(args: argparse.Namespace) -> BridgeConfig:
    config = BridgeConfig.from_env()
    overrides = {
        "mode": args.mode,
        "command": args.command,
        "workdir": str(Path(args.workdir).expanduser()) if args.workdir else None,
        "timeout_ms": args.timeout_ms if args.timeout_ms and args.timeout_ms > 0 else None,
        "idle_ms": args.idle_ms if args.idle_ms and args.idle_ms > 0 else None,
        "log_level": args.log_level.upper() if args.log_level else None,
    }
    return replace(config, **{k: v for k, v in overrides.items() if v is not None})


def print_sessions(manager: SessionManager) -> None:
    sessions = manager.list_sessions()
    if not sessions:
        print("(no live sessions)")
        return
    for status in sessions:
        print(
            f"- {status.thread_id}: kind={status.transport_kind} pid={status.pid} "
            f"last_used={status.last_used_at} cwd={status.cwd}"
        )


def main() -> None:
    args = parse_args()
    config = build_config(args)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    manager = SessionManager(config=config)
    thread_id = args.thread

    print("codexbridge - persistent CLI sessions")
    print(f"mode/command: {config.mode}/{config.command}")
    print(f"workdir: {config.workdir}")
    print(f"thread: {thread_id}")
    print('Type a prompt (or "exit" to quit, "/sessions" to list sessions).')
    print("-" * 60)

    try:
        while True:
            try:
                user_input = input(f"\n[{thread_id}]> ").strip()
            except (EOFError, KeyboardInterrupt):
                print("\nBye!")
                break

            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit"):
                print("Bye!")
                break
            if user_input == "/sessions":
                print_sessions(manager)
                continue
            if user_input.startswith("/thread"):
                parts = user_input.split(maxsplit=1)
                if len(parts) < 2:
                    print(f"[thread] current: {thread_id}")
                else:
                    thread_id = parts[1].strip()
                    print(f"[thread] switched to {thread_id}")
                continue
            if user_input in ("/start", "/status", "/stop"):
                result = execute_codex_action(manager, thread_id, config.workdir, action=user_input[1:])
                print(result["text"])
                last_exit = result["details"].get("last_exit")
                if last_exit:
                    print(json.dumps(last_exit, indent=2))
                continue

            streamed = {"used": False}

            def on_chunk(text: str) -> None:
                streamed["used"] = True
                print(text, end="" if config.interactive else "\n", flush=True)

            try:
                result = manager.run_turn(thread_id, config.workdir, user_input, on_chunk=on_chunk)
            except BridgeError as exc:
                print(f"[{exc.kind}] {exc.message}", file=sys.stderr)
                continue
            except KeyboardInterrupt:
                print("\n[interrupted] stopping session", file=sys.stderr)
                manager.stop(thread_id)
                continue

            if streamed["used"]:
                print("")
            else:
                print(f"\n{result.output}")
    finally:
        manager.close_all()


if __name__ == "__main__":
    main()
