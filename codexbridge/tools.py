"""
Tool adapter exposing a thread's CLI session to a calling agent.

The tool has:
  - An OpenAI-compatible function schema (for the LLM).
  - A Python implementation that maps an action onto the SessionManager and
    returns {"text": ..., "details": {...}}. Session failures become text,
    never exceptions.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Callable

from .errors import BridgeError
from .manager import SessionManager

TOOL_NAME = "codex"
ACTIONS = ("start", "continue", "stop", "status")

TOOL_TIMEOUT_MS = 10 * 60 * 1000
TOOL_IDLE_MS = 1_200
NO_OUTPUT_TEXT = "Codex prompt completed with no output."

CODEX_TOOL_DEFINITION: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": TOOL_NAME,
        "description": (
            "Manage a long-lived Codex CLI session. Actions: start, continue, stop, status. "
            "Continue sends prompt to the existing Codex session."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": list(ACTIONS),
                    "description": "Operation to perform. Defaults to continue when a prompt is given, else status.",
                },
                "prompt": {"type": "string", "description": "Prompt to send when action=continue."},
            },
            "required": [],
        },
    },
}


def _pid_text(pid: int | None) -> str:
    return str(pid) if pid is not None else "unknown"


def resolve_action(action: str | None, prompt: str | None) -> str:
    if action:
        return action
    return "continue" if (prompt or "").strip() else "status"


def execute_codex_action(
    manager: SessionManager,
    thread_id: str,
    cwd: str,
    action: str | None = None,
    prompt: str | None = None,
    *,
    cancel_event: threading.Event | None = None,
    on_chunk: Callable[[str], None] | None = None,
    timeout_ms: int = TOOL_TIMEOUT_MS,
    idle_ms: int = TOOL_IDLE_MS,
) -> dict[str, Any]:
    action = resolve_action(action, prompt)

    if action == "start":
        started = manager.start(thread_id, cwd)
        if not started.running:
            text = f"Failed to start Codex session for thread {thread_id}: {started.error or 'unknown error'}"
        elif started.started:
            text = f"Started Codex session for thread {thread_id} (pid={_pid_text(started.pid)}) in {cwd}"
        else:
            text = f"Codex session already running for thread {thread_id} (pid={_pid_text(started.pid)})"
        return {"text": text, "details": {"action": action, **started.to_dict()}}

    if action == "status":
        status = manager.status(thread_id)
        if status.running:
            text = f"Codex session is running for thread {thread_id} (pid={_pid_text(status.pid)})"
        else:
            text = f"No Codex session running for thread {thread_id}"
        return {"text": text, "details": {"action": action, **status.to_dict()}}

    if action == "stop":
        stopped = manager.stop(thread_id)
        if stopped.stopped:
            text = f"Stopped Codex session for thread {thread_id}"
        else:
            text = f"No Codex session to stop for thread {thread_id}"
        return {"text": text, "details": {"action": action, **stopped.to_dict()}}

    if action != "continue":
        return {
            "text": f"Error: unknown action '{action}' (expected one of: {', '.join(ACTIONS)})",
            "details": {"action": action, "thread_id": thread_id},
        }

    try:
        result = manager.run_turn(
            thread_id,
            cwd,
            prompt or "",
            timeout_ms=timeout_ms,
            idle_ms=idle_ms,
            cancel_event=cancel_event,
            on_chunk=on_chunk,
        )
    except BridgeError as exc:
        return {
            "text": f"Codex continue failed: {exc.message}",
            "details": {"action": action, "thread_id": thread_id, "cwd": cwd, "error": exc.to_dict()},
        }
    return {
        "text": result.output or NO_OUTPUT_TEXT,
        "details": {"action": action, "thread_id": thread_id, "cwd": cwd},
    }


def execute_tool(
    name: str,
    arguments_json: str,
    *,
    manager: SessionManager,
    thread_id: str,
    cwd: str,
    on_chunk: Callable[[str], None] | None = None,
    cancel_event: threading.Event | None = None,
) -> str:
    """
    Parse the tool's JSON arguments, run it, and return the result text.
    Errors come back as strings the model can read.
    """
    if name != TOOL_NAME:
        return f"Error: unknown tool '{name}'"
    try:
        args: dict[str, Any] = json.loads(arguments_json) if arguments_json else {}
    except json.JSONDecodeError as exc:
        return f"Error: failed to parse tool arguments: {exc}"
    if not isinstance(args, dict):
        return "Error: tool arguments must be a JSON object"
    try:
        result = execute_codex_action(
            manager,
            thread_id,
            cwd,
            on_chunk=on_chunk,
            cancel_event=cancel_event,
            **args,
        )
    except TypeError as exc:
        return f"Error: bad arguments for tool '{name}': {exc}"
    return result["text"]


def get_tool_definitions() -> list[dict[str, Any]]:
    return [CODEX_TOOL_DEFINITION]
