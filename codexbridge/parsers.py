"""
Output parsing strategies.

Both strategies share one interface so turn execution does not care which
protocol the CLI speaks:
  - JsonEventParser: newline-delimited JSON events from a one-shot `exec --json` run
  - PlainTextParser: opaque interactive text, everything the process prints is output
The strategy is picked by configuration, never by sniffing the output.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from .session import OutputTail

ASSISTANT_ITEM_TYPES = frozenset({"agent_message", "assistant_message"})
REASONING_ITEM_TYPE = "reasoning"

FAILURE_DIAGNOSTIC_LINES = 20
FALLBACK_DIAGNOSTIC_LINES = 10
NO_OUTPUT_TEXT = "Prompt completed with no output."


def normalize_line_breaks(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_complete_lines(buffer: str) -> tuple[list[str], str]:
    """Split into complete lines plus the unterminated remainder."""
    parts = normalize_line_breaks(buffer).split("\n")
    rest = parts.pop() if parts else ""
    return parts, rest


def parse_json_line(line: str) -> dict[str, Any] | None:
    try:
        value = json.loads(line)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


class OutputParser(ABC):
    def __init__(self, *, tail: OutputTail | None = None) -> None:
        self.tail = tail if tail is not None else OutputTail()
        self.diagnostics: list[str] = []
        self.remote_thread_id: str | None = None
        self._stderr_rest = ""

    @abstractmethod
    def feed_stdout(self, text: str) -> list[str]:
        """Consume a stdout chunk; return assistant text to stream to the caller."""
        raise NotImplementedError

    @abstractmethod
    def output(self) -> str:
        """Assistant text produced so far."""
        raise NotImplementedError

    def feed_stderr(self, text: str) -> None:
        lines, self._stderr_rest = split_complete_lines(self._stderr_rest + text)
        for line in lines:
            self.push_diagnostic(line)

    def finish(self) -> list[str]:
        """Flush buffered partial lines once the process is gone."""
        if self._stderr_rest.strip():
            self.push_diagnostic(self._stderr_rest)
        self._stderr_rest = ""
        return []

    def push_diagnostic(self, line: str) -> None:
        normalized = line.strip()
        if not normalized:
            return
        self.diagnostics.append(normalized)
        self.tail.append(f"{normalized}\n")

    def result(self) -> str:
        output = self.output().strip()
        if output:
            return output
        fallback = "\n".join(self.diagnostics[-FALLBACK_DIAGNOSTIC_LINES:]).strip()
        return fallback or NO_OUTPUT_TEXT

    def failure_details(self, default: str) -> str:
        details = "\n".join(self.diagnostics[-FAILURE_DIAGNOSTIC_LINES:]).strip()
        return details or self.tail.snapshot().strip() or default


class JsonEventParser(OutputParser):
    def __init__(self, *, include_reasoning: bool = False, tail: OutputTail | None = None) -> None:
        super().__init__(tail=tail)
        self.include_reasoning = include_reasoning
        self.messages: list[str] = []
        self._stdout_rest = ""

    def feed_stdout(self, text: str) -> list[str]:
        lines, self._stdout_rest = split_complete_lines(self._stdout_rest + text)
        emitted: list[str] = []
        for line in lines:
            emitted.extend(self._handle_line(line))
        return emitted

    def finish(self) -> list[str]:
        emitted: list[str] = []
        if self._stdout_rest.strip():
            emitted.extend(self._handle_line(self._stdout_rest))
        self._stdout_rest = ""
        super().finish()
        return emitted

    def output(self) -> str:
        return "\n\n".join(self.messages)

    def _handle_line(self, line: str) -> list[str]:
        trimmed = line.strip()
        if not trimmed:
            return []
        event = parse_json_line(trimmed)
        if event is None:
            self.push_diagnostic(trimmed)
            return []
        return self._handle_event(event)

    def _handle_event(self, event: dict[str, Any]) -> list[str]:
        kind = event.get("type")
        if kind == "thread.started":
            thread_id = event.get("thread_id")
            if isinstance(thread_id, str) and thread_id:
                self.remote_thread_id = thread_id
            return []
        if kind != "item.completed":
            return []

        item = event.get("item")
        if not isinstance(item, dict):
            return []
        item_type = item.get("type")
        raw_text = item.get("text")
        text = raw_text.strip() if isinstance(raw_text, str) else ""
        if not text:
            return []

        if item_type in ASSISTANT_ITEM_TYPES or (self.include_reasoning and item_type == REASONING_ITEM_TYPE):
            self.messages.append(text)
            self.tail.append(f"{text}\n")
            return [text]
        if isinstance(item_type, str) and item_type and item_type != REASONING_ITEM_TYPE:
            self.push_diagnostic(f"{item_type}: {text}")
        return []


class PlainTextParser(OutputParser):
    def __init__(self, *, tail: OutputTail | None = None) -> None:
        super().__init__(tail=tail)
        self.chunks: list[str] = []

    def feed_stdout(self, text: str) -> list[str]:
        if not text:
            return []
        self.chunks.append(text)
        self.tail.append(text)
        return [text]

    def output(self) -> str:
        return "".join(self.chunks)


def make_parser(structured: bool, *, include_reasoning: bool = False, tail: OutputTail | None = None) -> OutputParser:
    if structured:
        return JsonEventParser(include_reasoning=include_reasoning, tail=tail)
    return PlainTextParser(tail=tail)
