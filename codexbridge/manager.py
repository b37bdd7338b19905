"""
Persistent CLI session manager.

One SessionManager owns every per-thread record, the exit history and the
backend cooldown windows. Turns for one thread run strictly in submission
order on that record's TurnQueue; different threads run side by side.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable

from .completion import IDLE, TIMEOUT, CompletionDetector
from .config import BridgeConfig
from .env import build_git_hint, describe_env, git_candidates
from .errors import (
    BridgeError,
    CooldownActive,
    ProcessExited,
    StartupFailure,
    TurnAborted,
    TurnTimeout,
    UnknownFailure,
    UpstreamFailure,
    ValidationError,
)
from .exit_tracker import ExitTracker
from .failures import CooldownTracker, is_non_interactive_error, is_upstream_connectivity_error
from .parsers import PlainTextParser, make_parser
from .session import (
    ExitInfo,
    OutputTail,
    SessionRecord,
    SessionStatus,
    StartResult,
    StopResult,
    TurnResult,
    utc_now_iso,
)
from .transports import Transport, TransportFactory
from .turn_queue import QueueClosed, TurnQueue

logger = logging.getLogger(__name__)

# Upper bound on a single wait so a set cancel_event is noticed promptly.
CANCEL_POLL_SECONDS = 0.05
MESSAGE_TAIL_CHARS = 2_000
ONE_SHOT_KIND = "one-shot"
DOWNGRADE_MESSAGE = "CLI cannot run without a terminal; thread switched to one-shot mode, send the prompt again"

ChunkHandler = Callable[[str], None]
EventHandler = Callable[[dict[str, Any]], None]


@dataclass
class TurnParams:
    prompt: str
    timeout_ms: int
    idle_ms: int
    cancel_event: threading.Event | None = None
    on_chunk: ChunkHandler | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


def ensure_prompt(prompt: str | None, thread_id: str = "") -> str:
    normalized = (prompt or "").strip()
    if not normalized:
        raise ValidationError("Continue requires a non-empty prompt", thread_id=thread_id)
    return normalized


def ensure_positive_ms(name: str, value: int | None, default: int, thread_id: str = "") -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer, got {value!r}", thread_id=thread_id)
    return value


def _with_tail(message: str, tail: str) -> str:
    tail = tail.strip()
    if not tail:
        return message
    return f"{message}\n--- recent output ---\n{tail[-MESSAGE_TAIL_CHARS:]}"


def _failed_future(exc: BaseException) -> Future[TurnResult]:
    future: Future[TurnResult] = Future()
    future.set_exception(exc)
    return future


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


class SessionManager:
    def __init__(
        self,
        *,
        config: BridgeConfig | None = None,
        transport_factory: TransportFactory | None = None,
        on_event: EventHandler | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or BridgeConfig()
        self.transport_factory = transport_factory or TransportFactory(
            interactive_argv=self.config.interactive_argv()
        )
        self.on_event = on_event
        self.exits = ExitTracker()
        self.cooldowns = CooldownTracker(cooldown_ms=self.config.cooldown_ms, clock=clock)
        self._lock = threading.RLock()
        self._sessions: dict[str, SessionRecord] = {}
        self._one_shot_threads: set[str] = set()

    # -- registry ----------------------------------------------------------------

    def start(self, thread_id: str, cwd: str) -> StartResult:
        with self._lock:
            existing = self._sessions.get(thread_id)
            if existing is not None:
                existing.touch()
                if existing.cwd != cwd:
                    existing.cwd = cwd
                return StartResult(
                    started=False,
                    running=True,
                    thread_id=thread_id,
                    cwd=existing.cwd,
                    pid=existing.pid,
                )

            if self._uses_one_shot(thread_id):
                record = SessionRecord(
                    thread_id=thread_id,
                    cwd=cwd,
                    transport=None,
                    transport_kind=ONE_SHOT_KIND,
                    queue=TurnQueue(name=thread_id),
                )
                self._sessions[thread_id] = record
            else:
                try:
                    transport = self.transport_factory.acquire(cwd)
                except StartupFailure as exc:
                    logger.error("session start failed thread=%s cwd=%s error=%s", thread_id, cwd, exc)
                    return StartResult(started=False, running=False, thread_id=thread_id, cwd=cwd, error=str(exc))
                except Exception as exc:
                    logger.exception("session start failed thread=%s cwd=%s", thread_id, cwd)
                    return StartResult(started=False, running=False, thread_id=thread_id, cwd=cwd, error=str(exc))
                record = SessionRecord(
                    thread_id=thread_id,
                    cwd=cwd,
                    transport=transport,
                    transport_kind=transport.kind,
                    queue=TurnQueue(name=thread_id),
                )
                self._sessions[thread_id] = record
                record.subscriptions.append(transport.on_data(record.output_tail.append))
                record.subscriptions.append(
                    transport.on_exit(lambda code, sig: self._handle_exit(record, transport, code, sig))
                )
                transport.begin()

        logger.info(
            "session started thread=%s kind=%s pid=%s cwd=%s", thread_id, record.transport_kind, record.pid, cwd
        )
        self._emit_event(
            {"type": "session_start", "thread_id": thread_id, "transport_kind": record.transport_kind, "pid": record.pid}
        )
        return StartResult(started=True, running=True, thread_id=thread_id, cwd=cwd, pid=record.pid)

    def status(self, thread_id: str) -> SessionStatus:
        with self._lock:
            record = self._sessions.get(thread_id)
            if record is None:
                return SessionStatus(running=False, thread_id=thread_id, last_exit=self.exits.get(thread_id))
            return SessionStatus(
                running=True,
                thread_id=thread_id,
                cwd=record.cwd,
                pid=record.pid,
                last_used_at=record.last_used_at,
                transport_kind=record.transport_kind,
                output_tail=record.output_tail.snapshot(),
                remote_thread_id=record.remote_thread_id,
            )

    def stop(self, thread_id: str) -> StopResult:
        with self._lock:
            record = self._sessions.pop(thread_id, None)
        if record is None:
            return StopResult(stopped=False, thread_id=thread_id)

        record.queue.close()
        for transport in (record.transport, record.turn_transport):
            if transport is not None:
                transport.kill()
        logger.info("session stopped thread=%s pid=%s", thread_id, record.pid)
        self._emit_event({"type": "session_stop", "thread_id": thread_id})
        return StopResult(stopped=True, thread_id=thread_id)

    def list_sessions(self) -> list[SessionStatus]:
        with self._lock:
            thread_ids = sorted(self._sessions)
        return [self.status(thread_id) for thread_id in thread_ids]

    def close_all(self) -> None:
        with self._lock:
            thread_ids = list(self._sessions)
        for thread_id in thread_ids:
            self.stop(thread_id)

    def is_one_shot(self, thread_id: str) -> bool:
        with self._lock:
            return thread_id in self._one_shot_threads

    # -- turns -------------------------------------------------------------------

    def continue_turn(
        self,
        thread_id: str,
        cwd: str,
        prompt: str,
        *,
        timeout_ms: int | None = None,
        idle_ms: int | None = None,
        cancel_event: threading.Event | None = None,
        on_chunk: ChunkHandler | None = None,
    ) -> Future[TurnResult]:
        """
        Queue one prompt for the thread and return a future for its output.

        ValidationError and CooldownActive are raised right away, before any
        process is touched. Every other failure is set on the returned future.
        """
        text = ensure_prompt(prompt, thread_id)
        timeout_ms = ensure_positive_ms("timeout_ms", timeout_ms, self.config.timeout_ms, thread_id)
        idle_ms = ensure_positive_ms("idle_ms", idle_ms, self.config.idle_ms, thread_id)
        cooldown = self.cooldowns.active(thread_id)
        if cooldown is not None:
            remaining, reason = cooldown
            raise CooldownActive(thread_id=thread_id, remaining_seconds=remaining, reason=reason)

        params = TurnParams(
            prompt=text,
            timeout_ms=timeout_ms,
            idle_ms=idle_ms,
            cancel_event=cancel_event,
            on_chunk=on_chunk,
        )

        started = self.start(thread_id, cwd)
        if not started.running:
            return _failed_future(
                StartupFailure(started.error or "Failed to initialize session", thread_id=thread_id)
            )
        with self._lock:
            record = self._sessions.get(thread_id)
        if record is None:
            return _failed_future(StartupFailure("Failed to acquire session", thread_id=thread_id))

        try:
            return record.queue.submit(
                lambda: self._run_turn(record, params),
                on_metrics=lambda wait_ms, run_ms: self._on_turn_metrics(thread_id, wait_ms, run_ms),
            )
        except QueueClosed:
            return _failed_future(
                ProcessExited(
                    "Session ended before the turn was queued",
                    thread_id=thread_id,
                    exit_info=self.exits.get(thread_id),
                )
            )

    def run_turn(self, thread_id: str, cwd: str, prompt: str, **kwargs: Any) -> TurnResult:
        """Blocking form of continue_turn()."""
        return self.continue_turn(thread_id, cwd, prompt, **kwargs).result()

    def _run_turn(self, record: SessionRecord, params: TurnParams) -> TurnResult:
        thread_id = record.thread_id
        with self._lock:
            current = self._sessions.get(thread_id) is record
        if not current:
            raise ProcessExited(
                "Session ended before the turn started",
                thread_id=thread_id,
                exit_info=self.exits.get(thread_id),
            )

        self._emit_event(
            {
                "type": "turn_start",
                "thread_id": thread_id,
                "transport_kind": record.transport_kind,
                "prompt_chars": len(params.prompt),
            }
        )
        started_at = time.monotonic()
        try:
            if record.transport is None:
                result = self._execute_one_shot(record, params)
            else:
                result = self._execute_interactive(record, record.transport, params)
        except BridgeError as exc:
            self._finish_turn(thread_id, started_at, status=exc.kind, error=exc.message)
            raise
        except Exception as exc:
            logger.exception("turn crashed thread=%s", thread_id)
            self._finish_turn(thread_id, started_at, status=UnknownFailure.kind, error=str(exc))
            raise UnknownFailure(str(exc), thread_id=thread_id) from exc

        record.touch()
        with self._lock:
            record.turns_completed += 1
        self.cooldowns.clear(thread_id)
        self._finish_turn(thread_id, started_at, status="completed", output=result.output)
        return result

    def _finish_turn(self, thread_id: str, started_at: float, *, status: str, **extra: str) -> None:
        elapsed_ms = int((time.monotonic() - started_at) * 1000)
        event: dict[str, Any] = {"type": "turn_end", "thread_id": thread_id, "status": status, "elapsed_ms": elapsed_ms}
        if "output" in extra:
            event["output_preview"] = _truncate(extra["output"], 200)
        if "error" in extra:
            event["error_preview"] = _truncate(extra["error"], 200)
            logger.warning("turn failed thread=%s status=%s elapsed_ms=%s", thread_id, status, elapsed_ms)
        else:
            logger.info("turn completed thread=%s elapsed_ms=%s", thread_id, elapsed_ms)
        self._emit_event(event)

    # -- interactive -------------------------------------------------------------

    def _execute_interactive(self, record: SessionRecord, transport: Transport, params: TurnParams) -> TurnResult:
        thread_id = record.thread_id
        detector = CompletionDetector(timeout_ms=params.timeout_ms, idle_ms=params.idle_ms)
        parser = PlainTextParser()
        cond = threading.Condition()
        state: dict[str, Any] = {"exit": None, "downgrade": False}
        patterns = self.config.non_interactive_patterns
        # Terminal errors are only looked for until the session has answered once.
        watch_startup = record.turns_completed == 0

        def on_data(text: str) -> None:
            with cond:
                chunks = parser.feed_stdout(text)
                detector.note_activity()
                if watch_startup and is_non_interactive_error(parser.tail.snapshot(), patterns):
                    state["downgrade"] = True
                cond.notify_all()
            for chunk in chunks:
                self._emit_chunk(params.on_chunk, thread_id, chunk)

        def on_exit(exit_code: int | None, sig: int | None) -> None:
            with cond:
                state["exit"] = (exit_code, sig)
                cond.notify_all()

        subscriptions = [transport.on_data(on_data), transport.on_exit(on_exit)]
        write_error: OSError | None = None
        outcome = ""
        output = ""
        try:
            try:
                transport.write(params.prompt + "\n")
            except OSError as exc:
                write_error = exc
            else:
                outcome, output = self._wait_interactive(params, detector, parser, cond, state)
        finally:
            for sub in subscriptions:
                sub.dispose()

        if write_error is not None:
            if self.is_one_shot(thread_id):
                # The process died before it took the prompt.
                return self._execute_one_shot(record, params)
            raise ProcessExited(
                _with_tail(f"Failed to write prompt: {write_error}", record.output_tail.snapshot()),
                thread_id=thread_id,
                exit_info=self.exits.get(thread_id),
            ) from write_error

        if outcome == IDLE:
            return TurnResult(output=output)

        if outcome == "downgrade":
            info = self._downgrade(record, transport)
            raise ProcessExited(
                _with_tail(DOWNGRADE_MESSAGE, info.output_tail if info else record.output_tail.snapshot()),
                thread_id=thread_id,
                exit_info=info,
            )

        if outcome == "exit":
            exit_code, sig = state["exit"]
            info = self.exits.get(thread_id)
            if self.is_one_shot(thread_id):
                message = DOWNGRADE_MESSAGE
            else:
                message = f"Process exited during turn (exit_code={exit_code}, signal={sig})"
            raise ProcessExited(
                _with_tail(message, info.output_tail if info else record.output_tail.snapshot()),
                thread_id=thread_id,
                exit_info=info,
            )

        self._interrupt(transport, thread_id)
        tail = record.output_tail.snapshot()
        if outcome == "cancel":
            raise TurnAborted(
                _with_tail("Turn aborted by caller", tail),
                thread_id=thread_id,
                details={"output_tail": tail},
            )
        raise TurnTimeout(
            _with_tail(f"Turn timed out after {params.timeout_ms}ms", tail),
            thread_id=thread_id,
            details={"output_tail": tail, "timeout_ms": params.timeout_ms},
        )

    def _wait_interactive(
        self,
        params: TurnParams,
        detector: CompletionDetector,
        parser: PlainTextParser,
        cond: threading.Condition,
        state: dict[str, Any],
    ) -> tuple[str, str]:
        with cond:
            while True:
                if state["downgrade"]:
                    outcome = "downgrade"
                    break
                if state["exit"] is not None:
                    outcome = "exit"
                    break
                if params.cancelled:
                    outcome = "cancel"
                    break
                verdict = detector.check()
                if verdict is not None:
                    outcome = verdict
                    break
                cond.wait(min(detector.seconds_until_next(), CANCEL_POLL_SECONDS))
            return outcome, parser.output().strip()

    def _interrupt(self, transport: Transport, thread_id: str) -> None:
        try:
            transport.interrupt()
        except OSError as exc:
            logger.warning("interrupt failed thread=%s error=%s", thread_id, exc)

    def _handle_exit(self, record: SessionRecord, transport: Transport, exit_code: int | None, sig: int | None) -> None:
        thread_id = record.thread_id
        info = ExitInfo(
            thread_id=thread_id,
            cwd=record.cwd,
            output_tail=record.output_tail.snapshot(),
            exited_at=utc_now_iso(),
            exit_code=exit_code,
            signal=sig,
        )
        self.exits.record(info)
        incompatible = record.turns_completed == 0 and is_non_interactive_error(
            info.output_tail, self.config.non_interactive_patterns
        )
        with self._lock:
            current = self._sessions.get(thread_id) is record and record.transport is transport
            if current and incompatible:
                self._mark_one_shot(thread_id)
                record.transport = None
                record.transport_kind = ONE_SHOT_KIND
                record.release_subscriptions()
            elif current:
                del self._sessions[thread_id]
                record.queue.close()
        logger.info("session exited thread=%s %s", thread_id, info.describe())
        self._emit_event(
            {"type": "session_exit", "thread_id": thread_id, "exit_code": exit_code, "signal": sig}
        )

    # -- one-shot ----------------------------------------------------------------

    def _uses_one_shot(self, thread_id: str) -> bool:
        return not self.config.interactive or self.is_one_shot(thread_id)

    def _mark_one_shot(self, thread_id: str) -> bool:
        with self._lock:
            if thread_id in self._one_shot_threads:
                return False
            self._one_shot_threads.add(thread_id)
        logger.warning("thread cannot run interactively, switching to one-shot thread=%s", thread_id)
        self._emit_event({"type": "downgrade", "thread_id": thread_id, "transport_kind": ONE_SHOT_KIND})
        return True

    def _downgrade(self, record: SessionRecord, transport: Transport) -> ExitInfo | None:
        self._mark_one_shot(record.thread_id)
        with self._lock:
            detached = record.transport is transport
            if detached:
                record.release_subscriptions()
                record.transport = None
                record.transport_kind = ONE_SHOT_KIND
        transport.kill()
        if not detached:
            # _handle_exit already recorded the real exit.
            return self.exits.get(record.thread_id)
        info = ExitInfo(
            thread_id=record.thread_id,
            cwd=record.cwd,
            output_tail=record.output_tail.snapshot(),
            exited_at=utc_now_iso(),
        )
        self.exits.record(info)
        return info

    def _execute_one_shot(self, record: SessionRecord, params: TurnParams) -> TurnResult:
        thread_id = record.thread_id
        with self._lock:
            remote_thread_id = record.remote_thread_id
            cwd = record.cwd
        argv = self.config.one_shot_argv(params.prompt, remote_thread_id)
        turn_tail = OutputTail(mirror=record.output_tail)
        parser = make_parser(
            self.config.one_shot_json,
            include_reasoning=self.config.include_reasoning,
            tail=turn_tail,
        )

        try:
            transport = self.transport_factory.spawn_one_shot(cwd, argv)
        except StartupFailure as exc:
            self.exits.record(
                ExitInfo(thread_id=thread_id, cwd=cwd, output_tail="", exited_at=utc_now_iso())
            )
            exc.thread_id = thread_id
            raise
        self._log_spawn(thread_id, cwd, argv, transport)

        detector = CompletionDetector(timeout_ms=params.timeout_ms, idle_ms=params.idle_ms)
        cond = threading.Condition()
        state: dict[str, Any] = {"exit": None}

        def on_stdout(text: str) -> None:
            with cond:
                chunks = parser.feed_stdout(text)
            for chunk in chunks:
                self._emit_chunk(params.on_chunk, thread_id, chunk)

        def on_stderr(text: str) -> None:
            with cond:
                parser.feed_stderr(text)

        def on_exit(exit_code: int | None, sig: int | None) -> None:
            with cond:
                state["exit"] = (exit_code, sig)
                cond.notify_all()

        subscriptions = [transport.on_data(on_stdout), transport.on_stderr(on_stderr), transport.on_exit(on_exit)]
        record.turn_transport = transport
        transport.begin()
        with self._lock:
            current = self._sessions.get(thread_id) is record
        if not current:
            # stop() ran between spawn and registration.
            transport.kill()
        try:
            with cond:
                while True:
                    if state["exit"] is not None:
                        outcome = "exit"
                        break
                    if params.cancelled:
                        outcome = "cancel"
                        break
                    if detector.check() == TIMEOUT:
                        outcome = TIMEOUT
                        break
                    cond.wait(min(detector.seconds_until_next(), CANCEL_POLL_SECONDS))
        finally:
            record.turn_transport = None
            for sub in subscriptions:
                sub.dispose()

        if outcome != "exit":
            transport.kill()
            tail = turn_tail.snapshot()
            if outcome == "cancel":
                raise TurnAborted(_with_tail("Turn aborted by caller", tail), thread_id=thread_id)
            raise TurnTimeout(
                _with_tail(f"Turn timed out after {params.timeout_ms}ms", tail),
                thread_id=thread_id,
                details={"timeout_ms": params.timeout_ms},
            )

        for chunk in parser.finish():
            self._emit_chunk(params.on_chunk, thread_id, chunk)
        if parser.remote_thread_id:
            with self._lock:
                record.remote_thread_id = parser.remote_thread_id

        exit_code, sig = state["exit"]
        info = ExitInfo(
            thread_id=thread_id,
            cwd=cwd,
            output_tail=turn_tail.snapshot(),
            exited_at=utc_now_iso(),
            exit_code=exit_code,
            signal=sig,
        )
        self.exits.record(info)

        if (exit_code or 0) != 0 or sig is not None:
            fallback = f"{argv[0]} exited with code {exit_code}" if sig is None else f"{argv[0]} killed by signal {sig}"
            details = parser.failure_details(fallback)
            meta = {"exit_code": exit_code, "signal": sig}
            if is_upstream_connectivity_error(details, self.config.upstream_patterns):
                self.cooldowns.open(thread_id, details)
                self._emit_event({"type": "cooldown_open", "thread_id": thread_id, "reason": _truncate(details, 200)})
                raise UpstreamFailure(details, thread_id=thread_id, details=meta)
            raise UnknownFailure(details, thread_id=thread_id, details=meta)

        return TurnResult(output=parser.result())

    def _log_spawn(self, thread_id: str, cwd: str, argv: list[str], transport: Transport) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "one-shot spawn thread=%s pid=%s cwd=%s argc=%s resume=%s env=%s git=%s",
            thread_id,
            transport.pid,
            cwd,
            len(argv),
            "resume" in argv[:3],
            describe_env(self.transport_factory.child_env()),
            build_git_hint(git_candidates(cwd)),
        )

    # -- hooks -------------------------------------------------------------------

    def _emit_chunk(self, on_chunk: ChunkHandler | None, thread_id: str, text: str) -> None:
        if not text:
            return
        if on_chunk is not None:
            try:
                on_chunk(text)
            except Exception:
                logger.exception("on_chunk handler failed thread=%s", thread_id)
        self._emit_event({"type": "turn_chunk", "thread_id": thread_id, "chars": len(text)})

    def _on_turn_metrics(self, thread_id: str, wait_ms: float, run_ms: float) -> None:
        logger.debug("turn metrics thread=%s wait_ms=%.0f run_ms=%.0f", thread_id, wait_ms, run_ms)
        self._emit_event({"type": "turn_metrics", "thread_id": thread_id, "wait_ms": wait_ms, "run_ms": run_ms})

    def _emit_event(self, event: dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception:
            logger.exception("on_event handler failed type=%s", event.get("type"))
