"""Tests for the session data model and the exit tracker."""

from __future__ import annotations

import unittest

from codexbridge.exit_tracker import ExitTracker
from codexbridge.session import ExitInfo, OutputTail, SessionStatus, StartResult, utc_now_iso


class OutputTailTests(unittest.TestCase):
    def test_keeps_only_last_characters(self) -> None:
        tail = OutputTail(limit=10)
        tail.append("abcdef")
        tail.append("ghijklmn")
        self.assertEqual(tail.snapshot(), "efghijklmn")
        self.assertEqual(len(tail), 10)

    def test_default_limit_is_8000(self) -> None:
        tail = OutputTail()
        tail.append("x" * 9_000)
        self.assertEqual(len(tail), 8_000)

    def test_empty_append_and_clear(self) -> None:
        tail = OutputTail(limit=5)
        tail.append("")
        self.assertEqual(tail.snapshot(), "")
        tail.append("abc")
        tail.clear()
        self.assertEqual(tail.snapshot(), "")


class StatusDictTests(unittest.TestCase):
    def test_running_status_omits_last_exit(self) -> None:
        status = SessionStatus(running=True, thread_id="t1", cwd="/tmp", pid=42, transport_kind="pty")
        data = status.to_dict()
        self.assertNotIn("last_exit", data)
        self.assertEqual(data["pid"], 42)
        self.assertEqual(data["transport_kind"], "pty")

    def test_stopped_status_only_carries_last_exit(self) -> None:
        info = ExitInfo(thread_id="t1", cwd="/tmp", output_tail="boom", exited_at=utc_now_iso(), exit_code=2)
        data = SessionStatus(running=False, thread_id="t1", last_exit=info).to_dict()
        self.assertEqual(set(data), {"running", "thread_id", "last_exit"})
        self.assertEqual(data["last_exit"]["exit_code"], 2)
        self.assertEqual(data["last_exit"]["output_tail"], "boom")

    def test_start_result_to_dict(self) -> None:
        data = StartResult(started=False, running=False, thread_id="t", cwd="/x", error="nope").to_dict()
        self.assertEqual(data["error"], "nope")
        self.assertIsNone(data["pid"])

    def test_exit_describe(self) -> None:
        info = ExitInfo(thread_id="t", cwd="/", output_tail="", exited_at="", exit_code=None, signal=15)
        self.assertEqual(info.describe(), "exit_code=None signal=15")


class ExitTrackerTests(unittest.TestCase):
    def test_latest_exit_wins(self) -> None:
        tracker = ExitTracker()
        self.assertIsNone(tracker.get("t1"))
        tracker.record(ExitInfo(thread_id="t1", cwd="/", output_tail="a", exited_at="1", exit_code=1))
        tracker.record(ExitInfo(thread_id="t1", cwd="/", output_tail="b", exited_at="2", exit_code=0))
        last = tracker.get("t1")
        assert last is not None
        self.assertEqual(last.output_tail, "b")
        self.assertIsNone(tracker.get("t2"))


if __name__ == "__main__":
    unittest.main()
