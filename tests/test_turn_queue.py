from __future__ import annotations

import threading
import time
import unittest

from codexbridge.turn_queue import QueueClosed, TurnQueue


class TurnQueueTests(unittest.TestCase):
    def setUp(self) -> None:
        self.queue = TurnQueue(name="test")
        self.addCleanup(self.queue.close)

    def test_runs_in_submission_order(self) -> None:
        order: list[int] = []

        def make(i: int):
            def _run() -> int:
                # Earlier turns sleep longer; order must still hold.
                time.sleep(0.02 * (3 - i))
                order.append(i)
                return i

            return _run

        futures = [self.queue.submit(make(i)) for i in range(3)]
        self.assertEqual([f.result(timeout=5) for f in futures], [0, 1, 2])
        self.assertEqual(order, [0, 1, 2])

    def test_failure_does_not_block_next_turn(self) -> None:
        def boom() -> None:
            raise RuntimeError("boom")

        failed = self.queue.submit(boom)
        ok = self.queue.submit(lambda: "ok")
        with self.assertRaises(RuntimeError):
            failed.result(timeout=5)
        self.assertEqual(ok.result(timeout=5), "ok")
        self.assertEqual(self.queue.pending, 0)

    def test_metrics_only_after_success(self) -> None:
        metrics: list[tuple[float, float]] = []

        def boom() -> None:
            raise ValueError("x")

        self.queue.submit(boom, on_metrics=lambda w, r: metrics.append((w, r))).exception(timeout=5)
        self.queue.submit(lambda: None, on_metrics=lambda w, r: metrics.append((w, r))).result(timeout=5)
        self.assertEqual(len(metrics), 1)
        self.assertGreaterEqual(metrics[0][0], 0.0)

    def test_close_rejects_new_turns_but_runs_queued(self) -> None:
        gate = threading.Event()
        first = self.queue.submit(lambda: gate.wait(5))
        second = self.queue.submit(lambda: "second")
        self.queue.close()
        self.assertTrue(self.queue.closed)
        with self.assertRaises(QueueClosed):
            self.queue.submit(lambda: None)
        gate.set()
        self.assertTrue(first.result(timeout=5))
        self.assertEqual(second.result(timeout=5), "second")

    def test_separate_queues_run_in_parallel(self) -> None:
        other = TurnQueue(name="other")
        self.addCleanup(other.close)
        gate = threading.Event()
        blocked = self.queue.submit(lambda: gate.wait(5))
        self.assertEqual(other.submit(lambda: "free").result(timeout=2), "free")
        gate.set()
        blocked.result(timeout=5)


if __name__ == "__main__":
    unittest.main()
