import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import unittest

from goldbot.utils.scheduler import Scheduler


class FakeTime:
    """Clock whose sleep advances time."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestScheduler(unittest.TestCase):
    def setUp(self) -> None:
        self.time = FakeTime(1000.0)
        self.scheduler = Scheduler(clock=self.time.clock, sleep=self.time.sleep, poll_interval=1.0)

    def test_run_immediately_and_interval(self) -> None:
        calls = []
        self.scheduler.add("tick", 60, lambda: calls.append(self.time.now), run_immediately=True)
        self.assertEqual(self.scheduler.run_pending(), 1)
        self.assertEqual(self.scheduler.run_pending(), 0)
        self.time.now = 1059.0
        self.scheduler.run_pending()
        self.time.now = 1060.0
        self.scheduler.run_pending()
        self.assertEqual(calls, [1000.0, 1060.0])

    def test_aligned_task_fires_on_wall_clock_multiples(self) -> None:
        self.time.now = 1000.0
        task = self.scheduler.add("scan", 900, lambda: None, align=True)
        self.assertEqual(task.next_run, 1800.0)
        self.time.now = 1805.0
        self.scheduler.run_pending()
        self.assertEqual(task.next_run, 2700.0)

    def test_failing_task_is_rearmed_and_does_not_block_others(self) -> None:
        calls = []

        def boom():
            raise RuntimeError("broker down")

        failing = self.scheduler.add("failing", 10, boom, run_immediately=True)
        self.scheduler.add("other", 10, lambda: calls.append("other"), run_immediately=True)
        with self.assertLogs("goldbot.utils.scheduler", level="ERROR"):
            self.scheduler.run_pending()
        self.assertEqual(calls, ["other"])
        self.assertEqual(failing.failure_count, 1)
        self.assertEqual(failing.last_error, "RuntimeError: broker down")
        self.assertEqual(failing.next_run, 1010.0)

    def test_non_positive_interval_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.scheduler.add("bad", 0, lambda: None)

    def test_run_forever_until_stopped(self) -> None:
        runs = []

        def tick():
            runs.append(self.time.now)
            if len(runs) == 3:
                self.scheduler.stop()

        self.scheduler.add("tick", 5, tick, run_immediately=True)
        self.scheduler.run_forever()
        self.assertFalse(self.scheduler.running)
        self.assertEqual(runs, [1000.0, 1005.0, 1010.0])
        self.assertTrue(all(s <= 1.0 for s in self.time.sleeps))

    def test_seconds_until_next(self) -> None:
        self.assertEqual(self.scheduler.seconds_until_next(), 1.0)
        self.scheduler.add("a", 30, lambda: None)
        self.scheduler.add("b", 10, lambda: None)
        self.assertEqual(self.scheduler.seconds_until_next(), 10.0)


if __name__ == '__main__':
    unittest.main()
