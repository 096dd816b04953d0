"""
Repeating task scheduler.

Ticks (market scan, position monitor, daily reset check, remote command
poll) are plain functions.  The scheduler owns the timing: it runs due
tasks one after another on the calling thread, so two ticks never
overlap, and it re-arms every task after each run whatever the outcome.
An exception raised by a tick is logged and counted here; it never
reaches the loop, so a failing tick cannot stop later ticks.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional


logger = logging.getLogger(__name__)


@dataclass
class RepeatingTask:
    """A function run every `interval` seconds.

    With `align` set the task fires on wall-clock multiples of the
    interval (a 15 minute scan runs at :00, :15, :30, :45), which keeps
    scans close to candle boundaries.
    """

    name: str
    interval: float
    func: Callable[[], object]
    align: bool = False
    next_run: float = 0.0
    run_count: int = 0
    failure_count: int = 0
    last_error: Optional[str] = None

    def is_due(self, now: float) -> bool:
        return now >= self.next_run

    def schedule_next(self, now: float) -> None:
        if self.align:
            self.next_run = (now // self.interval + 1) * self.interval
        else:
            self.next_run = now + self.interval

    def run(self, now: float) -> bool:
        """Run the task once.  Returns False when the tick raised."""
        self.run_count += 1
        try:
            self.func()
            self.last_error = None
            return True
        except Exception as exc:
            self.failure_count += 1
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("Task %s failed (%d failures so far)", self.name, self.failure_count)
            return False
        finally:
            self.schedule_next(now)


class Scheduler:
    """Run `RepeatingTask`s sequentially until `stop()` is called."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = 1.0,
    ) -> None:
        self.clock = clock
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.tasks: List[RepeatingTask] = []
        self._running = False

    def add(self, name: str, interval: float, func: Callable[[], object],
            run_immediately: bool = False, align: bool = False) -> RepeatingTask:
        if interval <= 0:
            raise ValueError(f"Interval for task {name} must be positive")
        task = RepeatingTask(name=name, interval=float(interval), func=func, align=align)
        if run_immediately:
            task.next_run = self.clock()
        else:
            task.schedule_next(self.clock())
        self.tasks.append(task)
        logger.info("Scheduled task %s every %ss", name, interval)
        return task

    def get(self, name: str) -> Optional[RepeatingTask]:
        for task in self.tasks:
            if task.name == name:
                return task
        return None

    def run_pending(self) -> int:
        """Run every task that is due, in registration order.

        The clock is re-read before each task so a slow tick delays the
        following ones instead of running them against a stale time.
        """
        ran = 0
        for task in self.tasks:
            now = self.clock()
            if task.is_due(now):
                task.run(now)
                ran += 1
        return ran

    def seconds_until_next(self) -> float:
        if not self.tasks:
            return self.poll_interval
        now = self.clock()
        return max(0.0, min(task.next_run for task in self.tasks) - now)

    def run_forever(self) -> None:
        """Loop until `stop()` is called or the process is interrupted."""
        self._running = True
        while self._running:
            self.run_pending()
            if not self._running:
                break
            delay = min(self.poll_interval, self.seconds_until_next())
            if delay > 0:
                self.sleep(delay)

    def stop(self) -> None:
        self._running = False

    @property
    def running(self) -> bool:
        return self._running
