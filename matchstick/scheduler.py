"""Cooperative tick scheduler and clocks.

All periodic subsystems (price ticks, automation ticks, autosave) and one-shot
timers (temporary multipliers) run as callbacks on a single logical thread.
A callback always runs to completion before the next one starts, so a
read-modify-write inside one callback never interleaves with another.

Usage:
    clock = ManualClock()
    scheduler = TickScheduler(clock)
    scheduler.every(1000, engine.tick, name="tick")
    scheduler.advance(60_000)   # run one simulated minute instantly

    # service mode
    scheduler = TickScheduler(SystemClock())
    scheduler.run_forever()
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from matchstick.errors import ErrorHandler


_logger = logging.getLogger("matchstick.scheduler")


class SystemClock:
    """Wall clock in integer milliseconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Clock that only moves when told to. Used for tests and accelerated runs."""

    def __init__(self, start_ms: int = 1_767_225_600_000) -> None:  # 2026-01-01T00:00:00Z
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("Cannot move a clock backwards")
        self._now += ms

    def set(self, now_ms: int) -> None:
        self._now = now_ms


@dataclass(order=True)
class Job:
    next_run: int
    seq: int
    name: str = field(compare=False)
    callback: Callable[[], None] = field(compare=False, repr=False)
    interval_ms: int | None = field(default=None, compare=False)
    group: str | None = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)

    @property
    def periodic(self) -> bool:
        return self.interval_ms is not None


class TickScheduler:
    """Single-threaded scheduler for periodic and one-shot callbacks."""

    def __init__(self, clock: SystemClock | ManualClock, error_handler: ErrorHandler | None = None) -> None:
        self.clock = clock
        self.error_handler = error_handler or ErrorHandler()
        self.running = False
        self._queue: list[Job] = []
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return self.clock.now_ms()

    def every(self, interval_ms: int, callback: Callable[[], None], *, name: str, group: str | None = None) -> Job:
        """Run callback every interval_ms, first run one interval from now."""
        if interval_ms <= 0:
            raise ValueError(f"Interval for job '{name}' must be positive")
        job = Job(
            next_run=self.now_ms() + interval_ms,
            seq=next(self._seq),
            name=name,
            callback=callback,
            interval_ms=interval_ms,
            group=group,
        )
        heapq.heappush(self._queue, job)
        return job

    def call_later(self, delay_ms: int, callback: Callable[[], None], *, name: str) -> Job:
        """Run callback once after delay_ms."""
        job = Job(
            next_run=self.now_ms() + max(0, delay_ms),
            seq=next(self._seq),
            name=name,
            callback=callback,
        )
        heapq.heappush(self._queue, job)
        return job

    def cancel(self, job: Job) -> None:
        job.cancelled = True

    def cancel_group(self, group: str) -> int:
        """Cancel every job in a group. Returns the number cancelled."""
        count = 0
        for job in self._queue:
            if job.group == group and not job.cancelled:
                job.cancelled = True
                count += 1
        return count

    def pending_jobs(self, group: str | None = None) -> list[Job]:
        return sorted(
            job for job in self._queue
            if not job.cancelled and (group is None or job.group == group)
        )

    def next_due(self) -> int | None:
        self._drop_cancelled_head()
        return self._queue[0].next_run if self._queue else None

    def run_pending(self) -> int:
        """Run every job due at the current clock time. Returns jobs run.

        Periodic jobs that fell more than one interval behind skip the missed
        runs instead of bursting to catch up.
        """
        now = self.now_ms()
        ran = 0
        while True:
            self._drop_cancelled_head()
            if not self._queue or self._queue[0].next_run > now:
                break
            job = heapq.heappop(self._queue)
            self._run_job(job)
            ran += 1
            if job.periodic and not job.cancelled:
                job.next_run += job.interval_ms
                if job.next_run <= now:
                    job.next_run = now + job.interval_ms
                heapq.heappush(self._queue, job)
        return ran

    def advance(self, ms: int) -> int:
        """Move a ManualClock forward, running each due job at its own due time."""
        if not isinstance(self.clock, ManualClock):
            raise TypeError("advance() requires a ManualClock")
        target = self.now_ms() + ms
        ran = 0
        while True:
            due = self.next_due()
            if due is None or due > target:
                break
            if due > self.now_ms():
                self.clock.set(due)
            ran += self.run_pending()
        self.clock.set(target)
        return ran

    def run_forever(self, max_sleep_ms: int = 100, sleep: Callable[[float], None] = time.sleep) -> None:
        """Service loop: run due jobs, sleep until the next one, until stop()."""
        self.running = True
        _logger.info("Scheduler started")
        while self.running:
            self.run_pending()
            due = self.next_due()
            wait_ms = max_sleep_ms if due is None else min(max_sleep_ms, max(0, due - self.now_ms()))
            if wait_ms > 0:
                sleep(wait_ms / 1000)
        _logger.info("Scheduler stopped")

    def stop(self) -> None:
        self.running = False

    def shutdown(self) -> None:
        """Stop the loop and drop every job, including armed one-shot timers."""
        self.running = False
        for job in self._queue:
            job.cancelled = True
        self._queue.clear()

    def _drop_cancelled_head(self) -> None:
        while self._queue and self._queue[0].cancelled:
            heapq.heappop(self._queue)

    def _run_job(self, job: Job) -> None:
        try:
            job.callback()
        except Exception as e:
            # A failing tick must never take the scheduler down
            _logger.error(f"Error in scheduled job '{job.name}': {e}", exc_info=True)
            self.error_handler.handle_error(e)
