from __future__ import annotations

import heapq
import itertools
import time
from dataclasses import dataclass, field
from threading import Condition, Thread, current_thread
from typing import Callable

from . import events


@dataclass(order=True)
class _Job:
    due: float
    seq: int
    task: Callable[[], None] = field(compare=False)
    period_s: float | None = field(default=None, compare=False)


class Scheduler:
    """One background thread running periodic and delayed callbacks.

    A task that raises is logged and does not stop the thread or later runs.
    Jobs left in the queue when stop() is called never run.
    """

    def __init__(self, name: str = "pdr-scheduler") -> None:
        self.name = name
        self._cond = Condition()
        self._jobs: list[_Job] = []
        self._seq = itertools.count()
        self._stop = False
        self._run_id = 0
        self._thr: Thread | None = None

    def start(self) -> None:
        with self._cond:
            if self._thr and self._thr.is_alive():
                return
            self._stop = False
            self._run_id += 1
            self._thr = Thread(target=self._loop, args=(self._run_id,), name=self.name, daemon=True)
            self._thr.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        with self._cond:
            self._stop = True
            self._jobs.clear()
            self._cond.notify_all()
            thr = self._thr
            self._thr = None
        if thr and thr is not current_thread():
            thr.join(timeout_s)

    def is_running(self) -> bool:
        with self._cond:
            return self._thr is not None and self._thr.is_alive()

    def run_periodically(self, task: Callable[[], None], interval_ms: int) -> None:
        """Run `task` now and then every `interval_ms`."""
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0.")
        self._push(_Job(time.monotonic(), next(self._seq), task, interval_ms / 1000.0))

    def run_after_delay(self, task: Callable[[], None], delay_ms: int) -> None:
        self._push(_Job(time.monotonic() + max(0, delay_ms) / 1000.0, next(self._seq), task))

    def _push(self, job: _Job) -> None:
        with self._cond:
            if self._stop:
                return
            heapq.heappush(self._jobs, job)
            self._cond.notify_all()

    def _next_job(self, run_id: int) -> _Job | None:
        with self._cond:
            while not self._stop and self._run_id == run_id:
                if not self._jobs:
                    self._cond.wait()
                    continue
                wait_s = self._jobs[0].due - time.monotonic()
                if wait_s > 0:
                    self._cond.wait(wait_s)
                    continue
                job = heapq.heappop(self._jobs)
                if job.period_s is not None:
                    # Fixed rate from the previous due time; never queue a backlog.
                    nxt = max(job.due + job.period_s, time.monotonic())
                    heapq.heappush(self._jobs, _Job(nxt, next(self._seq), job.task, job.period_s))
                return job
            return None

    def _loop(self, run_id: int) -> None:
        while True:
            job = self._next_job(run_id)
            if job is None:
                return
            try:
                job.task()
            except Exception as e:
                events.safe_log_event("ERROR", f"Scheduled task failed: {type(e).__name__}: {e}")
