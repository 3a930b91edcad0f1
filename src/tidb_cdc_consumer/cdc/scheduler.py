"""Deferred task scheduling driven by an injectable clock.

Tasks never run on their own: the owner calls :meth:`Scheduler.run_due`
between messages, so callbacks are serialised with message handling.  Tests
drive the same code with a manual clock.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ScheduledTask:
    """Handle returned for each scheduled callback."""

    name: str
    due: float
    callback: Callable[[], Any]
    interval: Optional[float] = None
    cancelled: bool = False
    runs: int = field(default=0)

    @property
    def periodic(self) -> bool:
        return self.interval is not None

    @property
    def done(self) -> bool:
        return self.cancelled or (not self.periodic and self.runs > 0)

    def cancel(self) -> bool:
        """Cancel the task; returns False when it already ran or was cancelled."""
        if self.done:
            return False
        self.cancelled = True
        return True


class Scheduler:
    """Min-heap of one-shot and periodic tasks keyed by due time."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: List[Tuple[float, int, ScheduledTask]] = []
        self._sequence = itertools.count()

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def call_later(
        self, delay: float, callback: Callable[[], Any], *, name: str = "task"
    ) -> ScheduledTask:
        if delay < 0:
            raise ValueError("delay must not be negative")
        task = ScheduledTask(name=name, due=self._clock() + delay, callback=callback)
        self._push(task)
        return task

    def call_every(
        self, interval: float, callback: Callable[[], Any], *, name: str = "periodic"
    ) -> ScheduledTask:
        if interval <= 0:
            raise ValueError("interval must be positive")
        task = ScheduledTask(
            name=name,
            due=self._clock() + interval,
            callback=callback,
            interval=interval,
        )
        self._push(task)
        return task

    def run_due(self, *, now: Optional[float] = None) -> List[Any]:
        """Run every task due at `now`, oldest first, returning their results.

        A failing callback is logged and does not stop the remaining tasks.
        """
        current = now if now is not None else self._clock()
        results: List[Any] = []
        while self._heap and self._heap[0][0] <= current:
            _, _, task = heapq.heappop(self._heap)
            if task.done:
                continue
            task.runs += 1
            if task.periodic:
                next_due = task.due + task.interval
                if next_due <= current:
                    next_due = current + task.interval
                task.due = next_due
                self._push(task)
            try:
                result = task.callback()
            except Exception:  # noqa: BLE001 - one bad task must not stall the rest
                logger.exception("scheduled task %s failed", task.name)
                continue
            if result is not None:
                results.append(result)
        return results

    def next_due(self) -> Optional[float]:
        self._discard_done()
        if not self._heap:
            return None
        return self._heap[0][0]

    def pending(self) -> int:
        return sum(1 for _, _, task in self._heap if not task.done)

    def clear(self) -> None:
        for _, _, task in self._heap:
            task.cancelled = True
        self._heap.clear()

    def _push(self, task: ScheduledTask) -> None:
        heapq.heappush(self._heap, (task.due, next(self._sequence), task))

    def _discard_done(self) -> None:
        while self._heap and self._heap[0][2].done:
            heapq.heappop(self._heap)


__all__ = ["ScheduledTask", "Scheduler"]
