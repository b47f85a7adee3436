"""Batch-level progress aggregation and snapshot delivery.

The aggregator folds per-item byte reports into one combined view of a
batch and publishes immutable :class:`ProgressSnapshot` objects on a
:class:`ProgressChannel`.  Routine updates are throttled; the start and the
end of every item are always delivered.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_SPEED = 10 * 1024 * 1024  # bytes/s shown before the first real report
DEFAULT_PROGRESS_INTERVAL = 0.2  # seconds; at most five routine updates per second

Dispatcher = Callable[[Callable[[], None]], None]
SnapshotCallback = Callable[["ProgressSnapshot"], None]


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of a running batch."""

    item_name: str
    progress: float
    item_progress: float
    speed: float
    eta: float
    operation: str
    completed: bool = False
    index: int = 0
    total: int = 0


def _call_now(fn: Callable[[], None]) -> None:
    fn()


class ProgressChannel:
    """Observer list for progress snapshots.

    Every delivery goes through *dispatcher*, which decides on which thread a
    subscriber runs (a GUI would post to its event loop).  The default calls
    subscribers synchronously.
    """

    def __init__(self, dispatcher: Dispatcher | None = None) -> None:
        self._dispatcher = dispatcher or _call_now
        self._subscribers: list[SnapshotCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            self._dispatcher(lambda cb=callback: self._deliver(cb, snapshot))

    @staticmethod
    def _deliver(callback: SnapshotCallback, snapshot: ProgressSnapshot) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception("Exception in progress subscriber")


class ProgressAggregator:
    """Accumulates byte counts across the items of one batch.

    ``completed_bytes`` only grows, and only by the estimate of an item that
    finished successfully.  In-flight bytes for the current item are clamped
    to ``[previous report, item estimate]``.
    """

    def __init__(
        self,
        total_bytes: int,
        operation: str,
        total_items: int = 0,
        channel: ProgressChannel | None = None,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        fallback_speed: float = DEFAULT_FALLBACK_SPEED,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total_bytes = max(0, int(total_bytes))
        self.operation = operation
        self.total_items = total_items
        self.channel = channel
        self.interval = interval
        self.fallback_speed = fallback_speed
        self._clock = clock

        self._completed_bytes = 0
        self._in_flight = 0
        self._item_estimate = 0
        self._item_final: float | None = None
        self._item_name = ""
        self._index = 0
        self._speed = 0.0
        self._last_publish: float | None = None
        self._finished = False
        self._lock = threading.Lock()

    @property
    def completed_bytes(self) -> int:
        with self._lock:
            return self._completed_bytes

    # ------------------------------------------------------------------
    # Item lifecycle
    # ------------------------------------------------------------------

    def start_item(self, name: str, index: int, estimate: int) -> ProgressSnapshot:
        """Begin tracking item *index* (1-based); always published."""
        with self._lock:
            self._item_name = name
            self._index = index
            self._item_estimate = max(0, int(estimate))
            self._in_flight = 0
            self._speed = 0.0
            self._item_final = None
            snapshot = self._snapshot_locked()
        self._publish(snapshot, force=True)
        return snapshot

    def update(self, transferred: int, speed: float) -> ProgressSnapshot:
        """Record a byte report for the current item; published if due."""
        with self._lock:
            clamped = max(self._in_flight, int(transferred))
            self._in_flight = min(clamped, self._item_estimate)
            if speed > 0:
                self._speed = float(speed)
            snapshot = self._snapshot_locked()
        self._publish(snapshot, force=False)
        return snapshot

    def finish_item(self, succeeded: bool) -> ProgressSnapshot:
        """Close the current item; a success folds its estimate into the total."""
        with self._lock:
            self._in_flight = 0
            if succeeded:
                self._completed_bytes += self._item_estimate
            self._item_final = 1.0 if succeeded else 0.0
            snapshot = self._snapshot_locked(item_progress=self._item_final)
        self._publish(snapshot, force=True)
        return snapshot

    def finish(self) -> ProgressSnapshot:
        """Publish the terminal snapshot of the batch."""
        with self._lock:
            self._finished = True
            snapshot = self._snapshot_locked(item_progress=self._item_final)
        self._publish(snapshot, force=True)
        return snapshot

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _snapshot_locked(self, item_progress: float | None = None) -> ProgressSnapshot:
        done = self._completed_bytes + self._in_flight
        if self.total_bytes <= 0:
            progress = 1.0
        else:
            progress = min(1.0, done / self.total_bytes)

        if item_progress is None:
            if self._item_estimate <= 0:
                item_progress = 0.0
            else:
                item_progress = min(1.0, self._in_flight / self._item_estimate)

        if self._speed > 0:
            speed = self._speed
        elif self._in_flight == 0:
            speed = float(self.fallback_speed)
        else:
            speed = 0.0

        remaining = max(0, self.total_bytes - done)
        eta = remaining / speed if speed > 0 else 0.0
        if self._finished:
            eta = 0.0

        return ProgressSnapshot(
            item_name=self._item_name,
            progress=progress,
            item_progress=item_progress,
            speed=speed,
            eta=eta,
            operation=self.operation,
            completed=self._finished,
            index=self._index,
            total=self.total_items,
        )

    def _publish(self, snapshot: ProgressSnapshot, force: bool) -> None:
        now = self._clock()
        with self._lock:
            if not force and self._last_publish is not None and now - self._last_publish < self.interval:
                return
            self._last_publish = now
        if self.channel is not None:
            self.channel.publish(snapshot)
