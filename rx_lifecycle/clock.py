from __future__ import annotations

import heapq
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class ScheduledCall:
    """Handle for a callback registered with :meth:`Clock.call_later`."""

    def __init__(self, callback: Callable[..., Any], args: Tuple[Any, ...], due: datetime):
        self.callback = callback
        self.args = args
        self.due = due
        self.cancelled = False
        self._timer: Optional[threading.Timer] = None

    def cancel(self) -> None:
        # Cancelling after the callback started is a no-op: whatever the
        # callback does next is what sticks.
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def run(self) -> None:
        if not self.cancelled:
            self.callback(*self.args)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime: ...

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledCall: ...

    def shutdown(self) -> None:
        pass


class SystemClock(Clock):
    """
    Wall-clock time plus ``threading.Timer`` daemon threads.

    Callbacks run on the timer thread, never on the caller's thread. An
    exception escaping a callback is logged and only affects that callback.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Set[ScheduledCall] = set()
        self._closed = False

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledCall:
        delay = max(0.0, float(delay))
        call = ScheduledCall(callback, args, due=self.now() + timedelta(seconds=delay))

        def fire() -> None:
            with self._lock:
                self._pending.discard(call)
            try:
                call.run()
            except Exception:
                logger.exception("scheduled callback %r failed", callback)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        call._timer = timer
        with self._lock:
            if self._closed:
                raise RuntimeError("clock has been shut down")
            self._pending.add(call)
        timer.start()
        return call

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            pending = list(self._pending)
            self._pending.clear()
        for call in pending:
            call.cancel()
        if pending:
            logger.info("clock shut down, %d scheduled callbacks dropped", len(pending))


class ManualClock(Clock):
    """
    Deterministic clock for tests and demos: time only moves on :meth:`advance`.

    Due callbacks run synchronously inside ``advance`` in due-time order,
    with ``now()`` set to each callback's due time while it runs.
    Exceptions propagate to the caller of ``advance``.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 6, 25, 9, 0, tzinfo=timezone.utc)
        self._queue: List[Tuple[datetime, int, ScheduledCall]] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledCall:
        with self._lock:
            call = ScheduledCall(callback, args, due=self._now + timedelta(seconds=max(0.0, float(delay))))
            heapq.heappush(self._queue, (call.due, next(self._seq), call))
        return call

    def advance(self, seconds: float) -> None:
        target = self._now + timedelta(seconds=seconds)
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    break
                due, _, call = heapq.heappop(self._queue)
                if due > self._now:
                    self._now = due
            call.run()
        self._now = target

    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, _, call in self._queue if not call.cancelled)

    def shutdown(self) -> None:
        with self._lock:
            for _, _, call in self._queue:
                call.cancel()
            self._queue.clear()
