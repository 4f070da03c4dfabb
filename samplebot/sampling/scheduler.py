"""
Deferred call scheduling for the sampling state machine.

All timed steps of a run (settle, hold, release tail, pause) are scheduled
as cancellable deferred calls instead of sleeping:
- ThreadScheduler: runs calls on one dedicated control thread in real time
- ManualScheduler: runs calls when the test advances a synthetic clock
"""

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, List, Optional


class ScheduledCall:
    """Handle for a deferred call."""

    def __init__(self, when: float, seq: int, callback: Callable, args: tuple):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: 'ScheduledCall') -> bool:
        return (self.when, self.seq) < (other.when, other.seq)

    def __repr__(self) -> str:
        name = getattr(self.callback, '__name__', repr(self.callback))
        return f"<ScheduledCall {name} at {self.when:.3f}{' cancelled' if self.cancelled else ''}>"


class ManualScheduler:
    """
    Scheduler driven by a synthetic clock.

    Nothing runs until advance() is called. Calls are executed in time
    order, and calls scheduled while advancing run in the same advance()
    if they fall due before its end.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self._queue: List[ScheduledCall] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable, *args) -> ScheduledCall:
        call = ScheduledCall(self.now + max(0.0, delay), next(self._seq), callback, args)
        heapq.heappush(self._queue, call)
        return call

    def call_soon(self, callback: Callable, *args) -> ScheduledCall:
        return self.call_later(0.0, callback, *args)

    @property
    def pending(self) -> List[ScheduledCall]:
        return sorted(call for call in self._queue if not call.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, running every call that falls due."""
        target = self.now + seconds
        while self._queue and self._queue[0].when <= target:
            call = heapq.heappop(self._queue)
            self.now = call.when
            if not call.cancelled:
                call.callback(*call.args)
        self.now = target

    def run_until_idle(self, limit: float = 3600.0) -> None:
        """Run queued calls until none are left (or the limit is reached)."""
        end = self.now + limit
        while self._queue and self.now < end:
            call = heapq.heappop(self._queue)
            self.now = max(self.now, call.when)
            if not call.cancelled:
                call.callback(*call.args)


class ThreadScheduler:
    """
    Runs deferred calls in time order on a single control thread.

    Exceptions raised by a call are logged and do not stop the thread.
    """

    def __init__(self, name: str = 'samplebot-control'):
        self.name = name
        self._queue: List[ScheduledCall] = []
        self._seq = itertools.count()
        self._condition = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._shutdown = False

    def call_later(self, delay: float, callback: Callable, *args) -> ScheduledCall:
        with self._condition:
            if self._shutdown:
                raise RuntimeError("Scheduler has been shut down")
            call = ScheduledCall(time.monotonic() + max(0.0, delay), next(self._seq),
                                 callback, args)
            heapq.heappush(self._queue, call)
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
                self._thread.start()
            self._condition.notify()
        return call

    def call_soon(self, callback: Callable, *args) -> ScheduledCall:
        return self.call_later(0.0, callback, *args)

    def is_control_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def _next_call(self) -> Optional[ScheduledCall]:
        with self._condition:
            while not self._shutdown:
                if not self._queue:
                    self._condition.wait()
                    continue
                wait = self._queue[0].when - time.monotonic()
                if wait > 0:
                    self._condition.wait(wait)
                    continue
                call = heapq.heappop(self._queue)
                if not call.cancelled:
                    return call
            return None

    def _run(self) -> None:
        while True:
            call = self._next_call()
            if call is None:
                return
            try:
                call.callback(*call.args)
            except Exception:
                logging.exception(f"Scheduled call {call!r} failed")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the control thread. Pending calls are discarded."""
        with self._condition:
            self._shutdown = True
            self._queue.clear()
            self._condition.notify_all()
            thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join()
