"""
Cancellable delayed callbacks for idle eviction.

The loader keeps one :class:`TimerHandle` per partition.  Hosts with their
own event loop can plug in a :class:`Scheduler` backed by it; the default
runs each callback on a daemon ``threading.Timer``.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Set

log = logging.getLogger(__name__)


class TimerHandle(ABC):
    """Handle for one scheduled callback."""

    @abstractmethod
    def cancel(self) -> None:
        ...

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        ...


class Scheduler(ABC):
    """Runs callbacks after a delay."""

    @abstractmethod
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        ...

    def shutdown(self) -> None:
        pass


class _ThreadTimerHandle(TimerHandle):
    def __init__(self, timer: threading.Timer):
        self._timer = timer
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        self._timer.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ThreadingScheduler(Scheduler):
    """One daemon ``threading.Timer`` per scheduled callback."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: Set[_ThreadTimerHandle] = set()

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        handle: _ThreadTimerHandle

        def _run() -> None:
            with self._lock:
                self._live.discard(handle)
            if handle.cancelled:
                return
            try:
                callback()
            except Exception:
                log.exception("Scheduled callback failed")

        timer = threading.Timer(max(delay_s, 0.0), _run)
        timer.daemon = True
        handle = _ThreadTimerHandle(timer)
        with self._lock:
            self._live.add(handle)
        timer.start()
        return handle

    def shutdown(self) -> None:
        with self._lock:
            live = list(self._live)
            self._live.clear()
        for handle in live:
            handle.cancel()
        if live:
            log.debug("Cancelled %d pending timers", len(live))
