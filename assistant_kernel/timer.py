from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Protocol

from assistant_kernel.logging_setup import component_logger

DEFAULT_POLL_INTERVAL_SECONDS = 60


class _Tickable(Protocol):
    def tick_once(self) -> list[str]: ...


@dataclass
class TickStats:
    ticks: int = 0
    dispatched: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_tick_at: datetime | None = None
    last_error: str | None = None


class TimerEngine:
    """Drive ``scheduler.tick_once()`` from a daemon thread every poll interval.

    A failing tick is logged and counted; the loop keeps going. ``stop`` only
    signals the loop, so a tick stuck in a slow scheduler call keeps the
    engine ``running`` until it returns.
    """

    def __init__(
        self,
        *,
        scheduler: _Tickable,
        poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._poll_interval_seconds = max(poll_interval_seconds, 1)
        self._clock = clock or datetime.now
        self._logger = component_logger("timer", logger)
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stats = TickStats()

    @property
    def running(self) -> bool:
        with self._lock:
            thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def stats(self) -> TickStats:
        with self._lock:
            return replace(self._stats)

    def start(self) -> bool:
        """Start the loop thread; False when one is still alive."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="assistant-kernel-timer", daemon=True)
            thread = self._thread
        thread.start()
        self._logger.info(
            "timer started",
            extra={"event": "timer_started", "context": {"poll_interval_seconds": self._poll_interval_seconds}},
        )
        return True

    def stop(self, *, join_timeout: float = 2.0) -> bool:
        """Signal the loop and join it; False when the thread outlived ``join_timeout``."""
        self._stop_event.set()
        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=max(join_timeout, 0.0))
        if thread.is_alive():
            self._logger.warning(
                "timer thread still busy after stop",
                extra={"event": "timer_stop_timeout", "context": {"join_timeout_seconds": join_timeout}},
            )
            return False
        with self._lock:
            if self._thread is thread:
                self._thread = None
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stop() is requested; returns True once stopped."""
        return self._stop_event.wait(timeout)

    def tick_once(self) -> list[str]:
        now = self._clock()
        try:
            dispatched = self._scheduler.tick_once()
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                self._stats.ticks += 1
                self._stats.failures += 1
                self._stats.consecutive_failures += 1
                self._stats.last_tick_at = now
                self._stats.last_error = repr(exc)
                consecutive = self._stats.consecutive_failures
            self._logger.exception(
                "timer tick failed",
                extra={"event": "timer_tick_failed", "context": {"consecutive_failures": consecutive}},
            )
            return []

        with self._lock:
            self._stats.ticks += 1
            self._stats.dispatched += len(dispatched)
            self._stats.consecutive_failures = 0
            self._stats.last_tick_at = now
        if dispatched:
            self._logger.info(
                "timer tick dispatched tasks",
                extra={"event": "timer_tick", "context": {"dispatched": list(dispatched)}},
            )
        return list(dispatched)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick_once()
            self._stop_event.wait(self._poll_interval_seconds)
