"""Daemon-thread timer backend for the generation engine.

┌──────────────────────────────────────────────────────────────────────────────┐
│  THREAD TIMER BACKEND                                                         │
│                                                                               │
│   start(tick_callback, interval_seconds)                                      │
│      │                                                                        │
│      ▼                                                                        │
│   ┌──────────────────────────────────────────────────────────┐               │
│   │  Daemon thread "upkeep-ticker"                           │               │
│   │                                                          │               │
│   │    loop = asyncio.new_event_loop()                       │               │
│   │    [tick once immediately if run_on_start]               │               │
│   │    while not stop_event.wait(interval):                  │               │
│   │        loop.run_until_complete(tick_callback())          │               │
│   │    loop.close()                                          │               │
│   └──────────────────────────────────────────────────────────┘               │
│                                                                               │
│   stop()  ──►  stop_event.set(); thread.join(join_timeout)                   │
│                                                                               │
│  One event loop lives for the whole thread, so collaborators that hold       │
│  loop-bound resources (connection pools, locks) keep working across ticks.   │
│  The timer is just one caller of run_tick; a manual refresh running at the   │
│  same time is safe because duplicates are caught by recurrence key.          │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import UTC, datetime
from typing import Any

from .protocol import BackendHealth, TickCallback

logger = logging.getLogger(__name__)


class ThreadSchedulerBackend:
    """Ticks an async callback from a daemon thread.

    Example:
        >>> backend = ThreadSchedulerBackend(run_on_start=True)
        >>> backend.start(engine.run_tick, interval_seconds=300.0)
        >>> # ... later ...
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, run_on_start: bool = False, join_timeout: float = 5.0) -> None:
        self.run_on_start = run_on_start
        self.join_timeout = join_timeout
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._tick_count = 0
        self._failed_ticks = 0
        self._last_tick: datetime | None = None
        self._last_duration_ms: float | None = None
        self._last_error: str | None = None
        self._interval: float = 300.0
        self._started = False

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 300.0,
    ) -> None:
        """Start ticking in a daemon thread.

        Args:
            tick_callback: Async function called on each tick.
            interval_seconds: Seconds between ticks.
        """
        if self._started:
            logger.warning("ThreadSchedulerBackend already started")
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _loop() -> None:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            logger.info(f"ThreadSchedulerBackend started (interval={interval_seconds}s)")
            try:
                if self.run_on_start and not self._stop_event.is_set():
                    self._run_once(loop, tick_callback)
                while not self._stop_event.wait(interval_seconds):
                    self._run_once(loop, tick_callback)
            finally:
                loop.close()
                logger.info("ThreadSchedulerBackend stopped")

        self._thread = threading.Thread(target=_loop, daemon=True, name="upkeep-ticker")
        self._thread.start()
        self._started = True

    def _run_once(self, loop: asyncio.AbstractEventLoop, tick_callback: TickCallback) -> None:
        started = time.monotonic()
        with self._lock:
            self._tick_count += 1
            self._last_tick = datetime.now(UTC)
        try:
            loop.run_until_complete(tick_callback())
        except Exception as e:
            with self._lock:
                self._failed_ticks += 1
                self._last_error = str(e)
            logger.exception(f"Tick failed: {e}")
        finally:
            with self._lock:
                self._last_duration_ms = (time.monotonic() - started) * 1000

    def stop(self) -> None:
        """Stop ticking, waiting up to ``join_timeout`` for the current tick."""
        if not self._started:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.join_timeout)
            if self._thread.is_alive():
                logger.warning("Ticker thread did not stop cleanly")

        self._started = False
        logger.info("ThreadSchedulerBackend shutdown complete")

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick

    def get_health(self) -> BackendHealth:
        """Structured health status."""
        with self._lock:
            return BackendHealth(
                healthy=self.is_running,
                backend=self.name,
                tick_count=self._tick_count,
                last_tick=self._last_tick,
                extra={
                    "interval_seconds": self._interval,
                    "failed_ticks": self._failed_ticks,
                    "last_duration_ms": self._last_duration_ms,
                    "last_error": self._last_error,
                },
            )

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()
