"""Background sweep of expired rate limit windows.

The task owns a daemon thread that wakes on a fixed interval and calls
``RateLimiter.run_cleanup``. It is started and stopped by the application
lifespan; nothing runs at import time.
"""

from __future__ import annotations

import logging
import threading

from app.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class CleanupTask:
    """Periodic, cancellable cleanup job.

    Attributes:
        interval_seconds: Delay between the end of one sweep and the next.
    """

    def __init__(self, limiter: RateLimiter, *, interval_seconds: float = 300.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._limiter = limiter
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the sweep thread. Calling start on a running task is a no-op."""
        with self._lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                name="rate-limit-cleanup",
                daemon=True,
            )
            self._thread.start()
        logger.info("rate_limit.cleanup_started", extra={"interval_s": self.interval_seconds})

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the thread to stop and wait for an in-flight sweep to finish."""
        with self._lock:
            thread = self._thread
            self._stop_event.set()
            if thread is None:
                return
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("rate_limit.cleanup_stop_timeout", extra={"timeout_s": timeout})
                return
            self._thread = None
        logger.info("rate_limit.cleanup_stopped", extra={"runs": self.runs})

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def run_once(self) -> None:
        try:
            self._limiter.run_cleanup()
        except Exception:
            # Keep the schedule alive; the next tick retries the sweep
            logger.exception("rate_limit.cleanup_failed")
        finally:
            self.runs += 1
