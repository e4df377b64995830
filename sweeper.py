"""Background expiry of stale holds."""

from typing import Optional
import logging
import threading

logger = logging.getLogger(__name__)


class HoldSweeper:
    """Periodically runs ``engine.sweep_expired()`` on a daemon thread until stopped."""

    def __init__(self, engine, interval_seconds: float = 10):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        # Dedicated daemon so the sweep never blocks HTTP traffic
        self._thread = threading.Thread(target=self._run, name='hold-sweeper', daemon=True)
        self._thread.start()
        logger.info(f"Hold sweeper started (every {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 5) -> None:
        if self._thread is None:
            return
        if not self._stop_event.is_set():
            self._stop_event.set()
            logger.info("Stopping hold sweeper...")
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            logger.warning("Hold sweeper did not stop within the timeout")
            return
        self._thread = None

    def run_once(self) -> int:
        try:
            cleaned = self.engine.sweep_expired()
            if cleaned > 0:
                logger.info(f"Background sweep: {cleaned} holds expired")
            return cleaned
        except Exception as e:
            logger.error(f"Background sweep error: {e}")
            return 0

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)
        logger.info("Hold sweeper terminated gracefully.")
