import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from shared.lease import RedisLease

logger = logging.getLogger(__name__)


class PeriodicWorker(ABC):
    """
    Background thread that calls ``run_once`` every ``poll_interval`` seconds.

    When a lease is given, a tick only does work while this process holds it,
    which keeps the worker at most one per cluster. ``run_once`` is also called
    directly by tests and by operators draining a backlog.
    """

    name = "worker"

    def __init__(self, poll_interval: float = 1.0, lease: Optional[RedisLease] = None):
        self.poll_interval = poll_interval
        self.lease = lease
        self.running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @abstractmethod
    def run_once(self) -> int:
        """Do one tick of work; returns how many items were handled."""

    def start(self) -> threading.Thread:
        """Start worker thread."""
        self.running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"{self.name} started")
        return self._thread

    def _loop(self) -> None:
        while self.running:
            try:
                if self.lease is None or self.lease.acquire():
                    self.run_once()
            except Exception:
                logger.exception(f"Error in {self.name}")
            self._stop_event.wait(self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop worker thread and hand the lease back."""
        self.running = False
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        if self.lease is not None:
            self.lease.release()
        logger.info(f"{self.name} stopped")
