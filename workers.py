"""Bounded thread pool for CPU-bound image work."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from errors import ServiceBusy

logger = logging.getLogger(__name__)


class ProcessingPool:
    """Runs jobs on at most ``max_workers`` threads.

    Up to ``max_pending`` further jobs wait in the queue; anything beyond that
    is rejected with ServiceBusy instead of piling up.
    """

    def __init__(self, max_workers: int = 4, max_pending: int = 16):
        self.max_workers = max(1, max_workers)
        self.capacity = self.max_workers + max(0, max_pending)
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="imgdrop-worker"
        )

    def submit(self, fn, *args, **kwargs):
        if not self._slots.acquire(blocking=False):
            logger.warning("Processing pool saturated (%d jobs)", self.capacity)
            raise ServiceBusy("Too many uploads in progress, try again later")

        def job():
            try:
                return fn(*args, **kwargs)
            finally:
                # Free the slot before the result is published
                self._slots.release()

        try:
            return self._executor.submit(job)
        except RuntimeError:
            self._slots.release()
            raise ServiceBusy("Processing pool is shut down")

    def run(self, fn, *args, **kwargs):
        """Run ``fn`` on the pool and wait for its result."""
        return self.submit(fn, *args, **kwargs).result()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
