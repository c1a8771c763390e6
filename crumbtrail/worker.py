from __future__ import annotations
import os
import threading

from queue import Full, Queue
from time import monotonic
from crumbtrail.utils import logger
from crumbtrail.consts import DEFAULT_QUEUE_SIZE

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Optional, Callable

    FlushCallback = Callable[[int, float], Any]


_STOP = object()

# First wait of a flush. Only when the queue has not drained by then is
# the callback told how many events are still pending.
_FLUSH_GRACE = 0.1


class BackgroundWorker:
    """
    Runs submitted jobs, one at a time, on a daemon thread.

    The queue holds at most ``queue_size`` jobs. A job submitted while it
    is full is dropped and counted in ``dropped``. The thread is started
    lazily and restarted in a forked child process.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: Queue[Any] = Queue(queue_size)
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._pid: Optional[int] = None
        self.dropped = 0

    @property
    def is_alive(self) -> bool:
        return (
            self._thread is not None
            and self._pid == os.getpid()
            and self._thread.is_alive()
        )

    def _ensure_thread(self) -> None:
        if not self.is_alive:
            self.start()

    def start(self) -> None:
        with self._lock:
            if self.is_alive:
                return
            thread = threading.Thread(
                target=self._run, name="crumbtrail.BackgroundWorker", daemon=True
            )
            try:
                thread.start()
            except RuntimeError:
                # interpreter shutdown
                logger.debug("background worker could not be started")
                return
            self._thread = thread
            self._pid = os.getpid()

    def kill(self) -> None:
        """
        Asks the thread to stop once it reaches the end of the queue and
        returns right away. Use :py:meth:`flush` to wait for pending jobs.
        """
        logger.debug("background worker got kill request")
        with self._lock:
            if self._thread is None:
                return
            try:
                self._queue.put_nowait(_STOP)
            except Full:
                logger.debug("background worker queue full, kill failed")
            self._thread = None
            self._pid = None

    def full(self) -> bool:
        return self._queue.full()

    def pending(self) -> int:
        return self._queue.unfinished_tasks

    def submit(self, job: Callable[[], Any]) -> bool:
        """Queues ``job``. Returns ``False`` if the queue was full."""
        self._ensure_thread()
        try:
            self._queue.put_nowait(job)
        except Full:
            self.dropped += 1
            return False
        return True

    def flush(self, timeout: float, callback: Optional[FlushCallback] = None) -> None:
        """
        Waits up to ``timeout`` seconds for the queue to drain. ``callback``
        is called with the number of pending jobs and the timeout when the
        queue is still busy after a short grace period.
        """
        logger.debug("background worker got flush request")
        with self._lock:
            if not self.is_alive or timeout <= 0.0:
                return

            grace = min(_FLUSH_GRACE, timeout)
            if self._drained_within(grace):
                return

            if callback is not None:
                callback(self.pending(), timeout)

            if not self._drained_within(timeout - grace):
                logger.error("flush timed out, dropped %s events", self.pending())
        logger.debug("background worker flushed")

    def _drained_within(self, timeout: float) -> bool:
        deadline = monotonic() + timeout
        done = self._queue.all_tasks_done

        with done:
            while self._queue.unfinished_tasks:
                remaining = deadline - monotonic()
                if remaining <= 0:
                    return False
                done.wait(timeout=remaining)
        return True

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                try:
                    job()
                except Exception:
                    logger.error("Failed processing job", exc_info=True)
            finally:
                self._queue.task_done()
