"""Worker thread that records capture jobs off the request path."""
from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Job = Callable[[], object]

_STOP = object()


class RecordingQueue:
    """FIFO of capture jobs drained by a single worker thread.

    One worker keeps jobs for the same tracking id in arrival order. A job
    that raises is logged and dropped; it never reaches the HTTP client.
    With ``synchronous=True`` jobs run inline in the calling thread.
    """

    def __init__(self, maxsize: int = 10000, synchronous: bool = False) -> None:
        self.synchronous = synchronous
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self.processed = 0
        self.failed = 0
        self.dropped = 0

    def start(self) -> None:
        if self.synchronous or self.running:
            return
        self._thread = threading.Thread(target=self._run, name="opentrack-recorder", daemon=True)
        self._thread.start()
        logger.info("Recording worker started")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, job: Job) -> bool:
        """Queue ``job``; returns False if it was dropped."""
        if self.synchronous:
            self._execute(job)
            return True

        if not self.running:
            self.start()

        try:
            self._queue.put_nowait(job)
        except queue.Full:
            self.dropped += 1
            logger.warning("Recording queue full; dropping capture job")
            return False
        return True

    def join(self) -> None:
        """Block until every queued job has been handled."""
        if not self.synchronous:
            self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        """Drain remaining jobs and stop the worker."""
        if not self.running:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        logger.info(
            "Recording worker stopped (processed=%s, failed=%s, dropped=%s)",
            self.processed, self.failed, self.dropped
        )

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self._execute(job)
            finally:
                self._queue.task_done()

    def _execute(self, job: Job) -> None:
        try:
            job()
            self.processed += 1
        except Exception:
            self.failed += 1
            logger.exception("Capture job failed")


__all__ = ["RecordingQueue"]
