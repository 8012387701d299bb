"""
Progress tracking between a transfer worker and the render loop.

The worker writes a ProgressCell many times per second; a ProgressMonitor
copies the value into the lock-guarded TransferJob at a fixed interval so the
worker never takes the job lock.
"""

import threading
from typing import Optional

from .models import TransferJob
from .monitor import start_monitored_thread


class ProgressCell:
    """
    Single-writer percentage (0..100) that never decreases.

    Plain attribute reads/writes of an int are atomic in CPython, so load()
    takes no lock. Only the transfer worker may call store().
    """

    __slots__ = ('_value',)

    def __init__(self, value: int = 0):
        self._value = max(0, min(100, int(value)))

    def store(self, value: int) -> None:
        value = max(0, min(100, int(value)))
        if value > self._value:
            self._value = value

    def store_ratio(self, done: int, total: int) -> None:
        """Store ``floor(done * 100 / total)``; a zero total is ignored."""
        if total > 0:
            self.store(done * 100 // total)

    def load(self) -> int:
        return self._value


class ProgressMonitor:
    """Mirrors a ProgressCell into a TransferJob until the job stops or hits 100."""

    def __init__(self, cell: ProgressCell, job: TransferJob, lock: threading.Lock,
                 interval: float = 0.05):
        self.cell = cell
        self.job = job
        self.lock = lock
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> 'ProgressMonitor':
        self._thread = start_monitored_thread(self._run, name='transfer-progress')
        return self

    def _run(self) -> None:
        while True:
            current = self.cell.load()
            with self.lock:
                if not self.job.running:
                    break
                if current > self.job.progress:
                    self.job.progress = current
            if current >= 100:
                break
            if self._stop.wait(self.interval):
                break

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
