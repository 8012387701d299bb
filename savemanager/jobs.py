"""
The single active transfer job.

At most one copy/delete runs per launcher. Starting another while one is
running is rejected outright with JobBusyError, never queued.
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Optional, Tuple

from .errors import JobBusyError, SaveError
from .models import TransferJob
from .monitor import log_event, start_monitored_thread
from .progress import ProgressCell, ProgressMonitor
from .transfer import TransferEngine

logger = logging.getLogger(__name__)


class TransferJobSlot:
    """Lock-guarded TransferJob plus the worker that drives it."""

    def __init__(self, engine: TransferEngine, *, poll_interval: float = 0.05,
                 start_delay: float = 0.5, completion_hold: float = 1.5):
        self.engine = engine
        self.poll_interval = poll_interval
        self.start_delay = start_delay
        self.completion_hold = completion_hold
        self.lock = threading.Lock()
        self.job = TransferJob()
        self._worker: Optional[threading.Thread] = None

    # ── Render-loop side ─────────────────────────────────────────

    def snapshot(self) -> TransferJob:
        with self.lock:
            return replace(self.job)

    @property
    def running(self) -> bool:
        with self.lock:
            return self.job.running

    def take_events(self) -> Tuple[Optional[str], bool]:
        """
        Return ``(error, completed)`` and clear them, so each is reported once.
        """
        with self.lock:
            error, self.job.error = self.job.error, None
            completed, self.job.completion_signal = self.job.completion_signal, False
        return error, completed

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker finishes. For CLI/tests only, never the render loop."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    # ── Starting jobs ────────────────────────────────────────────

    def _claim(self, action: str, save_id: str) -> None:
        with self.lock:
            if self.job.running:
                raise JobBusyError(f"A {self.job.action} of {self.job.save_id} is already running")
            self.job = TransferJob(progress=0, running=True, action=action, save_id=save_id)

    def start_copy(self, save_id: str, from_device: str, to_device: str) -> None:
        self._claim('copy', save_id)
        self._worker = start_monitored_thread(
            lambda: self._run_copy(save_id, from_device, to_device),
            name=f'transfer-copy-{save_id}',
        )

    def start_delete(self, save_id: str, device_id: str) -> None:
        self._claim('delete', save_id)
        self._worker = start_monitored_thread(
            lambda: self._run_delete(save_id, device_id),
            name=f'transfer-delete-{save_id}',
        )

    # ── Workers ──────────────────────────────────────────────────

    def _finish(self, error: Optional[str]) -> None:
        with self.lock:
            self.job.running = False
            self.job.completion_signal = True
            self.job.error = error

    def _run_copy(self, save_id: str, from_device: str, to_device: str) -> None:
        if self.start_delay > 0:
            time.sleep(self.start_delay)

        cell = ProgressCell()
        monitor = ProgressMonitor(cell, self.job, self.lock, self.poll_interval).start()
        try:
            self.engine.copy_save(save_id, from_device, to_device, cell)
        except Exception as e:
            if not isinstance(e, SaveError):
                logger.exception("Unexpected failure copying %s", save_id)
            self._finish(f"Failed to copy save: {e}")
            monitor.join()
            return

        with self.lock:
            self.job.progress = 100
        log_event('job.copy.complete', f'{save_id}: {from_device} -> {to_device}')
        if self.completion_hold > 0:
            time.sleep(self.completion_hold)
        self._finish(None)
        monitor.join()

    def _run_delete(self, save_id: str, device_id: str) -> None:
        try:
            self.engine.delete_save(save_id, device_id)
        except Exception as e:
            if not isinstance(e, SaveError):
                logger.exception("Unexpected failure deleting %s", save_id)
            self._finish(f"Failed to delete save: {e}")
            return
        with self.lock:
            self.job.progress = 100
        self._finish(None)
