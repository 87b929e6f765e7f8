"""
Periodic recovery sweeps.

The reaper restores liveness after crashed or hung executions and keeps the
job table bounded. Each pass runs three sweeps:

1. Stale processing: PROCESSING jobs whose heartbeat (``updated_at``) is older
   than ``stale_after`` are failed with "execution timed out". The transition
   is the same compare-and-swap the dispatcher uses, so a job that completes
   concurrently is left alone and overlapping sweeps fail a job only once.
2. Retention: terminal jobs that finished more than ``retention`` ago are
   deleted, together with their outputs when ``purge_outputs`` is set.
3. Orphaned pending: PENDING jobs untouched for ``pending_after`` are handed
   to the dispatcher again. Re-dispatching is harmless because only one
   execution can win the claim.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from . import lifecycle
from .database import JobStore
from .dispatcher import JobDispatcher
from .errors import PdfUtilityError, StorageError
from .models import JobStatus
from .storage import ContentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    timed_out: int = 0
    purged: int = 0
    requeued: int = 0


class Reaper:
    def __init__(
        self,
        store: JobStore,
        dispatcher: Optional[JobDispatcher] = None,
        content_store: Optional[ContentStore] = None,
        interval_seconds: float = 60.0,
        stale_after_seconds: float = 900.0,
        pending_after_seconds: float = 300.0,
        retention_seconds: float = 86400.0,
        purge_outputs: bool = True,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.content_store = content_store
        self.interval_seconds = interval_seconds
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.pending_after = timedelta(seconds=pending_after_seconds)
        self.retention = timedelta(seconds=retention_seconds)
        self.purge_outputs = purge_outputs
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="job-reaper", daemon=True)
        self._thread.start()
        logger.info("Reaper started (interval %.0fs)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reaper stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def run_once(self) -> SweepReport:
        """Run every sweep once; a failing sweep is logged and counted as zero."""
        now = lifecycle.utcnow()
        report = SweepReport(
            timed_out=self._guarded("stale-processing", self._sweep_stale, now),
            purged=self._guarded("retention", self._sweep_expired, now),
            requeued=self._guarded("orphaned-pending", self._sweep_pending, now),
        )
        if report.timed_out or report.purged or report.requeued:
            logger.info(
                "Reaper sweep: %d timed out, %d purged, %d requeued",
                report.timed_out, report.purged, report.requeued,
            )
        return report

    @staticmethod
    def _guarded(name: str, sweep, now) -> int:
        try:
            return sweep(now)
        except PdfUtilityError as exc:
            logger.error("Reaper %s sweep failed: %s", name, exc.message)
        except Exception:
            logger.exception("Reaper %s sweep failed", name)
        return 0

    def _sweep_stale(self, now) -> int:
        count = 0
        for job in self.store.find_stale(JobStatus.PROCESSING, now - self.stale_after):
            if self.store.apply(job.id, lifecycle.time_out(now)):
                logger.warning("Job %s timed out (no progress since %s)", job.id, job.updated_at.isoformat())
                count += 1
        return count

    def _sweep_expired(self, now) -> int:
        count = 0
        for job in self.store.find_expired(now - self.retention):
            if not self.store.delete(job.id):
                continue
            count += 1
            logger.info("Purged job %s (%s)", job.id, job.status.value)
            if self.purge_outputs and job.output_ref and self.content_store is not None:
                try:
                    self.content_store.delete(job.output_ref)
                except StorageError as exc:
                    logger.warning("Could not delete output %s of job %s: %s", job.output_ref, job.id, exc.message)
        return count

    def _sweep_pending(self, now) -> int:
        if self.dispatcher is None:
            return 0
        count = 0
        for job in self.store.find_stale(JobStatus.PENDING, now - self.pending_after):
            # Refreshing updated_at keeps the next sweep from queueing it twice.
            if not self.store.transition(job.id, JobStatus.PENDING, JobStatus.PENDING):
                continue
            logger.info("Re-dispatching orphaned job %s", job.id)
            self.dispatcher.dispatch(job.id)
            count += 1
        return count
