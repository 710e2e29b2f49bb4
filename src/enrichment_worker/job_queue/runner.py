"""Scheduler loop that claims due jobs and runs them on a thread pool."""

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from enrichment_worker.constants import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_PROCESSING_TIMEOUT_SECONDS,
    DEFAULT_WORKER_POOL_SIZE,
)
from enrichment_worker.job_queue.job_service import JobService
from enrichment_worker.job_queue.models import BackgroundJob
from enrichment_worker.logging_config import get_structured_logger
from enrichment_worker.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class _RunningJob:
    job: BackgroundJob
    started: float
    stop_requested: bool = False


class JobRunner:
    """
    Claim due jobs and execute them with at most ``pool_size`` in flight.

    Every job runs through ``JobService.execute_job``; exceptions are logged
    here and never escape a worker thread.
    """

    def __init__(
        self,
        service: JobService,
        pool_size: int = DEFAULT_WORKER_POOL_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        processing_timeout: float = DEFAULT_PROCESSING_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.service = service
        self.manager = service.manager
        self.pool_size = max(1, int(pool_size))
        self.poll_interval = poll_interval
        self.processing_timeout = processing_timeout
        self.clock = clock
        self.slogger = get_structured_logger(__name__)

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._pool: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._in_flight: Dict[concurrent.futures.Future, _RunningJob] = {}
        self.stats: Dict[str, Any] = {
            "jobs_completed": 0,
            "jobs_errored": 0,
            "iteration": 0,
            "last_poll_time": None,
            "last_error": None,
        }

    # ------------------------------------------------------------------ #
    # Startup recovery
    # ------------------------------------------------------------------ #

    def reset_stuck(self) -> int:
        """
        Move jobs left in processing by a dead worker back to pending.

        The grace window is max(processing_timeout, 2 * poll_interval) so a
        job another live worker is still running is left alone.
        """
        grace = max(self.processing_timeout, self.poll_interval * 2)
        cutoff = self.clock() - timedelta(seconds=grace)
        count = self.manager.reset_stuck(cutoff)
        self.slogger.worker_status(
            "startup_recovered_processing", {"count": count, "cutoff": cutoff.isoformat()}
        )
        return count

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def _ensure_pool(self) -> concurrent.futures.ThreadPoolExecutor:
        if self._pool is None:
            self._pool = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.pool_size, thread_name_prefix="job-runner"
            )
        return self._pool

    def run_once(self) -> List[concurrent.futures.Future]:
        """Claim due jobs until the pool is full; return the futures started."""
        self._reap()
        self._enforce_timeouts()
        with self._lock:
            self.stats["iteration"] += 1
            self.stats["last_poll_time"] = time.time()

        started: List[concurrent.futures.Future] = []
        while not self._stop.is_set():
            with self._lock:
                if len(self._in_flight) >= self.pool_size:
                    break
            job = self.manager.claim_next_due(self.clock())
            if job is None:
                break
            future = self._ensure_pool().submit(self._run_job, job)
            with self._lock:
                self._in_flight[future] = _RunningJob(job=job, started=time.monotonic())
            started.append(future)
        return started

    def run_until_idle(self) -> int:
        """Run due jobs until none are left; return how many ran."""
        ran = 0
        while not self._stop.is_set():
            futures = self.run_once()
            if not futures and not self.in_flight:
                break
            ran += len(futures)
            concurrent.futures.wait(
                self._snapshot_futures(), return_when=concurrent.futures.FIRST_COMPLETED
            )
        self._reap()
        return ran

    def run_forever(self) -> None:
        """Poll until ``stop()`` is called."""
        self.slogger.worker_status(
            "started", {"pool_size": self.pool_size, "poll_interval": self.poll_interval}
        )
        try:
            while not self._stop.is_set():
                try:
                    started = self.run_once()
                except Exception as e:
                    logger.error("Error in runner loop: %s", e, exc_info=True)
                    self._record_error(str(e))
                    self.slogger.worker_status("error_recovery")
                    self._stop.wait(self.poll_interval)
                    continue

                in_flight = self._snapshot_futures()
                if started and len(in_flight) < self.pool_size:
                    # More due work may be waiting; poll again right away
                    continue
                if in_flight:
                    concurrent.futures.wait(
                        in_flight,
                        timeout=self.poll_interval,
                        return_when=concurrent.futures.FIRST_COMPLETED,
                    )
                else:
                    self._stop.wait(self.poll_interval)
        finally:
            self.shutdown()
            self.slogger.worker_status("stopped", {"stats": self.stats_snapshot()})

    def stop(self, cancel_running: bool = False) -> None:
        """Stop claiming work; optionally signal running jobs to stop at their next check."""
        self._stop.set()
        if cancel_running:
            count = self.service.cancel_all_running()
            self.slogger.worker_status("cancel_running", {"count": count})

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
        self._reap()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stats_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self.stats)

    @property
    def in_flight(self) -> List[str]:
        with self._lock:
            return [running.job.id for running in self._in_flight.values()]

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _run_job(self, job: BackgroundJob) -> None:
        try:
            final = self.service.execute_job(job)
            with self._lock:
                self.stats["jobs_completed"] += 1
            logger.info("Job %s finished as %s", job.id, final.status)
        except Exception as e:
            self._record_error(str(e), errored=True)
            logger.error("Job %s (%s) raised: %s", job.id, job.job_type, e, exc_info=True)

    def _record_error(self, error: str, errored: bool = False) -> None:
        with self._lock:
            if errored:
                self.stats["jobs_errored"] += 1
            self.stats["last_error"] = error

    def _snapshot_futures(self) -> List[concurrent.futures.Future]:
        with self._lock:
            return list(self._in_flight)

    def _reap(self) -> None:
        with self._lock:
            for future in [f for f in self._in_flight if f.done()]:
                del self._in_flight[future]

    def _enforce_timeouts(self) -> None:
        """Ask jobs running past the processing timeout to stop."""
        now = time.monotonic()
        with self._lock:
            overdue = [
                running
                for running in self._in_flight.values()
                if not running.stop_requested and now - running.started > self.processing_timeout
            ]
            for running in overdue:
                running.stop_requested = True
        for running in overdue:
            self.service.request_stop(running.job.id)
            self.slogger.worker_status(
                "processing_timeout",
                {"job_id": running.job.id, "timeout_seconds": self.processing_timeout},
            )
