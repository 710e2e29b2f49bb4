"""Executor contract shared by every job type."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, Optional

from enrichment_worker.job_queue.models import BackgroundJob, JobResult, JobType, ProgressUpdate
from enrichment_worker.logging_config import get_structured_logger
from enrichment_worker.utils.date_utils import utcnow

if TYPE_CHECKING:  # pragma: no cover - typing only
    from enrichment_worker.job_queue.event_log import EventLogger
    from enrichment_worker.job_queue.job_service import JobService
    from enrichment_worker.storage.contractors import ContractorRepository
    from enrichment_worker.storage.reviews import ReviewRepository
    from enrichment_worker.storage.service_types import ServiceTypeRepository

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


@dataclass
class ExecutorContext:
    """
    Data-access handle passed to ``JobExecutor.execute``.

    Executors read and write only through these collaborators and enqueue
    follow-up work through ``jobs``.
    """

    contractors: "ContractorRepository"
    service_types: "ServiceTypeRepository"
    reviews: "ReviewRepository"
    events: "EventLogger"
    jobs: "JobService"
    cancel_event: threading.Event = field(default_factory=threading.Event)
    clock: Callable[[], datetime] = utcnow

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ProgressTracker:
    """
    Forward progress updates while keeping every counter non-decreasing.

    A field lower than what was already published is raised to the
    published value; an update that raises nothing is not forwarded.
    Thread-safe so items may report from a worker pool.
    """

    def __init__(self, callback: ProgressCallback):
        self._callback = callback
        self._lock = threading.Lock()
        self._state: Dict[str, int] = {}

    def __call__(self, update: ProgressUpdate) -> None:
        with self._lock:
            changed = False
            merged: Dict[str, Optional[int]] = {}
            for name, value in update.model_dump().items():
                if value is None:
                    continue
                current = self._state.get(name)
                if current is None or value > current:
                    self._state[name] = value
                    changed = True
                merged[name] = self._state[name]
            if not changed:
                return
            snapshot = ProgressUpdate(**merged)
        try:
            self._callback(snapshot)
        except Exception as e:  # noqa: BLE001
            logger.warning("Progress callback failed: %s", e)

    @property
    def state(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._state)


class JobExecutor(ABC):
    """
    Base class for job pipelines.

    ``execute`` must report the total item count as soon as it is known and
    progress after every item, record per-item failures in the returned
    result, and raise only for system failures. Resources the executor
    acquires are released on every exit path.
    """

    job_type: JobType

    def __init__(self) -> None:
        self.slogger = get_structured_logger(type(self).__module__)

    @abstractmethod
    def execute(
        self,
        job: BackgroundJob,
        ctx: ExecutorContext,
        on_progress: ProgressCallback,
    ) -> JobResult:
        """Run the job and return its result."""
