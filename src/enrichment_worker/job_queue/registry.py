"""Job-type to executor lookup."""

import logging
from typing import TYPE_CHECKING, Dict, List, Union

from enrichment_worker.exceptions import ConfigurationError, UnknownJobTypeError
from enrichment_worker.job_queue.models import JobType, resolve_job_type

if TYPE_CHECKING:  # pragma: no cover
    from enrichment_worker.job_queue.executors.base import JobExecutor

logger = logging.getLogger(__name__)


class JobExecutorRegistry:
    """
    Map each JobType to the executor that runs it.

    Built once at startup and passed to JobService; there is no
    module-level instance.
    """

    def __init__(self) -> None:
        self._executors: Dict[JobType, "JobExecutor"] = {}

    def register(self, job_type: Union[str, JobType], executor: "JobExecutor") -> None:
        """
        Register an executor.

        Raises:
            ConfigurationError: If the type already has an executor
        """
        resolved = resolve_job_type(job_type)
        if resolved in self._executors:
            raise ConfigurationError(f"Executor already registered for job type: {resolved.value}")
        self._executors[resolved] = executor
        logger.debug("Registered executor %s for %s", type(executor).__name__, resolved.value)

    def get(self, job_type: Union[str, JobType]) -> "JobExecutor":
        """
        Resolve the executor for a job type.

        Raises:
            UnknownJobTypeError: If nothing is registered for the type
        """
        resolved = resolve_job_type(job_type)
        executor = self._executors.get(resolved)
        if executor is None:
            raise UnknownJobTypeError(resolved.value)
        return executor

    def has(self, job_type: Union[str, JobType]) -> bool:
        try:
            return resolve_job_type(job_type) in self._executors
        except UnknownJobTypeError:
            return False

    def registered_types(self) -> List[str]:
        return sorted(t.value for t in self._executors)
