"""DataForSEO Google Reviews client.

The reviews endpoint is asynchronous: tasks are posted, polled via
``tasks_ready`` and fetched one at a time with ``task_get``. The API key in
the environment is the already base64-encoded ``login:password`` pair.
"""

import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from enrichment_worker.constants import (
    DATAFORSEO_BASE_URL,
    DATAFORSEO_MAX_POLL_ATTEMPTS,
    DATAFORSEO_MAX_TASKS_PER_REQUEST,
    DATAFORSEO_POLL_INTERVAL_SECONDS,
    DATAFORSEO_REQUEST_TIMEOUT_SECONDS,
    DATAFORSEO_REVIEWS_ENDPOINT,
    DATAFORSEO_STATUS_SUCCESS,
    DATAFORSEO_STATUS_TASK_CREATED,
)
from enrichment_worker.exceptions import (
    ConfigurationError,
    ReviewsApiAuthError,
    ReviewsApiError,
    ReviewsApiRateLimitError,
)
from enrichment_worker.logging_config import get_structured_logger
from enrichment_worker.reviews_api.models import (
    FailedTask,
    FetchResultOutput,
    PollResult,
    ReviewTask,
    SubmitTasksResult,
    TaskMapping,
)

logger = logging.getLogger(__name__)


class ReviewsApiClient:
    """Submit, poll and fetch Google review tasks."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        base_url: str = DATAFORSEO_BASE_URL,
        poll_interval: float = DATAFORSEO_POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = DATAFORSEO_MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            api_key: Base64 credentials (defaults to DATAFORSEO_API_KEY env var)
            session: Optional requests session (tests inject a mock)
            base_url: API origin
            poll_interval: Seconds to sleep before each readiness poll
            max_poll_attempts: Polls before pending tasks are reported as timed out
            sleep: Sleep function, injectable for tests

        Raises:
            ConfigurationError: If no API key is available
        """
        self.api_key = api_key or os.getenv("DATAFORSEO_API_KEY")
        if not self.api_key:
            raise ConfigurationError("DATAFORSEO_API_KEY not set")

        self.session = session or requests.Session()
        self.session.headers.update(
            {"Authorization": f"Basic {self.api_key}", "Content-Type": "application/json"}
        )
        self.endpoint = f"{base_url.rstrip('/')}{DATAFORSEO_REVIEWS_ENDPOINT}"
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self._sleep = sleep
        self.slogger = get_structured_logger(__name__)

    # ------------------------------------------------------------------ #
    # HTTP helpers
    # ------------------------------------------------------------------ #

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.endpoint}/{path}"
        try:
            response = self.session.request(
                method, url, timeout=DATAFORSEO_REQUEST_TIMEOUT_SECONDS, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise ReviewsApiError(f"Request to {path} failed: {e}", is_retryable=True) from e

        if not response.ok:
            self._raise_for_status(response)

        try:
            return response.json()
        except ValueError as e:
            raise ReviewsApiError(f"Invalid JSON from {path}", response.status_code) from e

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        status = response.status_code
        message = response.reason or f"HTTP {status}"
        try:
            body = response.json()
            message = body.get("status_message") or body.get("message") or message
        except ValueError:
            pass

        if status in (401, 403):
            raise ReviewsApiAuthError(message, status_code=status)
        if status == 429:
            raise ReviewsApiRateLimitError(message)
        raise ReviewsApiError(message, status_code=status, is_retryable=status >= 500)

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def submit_tasks(
        self, tasks: List[ReviewTask], mappings: List[TaskMapping]
    ) -> SubmitTasksResult:
        """
        Post review tasks in one request.

        ``mappings`` carry contractor and company names keyed by CID; their
        ``task_id`` is filled from the response. Tasks the API rejects are
        reported in ``failed_tasks`` instead of raising.

        Raises:
            ReviewsApiError: If the whole request fails
        """
        if not tasks:
            return SubmitTasksResult()
        if len(tasks) > DATAFORSEO_MAX_TASKS_PER_REQUEST:
            raise ReviewsApiError(
                f"Cannot submit more than {DATAFORSEO_MAX_TASKS_PER_REQUEST} tasks per request",
                status_code=400,
            )

        data = self._request("POST", "task_post", json=[t.model_dump() for t in tasks])
        if data.get("status_code") != DATAFORSEO_STATUS_SUCCESS:
            raise ReviewsApiError(f"API error: {data.get('status_message')}", data.get("status_code"))

        by_cid = {m.google_cid: m for m in mappings}
        result = SubmitTasksResult(total_cost=float(data.get("cost") or 0))

        for task in data.get("tasks") or []:
            cid = str((task.get("data") or {}).get("cid", ""))
            mapping = by_cid.get(cid)
            if mapping is None:
                logger.warning("No contractor mapping for submitted CID %s", cid)
                continue
            if task.get("status_code") == DATAFORSEO_STATUS_TASK_CREATED:
                result.task_mappings.append(mapping.model_copy(update={"task_id": task["id"]}))
            else:
                result.failed_tasks.append(
                    FailedTask(
                        contractor_id=mapping.contractor_id,
                        cid=cid,
                        error=task.get("status_message") or "Task rejected",
                    )
                )

        self.slogger.api_activity(
            "dataforseo",
            "task_post",
            "completed",
            {
                "submitted": len(result.task_mappings),
                "rejected": len(result.failed_tasks),
                "cost": result.total_cost,
            },
        )
        return result

    def poll_ready(self, task_ids: List[str]) -> PollResult:
        """
        Wait for tasks to become ready.

        Sleeps ``poll_interval`` before every poll and stops after
        ``max_poll_attempts``. Transient errors are logged and polling
        continues; authentication errors propagate.
        """
        if not task_ids:
            return PollResult()

        pending = list(task_ids)
        ready: List[str] = []
        attempts = 0

        while pending and attempts < self.max_poll_attempts:
            attempts += 1
            self._sleep(self.poll_interval)

            try:
                data = self._request("GET", "tasks_ready")
            except ReviewsApiAuthError:
                raise
            except ReviewsApiError as e:
                logger.warning("Poll attempt %d failed: %s", attempts, e)
                continue

            if data.get("status_code") != DATAFORSEO_STATUS_SUCCESS:
                logger.warning("Poll response error: %s", data.get("status_message"))
                continue

            ready_now = {
                item.get("id")
                for task in data.get("tasks") or []
                for item in task.get("result") or []
            }
            newly_ready = [tid for tid in pending if tid in ready_now]
            ready.extend(newly_ready)
            pending = [tid for tid in pending if tid not in ready_now]

            if pending:
                logger.debug(
                    "Poll %d/%d: %d ready, %d pending",
                    attempts,
                    self.max_poll_attempts,
                    len(ready),
                    len(pending),
                )

        if pending:
            self.slogger.api_activity(
                "dataforseo",
                "tasks_ready",
                "failed",
                {"error": "polling timed out", "attempts": attempts, "pending": len(pending)},
            )

        return PollResult(
            ready_task_ids=ready,
            pending_task_ids=pending,
            timed_out=bool(pending),
            poll_attempts=attempts,
        )

    def fetch_result(self, task_id: str) -> FetchResultOutput:
        """Fetch one ready task; provider-level errors come back as ``success=False``."""
        data = self._request("GET", f"task_get/{task_id}")
        cost = float(data.get("cost") or 0)

        if data.get("status_code") != DATAFORSEO_STATUS_SUCCESS:
            return FetchResultOutput(success=False, cost=cost, error=data.get("status_message"))

        tasks = data.get("tasks") or []
        task = tasks[0] if tasks else None
        if not task or not task.get("result"):
            return FetchResultOutput(
                success=False,
                cid=str(((task or {}).get("data") or {}).get("cid", "")),
                cost=cost,
                error="No result data in response",
            )

        first = task["result"][0] or {}
        return FetchResultOutput(
            success=True,
            cid=str(first.get("cid") or (task.get("data") or {}).get("cid", "")),
            reviews_count=int(first.get("items_count") or 0),
            items=list(first.get("items") or []),
            cost=cost,
        )
