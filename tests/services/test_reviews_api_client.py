"""Tests for the DataForSEO reviews client."""

from unittest.mock import MagicMock

import pytest
import requests

from enrichment_worker.exceptions import (
    ConfigurationError,
    ReviewsApiAuthError,
    ReviewsApiError,
    ReviewsApiRateLimitError,
)
from enrichment_worker.reviews_api.client import ReviewsApiClient
from enrichment_worker.reviews_api.models import ReviewTask, TaskMapping, transform_review


def _response(status=200, body=None, reason="OK"):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.reason = reason
    response.json.return_value = body or {}
    return response


@pytest.fixture
def session():
    mock = MagicMock(name="session")
    mock.headers = {}
    return mock


@pytest.fixture
def sleep():
    return MagicMock(name="sleep")


@pytest.fixture
def client(session, sleep):
    return ReviewsApiClient(api_key="bG9naW46cGFzcw==", session=session, sleep=sleep, max_poll_attempts=3)


def _task(contractor_id):
    return ReviewTask(
        cid=f"cid-{contractor_id}",
        language_name="English",
        location_coordinate="45.5,-122.6,50000",
        depth=50,
        tag=contractor_id,
    )


def _mapping(contractor_id):
    return TaskMapping(contractor_id=contractor_id, google_cid=f"cid-{contractor_id}", company_name="Acme")


def test_requires_api_key(monkeypatch):
    monkeypatch.delenv("DATAFORSEO_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        ReviewsApiClient()


def test_sets_basic_auth_header(client, session):
    assert session.headers["Authorization"] == "Basic bG9naW46cGFzcw=="


def test_submit_tasks_maps_created_and_rejected_tasks(client, session):
    session.request.return_value = _response(
        body={
            "status_code": 20000,
            "cost": 0.0012,
            "tasks": [
                {"id": "task-1", "status_code": 20100, "data": {"cid": "cid-c1"}},
                {
                    "id": "task-2",
                    "status_code": 40501,
                    "status_message": "Invalid Field: 'location_coordinate'.",
                    "data": {"cid": "cid-c2"},
                },
            ],
        }
    )

    result = client.submit_tasks([_task("c1"), _task("c2")], [_mapping("c1"), _mapping("c2")])

    assert [(m.task_id, m.contractor_id) for m in result.task_mappings] == [("task-1", "c1")]
    assert result.failed_tasks[0].contractor_id == "c2"
    assert result.failed_tasks[0].error == "Invalid Field: 'location_coordinate'."
    assert result.total_cost == pytest.approx(0.0012)
    method, url = session.request.call_args.args
    assert method == "POST"
    assert url.endswith("/v3/business_data/google/reviews/task_post")
    assert session.request.call_args.kwargs["json"][0]["tag"] == "c1"


def test_submit_nothing_makes_no_request(client, session):
    assert client.submit_tasks([], []).task_mappings == []
    session.request.assert_not_called()


def test_submit_api_level_error_raises(client, session):
    session.request.return_value = _response(body={"status_code": 40000, "status_message": "Bad request"})
    with pytest.raises(ReviewsApiError):
        client.submit_tasks([_task("c1")], [_mapping("c1")])


@pytest.mark.parametrize(
    "status,error_type",
    [(401, ReviewsApiAuthError), (403, ReviewsApiAuthError), (429, ReviewsApiRateLimitError)],
)
def test_http_errors_are_typed(client, session, status, error_type):
    session.request.return_value = _response(status, {"status_message": "denied"}, reason="Error")
    with pytest.raises(error_type):
        client.submit_tasks([_task("c1")], [_mapping("c1")])


def test_server_error_is_retryable(client, session):
    session.request.return_value = _response(502, reason="Bad Gateway")
    with pytest.raises(ReviewsApiError) as exc_info:
        client.fetch_result("task-1")
    assert exc_info.value.is_retryable is True
    assert exc_info.value.status_code == 502


def test_network_error_wrapped(client, session):
    session.request.side_effect = requests.exceptions.ConnectionError("connection reset")
    with pytest.raises(ReviewsApiError):
        client.fetch_result("task-1")


def test_poll_ready_until_all_ready(client, session, sleep):
    session.request.side_effect = [
        _response(body={"status_code": 20000, "tasks": [{"result": [{"id": "task-1"}]}]}),
        _response(body={"status_code": 20000, "tasks": [{"result": [{"id": "task-2"}]}]}),
    ]

    result = client.poll_ready(["task-1", "task-2"])

    assert result.ready_task_ids == ["task-1", "task-2"]
    assert result.pending_task_ids == []
    assert result.poll_attempts == 2
    assert sleep.call_count == 2


def test_poll_ready_times_out(client, session):
    session.request.return_value = _response(body={"status_code": 20000, "tasks": [{"result": None}]})

    result = client.poll_ready(["task-1"])

    assert result.timed_out is True
    assert result.pending_task_ids == ["task-1"]
    assert result.poll_attempts == 3


def test_poll_ready_retries_transient_errors(client, session):
    session.request.side_effect = [
        _response(503, reason="Service Unavailable"),
        _response(body={"status_code": 20000, "tasks": [{"result": [{"id": "task-1"}]}]}),
    ]

    result = client.poll_ready(["task-1"])

    assert result.ready_task_ids == ["task-1"]


def test_poll_ready_auth_error_propagates(client, session):
    session.request.return_value = _response(401, reason="Unauthorized")
    with pytest.raises(ReviewsApiAuthError):
        client.poll_ready(["task-1"])


def test_fetch_result_returns_items(client, session):
    session.request.return_value = _response(
        body={
            "status_code": 20000,
            "cost": 0.00075,
            "tasks": [
                {
                    "data": {"cid": "cid-c1"},
                    "result": [{"cid": "cid-c1", "items_count": 2, "items": [{"review_id": "a"}, {"review_id": "b"}]}],
                }
            ],
        }
    )

    result = client.fetch_result("task-1")

    assert result.success is True
    assert result.reviews_count == 2
    assert [item["review_id"] for item in result.items] == ["a", "b"]
    assert session.request.call_args.args[1].endswith("/task_get/task-1")


def test_fetch_result_without_result_data(client, session):
    session.request.return_value = _response(
        body={"status_code": 20000, "tasks": [{"data": {"cid": "cid-c1"}, "result": None}]}
    )

    result = client.fetch_result("task-1")

    assert result.success is False
    assert result.cid == "cid-c1"
    assert result.error == "No result data in response"


def test_transform_review_maps_provider_fields():
    review = transform_review(
        {
            "review_id": "ChZDSUhNMG9nS0VJQ0FnSUR",
            "review_url": "https://www.google.com/maps/reviews/data=abc",
            "profile_name": "Dana R.",
            "profile_image_url": "https://lh3.googleusercontent.com/a/photo.jpg",
            "reviews_count": 14,
            "local_guide": True,
            "review_text": "Great patio work",
            "original_review_text": "Gran trabajo en el patio",
            "original_language": "es",
            "rating": {"value": 5, "votes_count": 2},
            "timestamp": "2026-02-01 10:30:00 +00:00",
            "owner_answer": "Thanks Dana!",
            "images": [{"image_url": "https://lh5.googleusercontent.com/p/1.jpg"}, {"alt": "x"}],
        },
        "c1",
    )

    assert review.google_review_id == "ChZDSUhNMG9nS0VJQ0FnSUR"
    assert review.reviewer_photo_url == "https://lh3.googleusercontent.com/a/photo.jpg"
    assert review.is_local_guide is True
    assert review.stars == 5
    assert review.likes_count == 2
    assert review.review_text_translated == "Gran trabajo en el patio"
    assert review.published_at.isoformat() == "2026-02-01T10:30:00+00:00"
    assert review.review_image_urls == ["https://lh5.googleusercontent.com/p/1.jpg"]
