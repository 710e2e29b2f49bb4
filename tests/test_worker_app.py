"""Tests for the worker's HTTP endpoints and command line."""

import json
import os

import pytest

from enrichment_worker.settings import clear_settings_cache


@pytest.fixture
def worker(monkeypatch):
    """Import the worker module with clean global state."""
    try:
        from enrichment_worker import worker as worker_module
    except ModuleNotFoundError as exc:  # flask not installed in lightweight envs
        pytest.skip(f"flask not available: {exc}")

    monkeypatch.setattr(worker_module, "job_service", None)
    monkeypatch.setattr(worker_module, "runner", None)
    monkeypatch.setattr(worker_module, "setup_logging", lambda: None)
    for key, value in (("running", False), ("shutdown_requested", False), ("start_time", None), ("last_error", None)):
        monkeypatch.setitem(worker_module.worker_state, key, value)
    return worker_module


@pytest.fixture
def client(worker, job_service, monkeypatch):
    monkeypatch.setattr(worker, "job_service", job_service)
    return worker.app.test_client()


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    """Environment for main(): no config file, no provider keys."""
    monkeypatch.setenv("WORKER_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("IMAGE_STORAGE_DIR", str(tmp_path / "images"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("DATAFORSEO_API_KEY", raising=False)
    clear_settings_cache()
    yield monkeypatch
    clear_settings_cache()


class TestHealthAndStatus:
    def test_health_reports_stopped_worker(self, worker):
        response = worker.app.test_client().get("/health")

        assert response.status_code == 200
        assert response.get_json()["status"] == "stopped"

    def test_status_includes_queue_counts(self, client, job_service):
        job_service.create_job("review_enrichment", {"contractor_ids": ["c1"]})

        body = client.get("/status").get_json()

        assert body["queue"]["pending"] == 1
        assert body["runner"] == {}

    def test_stop_when_not_running(self, client):
        assert client.post("/stop").status_code == 400


class TestJobEndpoints:
    def test_routes_need_initialized_worker(self, worker):
        client = worker.app.test_client()

        assert client.get("/jobs").status_code == 503
        assert client.post("/jobs", json={"job_type": "review_enrichment"}).status_code == 503

    def test_create_job(self, client, job_service):
        response = client.post(
            "/jobs",
            json={"job_type": "review_enrichment", "payload": {"contractor_ids": ["c1"], "max_depth": 20}},
        )

        assert response.status_code == 201
        body = response.get_json()
        assert body["status"] == "pending"
        assert body["created_by"] == "api"
        assert job_service.get_job(body["id"]).payload["max_depth"] == 20

    def test_second_active_job_of_type_conflicts(self, client):
        payload = {"job_type": "profile_enrichment", "payload": {"contractor_ids": ["c1"]}}

        assert client.post("/jobs", json=payload).status_code == 201
        assert client.post("/jobs", json=payload).status_code == 409

    @pytest.mark.parametrize(
        "body",
        [
            {"job_type": "sitemap_crawl", "payload": {}},
            {"job_type": "image_retry", "payload": {"contractor_id": "c1"}},
        ],
    )
    def test_invalid_job_requests(self, client, body):
        response = client.post("/jobs", json=body)

        assert response.status_code == 400
        assert "error" in response.get_json()

    def test_get_job_with_progress(self, client, job_service):
        job = job_service.create_job("review_enrichment", {"contractor_ids": ["c1", "c2"]})

        body = client.get(f"/jobs/{job.id}").get_json()

        assert body["job"]["id"] == job.id
        assert body["progress"]["percent_complete"] == 0

    def test_unknown_job_is_not_found(self, client):
        assert client.get("/jobs/does-not-exist").status_code == 404
        assert client.post("/jobs/does-not-exist/cancel").status_code == 404

    def test_list_jobs_filters_by_type(self, client, job_service):
        job_service.create_job("review_enrichment", {"contractor_ids": ["c1"]})
        job_service.create_job("profile_enrichment", {"contractor_ids": ["c1"]})

        jobs = client.get("/jobs?job_type=profile_enrichment").get_json()["jobs"]

        assert [job["job_type"] for job in jobs] == ["profile_enrichment"]

    def test_cancel_then_retry(self, client, job_service):
        job = job_service.create_job("review_enrichment", {"contractor_ids": ["c1"]})

        cancelled = client.post(f"/jobs/{job.id}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.get_json()["status"] == "cancelled"

        assert client.post(f"/jobs/{job.id}/cancel").status_code == 409
        assert client.post(f"/jobs/{job.id}/retry").status_code == 409

    def test_job_events(self, client, job_service):
        job = job_service.create_job("review_enrichment", {"contractor_ids": ["c1"]})

        events = client.get(f"/jobs/{job.id}/events").get_json()["events"]

        assert events[0]["action"] == "job_created"

    def test_elevated_scrape_queue(self, client, job_service, insert_contractor):
        insert_contractor("c1", website="https://walled.example")
        insert_contractor("c2", website="https://open.example")
        job_service.contractors.flag_for_elevated_scraping("c1", "Site has bot protection (403/Cloudflare)")

        body = client.get("/contractors/elevated-scrape").get_json()

        assert body["contractor_ids"] == ["c1"]


class TestCommandLine:
    def test_init_db_creates_database(self, worker, cli_env, tmp_path):
        db_file = tmp_path / "nested" / "enrichment.db"
        cli_env.setenv("SQLITE_DB_PATH", str(db_file))

        assert worker.main(["init-db"]) == 0
        assert db_file.exists()

    def test_dotenv_loaded_before_logging_setup(self, worker, cli_env, tmp_path):
        cli_env.setenv("SQLITE_DB_PATH", str(tmp_path / "enrichment.db"))
        cli_env.setenv("LOG_LEVEL", "WARNING")
        seen_levels = []
        cli_env.setattr(worker, "load_dotenv", lambda: os.environ.update(LOG_LEVEL="DEBUG"))
        cli_env.setattr(worker, "setup_logging", lambda: seen_levels.append(os.getenv("LOG_LEVEL")))

        assert worker.main(["init-db"]) == 0
        assert seen_levels == ["DEBUG"]

    def test_init_db_without_path_fails(self, worker, cli_env, capsys):
        cli_env.delenv("SQLITE_DB_PATH", raising=False)

        assert worker.main(["init-db"]) == 1
        assert "SQLITE_DB_PATH" in capsys.readouterr().err

    def test_enqueue_review_job(self, worker, cli_env, db_path, job_service, capsys):
        cli_env.setenv("SQLITE_DB_PATH", db_path)

        code = worker.main(["enqueue", "review_enrichment", "c1", "c2", "--max-depth", "30", "--continuous"])

        assert code == 0
        printed = json.loads(capsys.readouterr().out)
        job = job_service.get_job(printed["id"])
        assert job.created_by == "cli"
        assert job.payload["contractor_ids"] == ["c1", "c2"]
        assert job.payload["max_depth"] == 30
        assert job.payload["continuous"] is True

    def test_enqueue_image_enrichment_batch(self, worker, cli_env, db_path, job_service, capsys):
        cli_env.setenv("SQLITE_DB_PATH", db_path)

        assert worker.main(["enqueue", "image_enrichment", "--batch-size", "5", "--continuous"]) == 0
        job = job_service.get_job(json.loads(capsys.readouterr().out)["id"])
        assert job.job_type == "image_enrichment"
        assert job.payload == {"batch_size": 5, "continuous": True}

    def test_enqueue_image_retry_needs_payload(self, worker, cli_env, db_path, capsys):
        cli_env.setenv("SQLITE_DB_PATH", db_path)

        assert worker.main(["enqueue", "image_retry"]) == 1
        assert "--payload" in capsys.readouterr().err

    def test_enqueue_with_raw_payload(self, worker, cli_env, db_path, job_service, capsys):
        cli_env.setenv("SQLITE_DB_PATH", db_path)
        payload = {
            "contractor_id": "c1",
            "images": [{"review_id": "r1", "original_url": "https://lh3.googleusercontent.example/1.jpg"}],
            "attempt_number": 2,
        }

        assert worker.main(["enqueue", "image_retry", "--payload", json.dumps(payload)]) == 0
        job = job_service.get_job(json.loads(capsys.readouterr().out)["id"])
        assert job.typed_payload().attempt_number == 2
