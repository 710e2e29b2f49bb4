#!/usr/bin/env python3
"""
Flask-based enrichment worker with health monitoring and graceful shutdown.

This worker provides:
- A background thread running the job runner loop
- HTTP health, status, start and stop endpoints
- Job inspection and management endpoints
- ``enqueue`` and ``init-db`` command-line helpers
"""

import argparse
import json
import signal
import sys
import threading
import time
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from enrichment_worker.ai.extraction import AIExtractor
from enrichment_worker.exceptions import (
    ConfigurationError,
    DuplicateJobError,
    EnrichmentWorkerError,
    InvalidJobStateError,
    JobPayloadError,
    StorageError,
)
from enrichment_worker.images.gallery_images import GalleryImageDownloader
from enrichment_worker.images.reviewer_photos import ReviewerPhotoDownloader
from enrichment_worker.job_queue.event_log import EventLogger
from enrichment_worker.job_queue.executors import build_registry
from enrichment_worker.job_queue.job_service import JobService
from enrichment_worker.job_queue.manager import JobManager
from enrichment_worker.job_queue.models import BackgroundJob, JobType
from enrichment_worker.job_queue.runner import JobRunner
from enrichment_worker.logging_config import StructuredLogger, get_structured_logger, setup_logging
from enrichment_worker.rendering.web_crawler import WebCrawler
from enrichment_worker.reviews_api.client import ReviewsApiClient
from enrichment_worker.settings import WorkerSettings, get_worker_settings
from enrichment_worker.storage import (
    ContractorRepository,
    ReviewRepository,
    ServiceTypeRepository,
    ensure_schema,
)

# Global state
worker_state: Dict[str, Any] = {
    "running": False,
    "shutdown_requested": False,
    "start_time": None,
    "last_error": None,
}

# Global components (initialized in main or by the first /start)
job_service: Optional[JobService] = None
runner: Optional[JobRunner] = None
worker_thread: Optional[threading.Thread] = None
settings: Optional[WorkerSettings] = None

# Flask app
app = Flask(__name__)


def _slogger() -> StructuredLogger:
    return get_structured_logger(__name__)


def initialize_components(worker_settings: WorkerSettings) -> tuple:
    """
    Build the job service and runner from settings.

    Profile enrichment needs an OpenAI key; without one the worker still
    runs review and image jobs and profile jobs fail as unknown.

    Returns:
        Tuple of (job_service, runner)
    """
    db_path = worker_settings.sqlite_db_path
    reviews = ReviewRepository(db_path)

    try:
        extractor: Optional[AIExtractor] = AIExtractor(
            api_key=worker_settings.openai_api_key, model=worker_settings.openai_model
        )
    except ConfigurationError as exc:
        _slogger().worker_status("profile_enrichment_disabled", {"reason": str(exc)})
        extractor = None

    registry = build_registry(
        crawler_factory=WebCrawler,
        extractor=extractor,
        reviews_client_factory=lambda: ReviewsApiClient(api_key=worker_settings.dataforseo_api_key),
        photo_downloader=ReviewerPhotoDownloader(reviews, worker_settings.image_storage_dir),
        gallery_downloader=GalleryImageDownloader(worker_settings.image_storage_dir),
    )
    service = JobService(
        manager=JobManager(db_path),
        registry=registry,
        events=EventLogger(db_path),
        contractors=ContractorRepository(db_path),
        service_types=ServiceTypeRepository(db_path),
        reviews=reviews,
    )
    job_runner = JobRunner(
        service,
        pool_size=worker_settings.worker_pool_size,
        poll_interval=worker_settings.poll_interval_seconds,
        processing_timeout=worker_settings.processing_timeout_seconds,
    )
    _slogger().worker_status(
        "components_initialized",
        {"db_path": db_path, "job_types": registry.registered_types()},
    )
    return service, job_runner


def worker_loop() -> None:
    """Run the job runner until shutdown is requested."""
    worker_state["running"] = True
    try:
        runner.run_forever()
    except Exception as e:
        _slogger().logger.error(f"Worker loop crashed: {e}", exc_info=True)
        worker_state["last_error"] = str(e)
    finally:
        worker_state["running"] = False


def _start_worker_thread() -> None:
    global worker_thread, runner

    if runner is None or runner.stopped:
        # A stopped runner cannot be restarted; build a fresh one around the same service
        runner = JobRunner(
            job_service,
            pool_size=settings.worker_pool_size,
            poll_interval=settings.poll_interval_seconds,
            processing_timeout=settings.processing_timeout_seconds,
        )
    runner.reset_stuck()

    worker_state["shutdown_requested"] = False
    worker_state["start_time"] = time.time()
    worker_thread = threading.Thread(target=worker_loop, name="enrichment-worker", daemon=True)
    worker_thread.start()


def _job_json(job: BackgroundJob) -> Dict[str, Any]:
    return job.model_dump(mode="json")


def _error(message: str, status: int):
    return jsonify({"error": message}), status


# ============================================================
# Flask routes
# ============================================================


@app.route("/health")
def health():
    """Health check endpoint."""
    stats = runner.stats_snapshot() if runner else {}
    return jsonify(
        {
            "status": "healthy" if worker_state["running"] else "stopped",
            "running": worker_state["running"],
            "jobs_completed": stats.get("jobs_completed", 0),
            "last_poll": stats.get("last_poll_time"),
            "last_error": worker_state["last_error"] or stats.get("last_error"),
        }
    )


@app.route("/status")
def status():
    """Detailed status endpoint."""
    queue_stats: Dict[str, Any] = {}
    if job_service:
        try:
            queue_stats = job_service.manager.get_stats()
        except EnrichmentWorkerError as e:
            queue_stats = {"error": str(e)}

    start_time = worker_state.get("start_time")
    return jsonify(
        {
            "worker": worker_state,
            "runner": runner.stats_snapshot() if runner else {},
            "in_flight": runner.in_flight if runner else [],
            "queue": queue_stats,
            "uptime": time.time() - start_time if start_time else 0,
        }
    )


@app.route("/start", methods=["POST"])
def start_worker():
    """Start the worker."""
    global job_service, runner, settings

    if worker_state["running"]:
        return jsonify({"message": "Worker is already running"}), 400

    if job_service is None:
        settings = get_worker_settings()
        job_service, runner = initialize_components(settings)

    _start_worker_thread()
    return jsonify({"message": "Worker started"})


@app.route("/stop", methods=["POST"])
def stop_worker():
    """Stop the worker gracefully."""
    if not worker_state["running"]:
        return jsonify({"message": "Worker is not running"}), 400

    cancel_running = bool((request.get_json(silent=True) or {}).get("cancel_running"))
    worker_state["shutdown_requested"] = True
    runner.stop(cancel_running=cancel_running)

    if worker_thread and worker_thread.is_alive():
        worker_thread.join(timeout=30)
        if worker_thread.is_alive():
            return jsonify({"message": "Worker stop requested but still running"}), 202

    return jsonify({"message": "Worker stopped"})


@app.route("/jobs", methods=["GET"])
def list_jobs():
    if job_service is None:
        return _error("Worker not initialized", 503)
    jobs = job_service.list_jobs(
        status=request.args.get("status"),
        job_type=request.args.get("job_type"),
        limit=request.args.get("limit", 20, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"jobs": [_job_json(job) for job in jobs]})


@app.route("/jobs", methods=["POST"])
def create_job():
    if job_service is None:
        return _error("Worker not initialized", 503)
    data = request.get_json(silent=True) or {}
    try:
        job = job_service.create_job(
            data.get("job_type", ""),
            data.get("payload") or {},
            created_by=data.get("created_by") or "api",
        )
    except DuplicateJobError as e:
        return _error(str(e), 409)
    except (ConfigurationError, JobPayloadError) as e:
        return _error(str(e), 400)
    return jsonify(_job_json(job)), 201


@app.route("/jobs/<job_id>")
def get_job(job_id: str):
    if job_service is None:
        return _error("Worker not initialized", 503)
    try:
        progress = job_service.get_job_progress(job_id)
    except StorageError as e:
        return _error(str(e), 404)
    return jsonify({"job": _job_json(job_service.get_job(job_id)), "progress": progress})


@app.route("/jobs/<job_id>/events")
def job_events(job_id: str):
    if job_service is None:
        return _error("Worker not initialized", 503)
    return jsonify({"events": job_service.events.get_events(job_id)})


@app.route("/contractors/elevated-scrape")
def elevated_scrape_queue():
    """Contractors whose websites blocked the headless crawler."""
    if job_service is None:
        return _error("Worker not initialized", 503)
    limit = request.args.get("limit", 100, type=int)
    return jsonify({"contractor_ids": job_service.contractors.list_elevated_scrape_queue(limit)})


@app.route("/jobs/<job_id>/cancel", methods=["POST"])
def cancel_job(job_id: str):
    if job_service is None:
        return _error("Worker not initialized", 503)
    try:
        job = job_service.cancel_job(job_id)
    except InvalidJobStateError as e:
        return _error(str(e), 409)
    except StorageError as e:
        return _error(str(e), 404)
    return jsonify(_job_json(job))


@app.route("/jobs/<job_id>/retry", methods=["POST"])
def retry_job(job_id: str):
    if job_service is None:
        return _error("Worker not initialized", 503)
    try:
        job = job_service.retry_job(job_id)
    except (InvalidJobStateError, DuplicateJobError) as e:
        return _error(str(e), 409)
    except StorageError as e:
        return _error(str(e), 404)
    return jsonify(_job_json(job))


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    _slogger().worker_status("shutdown_requested", {"signal": signum})
    worker_state["shutdown_requested"] = True
    if runner is not None:
        runner.stop()


# ============================================================
# Command line
# ============================================================


def _build_payload(args: argparse.Namespace) -> Dict[str, Any]:
    if args.payload:
        return json.loads(args.payload)

    job_type = JobType(args.job_type)
    if job_type == JobType.IMAGE_RETRY:
        raise JobPayloadError("image_retry jobs need --payload")
    if job_type == JobType.IMAGE_ENRICHMENT:
        image_payload: Dict[str, Any] = {"continuous": args.continuous}
        if args.batch_size:
            image_payload["batch_size"] = args.batch_size
        return image_payload

    payload: Dict[str, Any] = {"contractor_ids": args.contractor_ids or []}
    if job_type == JobType.REVIEW_ENRICHMENT:
        if args.max_depth:
            payload["max_depth"] = args.max_depth
        payload["continuous"] = args.continuous
    return payload


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="enrichment-worker", description=__doc__.strip().splitlines()[0])
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the worker and its HTTP server (default)")
    subparsers.add_parser("init-db", help="Create the SQLite database and tables")

    enqueue = subparsers.add_parser("enqueue", help="Create a job")
    enqueue.add_argument("job_type", choices=[t.value for t in JobType])
    enqueue.add_argument("contractor_ids", nargs="*", help="Contractor ids for enrichment jobs")
    enqueue.add_argument("--max-depth", type=int, default=None)
    enqueue.add_argument("--batch-size", type=int, default=None, help="Contractors per image_enrichment job")
    enqueue.add_argument("--continuous", action="store_true")
    enqueue.add_argument("--payload", help="Raw JSON payload; overrides the other options")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


def _run(worker_settings: WorkerSettings) -> int:
    global job_service, runner, settings

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    settings = worker_settings
    job_service, runner = initialize_components(worker_settings)
    _start_worker_thread()

    _slogger().worker_status(
        "flask_server_starting",
        {"host": worker_settings.worker_host, "port": worker_settings.worker_port},
    )
    app.run(
        host=worker_settings.worker_host,
        port=worker_settings.worker_port,
        debug=False,
        use_reloader=False,
    )
    return 0


def _enqueue(worker_settings: WorkerSettings, args: argparse.Namespace) -> int:
    service, _ = initialize_components(worker_settings)
    job = service.create_job(args.job_type, _build_payload(args), created_by="cli")
    print(json.dumps(_job_json(job), indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = _parse_args(argv)
    # .env may carry LOG_LEVEL and LOG_FILE
    load_dotenv()
    setup_logging()

    try:
        worker_settings = get_worker_settings()
        if args.command == "init-db":
            ensure_schema(worker_settings.require("sqlite_db_path"))
            _slogger().worker_status("database_initialized", {"path": worker_settings.sqlite_db_path})
            return 0
        if args.command == "enqueue":
            return _enqueue(worker_settings, args)
        return _run(worker_settings)
    except (EnrichmentWorkerError, json.JSONDecodeError) as e:
        _slogger().logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        _slogger().logger.error(f"Fatal error in enrichment worker: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
