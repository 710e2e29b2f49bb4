"""Structured JSON logging for the worker.

Records are written one JSON object per line. Helpers on StructuredLogger
attach a ``structured_fields`` dict (category, action, message and domain
details) which JSONFormatter merges into the emitted object; plain
``logging`` calls fall back to category ``system``.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

ENVIRONMENT_REQUIRED_ERROR = (
    "ENVIRONMENT variable is required but not set. "
    "Must be set to 'staging', 'production', or 'development'."
)

_DEFAULT_CONFIG_FILE = Path(__file__).resolve().parents[2] / "config" / "logging.yaml"
_QUIET_LOGGERS = ("urllib3", "httpx", "openai", "werkzeug")

_logging_config: Optional[Dict[str, Any]] = None


def _load_logging_config() -> Dict[str, Any]:
    """Read logging.yaml once; LOGGING_CONFIG_PATH overrides the location."""
    global _logging_config
    if _logging_config is not None:
        return _logging_config

    source = Path(os.getenv("LOGGING_CONFIG_PATH") or _DEFAULT_CONFIG_FILE)
    loaded: Dict[str, Any] = {}
    if source.is_file():
        try:
            loaded = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            sys.stderr.write(f"Ignoring unreadable logging config {source}: {e}\n")

    console = dict(loaded.get("console") or {})
    console.setdefault("max_company_name_length", 80)
    console.setdefault("max_url_length", 80)
    structured = dict(loaded.get("structured") or {})
    structured.setdefault("service", "enrichment-worker")

    _logging_config = {**loaded, "console": console, "structured": structured}
    return _logging_config


def _shorten(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] if limit <= 3 else f"{text[: limit - 3]}..."


def format_company_name(company_name: Optional[str], max_length: Optional[int] = None) -> Tuple[str, str]:
    """
    Return ``(full_name, display_name)`` for a company.

    The display name is cut to ``max_length`` characters, or the
    ``console.max_company_name_length`` setting when no length is given.
    """
    full_name = (company_name or "").strip()
    if max_length is None:
        max_length = _load_logging_config()["console"]["max_company_name_length"]
    return full_name, _shorten(full_name, max_length)


def format_url(url: Optional[str], max_length: Optional[int] = None) -> str:
    if max_length is None:
        max_length = _load_logging_config()["console"]["max_url_length"]
    return _shorten((url or "").strip(), max_length)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON."""

    def __init__(self, environment: str = "development", service: str = "enrichment-worker"):
        super().__init__()
        self.environment = environment
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        # CRITICAL is reported as ERROR
        severity = "ERROR" if record.levelno >= logging.ERROR else record.levelname
        payload: Dict[str, Any] = {
            "severity": severity,
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "environment": self.environment,
            "service": self.service,
            "logger": record.name,
        }

        fields = getattr(record, "structured_fields", None)
        if fields is None:
            fields = {"category": "system", "action": "log", "message": record.getMessage()}
        payload.update(fields)

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            payload["error"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "stack": self.formatException(record.exc_info),
            }

        return json.dumps(payload, default=str)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Install JSON handlers on the root logger.

    LOG_LEVEL and LOG_FILE take precedence over the arguments. A missing
    ENVIRONMENT falls back to ``development`` with a warning on stderr and
    is then exported so StructuredLogger can be created afterwards.
    """
    level_name = os.getenv("LOG_LEVEL", log_level).upper()
    log_file = os.getenv("LOG_FILE", log_file)
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    environment = os.getenv("ENVIRONMENT")
    if not environment:
        environment = "development"
        sys.stderr.write("WARNING: ENVIRONMENT not set, defaulting to 'development'\n")
    os.environ.setdefault("ENVIRONMENT", environment)

    formatter = JSONFormatter(environment, _load_logging_config()["structured"]["service"])
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    get_structured_logger(__name__).worker_status(
        "logging_configured",
        details={"environment": environment, "level": level_name, "file": log_file},
    )


class StructuredLogger:
    """
    Domain-aware wrapper around a standard logger.

    Raises ValueError on construction when ENVIRONMENT is unset so a
    misconfigured deployment fails at startup instead of logging without
    an environment tag.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.environment = os.getenv("ENVIRONMENT")
        if not self.environment:
            raise ValueError(ENVIRONMENT_REQUIRED_ERROR)

    def _emit(
        self,
        level: str,
        category: str,
        action: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        **extra: Any,
    ) -> None:
        fields: Dict[str, Any] = {"category": category, "action": action, "message": message}
        fields.update(extra)
        fields["details"] = details or {}
        emit = getattr(self.logger, level.lower(), self.logger.info)
        emit(message, extra={"structured_fields": fields})

    def job_activity(
        self,
        job_id: str,
        action: str,
        message: Optional[str] = None,
        details: Optional[Dict] = None,
        level: str = "info",
    ) -> None:
        """Job lifecycle event such as ``job_started`` or ``retry_requeued``."""
        self._emit(level, "job", action, message or f"Job {action}", details, jobId=job_id)

    def pipeline_phase(
        self, job_id: str, phase: str, status: str, details: Optional[Dict] = None
    ) -> None:
        """
        Phase transition inside an executor (validate, submit, poll, fetch, images).

        ``failed`` and ``error`` are logged at error level, ``skipped`` at warning.
        """
        outcome = status.lower()
        if outcome in ("failed", "error"):
            level = "error"
        elif outcome == "skipped":
            level = "warning"
        else:
            level = "info"
        self._emit(
            level,
            "pipeline",
            status,
            f"Pipeline {phase} {status}",
            details,
            jobId=job_id,
            pipelinePhase=phase.lower(),
        )

    def crawl_activity(self, url: str, action: str, details: Optional[Dict] = None) -> None:
        level = "warning" if action in ("blocked", "failed") else "info"
        self._emit(level, "crawl", action, f"Crawl {action}: {format_url(url)}", {"url": url, **(details or {})})

    def contractor_activity(
        self, company_name: Optional[str], action: str, details: Optional[Dict] = None
    ) -> None:
        full_name, display_name = format_company_name(company_name)
        action = action.lower()
        self._emit(
            "info",
            "database",
            action,
            f"Contractor {action}: {display_name}",
            {"company_name": full_name, "company_name_display": display_name, **(details or {})},
        )

    def ai_activity(self, operation: str, status: str, details: Optional[Dict] = None) -> None:
        """Model call outcome; ``details`` usually carries model and token usage."""
        level = "warning" if status == "failed" else "info"
        self._emit(level, "ai", operation.lower(), f"AI {operation} {status}", details)

    def api_activity(
        self, provider: str, operation: str, status: str, details: Optional[Dict] = None
    ) -> None:
        level = "warning" if status == "failed" else "info"
        self._emit(
            level,
            "api",
            operation.lower(),
            f"{provider} {operation} {status}",
            {"provider": provider, "status": status, **(details or {})},
        )

    def worker_status(self, status: str, details: Optional[Dict] = None) -> None:
        self._emit("info", "worker", status.lower(), f"Worker {status}", details)


def get_structured_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name))
