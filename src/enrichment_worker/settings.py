"""Runtime settings loaded from the environment with an optional YAML overlay.

Values are resolved in this order: environment variables (including a
``.env`` file loaded with python-dotenv), then the YAML file named by
``WORKER_CONFIG_PATH`` (or ``config/worker.yaml``), then the defaults in
``constants.py``. The result is cached for the lifetime of the process.

Usage:
    from enrichment_worker.settings import get_worker_settings

    settings = get_worker_settings()
    pool = settings.worker_pool_size
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from enrichment_worker.constants import (
    AI_EXTRACTION_MODEL,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_PROCESSING_TIMEOUT_SECONDS,
    DEFAULT_WORKER_POOL_SIZE,
)
from enrichment_worker.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "worker.yaml"

# setting name -> environment variable
_ENV_KEYS = {
    "sqlite_db_path": "SQLITE_DB_PATH",
    "dataforseo_api_key": "DATAFORSEO_API_KEY",
    "openai_api_key": "OPENAI_API_KEY",
    "openai_model": "OPENAI_MODEL",
    "worker_pool_size": "WORKER_POOL_SIZE",
    "poll_interval_seconds": "POLL_INTERVAL_SECONDS",
    "processing_timeout_seconds": "PROCESSING_TIMEOUT_SECONDS",
    "image_storage_dir": "IMAGE_STORAGE_DIR",
    "worker_host": "WORKER_HOST",
    "worker_port": "WORKER_PORT",
}


class WorkerSettings(BaseModel):
    """Resolved worker configuration."""

    sqlite_db_path: Optional[str] = None
    dataforseo_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = AI_EXTRACTION_MODEL
    worker_pool_size: int = Field(default=DEFAULT_WORKER_POOL_SIZE, ge=1)
    poll_interval_seconds: int = Field(default=DEFAULT_POLL_INTERVAL_SECONDS, ge=1)
    processing_timeout_seconds: int = Field(default=DEFAULT_PROCESSING_TIMEOUT_SECONDS, ge=1)
    image_storage_dir: str = "data/images"
    worker_host: str = "0.0.0.0"
    worker_port: int = 5555

    def require(self, name: str) -> Any:
        """Return a setting, raising ConfigurationError when it is empty."""
        value = getattr(self, name)
        if value in (None, ""):
            raise ConfigurationError(f"{_ENV_KEYS.get(name, name.upper())} is not set")
        return value


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Worker config at {path} must be a mapping")
    logger.info("Loaded worker config from %s", path)
    return data


@lru_cache(maxsize=1)
def get_worker_settings(config_path: Optional[str] = None) -> WorkerSettings:
    """
    Build worker settings from YAML and environment.

    Args:
        config_path: Optional YAML path (defaults to WORKER_CONFIG_PATH or
            config/worker.yaml)

    Returns:
        WorkerSettings instance

    Raises:
        ConfigurationError: If the YAML file or a value is invalid
    """
    load_dotenv()

    path = Path(config_path or os.getenv("WORKER_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    values = _load_yaml(path.expanduser())

    for field_name, env_key in _ENV_KEYS.items():
        env_value = os.getenv(env_key)
        if env_value not in (None, ""):
            values[field_name] = env_value

    try:
        return WorkerSettings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid worker settings: {e}") from e


def clear_settings_cache() -> None:
    """Clear cached settings (useful for testing or config reload)."""
    get_worker_settings.cache_clear()
