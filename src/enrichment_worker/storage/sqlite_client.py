"""Per-operation SQLite connections.

Every ``sqlite_connection`` block is one transaction on its own connection,
so runner and pool threads never share a handle.
"""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from enrichment_worker.exceptions import ConfigurationError

BUSY_TIMEOUT_MS = 5000


def _resolve_db_path(db_path: Optional[str] = None) -> Path:
    """Use ``db_path`` when given, else SQLITE_DB_PATH; the file must already exist."""
    raw = db_path or os.getenv("SQLITE_DB_PATH")
    if not raw:
        raise ConfigurationError("SQLITE_DB_PATH not set and no database path given")

    location = Path(raw).expanduser().resolve()
    if not location.exists():
        raise ConfigurationError(
            f"SQLite database not found at {location}. Run `enrichment-worker init-db` to create it."
        )
    return location


@contextmanager
def sqlite_connection(db_path: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Yield a connection that commits on success and rolls back on error."""
    conn = sqlite3.connect(_resolve_db_path(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        yield conn
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()
    finally:
        conn.close()


def fetch_one(query: str, params: tuple = (), db_path: Optional[str] = None) -> Optional[sqlite3.Row]:
    with sqlite_connection(db_path) as conn:
        return conn.execute(query, params).fetchone()


def fetch_all(query: str, params: tuple = (), db_path: Optional[str] = None) -> List[sqlite3.Row]:
    with sqlite_connection(db_path) as conn:
        return conn.execute(query, params).fetchall()
