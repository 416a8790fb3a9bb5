import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from config.app_config import appConfig

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _default_path() -> Path:
    if appConfig.database.path:
        return Path(appConfig.database.path)
    return Path(__file__).resolve().parent.parent / "local_data" / "sandbox_state.db"


DB_PATH = _default_path()

# Thread-local storage for database connections
_local = threading.local()
_initialized = set()


def set_database_path(path) -> None:
    """Point the module at another database file (closes the current connection)."""
    global DB_PATH
    close_connection()
    DB_PATH = Path(path)


def get_schema_version(conn) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def migrate_database(conn) -> None:
    current = get_schema_version(conn)
    if current < 1:
        logger.info("[database] Migrating to version 1: cleanup log")
        conn.execute('''
            CREATE TABLE IF NOT EXISTS cleanup_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT, project_id TEXT, sandbox_id TEXT,
                cleanup_time INTEGER, cleanup_reason TEXT
            )
        ''')
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")


def init_database(conn) -> None:
    conn.execute('''
        CREATE TABLE IF NOT EXISTS sandbox_state (
            project_id TEXT PRIMARY KEY, sandbox_id TEXT, preview_url TEXT,
            status TEXT, lease_end INTEGER, created_at INTEGER, updated_at INTEGER,
            metadata TEXT
        )
    ''')
    conn.execute('''
        CREATE TABLE IF NOT EXISTS conversation_state (
            id INTEGER PRIMARY KEY CHECK (id = 1), state_data TEXT, updated_at INTEGER
        )
    ''')
    conn.execute("INSERT OR IGNORE INTO conversation_state (id, state_data) VALUES (1, 'null')")
    migrate_database(conn)
    conn.commit()
    logger.info("[database] Initialized %s", DB_PATH)


@contextmanager
def get_connection():
    conn = getattr(_local, "connection", None)
    if conn is None or getattr(_local, "path", None) != DB_PATH:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(DB_PATH), timeout=30.0)
        conn.row_factory = sqlite3.Row
        _local.connection = conn
        _local.path = DB_PATH
    if DB_PATH not in _initialized:
        init_database(conn)
        _initialized.add(DB_PATH)
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise


def close_connection() -> None:
    conn = getattr(_local, "connection", None)
    if conn is not None:
        conn.close()
    _local.connection = None
    _local.path = None


def get_sandbox_state(project_id: str) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM sandbox_state WHERE project_id = ?", (project_id,)).fetchone()
    if row is None or not row["sandbox_id"]:
        return None
    return {
        "projectId": row["project_id"],
        "sandboxId": row["sandbox_id"],
        "previewUrl": row["preview_url"],
        "status": row["status"],
        "leaseEnd": row["lease_end"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
        **json.loads(row["metadata"] or "{}"),
    }


def set_sandbox_state(project_id: str, state: Optional[Dict[str, Any]], reason: str = "replaced") -> None:
    """Record the sandbox a project last used; ``None`` clears it."""
    now = int(time.time() * 1000)
    with get_connection() as conn:
        previous = conn.execute(
            "SELECT sandbox_id FROM sandbox_state WHERE project_id = ?", (project_id,)
        ).fetchone()
        old_id = previous["sandbox_id"] if previous else None
        if old_id and (state is None or state.get("sandboxId") != old_id):
            conn.execute(
                "INSERT INTO cleanup_log (project_id, sandbox_id, cleanup_time, cleanup_reason) VALUES (?, ?, ?, ?)",
                (project_id, old_id, now, reason),
            )

        if state is None:
            conn.execute("DELETE FROM sandbox_state WHERE project_id = ?", (project_id,))
            logger.info("[database] Cleared sandbox for project %s", project_id)
        else:
            core = {"projectId", "sandboxId", "previewUrl", "status", "leaseEnd", "createdAt", "updatedAt"}
            metadata = {k: v for k, v in state.items() if k not in core}
            conn.execute('''
                INSERT INTO sandbox_state (project_id, sandbox_id, preview_url, status, lease_end,
                                           created_at, updated_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id) DO UPDATE SET
                    sandbox_id = excluded.sandbox_id, preview_url = excluded.preview_url,
                    status = excluded.status, lease_end = excluded.lease_end,
                    updated_at = excluded.updated_at, metadata = excluded.metadata
            ''', (
                project_id, state.get("sandboxId"), state.get("previewUrl"), state.get("status"),
                state.get("leaseEnd"), state.get("createdAt") or now, now, json.dumps(metadata),
            ))
            logger.info("[database] Project %s -> sandbox %s", project_id, state.get("sandboxId"))
        conn.commit()


def get_conversation_state() -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute("SELECT state_data FROM conversation_state WHERE id = 1").fetchone()
    if row is None or not row["state_data"]:
        return None
    return json.loads(row["state_data"])


def set_conversation_state(state: Optional[Dict[str, Any]]) -> None:
    with get_connection() as conn:
        conn.execute(
            "UPDATE conversation_state SET state_data = ?, updated_at = ? WHERE id = 1",
            (json.dumps(state), int(time.time() * 1000)),
        )
        conn.commit()


def get_cleanup_stats(project_id: Optional[str] = None) -> Dict[str, Any]:
    query = "SELECT COUNT(*) AS total, MAX(cleanup_time) AS last FROM cleanup_log"
    params: tuple = ()
    if project_id:
        query += " WHERE project_id = ?"
        params = (project_id,)
    with get_connection() as conn:
        row = conn.execute(query, params).fetchone()
    return {"totalCleanups": row["total"] or 0, "lastCleanup": row["last"]}
