"""
Workspace State

SQLite-backed key-value store for per-workspace settings that must survive
restarts, chiefly the interpreter chosen for each notebook. Values are stored
as JSON and every change is committed immediately.
"""

import sqlite3
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

INTERPRETER_KEY_PREFIX = "ipynbSlidePreview.pythonPath:"
SLIDE_INDEX_KEY_PREFIX = "ipynbSlidePreview.currentSlideIndex:"


def interpreter_key(document_uri: str) -> str:
    """Key under which the interpreter chosen for a document is stored."""
    return f"{INTERPRETER_KEY_PREFIX}{document_uri}"


def slide_index_key(document_uri: str) -> str:
    return f"{SLIDE_INDEX_KEY_PREFIX}{document_uri}"


class WorkspaceState:
    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.debug(f"[STATE] Workspace state at {self.db_path}")

    def _init_db(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workspace_state (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)
            conn.commit()

    def get(self, key: str, default: Any = None) -> Any:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT value_json FROM workspace_state WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    def update(self, key: str, value: Any) -> None:
        """Store a value; None removes the key."""
        if value is None:
            self.delete(key)
            return
        now = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO workspace_state (key, value_json, updated_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), now),
            )
            conn.commit()
        logger.debug(f"[STATE] Updated {key}")

    def delete(self, key: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM workspace_state WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> list:
        with sqlite3.connect(self.db_path) as conn:
            return [row[0] for row in conn.execute("SELECT key FROM workspace_state ORDER BY key")]

    def get_interpreter(self, document_uri: str) -> Optional[str]:
        return self.get(interpreter_key(document_uri))

    def set_interpreter(self, document_uri: str, interpreter: Optional[str]) -> None:
        self.update(interpreter_key(document_uri), interpreter)

    def get_slide_index(self, document_uri: str) -> Optional[int]:
        return self.get(slide_index_key(document_uri))

    def set_slide_index(self, document_uri: str, index: int) -> None:
        self.update(slide_index_key(document_uri), index)
