"""SQLite storage for CookWire projects.

Every project belongs to exactly one owner key hash. The repository does not
check ownership itself; the API layer compares ``ProjectRecord.owner_key_hash``
against the caller's hash before exposing or mutating a row.
"""

from __future__ import annotations

import json
import os
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator
from uuid import uuid4

from .shared.logger import get_logger

logger = get_logger(__name__)

# Stored preference blobs are tiny; anything bigger is treated as corrupt
MAX_JSON_SIZE = 10 * 1024
MAX_LIST_LIMIT = 200
DEFAULT_LIST_LIMIT = 50
MAX_LIST_OFFSET = 10_000

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
  id TEXT PRIMARY KEY,
  owner_key_hash TEXT NOT NULL,
  title TEXT NOT NULL,
  html TEXT NOT NULL,
  css TEXT NOT NULL,
  js TEXT NOT NULL,
  language TEXT NOT NULL,
  theme TEXT NOT NULL,
  editor_prefs TEXT NOT NULL,
  workspace_prefs TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_projects_owner_updated ON projects(owner_key_hash, updated_at DESC);
"""


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and UUID_PATTERN.match(value) is not None


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with milliseconds and a ``Z`` suffix."""
    now = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return now.replace("+00:00", "Z")


def safe_json_parse(raw: str | None, default: Any = None) -> Any:
    """Parse a stored JSON column, falling back to ``default`` (``{}``)."""
    if default is None:
        default = {}
    if not raw:
        return default
    if len(raw) > MAX_JSON_SIZE:
        logger.warning("Stored JSON value too large (%d chars), using default", len(raw))
        return default
    try:
        return json.loads(raw)
    except ValueError as e:
        logger.warning("Failed to parse stored JSON: %s", e)
        return default


def _map_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "title": row["title"],
        "files": {
            "html": row["html"],
            "css": row["css"],
            "js": row["js"],
        },
        "language": row["language"],
        "theme": row["theme"],
        "editorPrefs": safe_json_parse(row["editor_prefs"]),
        "workspacePrefs": safe_json_parse(row["workspace_prefs"]),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def _map_list_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "title": row["title"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def _editable_columns(payload: dict[str, Any]) -> dict[str, Any]:
    files = payload["files"]
    return {
        "title": payload["title"],
        "html": files["html"],
        "css": files["css"],
        "js": files["js"],
        "language": payload["language"],
        "theme": payload["theme"],
        "editor_prefs": json.dumps(payload["editorPrefs"], separators=(",", ":")),
        "workspace_prefs": json.dumps(payload["workspacePrefs"], separators=(",", ":")),
    }


def _clamp(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = 0
    if not number:
        number = default
    return max(low, min(number, high))


@dataclass
class ProjectRecord:
    """A stored project together with the hash of the key that owns it."""

    owner_key_hash: str
    project: dict[str, Any]


class ProjectsRepository:
    """CRUD access to the ``projects`` table.

    A short-lived connection is opened and closed by every operation; the
    repository itself holds no connection state.

    Args:
        data_dir: Directory holding the database (created with mode 0700).
        database_path: Explicit database file; defaults to
            ``<data_dir>/projects.db``.
    """

    def __init__(self, data_dir: Path | str | None = None, database_path: Path | str | None = None) -> None:
        self.data_dir = Path(data_dir) if data_dir else Path("data").resolve()
        self.database_path = Path(database_path) if database_path else self.data_dir / "projects.db"

        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.database_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)

        try:
            os.chmod(self.database_path, 0o600)
        except OSError as e:
            logger.warning("Could not set database file permissions: %s", e)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.database_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA synchronous = NORMAL")
            with conn:
                yield conn
        finally:
            conn.close()

    def _fetch_project_row(self, conn: sqlite3.Connection, project_id: str) -> sqlite3.Row | None:
        return conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()

    def create(self, owner_key_hash: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Insert a new project and return it."""
        project_id = str(uuid4())
        now = utc_timestamp()
        params = {
            "id": project_id,
            "owner_key_hash": owner_key_hash,
            "created_at": now,
            "updated_at": now,
            **_editable_columns(payload),
        }
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO projects (
                    id, owner_key_hash, title, html, css, js, language, theme,
                    editor_prefs, workspace_prefs, created_at, updated_at
                ) VALUES (
                    :id, :owner_key_hash, :title, :html, :css, :js, :language, :theme,
                    :editor_prefs, :workspace_prefs, :created_at, :updated_at
                )""",
                params,
            )
            row = self._fetch_project_row(conn, project_id)
        return _map_row(row)

    def update(self, project_id: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        """Overwrite a project's editable fields.

        Returns:
            The updated project, or None when no row matched.

        Raises:
            ValueError: If ``project_id`` is not a valid UUID.
        """
        if not is_valid_uuid(project_id):
            raise ValueError("Invalid project ID format")

        params = {"id": project_id, "updated_at": utc_timestamp(), **_editable_columns(payload)}
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE projects SET
                    title = :title,
                    html = :html,
                    css = :css,
                    js = :js,
                    language = :language,
                    theme = :theme,
                    editor_prefs = :editor_prefs,
                    workspace_prefs = :workspace_prefs,
                    updated_at = :updated_at
                WHERE id = :id""",
                params,
            )
            if cursor.rowcount == 0:
                return None
            row = self._fetch_project_row(conn, project_id)
        return _map_row(row) if row else None

    def list_by_owner(self, owner_key_hash: str, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        """List project summaries for an owner, most recently updated first."""
        safe_limit = _clamp(limit, DEFAULT_LIST_LIMIT, 1, MAX_LIST_LIMIT)
        safe_offset = _clamp(offset, 0, 0, MAX_LIST_OFFSET)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, title, created_at, updated_at FROM projects "
                "WHERE owner_key_hash = ? ORDER BY updated_at DESC LIMIT ? OFFSET ?",
                (owner_key_hash, safe_limit, safe_offset),
            ).fetchall()
        return [_map_list_row(row) for row in rows]

    def get_by_id(self, project_id: str) -> ProjectRecord | None:
        if not is_valid_uuid(project_id):
            return None
        with self._connect() as conn:
            row = self._fetch_project_row(conn, project_id)
        if row is None:
            return None
        return ProjectRecord(owner_key_hash=row["owner_key_hash"], project=_map_row(row))

    def delete(self, project_id: str) -> bool:
        if not is_valid_uuid(project_id):
            return False
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,)).rowcount
        return deleted > 0
