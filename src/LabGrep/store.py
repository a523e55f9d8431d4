"""SQLite persistence for mirrored projects and files."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from LabGrep.models import FileRecord, ProjectRecord

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".labgrep" / "mirror.db"


class MirrorStore:
    """Local copy of the mirrored group, keyed by remote IDs."""

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER NOT NULL PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    default_branch TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    id TEXT NOT NULL PRIMARY KEY,
                    name TEXT NOT NULL,
                    path TEXT NOT NULL,
                    content TEXT,
                    project_id INTEGER NOT NULL,
                    FOREIGN KEY(project_id) REFERENCES projects(id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_files_project_id ON files(project_id)"
            )

    # --- Writes -------------------------------------------------------------

    def upsert_project(self, project: ProjectRecord) -> None:
        """Insert or overwrite a project and its files.

        A file that fails to insert is logged and skipped.
        """
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO projects (id, name, description, default_branch) "
                "VALUES (?, ?, ?, ?)",
                (project.id, project.name, project.description, project.default_branch),
            )
            for file in project.files:
                try:
                    self._insert_file(conn, file)
                except sqlite3.Error as exc:
                    logger.warning("failed to store %s: %s", file.path, exc)

    def _insert_file(self, conn: sqlite3.Connection, file: FileRecord) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO files (id, name, path, content, project_id) "
            "VALUES (?, ?, ?, ?, ?)",
            (file.id, file.name, file.path, file.content, file.project_id),
        )

    def cache_projects(self, projects: list[ProjectRecord]) -> int:
        """Store every project, returning how many were written."""
        stored = 0
        for project in projects:
            try:
                self.upsert_project(project)
                stored += 1
            except sqlite3.Error as exc:
                logger.warning("failed to store project %s: %s", project.name, exc)
        logger.info("cached %d of %d projects", stored, len(projects))
        return stored

    # --- Reads --------------------------------------------------------------

    def select_files(self, project_id: int) -> list[FileRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, path, content, project_id FROM files "
                "WHERE project_id = ? ORDER BY path",
                (project_id,),
            ).fetchall()
        return [
            FileRecord(
                id=row["id"],
                name=row["name"],
                path=row["path"],
                content=row["content"] or "",
                project_id=row["project_id"],
            )
            for row in rows
        ]

    def _select(self, query: str, args: tuple = ()) -> list[ProjectRecord]:
        with self._connect() as conn:
            rows = conn.execute(query, args).fetchall()

        projects = []
        for row in rows:
            project = ProjectRecord(
                id=row["id"],
                name=row["name"],
                description=row["description"] or "",
                default_branch=row["default_branch"] or "",
            )
            try:
                project.files = self.select_files(project.id)
            except sqlite3.Error as exc:
                logger.warning("failed to load files of %s: %s", project.name, exc)
            projects.append(project)
        return projects

    def select_projects(self, names: list[str]) -> list[ProjectRecord]:
        """Return the stored projects whose name is in *names*."""
        if not names:
            return []
        placeholders = ", ".join("?" for _ in names)
        return self._select(
            f"SELECT * FROM projects WHERE name IN ({placeholders}) ORDER BY name",
            tuple(names),
        )

    def select_all_projects(self) -> list[ProjectRecord]:
        return self._select("SELECT * FROM projects ORDER BY name")

    def project_names(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name FROM projects ORDER BY name").fetchall()
        return [row["name"] for row in rows]
