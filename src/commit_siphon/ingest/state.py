"""Ingestion run state tracking with SQLite persistence."""

import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Self


class Stage(StrEnum):
    """Pipeline stages a repository goes through."""

    DISCOVERED = "discovered"
    MATERIALIZED = "materialized"
    DETECTED = "detected"
    EXTRACTED = "extracted"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass
class RepositoryState:
    """Last recorded stage of a repository."""

    path: str
    stage: Stage
    commits: int | None = None
    error: str | None = None
    updated_at: int | None = None


class RunState:
    """Manages ingestion state persistence in SQLite database.

    Records the last pipeline stage reached by every candidate path, with
    the error that made it fail, if any. Worker threads share one
    connection, serialized by a lock.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize run state with database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
        """
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create the repositories table if it doesn't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS repositories (
                    path TEXT PRIMARY KEY,
                    stage TEXT NOT NULL,
                    commits INTEGER,
                    error TEXT,
                    updated_at INTEGER
                )
            """)
            self._conn.commit()

    def record(
        self,
        path: str,
        stage: Stage,
        commits: int | None = None,
        error: str | None = None,
    ) -> None:
        """Record that a repository reached a stage.

        The commit count is kept from earlier stages when not given; the
        error is cleared unless given.

        Args:
            path: Candidate path of the repository
            stage: Stage reached
            commits: Number of extracted commits, if known
            error: Error message for a failed repository
        """
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO repositories (path, stage, commits, error, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    stage = excluded.stage,
                    commits = COALESCE(excluded.commits, repositories.commits),
                    error = excluded.error,
                    updated_at = excluded.updated_at
                """,
                (path, stage.value, commits, error, int(time.time())),
            )
            self._conn.commit()

    def get(self, path: str) -> RepositoryState | None:
        """Get the state of a repository.

        Args:
            path: Candidate path of the repository

        Returns:
            RepositoryState if found, None otherwise
        """
        with self._lock:
            row = self._conn.execute(
                """
                SELECT path, stage, commits, error, updated_at
                FROM repositories
                WHERE path = ?
                """,
                (path,),
            ).fetchone()
        if row is None:
            return None
        return self._from_row(row)

    def list_repositories(self, stage: Stage | None = None) -> list[RepositoryState]:
        """List tracked repositories, optionally only those at one stage.

        Returns:
            List of RepositoryState objects ordered by path
        """
        query = "SELECT path, stage, commits, error, updated_at FROM repositories"
        params: tuple[str, ...] = ()
        if stage is not None:
            query += " WHERE stage = ?"
            params = (stage.value,)
        query += " ORDER BY path"

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._from_row(row) for row in rows]

    @staticmethod
    def _from_row(row: sqlite3.Row) -> RepositoryState:
        return RepositoryState(
            path=row["path"],
            stage=Stage(row["stage"]),
            commits=row["commits"],
            error=row["error"],
            updated_at=row["updated_at"],
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()
