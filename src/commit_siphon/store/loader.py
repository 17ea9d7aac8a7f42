"""Loading extracted commits into PostgreSQL.

Two strategies are available. TransactionalLoader inserts one repository
per transaction, commits and their diff deltas. BulkCopyLoader streams
commit rows from many repositories through COPY in fixed-size batches,
with the table's keys and indexes dropped for the duration of the load.
"""

import io
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psycopg2
from psycopg2 import sql

from commit_siphon.fingerprint import commit_fingerprint
from commit_siphon.logging import get_logger
from commit_siphon.models import Commit, DiffDelta, Repository
from commit_siphon.store.constraints import relaxed_constraints
from commit_siphon.store.lookup import IdentityLookup
from commit_siphon.store.pool import PostgresPool

logger = get_logger("loader")

# Errors that leave the connection unusable; anything else is a rejected row
CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)

COMMITS_TABLE = "commits"
DIFF_DELTAS_TABLE = "commit_diff_deltas"

COMMIT_FIELDS = (
    "repository_id",
    "author_id",
    "committer_id",
    "hash",
    "vcs_id",
    "message",
    "author_date",
    "commit_date",
    "file_changed_count",
    "insertions_count",
    "deletions_count",
)

DIFF_DELTA_FIELDS = (
    "commit_id",
    "file_status",
    "is_file_binary",
    "similarity",
    "old_file_path",
    "new_file_path",
)


class PreconditionError(Exception):
    """Raised when the target store is not in the state a load requires."""


class MissingRepositoryError(Exception):
    """Raised when a repository has no row in the repositories table."""


class BulkLoadError(Exception):
    """Raised when a bulk-copy batch cannot be committed."""


class InvalidRowError(ValueError):
    """Raised when a commit cannot be represented as a database row."""


def insert_query(table: str, fields: tuple[str, ...]) -> sql.Composed:
    """Build a parameterized INSERT statement."""
    return sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        sql.Identifier(table),
        sql.SQL(", ").join(map(sql.Identifier, fields)),
        sql.SQL(", ").join(sql.Placeholder() * len(fields)),
    )


COMMIT_INSERT = insert_query(COMMITS_TABLE, COMMIT_FIELDS) + sql.SQL(" RETURNING id")
DIFF_DELTA_INSERT = insert_query(DIFF_DELTAS_TABLE, DIFF_DELTA_FIELDS)


@dataclass(frozen=True)
class CommitRow:
    """A commit paired with its resolved database identifiers."""

    repository_id: int
    author_id: int | None
    committer_id: int | None
    commit: Commit

    def values(self, fingerprint: str) -> tuple[Any, ...]:
        """Column values in COMMIT_FIELDS order."""
        c = self.commit
        return (
            self.repository_id,
            self.author_id,
            self.committer_id,
            fingerprint,
            c.vcs_id,
            c.message,
            c.author_date,
            c.commit_date,
            c.file_changed_count,
            c.insertions_count,
            c.deletions_count,
        )


@dataclass
class LoadResult:
    """Counts reported by a loader."""

    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    batches: int = 0


def resolve_rows(lookup: IdentityLookup, repository: Repository) -> list[CommitRow]:
    """Pair a repository's commits with their database identifiers.

    Args:
        lookup: Identifier snapshot
        repository: Extracted repository

    Returns:
        Rows in commit order

    Raises:
        MissingRepositoryError: If the repository's clone URL is unknown
    """
    repository_id = lookup.repository_id(repository.clone_url)
    if repository_id is None:
        raise MissingRepositoryError(
            f"cannot find repository in database: clone_url={repository.clone_url}"
        )
    return [
        CommitRow(
            repository_id=repository_id,
            author_id=lookup.user_id(commit.author.email),
            committer_id=lookup.user_id(commit.committer.email),
            commit=commit,
        )
        for commit in repository.commits
    ]


def delta_values(commit_id: int, delta: DiffDelta) -> tuple[Any, ...]:
    """Column values in DIFF_DELTA_FIELDS order."""
    return (
        commit_id,
        delta.status.value,
        delta.binary,
        delta.similarity,
        delta.old_file_path,
        delta.new_file_path,
    )


def check_commits_empty(conn: Any) -> None:
    """Ensure the commits table holds no rows.

    Raises:
        PreconditionError: If the table is populated
    """
    with conn.cursor() as cur:
        cur.execute(sql.SQL("SELECT EXISTS (SELECT 1 FROM {})").format(sql.Identifier(COMMITS_TABLE)))
        (populated,) = cur.fetchone()
    conn.rollback()
    if populated:
        raise PreconditionError(
            f"table {COMMITS_TABLE} is not empty; bulk copy loading requires an empty table"
        )


def format_copy_value(value: Any) -> str:
    """Render a value in COPY text format.

    Raises:
        InvalidRowError: If the value cannot be stored as PostgreSQL text
    """
    if value is None:
        return "\\N"
    if isinstance(value, bool):
        return "t" if value else "f"
    if isinstance(value, datetime):
        return value.isoformat()

    text = str(value)
    if "\x00" in text:
        raise InvalidRowError("NUL character in text value")
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise InvalidRowError("text value is not valid UTF-8") from e
    return (
        text.replace("\\", "\\\\")
        .replace("\t", "\\t")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def format_copy_row(values: tuple[Any, ...]) -> str:
    """Render one row as a line of COPY text format."""
    return "\t".join(format_copy_value(value) for value in values) + "\n"


class TransactionalLoader:
    """Loads each repository in its own transaction.

    A repository's commits become visible all at once or not at all.
    """

    def __init__(self, pool: PostgresPool, lookup: IdentityLookup) -> None:
        self._pool = pool
        self._lookup = lookup

    def load(self, repository: Repository) -> LoadResult:
        """Insert a repository's commits and their diff deltas.

        Commits whose fingerprint is already stored for the repository are
        skipped.

        Args:
            repository: Extracted repository

        Returns:
            LoadResult with inserted and duplicate counts

        Raises:
            MissingRepositoryError: If the repository is not in the database
        """
        rows = resolve_rows(self._lookup, repository)
        repository_id = self._lookup.repository_id(repository.clone_url)
        result = LoadResult()

        with self._pool.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT hash FROM commits WHERE repository_id = %s AND hash IS NOT NULL",
                        (repository_id,),
                    )
                    existing = {fingerprint for (fingerprint,) in cur.fetchall()}

                    for row in rows:
                        fingerprint = commit_fingerprint(row.commit)
                        if fingerprint in existing:
                            result.duplicates += 1
                            continue
                        existing.add(fingerprint)

                        cur.execute(COMMIT_INSERT, row.values(fingerprint))
                        (commit_id,) = cur.fetchone()
                        for delta in row.commit.diff_delta or []:
                            cur.execute(DIFF_DELTA_INSERT, delta_values(commit_id, delta))
                        result.inserted += 1
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        result.batches = 1
        logger.info(
            "Loaded repository: name=%s inserted=%d duplicates=%d",
            repository.name,
            result.inserted,
            result.duplicates,
        )
        return result


class BulkCopyLoader:
    """Streams commit rows into the commits table through COPY.

    Keys and indexes of the table are dropped before the first batch and
    rebuilt after the stream ends, including when a batch fails. Rows are
    committed every batch_size rows. A batch the server rejects is copied
    again row by row, each row under a savepoint, so that only the offending
    rows are skipped. Diff deltas are not loaded.
    """

    def __init__(self, pool: PostgresPool, batch_size: int = 1000) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be greater than 0: {batch_size}")
        self._pool = pool
        self._batch_size = batch_size
        self._copy_sql = sql.SQL("COPY {} ({}) FROM STDIN").format(
            sql.Identifier(COMMITS_TABLE),
            sql.SQL(", ").join(map(sql.Identifier, COMMIT_FIELDS)),
        )

    def load(self, rows: Iterable[CommitRow]) -> LoadResult:
        """Copy rows into the commits table.

        Malformed rows, and rows the server rejects, are skipped and
        counted. A row whose fingerprint was already seen for the same
        repository during this load is counted as a duplicate.

        Args:
            rows: Commit rows, consumed lazily

        Returns:
            LoadResult with inserted, duplicate, skipped and batch counts

        Raises:
            BulkLoadError: If the connection fails while copying or committing
        """
        result = LoadResult()
        seen: set[tuple[int, str]] = set()
        batch: list[str] = []

        with self._pool.get_connection() as conn:
            with relaxed_constraints(conn, COMMITS_TABLE):
                for row in rows:
                    fingerprint = commit_fingerprint(row.commit)
                    key = (row.repository_id, fingerprint)
                    if key in seen:
                        result.duplicates += 1
                        continue

                    try:
                        if not row.commit.vcs_id:
                            raise InvalidRowError("empty VCS id")
                        line = format_copy_row(row.values(fingerprint))
                    except InvalidRowError as e:
                        result.skipped += 1
                        logger.warning(
                            "Skipping malformed commit: vcs_id=%s error=%s", row.commit.vcs_id, e
                        )
                        continue

                    seen.add(key)
                    batch.append(line)
                    if len(batch) >= self._batch_size:
                        self._flush(conn, batch, result)
                        batch = []

                if batch:
                    self._flush(conn, batch, result)

        logger.info(
            "Bulk load complete: inserted=%d duplicates=%d skipped=%d batches=%d",
            result.inserted,
            result.duplicates,
            result.skipped,
            result.batches,
        )
        return result

    def _flush(self, conn: Any, batch: list[str], result: LoadResult) -> None:
        inserted = len(batch)
        try:
            with conn.cursor() as cur:
                cur.copy_expert(self._copy_sql, io.StringIO("".join(batch)))
            conn.commit()
        except CONNECTION_ERRORS as e:
            conn.rollback()
            raise BulkLoadError(f"cannot commit batch {result.batches + 1}: {e}") from e
        except psycopg2.Error as e:
            conn.rollback()
            logger.warning(
                "Batch rejected, copying row by row: batch=%d error=%s", result.batches + 1, e
            )
            inserted = self._flush_rows(conn, batch, result)

        result.batches += 1
        result.inserted += inserted
        logger.debug("Committed batch: batch=%d rows=%d", result.batches, inserted)

    def _flush_rows(self, conn: Any, batch: list[str], result: LoadResult) -> int:
        inserted = 0
        try:
            with conn.cursor() as cur:
                for line in batch:
                    cur.execute("SAVEPOINT bulk_row")
                    try:
                        cur.copy_expert(self._copy_sql, io.StringIO(line))
                    except CONNECTION_ERRORS:
                        raise
                    except psycopg2.Error as e:
                        cur.execute("ROLLBACK TO SAVEPOINT bulk_row")
                        result.skipped += 1
                        logger.warning("Skipping rejected commit row: error=%s", e)
                        continue
                    cur.execute("RELEASE SAVEPOINT bulk_row")
                    inserted += 1
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise BulkLoadError(f"cannot commit batch {result.batches + 1}: {e}") from e
        return inserted
