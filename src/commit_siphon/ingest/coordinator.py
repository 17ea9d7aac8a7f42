"""Ingestion coordinator: runs repositories through the pipeline concurrently.

Candidate paths found by the locator are fed through a bounded queue to a
fixed pool of worker threads. Each worker materializes, detects, extracts
and loads one repository at a time. In bulk-copy mode workers forward
commit rows through a second bounded queue to a single loader thread
instead of loading them themselves.
"""

import queue
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

from commit_siphon.config import Config
from commit_siphon.discovery.archive import materialize
from commit_siphon.discovery.locator import locate_repositories
from commit_siphon.ingest.history import FetchPolicy, open_repository
from commit_siphon.ingest.state import RunState, Stage
from commit_siphon.logging import get_logger
from commit_siphon.models import Repository
from commit_siphon.store.loader import (
    BulkCopyLoader,
    BulkLoadError,
    CommitRow,
    TransactionalLoader,
    check_commits_empty,
    resolve_rows,
)
from commit_siphon.store.lookup import IdentityLookup
from commit_siphon.store.pool import PostgresPool
from commit_siphon.vcs import detect_vcs

logger = get_logger("coordinator")

# Global flag for graceful shutdown
_shutdown_requested = False

# End-of-stream marker for both queues
_SENTINEL = None


def request_shutdown() -> None:
    """Request graceful shutdown: no new repositories are started."""
    global _shutdown_requested
    _shutdown_requested = True


def is_shutdown_requested() -> bool:
    """Check if shutdown has been requested."""
    return _shutdown_requested


def reset_shutdown() -> None:
    """Reset shutdown flag (useful for testing)."""
    global _shutdown_requested
    _shutdown_requested = False


@dataclass
class RunSummary:
    """Aggregate counts for one ingestion run."""

    discovered: int = 0
    loaded: int = 0
    failed: int = 0
    commits: int = 0
    duplicates: int = 0
    skipped: int = 0


class _CommitStream:
    """Iterates a commit queue until the end-of-stream marker."""

    def __init__(self, commit_queue: queue.Queue) -> None:
        self._queue = commit_queue
        self.closed = False

    def __iter__(self) -> Iterator[CommitRow]:
        while not self.closed:
            row = self._queue.get()
            if row is _SENTINEL:
                self.closed = True
                return
            yield row

    def drain(self) -> None:
        """Discard rows until the end-of-stream marker."""
        while not self.closed:
            if self._queue.get() is _SENTINEL:
                self.closed = True


class IngestionCoordinator:
    """Owns the worker pool and the lifecycle of one ingestion run."""

    def __init__(self, config: Config, pool: PostgresPool, state: RunState | None = None) -> None:
        """Initialize the coordinator.

        Args:
            config: Application configuration
            pool: Shared PostgreSQL connection pool
            state: Optional run state store recording each repository's stage
        """
        self._config = config
        self._pool = pool
        self._state = state
        self._policy = FetchPolicy(
            deltas=config.data.commit_deltas,
            patches=config.data.commit_patches,
        )
        self._summary = RunSummary()
        self._lock = threading.Lock()
        self._abort = threading.Event()
        self._loader_error: BaseException | None = None

    @property
    def summary(self) -> RunSummary:
        return self._summary

    def run(self, root: Path, depth: int = 0) -> RunSummary:
        """Ingest every repository found under root.

        Identifiers are resolved and, in bulk-copy mode, the commits table
        is checked to be empty before any worker starts. Repository
        failures are logged and counted; fatal errors stop dispatch, let
        in-flight repositories clean up and are re-raised.

        Args:
            root: Directory holding the repositories
            depth: Directory depth at which repositories are found

        Returns:
            RunSummary of the run

        Raises:
            LocatorError: If a directory cannot be enumerated
            PreconditionError: If bulk copy is configured and commits exist
            BulkLoadError: If the bulk loader fails
            PostgresPoolError: If the database cannot be reached
        """
        ingest = self._config.ingest

        with self._pool.get_connection() as conn:
            lookup = IdentityLookup.load(conn)
            if ingest.bulk_copy:
                check_commits_empty(conn)

        work_queue: queue.Queue = queue.Queue(maxsize=ingest.work_queue_size)
        loader_thread: threading.Thread | None = None
        commit_queue: queue.Queue | None = None

        if ingest.bulk_copy:
            commit_queue = queue.Queue(maxsize=ingest.commit_queue_size)
            loader = BulkCopyLoader(self._pool, ingest.commit_batch_size)
            loader_thread = threading.Thread(
                target=self._run_loader,
                args=(loader, _CommitStream(commit_queue)),
                name="bulk-loader",
            )
            loader_thread.start()
            sink = self._forwarding_sink(lookup, commit_queue)
        else:
            sink = self._transactional_sink(TransactionalLoader(self._pool, lookup))

        workers = [
            threading.Thread(target=self._worker, args=(work_queue, sink), name=f"worker-{i}")
            for i in range(ingest.worker_count)
        ]
        for worker in workers:
            worker.start()

        logger.info(
            "Starting ingestion: root=%s depth=%d workers=%d bulk_copy=%s deltas=%s",
            root,
            depth,
            len(workers),
            ingest.bulk_copy,
            self._policy.deltas,
        )

        try:
            for path in locate_repositories(root, depth):
                if self._abort.is_set() or is_shutdown_requested():
                    break
                with self._lock:
                    self._summary.discovered += 1
                work_queue.put(path)
        except BaseException:
            self._abort.set()
            raise
        finally:
            for _ in workers:
                work_queue.put(_SENTINEL)
            for worker in workers:
                worker.join()
            if loader_thread is not None and commit_queue is not None:
                commit_queue.put(_SENTINEL)
                loader_thread.join()

        if self._loader_error is not None:
            raise self._loader_error

        logger.info(
            "Ingestion complete: discovered=%d loaded=%d failed=%d commits=%d duplicates=%d skipped=%d",
            self._summary.discovered,
            self._summary.loaded,
            self._summary.failed,
            self._summary.commits,
            self._summary.duplicates,
            self._summary.skipped,
        )
        return self._summary

    def process_repository(self, path: Path, sink: Callable[[Repository], None]) -> bool:
        """Run one repository through the pipeline.

        Any exception marks the repository as failed; it never propagates.
        The materializer's scratch directory is removed before loading.

        Args:
            path: Candidate path
            sink: Loads or forwards the extracted repository

        Returns:
            True if the repository was loaded, False if it failed
        """
        self._record(path, Stage.DISCOVERED)
        try:
            with materialize(
                path, self._config.tmp_dir, self._config.tmp_dir_file_size_limit
            ) as materialized:
                self._record(path, Stage.MATERIALIZED)
                backend = detect_vcs(materialized.history_path)
                self._record(path, Stage.DETECTED)
                repository = open_repository(backend, materialized, self._policy)
                self._record(path, Stage.EXTRACTED, commits=len(repository.commits))
            sink(repository)
        except Exception as e:
            logger.exception("Failed to process repository: path=%s", path)
            self._record(path, Stage.FAILED, error=str(e))
            with self._lock:
                self._summary.failed += 1
            return False

        self._record(path, Stage.LOADED)
        with self._lock:
            self._summary.loaded += 1
        return True

    def _worker(self, work_queue: queue.Queue, sink: Callable[[Repository], None]) -> None:
        while True:
            path = work_queue.get()
            if path is _SENTINEL:
                return
            if self._abort.is_set() or is_shutdown_requested():
                logger.debug("Skipping repository after stop: path=%s", path)
                continue
            self.process_repository(path, sink)

    def _transactional_sink(self, loader: TransactionalLoader) -> Callable[[Repository], None]:
        def sink(repository: Repository) -> None:
            result = loader.load(repository)
            with self._lock:
                self._summary.commits += result.inserted
                self._summary.duplicates += result.duplicates

        return sink

    def _forwarding_sink(
        self, lookup: IdentityLookup, commit_queue: queue.Queue
    ) -> Callable[[Repository], None]:
        def sink(repository: Repository) -> None:
            for row in resolve_rows(lookup, repository):
                if self._loader_error is not None:
                    raise BulkLoadError("bulk loader stopped before the repository was forwarded")
                commit_queue.put(row)

        return sink

    def _run_loader(self, loader: BulkCopyLoader, stream: _CommitStream) -> None:
        try:
            result = loader.load(stream)
        except BaseException as e:
            logger.exception("Bulk loader failed")
            self._loader_error = e
            self._abort.set()
            stream.drain()
            return

        with self._lock:
            self._summary.commits += result.inserted
            self._summary.duplicates += result.duplicates
            self._summary.skipped += result.skipped

    def _record(
        self,
        path: Path,
        stage: Stage,
        commits: int | None = None,
        error: str | None = None,
    ) -> None:
        logger.debug("Repository stage: path=%s stage=%s", path, stage.value)
        if self._state is not None:
            self._state.record(str(path), stage, commits=commits, error=error)
