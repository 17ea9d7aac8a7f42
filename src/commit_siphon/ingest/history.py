"""History extraction: normalizes backend commits into canonical records."""

from dataclasses import dataclass
from typing import Any

from commit_siphon.discovery.archive import MaterializedRepository
from commit_siphon.logging import get_logger
from commit_siphon.models import Commit, Repository
from commit_siphon.vcs import VCSBackend

logger = get_logger("history")


class ExtractionError(Exception):
    """Raised when a repository's history cannot be extracted."""


@dataclass(frozen=True)
class FetchPolicy:
    """Which diff data to attach to extracted commits."""

    deltas: bool = False
    patches: bool = False

    def __post_init__(self) -> None:
        if self.patches and not self.deltas:
            raise ValueError("patches may only be fetched along with deltas")


def extract_commits(
    backend: VCSBackend,
    handle: Any,
    ref: str,
    policy: FetchPolicy,
) -> list[Commit]:
    """Walk history from ref and normalize every commit.

    Commits are returned in the backend's traversal order (descendants
    before ancestors). Root commits have no tree to diff against and are
    skipped. Change counters are always filled in; deltas and patches only
    as the policy asks.

    Args:
        backend: VCS backend the handle belongs to
        handle: Open repository handle
        ref: Reference to walk from
        policy: Data-fetch policy

    Returns:
        List of commits

    Raises:
        ExtractionError: On the first commit that cannot be extracted
    """
    commits: list[Commit] = []
    vcs_id = None

    try:
        for native in backend.walk(handle, ref):
            header = backend.describe(native)
            vcs_id = header.vcs_id

            parent = backend.first_parent(handle, native)
            if parent is None:
                logger.debug("Skipping root commit: vcs_id=%s", vcs_id)
                continue

            diff = backend.diff(handle, parent, native, policy.deltas, policy.patches)

            commits.append(
                Commit(
                    vcs_id=header.vcs_id,
                    message=header.message,
                    author=header.author,
                    committer=header.committer,
                    author_date=header.author_date,
                    commit_date=header.commit_date,
                    file_changed_count=diff.files_changed,
                    insertions_count=diff.insertions,
                    deletions_count=diff.deletions,
                    diff_delta=diff.deltas if policy.deltas else None,
                )
            )
    except ExtractionError:
        raise
    except Exception as e:
        if vcs_id is None:
            raise ExtractionError(f"cannot walk history from {ref}: {e}") from e
        raise ExtractionError(f"cannot extract commit {vcs_id}: {e}") from e

    return commits


def open_repository(
    backend: VCSBackend,
    materialized: MaterializedRepository,
    policy: FetchPolicy,
) -> Repository:
    """Open a materialized repository and extract its history.

    Args:
        backend: Backend detected for the repository
        materialized: Location of the repository on disk
        policy: Data-fetch policy

    Returns:
        Repository with its commits populated

    Raises:
        ExtractionError: If metadata or history cannot be read
    """
    try:
        handle = backend.open(materialized.history_path)
    except Exception as e:
        raise ExtractionError(f"cannot open repository {materialized.history_path}: {e}") from e

    try:
        try:
            clone_url = backend.clone_url(handle)
            branch = backend.active_reference(handle)
        except Exception as e:
            raise ExtractionError(f"cannot read repository metadata: {e}") from e

        repository = Repository(
            name=materialized.clone_path.name,
            vcs=backend.kind,
            clone_url=clone_url,
            clone_path=str(materialized.clone_path),
            default_branch=branch,
        )
        repository.commits = extract_commits(backend, handle, branch, policy)
    finally:
        backend.close(handle)

    logger.info(
        "Extracted repository: name=%s branch=%s commits=%d",
        repository.name,
        repository.default_branch,
        len(repository.commits),
    )
    return repository
