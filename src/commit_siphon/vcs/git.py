"""Git backend built on GitPython."""

from collections.abc import Iterator
from pathlib import Path

import git

from commit_siphon.logging import get_logger
from commit_siphon.models import DiffDelta, Developer, FileStatus
from commit_siphon.vcs.base import CommitHeader, DiffResult, VCSBackend, VCSError

logger = get_logger("vcs.git")

# git change type letters (diff --raw) to file status
CHANGE_TYPES: dict[str, FileStatus] = {
    "A": FileStatus.ADDED,
    "D": FileStatus.DELETED,
    "M": FileStatus.MODIFIED,
    "R": FileStatus.RENAMED,
    "C": FileStatus.COPIED,
}


def parse_numstat(output: str) -> tuple[int, int, int, set[str]]:
    """Parse `git diff --numstat -z --no-renames` output.

    Binary files are reported as "-" for both counts; they count as
    changed files but contribute no lines.

    Args:
        output: Raw command output

    Returns:
        Tuple of (files_changed, insertions, deletions, binary_paths)
    """
    files_changed = 0
    insertions = 0
    deletions = 0
    binary_paths: set[str] = set()

    for record in output.split("\x00"):
        record = record.strip("\n")
        if not record:
            continue
        added, deleted, path = record.split("\t", 2)
        files_changed += 1
        if added == "-" or deleted == "-":
            binary_paths.add(path)
            continue
        insertions += int(added)
        deletions += int(deleted)

    return files_changed, insertions, deletions, binary_paths


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="surrogateescape")
    return value


class GitBackend(VCSBackend):
    """Reads git history through GitPython (which drives the git binary)."""

    kind = "git"
    metadata_dir = ".git"

    def open(self, path: Path) -> git.Repo:
        try:
            return git.Repo(path)
        except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as e:
            raise VCSError(f"cannot open git repository: {path}") from e

    def clone_url(self, handle: git.Repo) -> str:
        """Return the origin remote URL, or the first remote's URL."""
        remotes = list(handle.remotes)
        if not remotes:
            raise VCSError("cannot extract git clone url: no remote configured")
        for remote in remotes:
            if remote.name == "origin":
                return remote.url
        return remotes[0].url

    def active_reference(self, handle: git.Repo) -> str:
        if handle.head.is_detached:
            raise VCSError("no branch (detached HEAD state)")
        return handle.head.reference.name

    def walk(self, handle: git.Repo, ref: str) -> Iterator[git.Commit]:
        return handle.iter_commits(ref, topo_order=True)

    def describe(self, commit: git.Commit) -> CommitHeader:
        return CommitHeader(
            vcs_id=commit.hexsha,
            message=_decode(commit.message),
            author=Developer(name=commit.author.name or "", email=commit.author.email or ""),
            committer=Developer(
                name=commit.committer.name or "", email=commit.committer.email or ""
            ),
            author_date=commit.authored_datetime,
            commit_date=commit.committed_datetime,
        )

    def first_parent(self, handle: git.Repo, commit: git.Commit) -> git.Commit | None:
        if not commit.parents:
            return None
        return commit.parents[0]

    def diff(
        self,
        handle: git.Repo,
        parent: git.Commit,
        commit: git.Commit,
        deltas: bool,
        patches: bool,
    ) -> DiffResult:
        output = handle.git.diff(
            parent.hexsha, commit.hexsha, "--", numstat=True, no_renames=True, z=True
        )
        files_changed, insertions, deletions, binary_paths = parse_numstat(output)
        result = DiffResult(
            files_changed=files_changed,
            insertions=insertions,
            deletions=deletions,
        )
        if not deltas:
            return result

        patch_text: dict[str, str] = {}
        if patches:
            for entry in parent.diff(commit, create_patch=True):
                key = entry.b_path or entry.a_path
                patch_text[key] = _decode(entry.diff)

        for entry in parent.diff(commit):
            status = CHANGE_TYPES.get(entry.change_type, FileStatus.UNCLASSIFIED)
            similarity = None
            if status in (FileStatus.RENAMED, FileStatus.COPIED):
                similarity = entry.score
            result.deltas.append(
                DiffDelta(
                    status=status,
                    binary=entry.a_path in binary_paths or entry.b_path in binary_paths,
                    old_file_path=entry.a_path,
                    new_file_path=entry.b_path,
                    similarity=similarity,
                    patch=patch_text.get(entry.b_path or entry.a_path) if patches else None,
                )
            )

        logger.debug(
            "Diffed commit: vcs_id=%s files=%d deltas=%d",
            commit.hexsha,
            files_changed,
            len(result.deltas),
        )
        return result

    def close(self, handle: git.Repo) -> None:
        handle.close()
