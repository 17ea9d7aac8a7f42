"""VCS backend interface, registry and detection."""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from commit_siphon.models import DiffDelta, Developer

__all__ = [
    "BackendRegistry",
    "CommitHeader",
    "DiffResult",
    "UnrecognizedVCSError",
    "VCSBackend",
    "VCSError",
    "detect_archive_vcs",
    "detect_vcs",
]


class UnrecognizedVCSError(Exception):
    """Raised when a candidate path is not a repository of a supported VCS."""


class VCSError(Exception):
    """Raised by backends when repository metadata cannot be read."""


@dataclass(frozen=True)
class CommitHeader:
    """Identifying fields of a native commit."""

    vcs_id: str
    message: str
    author: Developer
    committer: Developer
    author_date: datetime
    commit_date: datetime


@dataclass
class DiffResult:
    """Tree-to-tree diff between a commit and its first parent."""

    files_changed: int
    insertions: int
    deletions: int
    deltas: list[DiffDelta] = field(default_factory=list)


class VCSBackend(ABC):
    """Capability interface to the history of one kind of VCS.

    Subclasses set `kind` and `metadata_dir` (the hidden directory at the
    root of a working copy) and implement history access. Handles and
    native commits are opaque to callers.
    """

    kind: str
    metadata_dir: str

    def matches(self, path: Path) -> bool:
        """Check whether a directory is a working copy of this VCS."""
        return (path / self.metadata_dir).exists()

    def matches_archive(self, names: Iterable[str], root: str) -> bool:
        """Check whether archive entries contain this VCS's metadata.

        Only the metadata directory at the archive root is significant.

        Args:
            names: Archive entry names
            root: Name of the archive's root directory
        """
        marker = f"{root}/{self.metadata_dir}"
        for name in names:
            name = name.removeprefix("./").rstrip("/")
            if name == marker or name.startswith(marker + "/"):
                return True
        return False

    @abstractmethod
    def open(self, path: Path) -> Any:
        """Open a repository and return a backend handle."""

    @abstractmethod
    def clone_url(self, handle: Any) -> str:
        """Return the URL the repository was cloned from."""

    @abstractmethod
    def active_reference(self, handle: Any) -> str:
        """Return the name of the reference history is walked from."""

    @abstractmethod
    def walk(self, handle: Any, ref: str) -> Iterator[Any]:
        """Yield native commits reachable from ref, descendants first."""

    @abstractmethod
    def describe(self, commit: Any) -> CommitHeader:
        """Extract the identifying fields of a native commit."""

    @abstractmethod
    def first_parent(self, handle: Any, commit: Any) -> Any | None:
        """Return the first parent of a native commit, None for a root commit."""

    @abstractmethod
    def diff(self, handle: Any, parent: Any, commit: Any, deltas: bool, patches: bool) -> DiffResult:
        """Diff a commit's tree against its parent's tree.

        Args:
            handle: Backend handle
            parent: Native parent commit
            commit: Native commit
            deltas: Whether per-file deltas are needed
            patches: Whether deltas should carry patch text
        """

    def close(self, handle: Any) -> None:
        """Release resources held by a handle."""


class BackendRegistry:
    """Registry of VCS backends by kind."""

    _backends: dict[str, VCSBackend] = {}

    @classmethod
    def register(cls, backend: VCSBackend) -> None:
        """Register a backend."""
        cls._backends[backend.kind] = backend

    @classmethod
    def get(cls, kind: str) -> VCSBackend | None:
        """Get backend by VCS kind."""
        return cls._backends.get(kind)

    @classmethod
    def all_kinds(cls) -> list[str]:
        """List all registered VCS kinds."""
        return list(cls._backends.keys())

    @classmethod
    def backends(cls) -> list[VCSBackend]:
        return list(cls._backends.values())


def detect_vcs(path: Path) -> VCSBackend:
    """Detect the VCS of a directory by its root-level metadata directory.

    Args:
        path: Candidate directory

    Returns:
        Backend able to read the repository

    Raises:
        UnrecognizedVCSError: If no registered backend recognizes the path
    """
    if path.is_dir():
        for backend in BackendRegistry.backends():
            if backend.matches(path):
                return backend
    raise UnrecognizedVCSError(f"VCS type not found: {path}")


def detect_archive_vcs(names: Iterable[str], root: str) -> VCSBackend:
    """Detect the VCS of an archived repository from its entry names.

    Args:
        names: Archive entry names
        root: Name of the archive's root directory

    Returns:
        Backend able to read the repository

    Raises:
        UnrecognizedVCSError: If no registered backend recognizes the entries
    """
    names = list(names)
    for backend in BackendRegistry.backends():
        if backend.matches_archive(names, root):
            return backend
    raise UnrecognizedVCSError(f"VCS type not found in archive: root={root}")
