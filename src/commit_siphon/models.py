"""Canonical data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class FileStatus(StrEnum):
    """Status of a file touched by a commit."""

    ADDED = "added"
    DELETED = "deleted"
    MODIFIED = "modified"
    RENAMED = "renamed"
    COPIED = "copied"
    UNCLASSIFIED = "unclassified"  # unchanged, ignored, untracked, type change


@dataclass(frozen=True)
class Developer:
    """An author or committer, identified by name and email."""

    name: str
    email: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "email": self.email}


@dataclass
class DiffDelta:
    """Change made to a single file between a commit and its first parent."""

    status: FileStatus
    binary: bool
    old_file_path: str | None
    new_file_path: str | None
    similarity: int | None = None  # 0-100, renamed/copied only
    patch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to output document format, omitting unset fields."""
        doc: dict[str, Any] = {
            "status": self.status.value,
            "binary": self.binary,
        }
        if self.similarity is not None:
            doc["similarity"] = self.similarity
        if self.old_file_path is not None:
            doc["old_file_path"] = self.old_file_path
        if self.new_file_path is not None:
            doc["new_file_path"] = self.new_file_path
        if self.patch is not None:
            doc["patch"] = self.patch
        return doc


@dataclass
class Commit:
    """A normalized commit from any supported VCS."""

    vcs_id: str  # VCS-native identifier (the SHA for git)
    message: str
    author: Developer
    committer: Developer
    author_date: datetime
    commit_date: datetime
    file_changed_count: int = 0
    insertions_count: int = 0
    deletions_count: int = 0
    diff_delta: list[DiffDelta] | None = None  # None when deltas were not fetched

    def to_dict(self) -> dict[str, Any]:
        """Convert to output document format."""
        doc: dict[str, Any] = {
            "vcs_id": self.vcs_id,
            "message": self.message,
            "author": self.author.to_dict(),
            "committer": self.committer.to_dict(),
            "author_date": self.author_date.isoformat(),
            "commit_date": self.commit_date.isoformat(),
            "file_changed_count": self.file_changed_count,
            "insertions_count": self.insertions_count,
            "deletions_count": self.deletions_count,
        }
        if self.diff_delta is not None:
            doc["diff_delta"] = [delta.to_dict() for delta in self.diff_delta]
        return doc


@dataclass
class Repository:
    """A source code repository and the commits of its active branch."""

    name: str
    vcs: str
    clone_url: str  # global identity key
    clone_path: str
    default_branch: str
    commits: list[Commit] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to output document format."""
        return {
            "name": self.name,
            "vcs": self.vcs,
            "clone_url": self.clone_url,
            "clone_path": self.clone_path,
            "default_branch": self.default_branch,
            "commits": [commit.to_dict() for commit in self.commits],
        }


def merge_into_document(document: dict[str, Any], repository: Repository) -> dict[str, Any]:
    """Embed a repository into a separately produced analysis document.

    Args:
        document: Analysis document (e.g. produced by a source analyzer)
        repository: Extracted repository

    Returns:
        A copy of the document with the repository under the "repository" key
    """
    merged = dict(document)
    merged["repository"] = repository.to_dict()
    return merged
