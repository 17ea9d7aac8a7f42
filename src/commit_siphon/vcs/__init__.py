"""Backends giving access to version-control history."""

from .base import (
    BackendRegistry,
    CommitHeader,
    DiffResult,
    UnrecognizedVCSError,
    VCSBackend,
    VCSError,
    detect_archive_vcs,
    detect_vcs,
)
from .git import GitBackend

__all__ = [
    "BackendRegistry",
    "CommitHeader",
    "DiffResult",
    "GitBackend",
    "UnrecognizedVCSError",
    "VCSBackend",
    "VCSError",
    "detect_archive_vcs",
    "detect_vcs",
]

# Register backends
BackendRegistry.register(GitBackend())
