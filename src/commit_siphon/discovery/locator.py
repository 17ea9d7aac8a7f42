"""Repository discovery under a root directory."""

import os
from collections.abc import Iterator
from pathlib import Path

from commit_siphon.logging import get_logger

logger = get_logger("locator")

# File suffixes of packed repositories
ARCHIVE_SUFFIXES = (".tar", ".tar.gz", ".tgz")


class LocatorError(Exception):
    """Raised when a directory cannot be enumerated."""


def is_archive(path: Path) -> bool:
    """Check whether a path names a packed repository archive."""
    return path.name.endswith(ARCHIVE_SUFFIXES)


def strip_archive_suffix(path: Path) -> Path:
    """Return the directory an archive unpacks to (its path without suffix)."""
    for suffix in ARCHIVE_SUFFIXES:
        if path.name.endswith(suffix):
            return path.with_name(path.name[: -len(suffix)])
    return path


def _list_dir(path: Path) -> list[os.DirEntry]:
    try:
        with os.scandir(path) as it:
            return sorted(it, key=lambda entry: entry.name)
    except OSError as e:
        raise LocatorError(f"cannot read directory {path}: {e}") from e


def locate_repositories(root: Path, depth: int = 0) -> Iterator[Path]:
    """Yield candidate repository paths under root.

    At depth 0, every subdirectory of root and every archive file directly
    under it is a candidate. At greater depths only subdirectories are
    descended into. Candidates are not checked for a VCS here.

    Args:
        root: Directory to search
        depth: Number of directory levels between root and the candidates

    Yields:
        Candidate paths (directories or archives), in name order

    Raises:
        LocatorError: If a directory cannot be read
        ValueError: If depth is negative
    """
    if depth < 0:
        raise ValueError(f"depth cannot be negative: {depth}")

    for entry in _list_dir(root):
        path = Path(entry.path)
        if entry.is_dir():
            if depth == 0:
                logger.debug("Found candidate: path=%s", path)
                yield path
            else:
                yield from locate_repositories(path, depth - 1)
        elif depth == 0 and entry.is_file() and is_archive(path):
            logger.debug("Found candidate archive: path=%s", path)
            yield path
