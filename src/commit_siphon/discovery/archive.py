"""Materialization of archived repositories.

A candidate repository may be a working directory or a tar archive of one.
Small archives get their VCS metadata directory extracted into a scratch
directory that is removed once the repository has been processed. Large
archives are assumed to be unpacked next to the archive already.
"""

import os
import shutil
import tarfile
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from commit_siphon.discovery.locator import is_archive, strip_archive_suffix
from commit_siphon.logging import get_logger
from commit_siphon.vcs import BackendRegistry, detect_archive_vcs

logger = get_logger("archive")


class MaterializeError(Exception):
    """Raised when an archived repository cannot be materialized."""


@dataclass
class MaterializedRepository:
    """On-disk location of a repository ready to be opened."""

    history_path: Path  # directory holding the VCS metadata directory
    clone_path: Path  # where the working copy lives (or would live)
    scratch: Path | None = None  # scratch directory owned by the materializer


def bytes_to_gigabytes(size: int) -> float:
    return size / 1_000_000_000


def _metadata_prefixes(root: str) -> list[str]:
    return [f"{root}/{backend.metadata_dir}" for backend in BackendRegistry.backends()]


def _within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def extract_metadata(archive_path: Path, dest: Path) -> int:
    """Extract the root VCS metadata directory of an archive into dest.

    Entries are read sequentially; only those under
    `<archive root>/<metadata dir>/` are written, with the archive root
    prefix stripped. Directories, symbolic links and regular files are
    created; other entry types are ignored. Entries that would resolve
    outside dest, directly or through a symbolic link, are rejected.

    Args:
        archive_path: Path to the tar archive (optionally compressed)
        dest: Existing destination directory

    Returns:
        Number of entries extracted

    Raises:
        MaterializeError: If the archive cannot be read or an entry cannot
            be written
        UnrecognizedVCSError: If the archive holds no supported repository
    """
    root = strip_archive_suffix(archive_path).name
    prefixes = _metadata_prefixes(root)
    names: list[str] = []
    extracted = 0
    dest_root = dest.resolve()

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            for member in tar:
                name = member.name.removeprefix("./").rstrip("/")
                names.append(name)
                if not any(name == p or name.startswith(p + "/") for p in prefixes):
                    continue

                relative = PurePosixPath(name).relative_to(root)
                if ".." in relative.parts:
                    raise MaterializeError(f"archive entry escapes its root: {member.name}")
                target = dest.joinpath(*relative.parts)
                if member.issym():
                    resolved = (target.parent / member.linkname).resolve()
                else:
                    resolved = target.resolve()
                if not _within(target.parent.resolve(), dest_root) or not _within(resolved, dest_root):
                    raise MaterializeError(f"archive entry escapes its root: {member.name}")

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                elif member.issym():
                    target.parent.mkdir(parents=True, exist_ok=True)
                    os.symlink(member.linkname, target)
                elif member.isfile() or member.islnk():
                    target.parent.mkdir(parents=True, exist_ok=True)
                    source = tar.extractfile(member)
                    if source is None:
                        raise MaterializeError(f"cannot read archive entry: {member.name}")
                    with source, open(target, "wb") as out:
                        shutil.copyfileobj(source, out)
                else:
                    continue
                extracted += 1
    except (OSError, tarfile.TarError) as e:
        raise MaterializeError(f"cannot extract {archive_path}: {e}") from e

    detect_archive_vcs(names, root)

    logger.debug("Extracted metadata: archive=%s entries=%d dest=%s", archive_path, extracted, dest)
    return extracted


@contextmanager
def materialize(
    path: Path,
    tmp_dir: Path | None = None,
    size_limit_gb: float = 0.1,
) -> Iterator[MaterializedRepository]:
    """Produce an on-disk repository for a candidate path.

    Directories are used in place. Archives at or below size_limit_gb have
    their metadata extracted into a fresh scratch directory under tmp_dir;
    larger archives resolve to their already unpacked sibling directory.
    A scratch directory created here is removed on exit, whatever the
    outcome; nothing else is ever deleted.

    Args:
        path: Candidate directory or archive
        tmp_dir: Parent of scratch directories (system default when None)
        size_limit_gb: Largest archive size, in GB, extracted to scratch

    Yields:
        MaterializedRepository describing where to read history from

    Raises:
        MaterializeError: If the archive cannot be extracted
    """
    if not is_archive(path):
        yield MaterializedRepository(history_path=path, clone_path=path)
        return

    clone_path = strip_archive_suffix(path)
    try:
        size = path.stat().st_size
    except OSError as e:
        raise MaterializeError(f"cannot stat archive {path}: {e}") from e

    if bytes_to_gigabytes(size) > size_limit_gb:
        logger.info(
            "Archive above size limit, using unpacked directory: archive=%s size=%d dir=%s",
            path,
            size,
            clone_path,
        )
        yield MaterializedRepository(history_path=clone_path, clone_path=clone_path)
        return

    try:
        scratch = Path(tempfile.mkdtemp(prefix="commit-siphon-", dir=tmp_dir))
    except OSError as e:
        raise MaterializeError(f"cannot create scratch directory in {tmp_dir}: {e}") from e

    try:
        extract_metadata(path, scratch)
        yield MaterializedRepository(history_path=scratch, clone_path=clone_path, scratch=scratch)
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
        logger.debug("Removed scratch directory: path=%s", scratch)
