"""Shared fixtures: real git repositories built with GitPython."""

import tarfile
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import git
import pytest

ALICE = git.Actor("Alice", "alice@example.com")
BOB = git.Actor("Bob", "bob@example.com")
BASE_DATE = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def commit_files(repo: git.Repo, files: dict[str, str | bytes], message: str, when: datetime) -> git.Commit:
    """Write files into the working tree and commit them."""
    root = Path(repo.working_tree_dir)
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)
    repo.index.add(list(files))
    stamp = f"{int(when.timestamp())} +0000"
    return repo.index.commit(
        message,
        author=ALICE,
        committer=BOB,
        author_date=stamp,
        commit_date=stamp,
    )


def build_repository(path: Path, url: str = "https://example.com/project.git") -> git.Repo:
    """Create a repository with three commits on main.

    The root commit adds README.md; the second edits it and adds a binary
    file; the third removes a line and adds src/app.py.
    """
    repo = git.Repo.init(path)
    repo.git.symbolic_ref("HEAD", "refs/heads/main")
    repo.create_remote("origin", url)
    commit_files(repo, {"README.md": "one\ntwo\n"}, "Initial commit", BASE_DATE)
    commit_files(
        repo,
        {"README.md": "one\ntwo\nthree\n", "logo.bin": b"\x00\x01\x02\x03"},
        "Add logo",
        BASE_DATE + timedelta(hours=1),
    )
    commit_files(
        repo,
        {"README.md": "one\nthree\n", "src/app.py": "print('hi')\n"},
        "Add app",
        BASE_DATE + timedelta(hours=2),
    )
    return repo


def archive_repository(repo_dir: Path, archive_path: Path, root: str = "project") -> Path:
    """Pack a repository directory into a tar archive under root/."""
    mode = "w:gz" if archive_path.name.endswith((".tar.gz", ".tgz")) else "w"
    with tarfile.open(archive_path, mode) as tar:
        tar.add(repo_dir, arcname=root)
    return archive_path


@pytest.fixture
def git_repo(tmp_path: Path) -> Iterator[git.Repo]:
    """Provide a three-commit git repository with an origin remote."""
    repo = build_repository(tmp_path / "project")
    yield repo
    repo.close()
