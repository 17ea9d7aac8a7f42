"""Read-only identifier lookups resolved once per run."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Self

from commit_siphon.logging import get_logger

logger = get_logger("lookup")


@dataclass(frozen=True)
class IdentityLookup:
    """Snapshot of user and repository identifiers.

    Built before workers are dispatched and never modified afterwards, so
    workers can read it without synchronization.
    """

    users: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    repositories: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_rows(
        cls,
        user_rows: list[tuple[int, str]],
        repository_rows: list[tuple[int, str]],
    ) -> Self:
        """Build a snapshot from (id, email) and (id, clone_url) rows."""
        users = {email: user_id for user_id, email in user_rows}
        repositories = {clone_url: repo_id for repo_id, clone_url in repository_rows}
        return cls(users=MappingProxyType(users), repositories=MappingProxyType(repositories))

    @classmethod
    def load(cls, conn: Any) -> Self:
        """Query all users and repositories.

        Args:
            conn: psycopg2 connection

        Returns:
            IdentityLookup snapshot
        """
        with conn.cursor() as cur:
            cur.execute("SELECT id, email FROM users WHERE email IS NOT NULL AND email != ''")
            user_rows = cur.fetchall()
            cur.execute("SELECT id, clone_url FROM repositories")
            repository_rows = cur.fetchall()
        conn.rollback()

        lookup = cls.from_rows(user_rows, repository_rows)
        logger.info(
            "Loaded identifiers: users=%d repositories=%d",
            len(lookup.users),
            len(lookup.repositories),
        )
        return lookup

    def user_id(self, email: str) -> int | None:
        """Resolve an email address to a user id (exact match)."""
        return self.users.get(email)

    def repository_id(self, clone_url: str) -> int | None:
        """Resolve a clone URL to a repository id."""
        return self.repositories.get(clone_url)
