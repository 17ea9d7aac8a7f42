"""Tests for identifier lookups."""

from unittest.mock import MagicMock

import pytest

from commit_siphon.store.lookup import IdentityLookup


class TestIdentityLookup:
    def test_from_rows(self) -> None:
        lookup = IdentityLookup.from_rows(
            [(1, "alice@example.com"), (2, "bob@example.com")],
            [(10, "https://example.com/project.git")],
        )

        assert lookup.user_id("alice@example.com") == 1
        assert lookup.user_id("carol@example.com") is None
        assert lookup.repository_id("https://example.com/project.git") == 10
        assert lookup.repository_id("https://example.com/other.git") is None

    def test_email_match_is_exact(self) -> None:
        lookup = IdentityLookup.from_rows([(1, "alice@example.com")], [])
        assert lookup.user_id("Alice@Example.com") is None

    def test_snapshot_is_read_only(self) -> None:
        lookup = IdentityLookup.from_rows([(1, "alice@example.com")], [])
        with pytest.raises(TypeError):
            lookup.users["mallory@example.com"] = 2

    def test_load_queries_and_releases_transaction(self) -> None:
        conn = MagicMock()
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.fetchall.side_effect = [
            [(1, "alice@example.com")],
            [(7, "https://example.com/project.git")],
        ]

        lookup = IdentityLookup.load(conn)

        assert lookup.user_id("alice@example.com") == 1
        assert lookup.repository_id("https://example.com/project.git") == 7
        assert cursor.execute.call_count == 2
        conn.rollback.assert_called_once()
