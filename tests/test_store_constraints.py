"""Tests for constraint relaxation around bulk loads."""

from unittest.mock import MagicMock

import pytest

from commit_siphon.store.constraints import (
    CONSTRAINTS_QUERY,
    INDEXES_QUERY,
    SchemaRelaxation,
    relaxed_constraints,
)

CONSTRAINT_ROWS = [
    ("commit_diff_deltas_commit_id_fkey", "commit_diff_deltas", "f", "FOREIGN KEY (commit_id) REFERENCES commits(id)"),
    ("commits_author_id_fkey", "commits", "f", "FOREIGN KEY (author_id) REFERENCES users(id)"),
    ("commits_pkey", "commits", "p", "PRIMARY KEY (id)"),
]
INDEX_ROWS = [
    ("public", "commits_vcs_id_idx", "CREATE INDEX commits_vcs_id_idx ON public.commits USING btree (vcs_id)"),
]


def make_conn(constraint_rows=CONSTRAINT_ROWS, index_rows=INDEX_ROWS) -> tuple[MagicMock, MagicMock]:
    conn = MagicMock()
    cursor = MagicMock()
    cursor.fetchall.side_effect = [list(constraint_rows), list(index_rows)]
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn, cursor


def statements(cursor: MagicMock) -> list[str]:
    """Render executed statements, composed SQL included, as plain text."""
    rendered = []
    for call in cursor.execute.call_args_list:
        query = call.args[0]
        rendered.append(query if isinstance(query, str) else repr(query))
    return rendered


class TestSchemaRelaxation:
    """Tests for SchemaRelaxation."""

    def test_capture_classifies_constraints(self) -> None:
        _, cursor = make_conn()

        relaxation = SchemaRelaxation.capture(cursor, "commits")

        assert [c.name for c in relaxation.referencing] == ["commit_diff_deltas_commit_id_fkey"]
        assert [c.name for c in relaxation.foreign_keys] == ["commits_author_id_fkey"]
        assert [c.name for c in relaxation.primary_keys] == ["commits_pkey"]
        assert [i.name for i in relaxation.indexes] == ["commits_vcs_id_idx"]
        assert len(relaxation) == 4
        cursor.execute.assert_any_call(CONSTRAINTS_QUERY, {"table": "commits"})
        cursor.execute.assert_any_call(INDEXES_QUERY, {"table": "commits"})

    def test_drop_order_dependents_first(self) -> None:
        _, cursor = make_conn()
        relaxation = SchemaRelaxation.capture(cursor, "commits")

        names = [c.name for c in relaxation.drop_order()]

        assert names == [
            "commit_diff_deltas_commit_id_fkey",
            "commits_author_id_fkey",
            "commits_pkey",
        ]

    def test_drop_and_restore_statements(self) -> None:
        _, cursor = make_conn()
        relaxation = SchemaRelaxation.capture(cursor, "commits")
        cursor.execute.reset_mock()

        relaxation.drop(cursor)
        dropped = statements(cursor)
        cursor.execute.reset_mock()
        relaxation.restore(cursor)
        restored = statements(cursor)

        assert len(dropped) == 4
        assert "DROP CONSTRAINT" in dropped[0] and "commit_diff_deltas_commit_id_fkey" in dropped[0]
        assert "DROP INDEX" in dropped[-1]
        assert len(restored) == 4
        # Primary key comes back before the foreign keys that depend on it
        assert "commits_pkey" in restored[0]
        assert "commit_diff_deltas_commit_id_fkey" in restored[2]
        assert "CREATE INDEX commits_vcs_id_idx" in restored[3]


class TestRelaxedConstraints:
    """Tests for relaxed_constraints()."""

    def test_restores_after_body(self) -> None:
        conn, cursor = make_conn()

        with relaxed_constraints(conn, "commits") as relaxation:
            assert len(relaxation) == 4
            cursor.execute.reset_mock()

        assert len(statements(cursor)) == 4
        assert conn.commit.call_count == 2

    def test_restores_when_body_raises(self) -> None:
        conn, cursor = make_conn()

        with pytest.raises(RuntimeError):
            with relaxed_constraints(conn, "commits"):
                cursor.execute.reset_mock()
                raise RuntimeError("batch failed")

        restored = statements(cursor)
        assert len(restored) == 4
        assert "CREATE INDEX" in restored[-1]
        conn.rollback.assert_called()
        assert conn.commit.call_count == 2

    def test_capture_failure_rolls_back(self) -> None:
        conn, cursor = make_conn()
        cursor.fetchall.side_effect = RuntimeError("permission denied")

        with pytest.raises(RuntimeError):
            with relaxed_constraints(conn, "commits"):
                pytest.fail("body must not run")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_table_without_constraints(self) -> None:
        conn, cursor = make_conn(constraint_rows=[], index_rows=[])

        with relaxed_constraints(conn, "commits") as relaxation:
            assert len(relaxation) == 0
