"""Temporary removal of table constraints and indexes around bulk loads.

Maintaining keys and indexes row by row dominates the cost of large
loads. The bulk loader drops them for the duration of the load and
rebuilds them once at the end.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from psycopg2 import sql

from commit_siphon.logging import get_logger

logger = get_logger("constraints")

# Foreign keys referencing the table, then the table's own primary and foreign keys
CONSTRAINTS_QUERY = """
    SELECT c.conname, c.conrelid::regclass::text, c.contype, pg_get_constraintdef(c.oid)
    FROM pg_constraint c
    WHERE (c.conrelid = %(table)s::regclass AND c.contype IN ('p', 'f'))
       OR (c.confrelid = %(table)s::regclass AND c.contype = 'f'
           AND c.conrelid <> %(table)s::regclass)
    ORDER BY c.conname
"""

# Indexes not backing a constraint
INDEXES_QUERY = """
    SELECT i.schemaname, i.indexname, i.indexdef
    FROM pg_indexes i
    WHERE i.schemaname = current_schema()
      AND i.tablename = %(table)s
      AND i.indexname NOT IN (
          SELECT conname FROM pg_constraint WHERE conrelid = %(table)s::regclass
      )
    ORDER BY i.indexname
"""


@dataclass(frozen=True)
class ConstraintDef:
    name: str
    table: str  # regclass text, already quoted when needed
    kind: str  # "p" primary key, "f" foreign key
    definition: str


@dataclass(frozen=True)
class IndexDef:
    schema: str
    name: str
    definition: str


@dataclass
class SchemaRelaxation:
    """Constraints and indexes captured from a table before dropping them."""

    table: str
    referencing: list[ConstraintDef] = field(default_factory=list)
    foreign_keys: list[ConstraintDef] = field(default_factory=list)
    primary_keys: list[ConstraintDef] = field(default_factory=list)
    indexes: list[IndexDef] = field(default_factory=list)

    @classmethod
    def capture(cls, cur: Any, table: str) -> "SchemaRelaxation":
        """Read the table's keys and indexes from the catalog."""
        relaxation = cls(table=table)

        cur.execute(CONSTRAINTS_QUERY, {"table": table})
        for name, owner, kind, definition in cur.fetchall():
            constraint = ConstraintDef(name=name, table=owner, kind=kind, definition=definition)
            if kind == "p":
                relaxation.primary_keys.append(constraint)
            elif owner == table:
                relaxation.foreign_keys.append(constraint)
            else:
                relaxation.referencing.append(constraint)

        cur.execute(INDEXES_QUERY, {"table": table})
        for schema, name, definition in cur.fetchall():
            relaxation.indexes.append(IndexDef(schema=schema, name=name, definition=definition))

        return relaxation

    def drop_order(self) -> list[ConstraintDef]:
        return self.referencing + self.foreign_keys + self.primary_keys

    def drop(self, cur: Any) -> None:
        """Drop captured constraints (dependents first) and indexes."""
        for constraint in self.drop_order():
            cur.execute(
                sql.SQL("ALTER TABLE {} DROP CONSTRAINT {}").format(
                    sql.SQL(constraint.table), sql.Identifier(constraint.name)
                )
            )
        for index in self.indexes:
            cur.execute(
                sql.SQL("DROP INDEX {}").format(sql.Identifier(index.schema, index.name))
            )

    def restore(self, cur: Any) -> None:
        """Recreate everything dropped, in reverse dependency order."""
        for constraint in reversed(self.drop_order()):
            cur.execute(
                sql.SQL("ALTER TABLE {} ADD CONSTRAINT {} {}").format(
                    sql.SQL(constraint.table),
                    sql.Identifier(constraint.name),
                    sql.SQL(constraint.definition),
                )
            )
        for index in self.indexes:
            cur.execute(sql.SQL(index.definition))

    def __len__(self) -> int:
        return len(self.drop_order()) + len(self.indexes)


@contextmanager
def relaxed_constraints(conn: Any, table: str) -> Iterator[SchemaRelaxation]:
    """Drop a table's keys and indexes for the duration of the context.

    Everything dropped is rebuilt on exit, including when the body raises.
    The drop and the rebuild each run in their own transaction.

    Args:
        conn: psycopg2 connection
        table: Table name

    Yields:
        The captured SchemaRelaxation
    """
    try:
        with conn.cursor() as cur:
            relaxation = SchemaRelaxation.capture(cur, table)
            relaxation.drop(cur)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.info("Dropped constraints and indexes: table=%s count=%d", table, len(relaxation))

    try:
        yield relaxation
    finally:
        # Discard whatever the body left uncommitted before rebuilding
        conn.rollback()
        with conn.cursor() as cur:
            relaxation.restore(cur)
        conn.commit()
        logger.info("Restored constraints and indexes: table=%s count=%d", table, len(relaxation))
