"""PostgreSQL connection pool.

Provides a thread-safe connection pool shared by extraction workers and
the bulk loader.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Self

import psycopg2
from psycopg2.extensions import connection as PgConnection  # noqa: N812
from psycopg2.pool import ThreadedConnectionPool

from commit_siphon.config import DatabaseConfig
from commit_siphon.logging import get_logger

logger = get_logger("pool")


class PostgresPoolError(Exception):
    """Exception raised when PostgreSQL pool operations fail."""


class PostgresPool:
    """Thread-safe PostgreSQL connection pool.

    Example:
        >>> with PostgresPool(config.database, max_connections=6) as pool:
        ...     with pool.get_connection() as conn:
        ...         with conn.cursor() as cur:
        ...             cur.execute("SELECT 1")
    """

    def __init__(self, config: DatabaseConfig, max_connections: int | None = None) -> None:
        """Initialize PostgreSQL connection pool.

        Args:
            config: Database connection parameters
            max_connections: Pool size override; the larger of this and the
                configured maximum is used

        Raises:
            PostgresPoolError: If the database cannot be reached
        """
        self._config = config
        maxconn = max(config.max_connections, max_connections or 0)

        try:
            self.pool = ThreadedConnectionPool(
                minconn=config.min_connections,
                maxconn=maxconn,
                host=config.hostname,
                port=config.port,
                dbname=config.dbname,
                user=config.username,
                password=config.password,
                sslmode=config.ssl_mode,
            )
        except psycopg2.Error as e:
            logger.exception("Failed to initialize PostgreSQL pool: host=%s", config.hostname)
            raise PostgresPoolError(f"Failed to initialize PostgreSQL pool: {e}") from e

        logger.info(
            "PostgreSQL pool initialized: host=%s database=%s max_connections=%d",
            config.hostname,
            config.dbname,
            maxconn,
        )

    @contextmanager
    def get_connection(self) -> Generator[PgConnection, None, None]:
        """Check a connection out of the pool for the duration of the context.

        Yields:
            PostgreSQL connection

        Raises:
            PostgresPoolError: If no connection can be checked out
        """
        try:
            conn = self.pool.getconn()
        except psycopg2.Error as e:
            raise PostgresPoolError(f"Failed to get connection from pool: {e}") from e

        try:
            yield conn
        finally:
            self.pool.putconn(conn)

    def close_all(self) -> None:
        """Close all connections in the pool."""
        self.pool.closeall()
        logger.info("PostgreSQL pool closed: host=%s", self._config.hostname)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close_all()
