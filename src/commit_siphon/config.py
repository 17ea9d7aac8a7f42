"""Configuration loading and management."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

# SSL modes accepted by libpq, see https://www.postgresql.org/docs/current/libpq-ssl.html
SSL_MODES = ("disable", "require", "verify-ca", "verify-full")

# Smallest archive size limit (in GB) for scratch-directory extraction
MIN_FILE_SIZE_LIMIT = 0.01


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


@dataclass
class DatabaseConfig:
    hostname: str = "localhost"
    port: int = 5432
    username: str = ""
    password: str = ""
    dbname: str = ""
    ssl_mode: str = "disable"
    min_connections: int = 1
    max_connections: int = 10

    def verify(self) -> None:
        if not self.hostname.strip():
            raise ConfigError("database hostname cannot be empty")
        if self.port <= 0:
            raise ConfigError("database port must be greater than 0")
        if not self.username.strip():
            raise ConfigError("database username cannot be empty")
        if not self.dbname.strip():
            raise ConfigError("database name cannot be empty")
        if self.ssl_mode not in SSL_MODES:
            raise ConfigError(f"database ssl_mode must be one of: {', '.join(SSL_MODES)}")
        if self.min_connections < 1 or self.max_connections < self.min_connections:
            raise ConfigError("database connection pool bounds are invalid")


@dataclass
class DataConfig:
    commit_deltas: bool = False
    commit_patches: bool = False

    def verify(self) -> None:
        if self.commit_patches and not self.commit_deltas:
            raise ConfigError("commit patches may only be fetched along with commit deltas")


@dataclass
class IngestConfig:
    workers: int = 0
    queue_size: int = 0
    commit_queue_size: int = 10000
    commit_batch_size: int = 1000
    bulk_copy: bool = False

    @property
    def worker_count(self) -> int:
        """Number of extraction workers, defaulting to the CPU count."""
        if self.workers > 0:
            return self.workers
        return os.cpu_count() or 1

    @property
    def work_queue_size(self) -> int:
        """Bound of the candidate-path queue."""
        if self.queue_size > 0:
            return self.queue_size
        return 2 * self.worker_count

    def verify(self) -> None:
        if self.workers < 0:
            raise ConfigError("ingest workers cannot be negative")
        if self.commit_batch_size <= 0:
            raise ConfigError("ingest commit_batch_size must be greater than 0")
        if self.commit_queue_size <= 0:
            raise ConfigError("ingest commit_queue_size must be greater than 0")


@dataclass
class Config:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    data: DataConfig = field(default_factory=DataConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    tmp_dir: Path | None = None
    tmp_dir_file_size_limit: float = 0.1
    state_db: Path | None = field(
        default_factory=lambda: Path.home() / "commit-siphon" / "state" / "ingest.db"
    )
    log_dir: Path = field(default_factory=lambda: Path.home() / "commit-siphon" / "logs")

    def verify(self, require_database: bool = False) -> None:
        """Check cross-field constraints.

        Args:
            require_database: Also validate the database section (needed
                only when ingesting into PostgreSQL)

        Raises:
            ConfigError: If any value is invalid
        """
        self.data.verify()
        self.ingest.verify()
        if self.ingest.bulk_copy and self.data.commit_deltas:
            raise ConfigError("bulk copy loading only supports commits without deltas")
        if require_database:
            self.database.verify()


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def _optional_path(value: str | None) -> Path | None:
    if not value:
        return None
    return expand_path(value)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file."""
    if config_path is None:
        # Look for config in standard locations
        search_paths = [
            Path.cwd() / "config.yaml",
            Path.home() / ".config" / "commit-siphon" / "config.yaml",
            Path("/etc/commit-siphon/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return Config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    db_data = data.get("database", {})
    database = DatabaseConfig(
        hostname=expand_env_var(str(db_data.get("hostname", "localhost"))),
        port=int(db_data.get("port", 5432)),
        username=expand_env_var(str(db_data.get("username", ""))),
        password=expand_env_var(str(db_data.get("password", ""))),
        dbname=expand_env_var(str(db_data.get("dbname", ""))),
        ssl_mode=db_data.get("ssl_mode", "disable"),
        min_connections=int(db_data.get("min_connections", 1)),
        max_connections=int(db_data.get("max_connections", 10)),
    )

    data_section = data.get("data", {})
    data_config = DataConfig(
        commit_deltas=bool(data_section.get("commit_deltas", False)),
        commit_patches=bool(data_section.get("commit_patches", False)),
    )

    ingest_data = data.get("ingest", {})
    ingest = IngestConfig(
        workers=int(ingest_data.get("workers", 0)),
        queue_size=int(ingest_data.get("queue_size", 0)),
        commit_queue_size=int(ingest_data.get("commit_queue_size", 10000)),
        commit_batch_size=int(ingest_data.get("commit_batch_size", 1000)),
        bulk_copy=bool(ingest_data.get("bulk_copy", False)),
    )

    size_limit = float(data.get("tmp_dir_file_size_limit", 0.1))
    size_limit = max(size_limit, MIN_FILE_SIZE_LIMIT)

    config = Config(
        database=database,
        data=data_config,
        ingest=ingest,
        tmp_dir=_optional_path(data.get("tmp_dir")),
        tmp_dir_file_size_limit=size_limit,
        state_db=_optional_path(data.get("state_db", "~/commit-siphon/state/ingest.db")),
        log_dir=expand_path(data.get("log_dir", "~/commit-siphon/logs")),
    )
    config.verify()
    return config
