"""CLI entry point for commit-siphon.

Allows running the tool as a module:
    python -m commit_siphon
"""

import json
import logging
import signal
import sys
from pathlib import Path
from types import FrameType

import click
import psycopg2

from commit_siphon.config import MIN_FILE_SIZE_LIMIT, Config, ConfigError, load_config
from commit_siphon.discovery.archive import materialize
from commit_siphon.discovery.locator import LocatorError
from commit_siphon.ingest.coordinator import IngestionCoordinator, request_shutdown
from commit_siphon.ingest.history import FetchPolicy, open_repository
from commit_siphon.ingest.state import RunState, Stage
from commit_siphon.logging import get_logger, setup_logging
from commit_siphon.models import merge_into_document
from commit_siphon.store.loader import BulkLoadError, PreconditionError
from commit_siphon.store.pool import PostgresPool, PostgresPoolError
from commit_siphon.vcs import detect_vcs

__version__ = "0.1.0"

logger = get_logger("cli")


def signal_handler(signum: int, frame: FrameType | None) -> None:
    """Handle shutdown signals gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info("Received signal %s, shutting down", sig_name)
    request_shutdown()


def _load(config_path: Path | None) -> Config:
    try:
        config = load_config(config_path)
    except (ConfigError, OSError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)
    return config


def _read_document(source: str) -> dict:
    if source.lower() == "stdin":
        return json.load(sys.stdin)
    with open(source) as f:
        return json.load(f)


@click.group()
@click.version_option(__version__, prog_name="commit-siphon")
def cli() -> None:
    """Extract version-control history and load it into PostgreSQL."""


@cli.command()
@click.argument("repo_path", type=click.Path(exists=True, path_type=Path))
@click.option("--deltas", is_flag=True, help="Fetch commit deltas")
@click.option("--patches", is_flag=True, help="Fetch commit patches (requires --deltas)")
@click.option("--tmp-dir", type=click.Path(file_okay=False, path_type=Path), help="Scratch directory location")
@click.option(
    "--file-size-limit",
    type=float,
    default=0.1,
    show_default=True,
    help="Maximum archive size, in GB, extracted to the scratch directory",
)
@click.option("--merge", "merge_source", help="JSON analysis document to embed the repository in (or 'stdin')")
def extract(
    repo_path: Path,
    deltas: bool,
    patches: bool,
    tmp_dir: Path | None,
    file_size_limit: float,
    merge_source: str | None,
) -> None:
    """Extract one repository's history and print it as JSON."""
    if patches and not deltas:
        raise click.UsageError("--patches may only be used along with --deltas")

    policy = FetchPolicy(deltas=deltas, patches=patches)
    file_size_limit = max(file_size_limit, MIN_FILE_SIZE_LIMIT)
    try:
        with materialize(repo_path, tmp_dir, file_size_limit) as materialized:
            backend = detect_vcs(materialized.history_path)
            repository = open_repository(backend, materialized, policy)
    except Exception as e:
        click.echo(f"Error extracting {repo_path}: {e}", err=True)
        sys.exit(1)

    if merge_source is None:
        document = repository.to_dict()
    else:
        try:
            document = merge_into_document(_read_document(merge_source), repository)
        except (OSError, ValueError) as e:
            click.echo(f"Error reading document {merge_source}: {e}", err=True)
            sys.exit(1)

    click.echo(json.dumps(document))


@cli.command()
@click.argument("repos_root", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, path_type=Path), help="Configuration file")
@click.option("--depth", "-d", default=0, type=click.IntRange(min=0), help="Depth at which repositories are found")
@click.option("--workers", "-w", type=click.IntRange(min=1), help="Number of extraction workers")
@click.option("--bulk-copy", is_flag=True, help="Load commits with COPY (no deltas)")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def ingest(
    repos_root: Path,
    config_path: Path | None,
    depth: int,
    workers: int | None,
    bulk_copy: bool,
    verbose: bool,
) -> None:
    """Ingest every repository under REPOS_ROOT into the database."""
    config = _load(config_path)
    if workers is not None:
        config.ingest.workers = workers
    if bulk_copy:
        config.ingest.bulk_copy = True
    try:
        config.verify(require_database=True)
    except ConfigError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)

    setup_logging("ingest", log_dir=config.log_dir, level=logging.DEBUG if verbose else logging.INFO)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    state = RunState(config.state_db) if config.state_db is not None else None
    try:
        with PostgresPool(config.database, max_connections=config.ingest.worker_count + 2) as pool:
            summary = IngestionCoordinator(config, pool, state).run(repos_root, depth)
    except (LocatorError, PostgresPoolError, PreconditionError, BulkLoadError, psycopg2.Error) as e:
        logger.error("Ingestion aborted: %s", e)
        click.echo(f"Ingestion aborted: {e}", err=True)
        sys.exit(1)
    finally:
        if state is not None:
            state.close()

    click.echo(
        f"Repositories: {summary.discovered} found, {summary.loaded} loaded, {summary.failed} failed"
    )
    click.echo(
        f"Commits: {summary.commits} inserted, {summary.duplicates} duplicates, {summary.skipped} skipped"
    )


@cli.command()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, path_type=Path), help="Configuration file")
@click.option("--stage", type=click.Choice([stage.value for stage in Stage]), help="Only list repositories at this stage")
def status(config_path: Path | None, stage: str | None) -> None:
    """List repositories recorded by previous ingestion runs."""
    config = _load(config_path)
    if config.state_db is None or not config.state_db.exists():
        click.echo("No ingestion state recorded")
        return

    with RunState(config.state_db) as state:
        repositories = state.list_repositories(Stage(stage) if stage else None)

    for repo in repositories:
        line = f"{repo.stage.value:<12} {repo.path}"
        if repo.commits is not None:
            line += f" ({repo.commits} commits)"
        click.echo(line)
        if repo.error:
            click.echo(f"{'':<12} {repo.error}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
