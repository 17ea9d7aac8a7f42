"""Log handlers for ingestion runs.

Every component logs under the commit_siphon.<component> hierarchy, so a
run configures handlers once on the package logger. GitPython's own
loggers echo every git invocation at DEBUG and are kept at WARNING.
"""

import logging
import sys
from pathlib import Path

PACKAGE_LOGGER = "commit_siphon"

DEFAULT_LOG_DIR = Path.home() / "commit-siphon" / "logs"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Third-party loggers too chatty below WARNING
QUIET_LOGGERS = ("git",)


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Send component logs of one command to <log_dir>/<name>.log.

    Calling it again in the same process leaves the existing handlers in
    place and only updates their level.

    Args:
        name: Command name, used as the log file stem
        log_dir: Log directory (~/commit-siphon/logs/ when None)
        level: Level of the package logger and its handlers
        console: Also write records to stderr

    Returns:
        The package logger
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    for quiet in QUIET_LOGGERS:
        logging.getLogger(quiet).setLevel(max(level, logging.WARNING))

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [logging.FileHandler(log_dir / f"{name}.log", encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Component logger, e.g. get_logger("loader") -> commit_siphon.loader."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
