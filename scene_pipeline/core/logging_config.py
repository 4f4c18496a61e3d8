"""Structured logging configuration."""

import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

# Every record carries the job and scene it belongs to, "-" when unbound
DEFAULT_EXTRA = {"job_id": "-", "scene_id": "-"}

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[job_id]}</magenta>/<magenta>{extra[scene_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | job={extra[job_id]} scene={extra[scene_id]} | "
    "{name}:{function}:{line} | {message}"
)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    serialize_file: bool = False,
) -> None:
    """
    Configure console and file logging for pipeline runs.

    Console lines show the job and scene a record belongs to; the file
    handler can instead write one JSON object per record.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file
        rotation: Log rotation size
        retention: Log retention period
        serialize_file: Write the file handler as JSON lines
    """
    logger.remove()
    logger.configure(extra=dict(DEFAULT_EXTRA))

    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=log_level, colorize=True)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level=log_level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            serialize=serialize_file,
            enqueue=True,
        )


def get_logger(name: str, job_id: Optional[str] = None, scene_id: Optional[str] = None, **context: Any) -> Any:
    """
    Get a logger bound to a module and, optionally, a job and scene.

    Args:
        name: Logger name (typically __name__)
        job_id: Job the records belong to
        scene_id: Scene the records belong to
        **context: Additional context fields (stage, etc.)

    Returns:
        Logger instance with bound context
    """
    if job_id is not None:
        context["job_id"] = job_id
    if scene_id is not None:
        context["scene_id"] = scene_id
    return logger.bind(name=name, **context)


def scene_logger(base: Any, scene_id: str) -> Any:
    """Narrow an existing (possibly job-bound) logger to one scene."""
    return base.bind(scene_id=scene_id)


setup_logging()
