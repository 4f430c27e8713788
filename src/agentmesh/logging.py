"""Logging configuration for agentmesh.

Provides centralized logging setup with file output to ~/agentmesh/logs/.
"""

import logging
import sys
from pathlib import Path

# Default log directory
DEFAULT_LOG_DIR = Path.home() / "agentmesh" / "logs"


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure logging for an agentmesh component.

    Creates a logger with both file and optional console handlers.
    Log files are written to ~/agentmesh/logs/<name>.log.

    Args:
        name: Logger name (used for log filename)
        log_dir: Directory for log files (defaults to ~/agentmesh/logs/)
        level: Logging level (defaults to INFO)
        console: Whether to also log to console (defaults to True)

    Returns:
        Configured logger instance
    """
    if log_dir is None:
        log_dir = DEFAULT_LOG_DIR

    log_dir.mkdir(parents=True, exist_ok=True)

    # Component loggers propagate to the package logger, so handlers live there
    # and every module's records end up in the component's file.
    logger = logging.getLogger("agentmesh")
    logger.setLevel(level)

    # Avoid adding duplicate handlers if already configured
    if logger.handlers:
        return get_logger(name)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_file = log_dir / f"{name}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return get_logger(name)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for an agentmesh component.

    This function returns an existing logger or creates a basic one.
    For full configuration with file output, use setup_logging().

    Args:
        name: Logger name (will be prefixed with 'agentmesh.')

    Returns:
        Logger instance
    """
    return logging.getLogger(f"agentmesh.{name}")
