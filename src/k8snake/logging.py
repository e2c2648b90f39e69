"""Structured logging for tunnel, cluster and token events using structlog."""

import logging
import sys

import structlog
from structlog.typing import Processor

# Libraries that log every HTTP request, including token exchanges and
# Kubernetes API reads; kept at WARNING unless asked otherwise
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "kubernetes")


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: str | None = None,
    library_level: str = "WARNING",
) -> None:
    """Configure structured logging for k8snake.

    Log output goes to stderr so it never mixes with a caller's stdout.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, output JSON formatted logs
        log_file: Optional file path to write logs to
        library_level: Minimum level for HTTP and Kubernetes client loggers
    """
    log_level = getattr(logging, level.upper())

    # Replace whatever handlers an earlier call installed
    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(console_handler)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # JSON for log shippers, key=value for terminals
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        root_logger.addHandler(file_handler)

    quiet_level = max(log_level, getattr(logging, library_level.upper()))
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
