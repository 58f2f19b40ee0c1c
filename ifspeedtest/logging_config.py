"""Logging configuration for ifspeedtest."""

import logging
import os
import sys


def configure_logging() -> None:
    """Configure application-wide logging.

    Respects IFSPEEDTEST_LOG_LEVEL environment variable (default: WARNING).
    Logs to stderr with timestamp, level, module name, and message, so the
    result blocks on stdout stay clean.

    Environment Variables:
        IFSPEEDTEST_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
                               Default is WARNING.

    Examples:
        # Default WARNING level
        $ python -m ifspeedtest --ip 192.0.2.10

        # Debug level for troubleshooting probe invocations
        $ IFSPEEDTEST_LOG_LEVEL=DEBUG python -m ifspeedtest --ip 192.0.2.10
    """
    log_level_str = os.environ.get("IFSPEEDTEST_LOG_LEVEL", "WARNING").upper()

    log_level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    log_level = log_level_map.get(log_level_str, logging.WARNING)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info("Logging configured: level=%s", logging.getLevelName(log_level))
