#!/usr/bin/env python3
"""
Structured logging setup using structlog on top of the stdlib logger.
"""

import logging
import os
import sys

import structlog


def setup_logging(level=None, fmt=None):
    """
    Configure structlog once for the process.

    Level and format fall back to DEPLOYGUARD_LOG_LEVEL / DEPLOYGUARD_LOG_FORMAT.
    Logs go to stderr so stdout stays clean for reports.
    """
    level = (level or os.environ.get('DEPLOYGUARD_LOG_LEVEL', 'INFO')).upper()
    fmt = fmt or os.environ.get('DEPLOYGUARD_LOG_FORMAT', 'console')

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level, logging.INFO),
        force=True,
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == 'json':
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
