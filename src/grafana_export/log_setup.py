"""Structured logging setup shared by the HTTP and MCP entry points."""
from __future__ import annotations

import logging
from typing import TextIO

import structlog


def configure_logging(stream: TextIO, level: int = logging.INFO) -> None:
    """Emit JSON log lines to *stream*.

    The MCP server must pass ``sys.stderr``: stdout carries the MCP protocol.
    """
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
    )
