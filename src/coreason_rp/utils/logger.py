# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_rp

import logging
import os
import sys
from pathlib import Path
from typing import Any

from loguru import logger
from opentelemetry import trace

__all__ = ["logger", "configure_logging"]


class InterceptHandler(logging.Handler):
    """
    Redirects standard logging messages to Loguru.
    httpx and authlib log through the standard library.
    """

    def emit(self, record: logging.LogRecord) -> None:
        # Map to the Loguru level of the same name when one exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno  # type: ignore[assignment]

        # Find caller from where originated the logged message
        frame = logging.currentframe()
        depth = 2
        while frame and (frame.f_code.co_filename == logging.__file__ or frame.f_code.co_filename == __file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def trace_id_injector(record: dict[str, Any]) -> None:
    """
    Injects OpenTelemetry trace_id and span_id into the log record.
    An explicit ``correlation_id`` bound by the caller takes precedence over the trace id.
    """
    span = trace.get_current_span()
    # Only an active, valid span carries ids worth injecting
    ctx = span.get_span_context()
    if ctx.is_valid:
        # Stored in extra so JSON output and format strings can use them
        record["extra"]["trace_id"] = format(ctx.trace_id, "032x")
        record["extra"]["span_id"] = format(ctx.span_id, "016x")
        record["extra"].setdefault("correlation_id", format(ctx.trace_id, "032x"))


def configure_logging() -> None:
    """
    Configures the logger based on environment variables.

    ``COREASON_RP_LOG_LEVEL`` sets the level (default INFO), ``COREASON_RP_LOG_JSON=true``
    switches the console sink to JSON and ``COREASON_RP_LOG_FILE`` enables a rotating JSON file sink.
    Call this again to reload configuration if env vars change.
    """
    log_level = os.getenv("COREASON_RP_LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("COREASON_RP_LOG_JSON", "false").lower() == "true"
    log_file = os.getenv("COREASON_RP_LOG_FILE")

    try:
        # Unknown level names fall back to INFO
        logger.level(log_level)
    except ValueError:
        log_level = "INFO"

    # Drop the default handler and any earlier sinks, install the patcher in one call
    logger.configure(handlers=[], patcher=trace_id_injector)  # type: ignore[arg-type]

    # Sink 1: console
    if log_json:
        # JSON to stdout for containerized deployments
        logger.add(sys.stdout, level=log_level, serialize=True)
    else:
        # Human-readable logs to stderr
        format_str = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        )
        logger.add(sys.stderr, level=log_level, format=format_str)

    # Sink 2: rotating JSON file, only when a path is configured
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            logger.add(
                log_file,
                rotation="500 MB",
                retention="10 days",
                serialize=True,
                enqueue=True,
                level=log_level,
            )
        except (PermissionError, OSError):
            # Read-only filesystem: console logging only
            logger.warning(f"Cannot write log file {log_file}, file logging disabled")

    # Route standard logging through Loguru, replacing any existing config
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Keep the root logger from processing records below the configured level
    numeric_level = logging.getLevelName(log_level)
    if isinstance(numeric_level, int):
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.getLogger().setLevel(logging.INFO)


# Initialize on import
configure_logging()
