"""Structured logging setup."""

import logging
import logging.handlers
import os
import sys

import structlog


SYSLOG_SOCKET = "/dev/log"


def configure_logging(level: str = "INFO", *, syslog: bool = False) -> None:
    """Route structlog through stdlib logging to stderr or the local syslog.

    Args:
        level: Logging level name
        syslog: Send records to /dev/log instead of stderr
    """
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    if syslog and os.path.exists(SYSLOG_SOCKET):
        handler: logging.Handler = logging.handlers.SysLogHandler(
            address=SYSLOG_SOCKET,
            facility=logging.handlers.SysLogHandler.LOG_USER,
        )
        handler.setFormatter(logging.Formatter("ala-archa: %(message)s"))
        renderer = structlog.processors.KeyValueRenderer(key_order=["event"])
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(message)s"))
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(numeric_level)

    # The bot token is part of the Telegram API URL.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
