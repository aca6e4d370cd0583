"""
Structured logging configuration.

Usage:
    from stockledger.logging import configure_logging, get_logger

    # In create_app (once at startup)
    configure_logging("stockledger", log_level="INFO")

    # In any module
    logger = get_logger(__name__)
    logger.info("import_receipt_applied", receipt_id=12, entries=3)
"""

import logging
import sys
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor

_configured = False


def configure_logging(service_name: str, log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog on top of stdlib logging.

    Idempotent: only the first call takes effect, later calls only adjust
    the root level so tests can tighten or loosen it.
    """
    global _configured
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    if _configured:
        logging.getLogger().setLevel(level)
        return

    def add_service_name(
        _logger: Any,
        _method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        event_dict["service"] = service_name
        return event_dict

    renderer: Processor = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_name,
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        # Module-level loggers follow later reconfiguration
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    for h in root_logger.handlers[:]:
        root_logger.removeHandler(h)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger for a module (typically ``get_logger(__name__)``)."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
