from __future__ import annotations

import logging
from typing import Any, Dict

import structlog

from forecaster.config import get_settings


def configure_logging(level: str | None = None) -> None:
    """Configure stdlib + structlog to emit JSON logs to stdout."""
    log_level = (level or get_settings().LOG_LEVEL).upper()

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[logging.StreamHandler()],
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            _rename_event_key,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
        wrapper_class=structlog.stdlib.BoundLogger,
    )


def _rename_event_key(logger: Any, name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    if "event" in event_dict:
        return event_dict
    msg = event_dict.pop("msg", None)
    if msg is not None:
        event_dict["event"] = msg
    return event_dict
