# paygate/core/logger.py
from __future__ import annotations
import logging
import sys
import uuid
from typing import Any, Dict, Optional

import structlog
from paygate.core.settings import settings

# provider SDK and http client chatter stays at WARNING unless we are debugging
QUIET_LOGGERS = ("httpx", "httpcore", "stripe")


def _service_fields(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("env", settings.ENV)
    return event_dict


def setup_logging() -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stdout)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if settings.DEV_MODE:
        tail = [structlog.processors.ExceptionRenderer(), structlog.processors.KeyValueRenderer(sort_keys=True)]
    else:
        # every JSON line carries service and env
        tail = [_service_fields, structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared + tail,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def bind_request(method: str, path: str, request_id: Optional[str] = None) -> str:
    """Reset the per-request log context; returns the request id in use."""
    rid = request_id or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid, method=method, path=path)
    return rid
