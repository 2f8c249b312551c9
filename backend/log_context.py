from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Optional

from config import LOG_LEVEL

CORRELATION_HEADER = "X-Correlation-ID"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] [%(component)s] %(name)s: %(message)s"

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")
_component: ContextVar[str] = ContextVar("component", default="-")


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def set_correlation_id(value: Optional[str]) -> str:
    cid = (value or "").strip() or new_correlation_id()
    _correlation_id.set(cid)
    return cid


def set_component(name: str) -> None:
    _component.set(name)


class ContextFilter(logging.Filter):
    """Stamp every record with the current correlation id and component."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get()
        record.component = _component.get()
        return True


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=(level or LOG_LEVEL), format=LOG_FORMAT)
    context_filter = ContextFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, ContextFilter) for f in handler.filters):
            handler.addFilter(context_filter)
