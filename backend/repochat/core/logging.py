from __future__ import annotations

import logging

from ..settings import settings
from .request_context import get_request_id, get_session_id


class _RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        record.session_id = get_session_id()
        return True


def configure_logging(level: str | None = None) -> None:
    name = str(level or settings.LOG_LEVEL or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(request_id)s session=%(session_id)s] %(name)s: %(message)s",
        force=True,
    )
    context_filter = _RequestContextFilter()
    root = logging.getLogger()
    for handler in root.handlers:
        handler.addFilter(context_filter)
    # httpx logs every request at INFO; keep it out of the chat stream noise.
    logging.getLogger("httpx").setLevel(logging.WARNING)
