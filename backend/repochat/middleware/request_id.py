from __future__ import annotations

from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..core.request_context import (
    bind_session_id,
    reset_request_id,
    reset_session_id,
    set_request_id,
)


def _session_from_path(path: str) -> str:
    parts = [p for p in str(path or "").split("/") if p]
    if len(parts) >= 2 and parts[0] == "sessions":
        return parts[1]
    return "-"


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
        request_token = set_request_id(request_id)
        session_token = bind_session_id(_session_from_path(request.url.path))
        try:
            response = await call_next(request)
        finally:
            reset_session_id(session_token)
            reset_request_id(request_token)
        response.headers["x-request-id"] = request_id
        return response
