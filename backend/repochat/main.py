from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.logging import configure_logging
from .middleware.request_id import RequestIdMiddleware
from .routes.sessions import router as sessions_router
from .services.session import SessionStore
from .settings import settings

configure_logging()
logger = logging.getLogger(__name__)


def _allowed_origins() -> list[str]:
    raw = [settings.WEB_ORIGIN, "http://localhost:3000"]
    configured = os.getenv("CORS_ALLOW_ORIGINS", "")
    if configured.strip():
        raw.extend(x.strip() for x in configured.split(","))

    out: list[str] = []
    seen: set[str] = set()
    for value in raw:
        origin = str(value or "").strip()
        if not origin or origin in seen:
            continue
        seen.add(origin)
        out.append(origin)
    return out


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("startup.begin model=%s base=%s", settings.LLM_MODEL, settings.LLM_BASE_URL)
    if getattr(app.state, "sessions", None) is None:
        app.state.sessions = SessionStore()
    logger.info("startup.ready")
    try:
        yield
    finally:
        logger.info("shutdown.done")


app = FastAPI(title="Repo Chat API", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)


@app.get("/health")
async def health():
    return {"ok": True}
