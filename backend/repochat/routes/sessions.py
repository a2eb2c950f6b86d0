from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from ..core.errors import (
    FileResolutionError,
    LLMUpstreamError,
    RepochatError,
    RepositoryError,
    RepositoryNotFoundError,
    RepoValidationError,
    SessionBusyError,
    SessionNotFoundError,
)
from ..models.chat import FileUpdate
from ..services.session import CHAT_FAILURE_TEXT, BrowsingSession, SessionStore

router = APIRouter(prefix="/sessions", tags=["sessions"])
logger = logging.getLogger(__name__)


class LoadRepoReq(BaseModel):
    repo_url: str


class FileEditReq(BaseModel):
    path: str
    content: str


class ChatReq(BaseModel):
    message: str
    image: str | None = None


class AiEditReq(BaseModel):
    prompt: str
    scope: Literal["file", "global"] = "file"
    image: str | None = None


class RewriteReq(BaseModel):
    path: str | None = None
    instruction: str
    image: str | None = None


class CommitReq(BaseModel):
    path: str
    message: str
    token: str
    branch: str | None = None


def get_store(request: Request) -> SessionStore:
    return request.app.state.sessions


def _http_error(err: RepochatError) -> HTTPException:
    if isinstance(err, (SessionNotFoundError, RepositoryNotFoundError, FileResolutionError)):
        return HTTPException(status_code=404, detail=str(err))
    if isinstance(err, SessionBusyError):
        return HTTPException(status_code=409, detail=str(err))
    if isinstance(err, RepoValidationError):
        return HTTPException(status_code=400, detail=str(err))
    if isinstance(err, (RepositoryError, LLMUpstreamError)):
        return HTTPException(status_code=502, detail=str(err))
    return HTTPException(status_code=500, detail=str(err))


def _session(store: SessionStore, session_id: str) -> BrowsingSession:
    try:
        return store.get(session_id)
    except SessionNotFoundError as err:
        raise _http_error(err)


def _update_event(update: FileUpdate) -> dict[str, str]:
    return {
        "event": "file_update",
        "data": json.dumps(
            {"path": update.path, "new_content": update.new_content, "description": update.description},
            ensure_ascii=False,
        ),
    }


StreamItem = tuple[str, Any]


def _update_sink(queue: asyncio.Queue[StreamItem]) -> Callable[[FileUpdate], None]:
    def _push(update: FileUpdate) -> None:
        queue.put_nowait(("file_update", update))

    return _push


async def _pump(fragments: AsyncGenerator[str, None], queue: asyncio.Queue[StreamItem]) -> None:
    """Move engine text into the same queue the update_file notifier writes to."""
    try:
        async for fragment in fragments:
            queue.put_nowait(("token", fragment))
    except LLMUpstreamError:
        queue.put_nowait(("error", CHAT_FAILURE_TEXT))
    except RepochatError as err:
        logger.warning("sessions.stream_failed err=%s", err)
        queue.put_nowait(("error", str(err)))
    except Exception:
        logger.exception("sessions.stream_crashed")
        queue.put_nowait(("error", CHAT_FAILURE_TEXT))
    else:
        queue.put_nowait(("done", None))


async def _event_gen(
    session: BrowsingSession,
    fragments: AsyncGenerator[str, None],
    queue: asyncio.Queue[StreamItem],
) -> AsyncIterator[dict[str, str]]:
    yield {"event": "status", "data": "thinking"}
    answer: list[str] = []
    pump = asyncio.create_task(_pump(fragments, queue))
    try:
        while True:
            kind, payload = await queue.get()
            if kind == "file_update":
                yield _update_event(payload)
            elif kind == "token":
                answer.append(payload)
                yield {"event": "token", "data": payload}
            elif kind == "error":
                yield {"event": "error", "data": json.dumps({"message": payload})}
                return
            else:
                break
    finally:
        if not pump.done():
            pump.cancel()
            with suppress(asyncio.CancelledError):
                await pump
        await fragments.aclose()

    yield {
        "event": "final",
        "data": json.dumps(
            {
                "text": "".join(answer),
                "modified_paths": session.overlay.modified_paths(),
                "active_path": session.active_path,
            },
            ensure_ascii=False,
        ),
    }


@router.post("")
async def load_repo(body: LoadRepoReq, store: SessionStore = Depends(get_store)):
    try:
        session = await store.load(body.repo_url)
    except RepochatError as err:
        raise _http_error(err)
    return {**session.summary(), "tree": [n.model_dump() for n in session.tree.nodes]}


@router.get("/{session_id}")
async def session_summary(session_id: str, store: SessionStore = Depends(get_store)):
    return _session(store, session_id).summary()


@router.delete("/{session_id}")
async def drop_session(session_id: str, store: SessionStore = Depends(get_store)):
    try:
        store.drop(session_id)
    except SessionNotFoundError as err:
        raise _http_error(err)
    return {"ok": True}


@router.get("/{session_id}/tree")
async def session_tree(session_id: str, store: SessionStore = Depends(get_store)):
    session = _session(store, session_id)
    return {"tree": [n.model_dump() for n in session.tree.nodes], "modified_paths": session.overlay.modified_paths()}


@router.get("/{session_id}/file")
async def read_file(session_id: str, path: str, store: SessionStore = Depends(get_store)):
    session = _session(store, session_id)
    try:
        return await session.open_file(path)
    except RepochatError as err:
        raise _http_error(err)


@router.put("/{session_id}/file")
async def edit_file(session_id: str, body: FileEditReq, store: SessionStore = Depends(get_store)):
    session = _session(store, session_id)
    try:
        return session.edit_file(body.path, body.content)
    except RepochatError as err:
        raise _http_error(err)


@router.delete("/{session_id}/file")
async def discard_file(session_id: str, path: str, store: SessionStore = Depends(get_store)):
    session = _session(store, session_id)
    try:
        discarded = session.discard(path)
    except RepochatError as err:
        raise _http_error(err)
    return {"path": path, "discarded": discarded, "modified_paths": session.overlay.modified_paths()}


@router.get("/{session_id}/messages")
async def list_messages(session_id: str, store: SessionStore = Depends(get_store)):
    session = _session(store, session_id)
    return {"messages": [m.model_dump() for m in session.messages]}


@router.post("/{session_id}/chat")
async def chat(session_id: str, body: ChatReq, store: SessionStore = Depends(get_store)):
    session = _session(store, session_id)
    queue: asyncio.Queue[StreamItem] = asyncio.Queue()
    try:
        fragments = session.chat(body.message, image=body.image, on_file_update=_update_sink(queue))
    except RepochatError as err:
        raise _http_error(err)
    return EventSourceResponse(_event_gen(session, fragments, queue))


@router.post("/{session_id}/ai-edit")
async def ai_edit(session_id: str, body: AiEditReq, store: SessionStore = Depends(get_store)):
    session = _session(store, session_id)
    queue: asyncio.Queue[StreamItem] = asyncio.Queue()
    try:
        fragments = session.ai_edit(
            body.prompt, scope=body.scope, image=body.image, on_file_update=_update_sink(queue)
        )
    except RepochatError as err:
        raise _http_error(err)
    return EventSourceResponse(_event_gen(session, fragments, queue))


@router.post("/{session_id}/file/rewrite")
async def rewrite_file(session_id: str, body: RewriteReq, store: SessionStore = Depends(get_store)):
    session = _session(store, session_id)
    path = body.path or session.active_path or ""
    try:
        update = await session.rewrite_file(path, body.instruction, image=body.image)
    except RepochatError as err:
        raise _http_error(err)
    return {"path": update.path, "new_content": update.new_content, "description": update.description}


@router.post("/{session_id}/commit")
async def commit(session_id: str, body: CommitReq, store: SessionStore = Depends(get_store)) -> dict[str, Any]:
    session = _session(store, session_id)
    try:
        return await session.commit(body.path, message=body.message, token=body.token, branch=body.branch)
    except RepochatError as err:
        raise _http_error(err)
