from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Literal
from uuid import uuid4

from ..connectors.github import GitHubRepository, parse_repo_url
from ..core.errors import (
    FileResolutionError,
    LLMUpstreamError,
    SessionBusyError,
    SessionNotFoundError,
    SessionValidationError,
)
from ..core.paths import normalize_rel_path
from ..models.chat import ChatMessage, FileUpdate, RepoDetails, UserTurn
from ..rag import prompts
from ..rag.engine import ConversationEngine
from ..rag.llm import ChatClient
from ..rag.tool_runtime import ToolContext, ToolRuntime, build_default_tool_runtime
from ..settings import settings
from .overlay import FileOverlay
from .tree_sync import TreeState, build_tree

logger = logging.getLogger(__name__)

CHAT_FAILURE_TEXT = "Sorry, I encountered an error analyzing the code. Please try again."


def _clean_path(path: str | None) -> str:
    try:
        return normalize_rel_path(path or "")
    except ValueError as err:
        raise SessionValidationError(str(err)) from err


class BrowsingSession:
    """Everything one user sees for one loaded repository.

    The overlay and tree belong to the session and are handed to the tool
    runtime per chat run; nothing here is shared between sessions.
    """

    def __init__(
        self,
        details: RepoDetails,
        tree: TreeState,
        *,
        github: GitHubRepository,
        client: ChatClient,
        runtime: ToolRuntime | None = None,
        session_id: str | None = None,
    ):
        self.id = session_id or uuid4().hex
        self.details = details
        self.tree = tree
        self.github = github
        self.client = client
        self.runtime = runtime or build_default_tool_runtime()
        self.overlay = FileOverlay(self._fetch_remote)
        self.messages: list[ChatMessage] = []
        self.active_path: str | None = None
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def _fetch_remote(self, path: str) -> str:
        node = self.tree.find(path)
        if node is None or node.type != "blob":
            raise FileResolutionError(f"File {path} not found in repository.")
        if not node.url:
            # Created in this session and never fetched from the remote.
            return ""
        return await self.github.fetch_content(node.url, path)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "repo": self.details.model_dump(),
            "active_path": self.active_path,
            "modified_paths": self.overlay.modified_paths(),
            "message_count": len(self.messages),
            "busy": self.busy,
        }

    async def open_file(self, path: str) -> dict[str, Any]:
        p = _clean_path(path)
        node = self.tree.find(p)
        if node is None:
            if not self.overlay.has_edit(p):
                raise FileResolutionError(f"File {p} not found in repository.")
        elif node.type != "blob":
            raise SessionValidationError(f"{p} is a directory")
        content = await self.overlay.get(p)
        self.active_path = p
        return {
            "path": p,
            "content": content,
            "modified": self.overlay.is_modified(p),
        }

    def edit_file(self, path: str, content: str) -> dict[str, Any]:
        p = _clean_path(path)
        self.overlay.set(p, content)
        created = self.tree.grow(p)
        return {"path": p, "created": created, "modified": self.overlay.is_modified(p)}

    def discard(self, path: str) -> bool:
        return self.overlay.discard(_clean_path(path))

    def current_file_context(self) -> dict[str, str] | None:
        if not self.active_path:
            return None
        content = self.overlay.peek(self.active_path)
        if content is None:
            return None
        return {"path": self.active_path, "content": content}

    def _tool_context(self, on_file_update: Callable[[FileUpdate], None] | None) -> ToolContext:
        return ToolContext(
            overlay=self.overlay,
            tree=self.tree,
            active_path=self.active_path,
            on_file_update=on_file_update,
        )

    def chat(
        self,
        text: str,
        *,
        image: str | None = None,
        on_file_update: Callable[[FileUpdate], None] | None = None,
    ) -> AsyncIterator[str]:
        """Validate now, then return the lazy fragment stream for one exchange."""
        if not str(text or "").strip():
            raise SessionValidationError("message text is required")
        if self.busy:
            raise SessionBusyError("A response is already streaming for this session")
        return self._chat_stream(text, image, on_file_update)

    async def _chat_stream(
        self,
        text: str,
        image: str | None,
        on_file_update: Callable[[FileUpdate], None] | None,
    ) -> AsyncIterator[str]:
        # Two streams may pass the check in chat() before either starts; the lock decides.
        if self.busy:
            raise SessionBusyError("A response is already streaming for this session")
        async with self._lock:
            history = list(self.messages)
            user_msg = ChatMessage(role="user", text=text, image=image)
            self.messages.append(user_msg)
            bot_msg = ChatMessage(role="model", is_streaming=True)
            self.messages.append(bot_msg)

            engine = ConversationEngine(self.client, self.runtime)
            turn = UserTurn(text=prompts.user_turn_text(text, self.current_file_context()), image=image)
            system_context = prompts.system_instruction(self.details, self.tree.file_paths())
            logger.info("session.chat.start messages=%s active=%s", len(history), self.active_path)
            try:
                async with aclosing(engine.run(history, turn, system_context, self._tool_context(on_file_update))) as stream:
                    async for fragment in stream:
                        bot_msg.append(fragment)
                        yield fragment
            except LLMUpstreamError:
                logger.exception("session.chat.failed")
                bot_msg.finalize()
                if not bot_msg.text:
                    self.messages.remove(bot_msg)
                self.messages.append(ChatMessage(role="model", text=CHAT_FAILURE_TEXT))
                raise
            finally:
                bot_msg.finalize()

    def ai_edit(
        self,
        prompt: str,
        *,
        scope: Literal["file", "global"] = "file",
        image: str | None = None,
        on_file_update: Callable[[FileUpdate], None] | None = None,
    ) -> AsyncIterator[str]:
        if not str(prompt or "").strip():
            raise SessionValidationError("prompt is required")
        if scope == "global":
            text = prompts.global_edit_task(prompt)
        else:
            text = prompts.file_edit_task(self.active_path, prompt)
        return self.chat(text, image=image, on_file_update=on_file_update)

    async def rewrite_file(self, path: str, instruction: str, *, image: str | None = None) -> FileUpdate:
        if not str(instruction or "").strip():
            raise SessionValidationError("path and instruction are required")
        p = _clean_path(path)
        try:
            code = await self.overlay.get(p)
        except FileResolutionError:
            code = ""
        raw = await self.client.complete(
            prompts.rewrite_messages(code, instruction, p, image),
            model=settings.LLM_EDIT_MODEL or None,
        )
        new_code = prompts.strip_code_fences(raw)
        self.overlay.set(p, new_code)
        self.tree.grow(p)
        logger.info("session.rewrite path=%s chars=%s", p, len(new_code))
        return FileUpdate(path=p, new_content=new_code, description=instruction.strip())

    async def commit(self, path: str, *, message: str, token: str, branch: str | None = None) -> dict[str, Any]:
        p = _clean_path(path)
        if not str(message or "").strip():
            raise SessionValidationError("commit message is required")
        if not self.overlay.has_edit(p):
            raise SessionValidationError(f"No local changes for {p}")
        content = self.overlay.peek(p) or ""
        out = await self.github.commit(
            self.details.owner,
            self.details.name,
            path=p,
            content=content,
            message=message.strip(),
            branch=branch or self.details.default_branch,
            token=token,
        )
        self.overlay.mark_committed(p, content)
        return out


class SessionStore:
    def __init__(
        self,
        *,
        github: GitHubRepository | None = None,
        client: ChatClient | None = None,
        runtime_factory: Callable[[], ToolRuntime] = build_default_tool_runtime,
    ):
        self.github = github or GitHubRepository()
        self.client = client or ChatClient()
        self.runtime_factory = runtime_factory
        self._sessions: dict[str, BrowsingSession] = {}

    async def load(self, repo_url: str) -> BrowsingSession:
        owner, repo = parse_repo_url(repo_url)
        details = await self.github.fetch_repo_details(owner, repo)
        entries = await self.github.fetch_tree(details.owner, details.name, details.default_branch)
        session = BrowsingSession(
            details,
            TreeState(build_tree(entries)),
            github=self.github,
            client=self.client,
            runtime=self.runtime_factory(),
        )
        self._sessions[session.id] = session
        logger.info(
            "session.loaded id=%s repo=%s/%s branch=%s entries=%s",
            session.id,
            details.owner,
            details.name,
            details.default_branch,
            len(entries),
        )

        readme = next((n for n in session.tree.nodes if n.type == "blob" and n.name.lower() == "readme.md"), None)
        if readme is not None:
            try:
                await session.open_file(readme.path)
            except FileResolutionError as err:
                logger.warning("session.readme_unavailable id=%s err=%s", session.id, err)
        return session

    def get(self, session_id: str) -> BrowsingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def drop(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
