from __future__ import annotations

import asyncio
import json
import unittest
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from repochat.core.errors import RepositoryError, RepositoryNotFoundError
from repochat.models.chat import RepoDetails, StreamEnd, StreamError, TextFragment, ToolCall, ToolCallBatch
from repochat.models.tree import TreeEntry
from repochat.routes.sessions import _event_gen, _update_sink
from repochat.routes.sessions import router as sessions_router
from repochat.services.session import BrowsingSession, SessionStore
from repochat.services.tree_sync import TreeState, build_tree

DETAILS = RepoDetails(owner="octo", name="hello", default_branch="main")
ENTRIES = [
    TreeEntry(path="README.md", type="blob", url="https://api/blobs/readme"),
    TreeEntry(path="src", type="tree"),
    TreeEntry(path="src/app.py", type="blob", url="https://api/blobs/app"),
]
CONTENT = {"https://api/blobs/readme": "# Hello", "https://api/blobs/app": "print('hi')"}


class _ScriptedChat:
    def __init__(self, turns: list[list[Any]]):
        self.turns = turns

    async def send(self, parts):
        for event in self.turns.pop(0):
            yield event


class _FakeClient:
    def __init__(self):
        self.turns: list[list[Any]] = []
        self.complete = AsyncMock(return_value="print('rewritten')")

    def open_chat(self, history, tools, system_instruction):
        return _ScriptedChat(self.turns)


def _github() -> MagicMock:
    github = MagicMock()
    github.fetch_content = AsyncMock(side_effect=lambda url, path=None: CONTENT[url])
    github.fetch_repo_details = AsyncMock(return_value=DETAILS)
    github.fetch_tree = AsyncMock(return_value=list(ENTRIES))
    github.commit = AsyncMock(return_value={"path": "README.md", "commit_id": "c1", "created": False})
    return github


class SessionRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.github = _github()
        self.llm = _FakeClient()
        app = FastAPI()
        app.state.sessions = SessionStore(github=self.github, client=self.llm)
        app.include_router(sessions_router)
        self.client = TestClient(app)

    def _load(self) -> str:
        resp = self.client.post("/sessions", json={"repo_url": "https://github.com/octo/hello"})
        self.assertEqual(resp.status_code, 200)
        return resp.json()["id"]

    def test_load_returns_tree_and_readme(self) -> None:
        resp = self.client.post("/sessions", json={"repo_url": "https://github.com/octo/hello"})
        body = resp.json()
        self.assertEqual(body["repo"]["name"], "hello")
        self.assertEqual(body["active_path"], "README.md")
        self.assertEqual([n["name"] for n in body["tree"]], ["src", "README.md"])

    def test_invalid_url_returns_400(self) -> None:
        resp = self.client.post("/sessions", json={"repo_url": "https://example.com/x"})
        self.assertEqual(resp.status_code, 400)
        self.github.fetch_repo_details.assert_not_awaited()

    def test_missing_repo_returns_404(self) -> None:
        self.github.fetch_repo_details.side_effect = RepositoryNotFoundError("Repository not found: octo/hello")
        resp = self.client.post("/sessions", json={"repo_url": "https://github.com/octo/hello"})
        self.assertEqual(resp.status_code, 404)

    def test_remote_failure_returns_502(self) -> None:
        self.github.fetch_tree.side_effect = RepositoryError("GitHub tree listing failed (500)")
        resp = self.client.post("/sessions", json={"repo_url": "https://github.com/octo/hello"})
        self.assertEqual(resp.status_code, 502)

    def test_unknown_session_returns_404(self) -> None:
        self.assertEqual(self.client.get("/sessions/nope").status_code, 404)
        self.assertEqual(self.client.get("/sessions/nope/tree").status_code, 404)

    def test_edit_then_discard(self) -> None:
        sid = self._load()
        resp = self.client.put(f"/sessions/{sid}/file", json={"path": "docs/new.md", "content": "hi"})
        self.assertEqual(resp.json(), {"path": "docs/new.md", "created": True, "modified": True})

        tree = self.client.get(f"/sessions/{sid}/tree").json()
        self.assertEqual([n["name"] for n in tree["tree"]], ["docs", "src", "README.md"])
        self.assertEqual(tree["modified_paths"], ["docs/new.md"])

        resp = self.client.delete(f"/sessions/{sid}/file", params={"path": "docs/new.md"})
        self.assertTrue(resp.json()["discarded"])
        self.assertEqual(resp.json()["modified_paths"], [])

    def test_read_missing_file_returns_404(self) -> None:
        sid = self._load()
        resp = self.client.get(f"/sessions/{sid}/file", params={"path": "nope.py"})
        self.assertEqual(resp.status_code, 404)

    def test_chat_streams_tokens_updates_and_final(self) -> None:
        sid = self._load()
        call = ToolCall(id="u1", name="update_file", args={"code": "# Hi", "description": "shorter"})
        self.llm.turns.extend([[ToolCallBatch([call]), StreamEnd()], [TextFragment("Done."), StreamEnd()]])

        resp = self.client.post(f"/sessions/{sid}/chat", json={"message": "shorten the readme"})
        self.assertEqual(resp.status_code, 200)
        text = resp.text
        self.assertIn("event: status", text)
        self.assertIn("event: file_update", text)
        self.assertIn("Done.", text)
        self.assertIn("event: final", text)
        self.assertLess(text.index("event: file_update"), text.index("Done."))

        messages = self.client.get(f"/sessions/{sid}/messages").json()["messages"]
        self.assertEqual([m["role"] for m in messages], ["user", "model"])
        self.assertIn("Done.", messages[1]["text"])

    def test_chat_upstream_failure_emits_error_event(self) -> None:
        sid = self._load()
        self.llm.turns.append([StreamError("boom")])
        resp = self.client.post(f"/sessions/{sid}/chat", json={"message": "hi"})
        self.assertIn("event: error", resp.text)
        self.assertNotIn("event: final", resp.text)

    def test_empty_chat_message_returns_400(self) -> None:
        sid = self._load()
        resp = self.client.post(f"/sessions/{sid}/chat", json={"message": " "})
        self.assertEqual(resp.status_code, 400)

    def test_rewrite_uses_active_file(self) -> None:
        sid = self._load()
        resp = self.client.post(f"/sessions/{sid}/file/rewrite", json={"instruction": "rewrite"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["path"], "README.md")
        self.assertEqual(resp.json()["new_content"], "print('rewritten')")

    def test_commit_without_edit_returns_400(self) -> None:
        sid = self._load()
        resp = self.client.post(f"/sessions/{sid}/commit", json={"path": "README.md", "message": "m", "token": "t"})
        self.assertEqual(resp.status_code, 400)

    def test_commit_after_edit(self) -> None:
        sid = self._load()
        self.client.put(f"/sessions/{sid}/file", json={"path": "README.md", "content": "# Edited"})
        with patch.object(self.github, "commit", new=AsyncMock(return_value={"commit_id": "abc"})) as commit:
            resp = self.client.post(
                f"/sessions/{sid}/commit", json={"path": "README.md", "message": "edit", "token": "t"}
            )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["commit_id"], "abc")
        self.assertEqual(commit.await_args.kwargs["content"], "# Edited")

    def test_drop_session(self) -> None:
        sid = self._load()
        self.assertEqual(self.client.delete(f"/sessions/{sid}").status_code, 200)
        self.assertEqual(self.client.get(f"/sessions/{sid}").status_code, 404)


class _GatedChat:
    """Turn 1 asks for update_file; turn 2 streams nothing until `gate` is set."""

    def __init__(self, gate: asyncio.Event):
        self.gate = gate
        self.turn = 0

    async def send(self, parts):
        self.turn += 1
        if self.turn == 1:
            call = ToolCall(id="u1", name="update_file", args={"path": "README.md", "code": "# Hi", "description": "d"})
            yield ToolCallBatch([call])
            yield StreamEnd()
            return
        await self.gate.wait()
        yield TextFragment("Updated the readme.")
        yield StreamEnd()


class _GatedClient:
    def __init__(self, gate: asyncio.Event):
        self.gate = gate

    def open_chat(self, history, tools, system_instruction):
        return _GatedChat(self.gate)


class ChatEventStreamTests(unittest.IsolatedAsyncioTestCase):
    async def test_file_update_is_sent_before_the_next_turn_streams(self) -> None:
        gate = asyncio.Event()
        session = BrowsingSession(
            DETAILS, TreeState(build_tree(ENTRIES)), github=_github(), client=_GatedClient(gate)
        )
        queue: asyncio.Queue = asyncio.Queue()
        events = _event_gen(session, session.chat("shorten it", on_file_update=_update_sink(queue)), queue)

        async def _consume() -> list[str]:
            seen: list[str] = []
            async for event in events:
                seen.append(event["event"])
                if event["event"] == "file_update":
                    self.assertEqual(json.loads(event["data"])["path"], "README.md")
                    self.assertFalse(gate.is_set())
                    gate.set()
            return seen

        seen = await asyncio.wait_for(_consume(), timeout=5)
        self.assertEqual(seen[0], "status")
        self.assertLess(seen.index("file_update"), seen.index("final"))
        self.assertEqual(seen[-1], "final")
        self.assertFalse(session.busy)

    async def test_closing_the_stream_releases_the_session(self) -> None:
        gate = asyncio.Event()
        session = BrowsingSession(
            DETAILS, TreeState(build_tree(ENTRIES)), github=_github(), client=_GatedClient(gate)
        )
        queue: asyncio.Queue = asyncio.Queue()
        events = _event_gen(session, session.chat("shorten it", on_file_update=_update_sink(queue)), queue)
        async for event in events:
            if event["event"] == "file_update":
                break
        await events.aclose()
        self.assertFalse(session.busy)


if __name__ == "__main__":
    unittest.main()
