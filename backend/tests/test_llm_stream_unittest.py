from __future__ import annotations

import asyncio
import json
import unittest

import httpx

from repochat.core.errors import LLMUpstreamError
from repochat.models.chat import (
    ChatMessage,
    StreamEnd,
    StreamError,
    TextFragment,
    ToolCallBatch,
    ToolResult,
    UserTurn,
)
from repochat.rag.llm import ChatClient, _base


def _sse(*chunks: dict) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _delta(**delta) -> dict:
    return {"choices": [{"delta": delta, "finish_reason": None}]}


class ChatStreamTests(unittest.TestCase):
    def setUp(self) -> None:
        self.bodies: list[dict] = []
        self.responses: list[httpx.Response] = []

    def _handler(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return self.responses.pop(0)

    def _client(self) -> ChatClient:
        return ChatClient(
            base_url="https://llm.test/v1",
            api_key="k",
            model="m",
            transport=httpx.MockTransport(self._handler),
        )

    def _events(self, chat, parts) -> list:
        async def _go() -> list:
            return [e async for e in chat.send(parts)]

        return asyncio.run(_go())

    def test_base_url_normalization(self) -> None:
        self.assertEqual(_base("https://api.openai.com"), "https://api.openai.com/v1/")
        self.assertEqual(_base("http://ollama:11434/v1/"), "http://ollama:11434/v1/")

    def test_text_is_streamed_in_fragments(self) -> None:
        self.responses.append(
            httpx.Response(200, content=_sse(_delta(content="Hel"), _delta(content="lo")), headers={"content-type": "text/event-stream"})
        )
        history = [ChatMessage(role="user", text="q"), ChatMessage(role="model", text="a")]
        chat = self._client().open_chat(history, [], "sys")
        events = self._events(chat, UserTurn("hi"))
        self.assertEqual(events[:2], [TextFragment("Hel"), TextFragment("lo")])
        self.assertIsInstance(events[-1], StreamEnd)
        sent = self.bodies[0]
        self.assertTrue(sent["stream"])
        self.assertNotIn("tools", sent)
        self.assertEqual([m["role"] for m in sent["messages"]], ["system", "user", "assistant", "user"])
        self.assertEqual(chat.messages[-1], {"role": "assistant", "content": "Hello"})

    def test_tool_call_deltas_are_accumulated(self) -> None:
        self.responses.append(
            httpx.Response(
                200,
                content=_sse(
                    _delta(tool_calls=[{"index": 0, "id": "call_a", "function": {"name": "read_file", "arguments": '{"pa'}}]),
                    _delta(tool_calls=[{"index": 1, "id": "call_b", "function": {"name": "read_file", "arguments": '{"path"'}}]),
                    _delta(tool_calls=[{"index": 0, "function": {"arguments": 'th": "a.py"}'}}]),
                    _delta(tool_calls=[{"index": 1, "function": {"arguments": ': "b.py"}'}}]),
                ),
            )
        )
        self.responses.append(httpx.Response(200, content=_sse(_delta(content="done"))))
        tools = [{"type": "function", "function": {"name": "read_file", "parameters": {}}}]
        chat = self._client().open_chat([], tools, "sys")

        events = self._events(chat, UserTurn("read both"))
        batch = next(e for e in events if isinstance(e, ToolCallBatch))
        self.assertEqual([(c.id, c.args) for c in batch.calls], [("call_a", {"path": "a.py"}), ("call_b", {"path": "b.py"})])
        self.assertEqual(self.bodies[0]["tool_choice"], "auto")

        self._events(
            chat,
            [
                ToolResult(id="call_a", name="read_file", response={"content": "A"}),
                ToolResult(id="call_b", name="read_file", response={"content": "B"}),
            ],
        )
        messages = self.bodies[1]["messages"]
        self.assertEqual([c["id"] for c in messages[-3]["tool_calls"]], ["call_a", "call_b"])
        self.assertEqual(messages[-2], {"role": "tool", "tool_call_id": "call_a", "content": '{"content": "A"}'})
        self.assertEqual(messages[-1]["tool_call_id"], "call_b")

    def test_http_error_becomes_stream_error(self) -> None:
        self.responses.append(httpx.Response(401, json={"error": {"message": "bad key"}}))
        events = self._events(self._client().open_chat([], [], "sys"), UserTurn("hi"))
        self.assertEqual(len(events), 1)
        self.assertIsInstance(events[0], StreamError)
        self.assertIn("401", events[0].message)

    def test_error_chunk_becomes_stream_error(self) -> None:
        self.responses.append(httpx.Response(200, content=_sse(_delta(content="x"), {"error": {"message": "overloaded"}})))
        events = self._events(self._client().open_chat([], [], "sys"), UserTurn("hi"))
        self.assertEqual(events[-1], StreamError("overloaded"))

    def test_image_is_sent_as_content_part(self) -> None:
        self.responses.append(httpx.Response(200, content=_sse(_delta(content="ok"))))
        self._events(self._client().open_chat([], [], "sys"), UserTurn("look", image="data:image/png;base64,AAAA"))
        content = self.bodies[0]["messages"][-1]["content"]
        self.assertEqual(content[0], {"type": "text", "text": "look"})
        self.assertEqual(content[1]["image_url"]["url"], "data:image/png;base64,AAAA")


class CompleteTests(unittest.TestCase):
    def test_complete_returns_message_content(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            self.assertEqual(body["model"], "edit-model")
            self.assertFalse(body["stream"])
            return httpx.Response(200, json={"choices": [{"message": {"content": "new code"}}]})

        client = ChatClient(base_url="https://llm.test", model="m", transport=httpx.MockTransport(handler))
        out = asyncio.run(client.complete([{"role": "user", "content": "x"}], model="edit-model"))
        self.assertEqual(out, "new code")

    def test_complete_raises_on_client_error(self) -> None:
        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "bad request"})

        client = ChatClient(base_url="https://llm.test", model="m", transport=httpx.MockTransport(handler))
        with self.assertRaises(LLMUpstreamError) as ctx:
            asyncio.run(client.complete([{"role": "user", "content": "x"}]))
        self.assertIn("bad request", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
