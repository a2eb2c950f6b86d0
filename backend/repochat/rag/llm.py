from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Optional

import httpx

from ..core.errors import LLMUpstreamError
from ..models.chat import (
    ChatMessage,
    StreamEnd,
    StreamError,
    StreamEvent,
    TextFragment,
    ToolCall,
    ToolCallBatch,
    ToolResult,
    TurnParts,
    UserTurn,
)
from ..settings import settings

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(.+);base64,(.+)$", re.DOTALL)


def _base(llm_base_url: str | None = None) -> str:
    """
    Normalize LLM_BASE_URL so it ends with exactly one '/v1/'.
    Accepts:
      - https://api.openai.com
      - https://api.openai.com/v1
      - http://ollama:11434/v1/
    """
    base = (llm_base_url or settings.LLM_BASE_URL or "https://api.openai.com").rstrip("/")
    if base.endswith("/v1"):
        base = base[:-3]
    return base + "/v1/"


def parse_data_url(data_url: str | None) -> Optional[tuple[str, str]]:
    m = _DATA_URL_RE.match(str(data_url or ""))
    if not m:
        return None
    return m.group(1), m.group(2)


def user_content(text: str, image: str | None) -> Any:
    if not image or parse_data_url(image) is None:
        return text
    return [
        {"type": "text", "text": text},
        {"type": "image_url", "image_url": {"url": image}},
    ]


def history_to_messages(history: list[ChatMessage]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for m in history:
        if m.role == "user":
            out.append({"role": "user", "content": user_content(m.text, m.image)})
        elif m.text:
            out.append({"role": "assistant", "content": m.text})
    return out


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        args = json.loads(raw)
    except ValueError:
        return {"_unparsed_arguments": raw[:2000]}
    if not isinstance(args, dict):
        return {"_unparsed_arguments": raw[:2000]}
    return args


class ChatStream:
    """One conversation with the model; each `send` streams one turn."""

    def __init__(self, client: "ChatClient", messages: list[dict[str, Any]], tools: list[dict[str, Any]]):
        self._client = client
        self._messages = messages
        self._tools = tools

    @property
    def messages(self) -> list[dict[str, Any]]:
        return list(self._messages)

    def _append_parts(self, parts: TurnParts) -> None:
        if isinstance(parts, UserTurn):
            self._messages.append({"role": "user", "content": user_content(parts.text, parts.image)})
            return
        for result in parts:
            self._append_tool_result(result)

    def _append_tool_result(self, result: ToolResult) -> None:
        self._messages.append(
            {
                "role": "tool",
                "tool_call_id": result.id,
                "content": json.dumps(result.response, ensure_ascii=False),
            }
        )

    async def send(self, parts: TurnParts) -> AsyncIterator[StreamEvent]:
        self._append_parts(parts)
        payload: dict[str, Any] = {
            "model": self._client.model,
            "messages": self._messages,
            "temperature": self._client.temperature,
            "stream": True,
        }
        if self._tools:
            payload["tools"] = self._tools
            payload["tool_choice"] = "auto"

        text_parts: list[str] = []
        pending: list[dict[str, Any]] = []
        finish_reason: str | None = None

        try:
            async with self._client.http() as http:
                async with http.stream(
                    "POST",
                    self._client.endpoint("chat/completions"),
                    json=payload,
                    headers=self._client.headers(),
                ) as r:
                    if r.status_code >= 400:
                        body = (await r.aread()).decode("utf-8", errors="replace")
                        yield StreamError(f"LLM request failed ({r.status_code}). {body[:500]}".strip())
                        return
                    async for line in r.aiter_lines():
                        if not line or not line.startswith("data:"):
                            continue
                        data = line.split("data:", 1)[1].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except ValueError:
                            yield StreamError(f"Malformed stream chunk: {data[:200]}")
                            return
                        err = chunk.get("error")
                        if err:
                            yield StreamError(str(err.get("message") if isinstance(err, dict) else err))
                            return
                        choice = (chunk.get("choices") or [{}])[0]
                        delta = choice.get("delta") or {}
                        content = delta.get("content")
                        if content:
                            text_parts.append(content)
                            yield TextFragment(content)
                        for tc in delta.get("tool_calls") or []:
                            idx = int(tc.get("index") or 0)
                            while len(pending) <= idx:
                                pending.append({"id": "", "name": "", "arguments": ""})
                            slot = pending[idx]
                            if tc.get("id"):
                                slot["id"] = tc["id"]
                            fn = tc.get("function") or {}
                            if fn.get("name"):
                                slot["name"] = fn["name"]
                            if fn.get("arguments"):
                                slot["arguments"] += fn["arguments"]
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.HTTPError as err:
            yield StreamError(f"Could not reach LLM endpoint: {err}")
            return

        calls = [
            ToolCall(id=slot["id"] or f"call_{i}", name=slot["name"], args=_parse_arguments(slot["arguments"]))
            for i, slot in enumerate(pending)
        ]
        assistant: dict[str, Any] = {"role": "assistant", "content": "".join(text_parts) or None}
        if calls:
            assistant["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": pending[i]["arguments"] or "{}"},
                }
                for i, c in enumerate(calls)
            ]
        self._messages.append(assistant)

        if calls:
            yield ToolCallBatch(calls)
        yield StreamEnd(finish_reason)


class ChatClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        timeout_sec: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = _base(base_url)
        self.api_key = api_key if api_key is not None else settings.LLM_API_KEY
        self.model = model or settings.LLM_MODEL
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
        self.timeout_sec = timeout_sec or settings.LLM_TIMEOUT_SEC
        self._transport = transport

    def endpoint(self, suffix: str) -> str:
        return self.base_url + suffix

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport)

    def open_chat(
        self,
        history: list[ChatMessage],
        tools: list[dict[str, Any]],
        system_instruction: str,
    ) -> ChatStream:
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_instruction}]
        messages.extend(history_to_messages(history))
        return ChatStream(self, messages, tools)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        max_attempts: int = 3,
    ) -> str:
        payload = {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": False,
        }
        for attempt in range(1, max_attempts + 1):
            try:
                async with self.http() as http:
                    r = await http.post(self.endpoint("chat/completions"), json=payload, headers=self.headers())
            except httpx.HTTPError as err:
                if attempt < max_attempts:
                    await asyncio.sleep(1.5 * attempt)
                    continue
                raise LLMUpstreamError(f"Could not reach LLM endpoint: {err}") from err

            if (r.status_code == 429 or r.status_code >= 500) and attempt < max_attempts:
                retry_after = 0.0
                try:
                    retry_after = float(r.headers.get("retry-after") or 0)
                except ValueError:
                    retry_after = 0.0
                await asyncio.sleep(max(retry_after, 1.5 * attempt))
                continue
            if r.status_code >= 400:
                try:
                    body = r.json()
                except ValueError:
                    body = None
                err = body.get("error") if isinstance(body, dict) else None
                if isinstance(err, dict):
                    detail = str(err.get("message") or "")
                else:
                    detail = str(err or r.text[:500])
                raise LLMUpstreamError(f"LLM request failed ({r.status_code}). {detail}".strip())

            data = r.json()
            return (data.get("choices") or [{}])[0].get("message", {}).get("content", "") or ""

        raise LLMUpstreamError("LLM request failed after retries.")
