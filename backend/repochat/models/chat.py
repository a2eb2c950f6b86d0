from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field

Role = Literal["user", "model"]


def _new_id() -> str:
    return uuid4().hex


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    role: Role
    text: str = ""
    image: Optional[str] = None
    timestamp: int = Field(default_factory=_now_ms)
    is_streaming: bool = False

    def append(self, fragment: str) -> None:
        if not self.is_streaming:
            raise ValueError("cannot append to a finalized message")
        self.text += fragment

    def finalize(self) -> None:
        self.is_streaming = False


class RepoDetails(BaseModel):
    owner: str
    name: str
    description: Optional[str] = None
    default_branch: str = "main"
    stars: int = 0
    homepage: Optional[str] = None


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    id: str
    name: str
    response: dict[str, Any]

    @property
    def ok(self) -> bool:
        return "error" not in self.response


@dataclass(frozen=True)
class UserTurn:
    text: str
    image: Optional[str] = None


# A turn sent to the model is either the user's message or the tool results
# answering every call of the previous turn.
TurnParts = Union[UserTurn, list[ToolResult]]


@dataclass(frozen=True)
class TextFragment:
    text: str


@dataclass(frozen=True)
class ToolCallBatch:
    calls: list[ToolCall]


@dataclass(frozen=True)
class StreamEnd:
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class StreamError:
    message: str


StreamEvent = Union[TextFragment, ToolCallBatch, StreamEnd, StreamError]


@dataclass(frozen=True)
class FileUpdate:
    path: str
    new_content: str
    description: str = ""
