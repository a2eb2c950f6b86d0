from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.paths import normalize_rel_path
from .chat import ToolResult


class _ToolArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ReadFileRequest(_ToolArgs):
    path: str = Field(..., description="Full path of the file relative to the repository root.")

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, v: str) -> str:
        return normalize_rel_path(v)


class UpdateFileRequest(_ToolArgs):
    path: Optional[str] = Field(
        default=None,
        description="Path of the file to create or overwrite. Defaults to the file the user is viewing.",
    )
    code: str = Field(..., description="The complete new content of the file.")
    description: str = Field(..., description="Short summary of the change, shown to the user.")

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return normalize_rel_path(v)


# Closed set of invocations the model may request.
ToolRequest = Union[ReadFileRequest, UpdateFileRequest]


class ReadFileResponse(BaseModel):
    content: str


class UpdateFileResponse(BaseModel):
    result: Literal["ok"] = "ok"


class ToolError(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ToolEnvelope(BaseModel):
    call_id: str
    tool: str
    ok: bool
    duration_ms: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[ToolError] = None

    def to_tool_result(self) -> ToolResult:
        if self.ok and self.result is not None:
            return ToolResult(id=self.call_id, name=self.tool, response=dict(self.result))
        message = self.error.message if self.error else "Tool execution failed"
        return ToolResult(id=self.call_id, name=self.tool, response={"error": message})
