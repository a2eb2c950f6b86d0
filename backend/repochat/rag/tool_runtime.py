from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ValidationError

from ..core.errors import RepochatError, ToolExecutionError
from ..models.chat import FileUpdate, ToolCall, ToolResult
from ..models.tools import (
    ReadFileRequest,
    ReadFileResponse,
    ToolEnvelope,
    ToolError,
    ToolRequest,
    UpdateFileRequest,
    UpdateFileResponse,
)
from ..services.overlay import FileOverlay
from ..services.tree_sync import TreeState
from ..settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    overlay: FileOverlay
    tree: TreeState
    active_path: str | None = None
    on_file_update: Callable[[FileUpdate], None] | None = None
    read_max_chars: int | None = None


@dataclass
class ToolSpec:
    name: str
    description: str
    model: type[BaseModel]
    parameters: dict[str, Any]
    handler: Callable[[Any, ToolContext], Awaitable[BaseModel]]


READ_FILE_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "Full path of the file, relative to the repository root."},
    },
    "required": ["path"],
}

UPDATE_FILE_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {
            "type": "string",
            "description": "File to create or overwrite. Defaults to the file the user is currently viewing.",
        },
        "code": {"type": "string", "description": "The complete new content of the file."},
        "description": {"type": "string", "description": "Short summary of the change for the user."},
    },
    "required": ["code", "description"],
}


class ToolRuntime:
    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec

    def declarations(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.parameters,
                },
            }
            for spec in self._tools.values()
        ]

    def parse(self, call: ToolCall) -> ToolRequest:
        """Turn an untyped call into one of the known request models or fail."""
        spec = self._tools.get(call.name)
        if not spec:
            raise ToolExecutionError(f"Unknown tool: {call.name}")
        try:
            return spec.model.model_validate(call.args or {})
        except ValidationError as err:
            fields = sorted({".".join(str(x) for x in e.get("loc") or ()) or "args" for e in err.errors()})
            raise ToolExecutionError(f"Invalid arguments for {call.name}: {', '.join(fields)}") from err

    def _error(self, call: ToolCall, code: str, message: str, started: float, **details: Any) -> ToolEnvelope:
        return ToolEnvelope(
            call_id=call.id,
            tool=call.name,
            ok=False,
            duration_ms=int((time.perf_counter() - started) * 1000),
            error=ToolError(code=code, message=message, details=details),
        )

    async def execute(self, call: ToolCall, ctx: ToolContext) -> ToolEnvelope:
        started = time.perf_counter()
        try:
            payload = self.parse(call)
        except ToolExecutionError as err:
            logger.warning("tool.validation_failed tool=%s call_id=%s err=%s", call.name, call.id, err)
            return self._error(call, "validation_error", str(err), started)

        spec = self._tools[call.name]
        try:
            result_obj = await spec.handler(payload, ctx)
        except ToolExecutionError as err:
            logger.info("tool.failed tool=%s call_id=%s err=%s", call.name, call.id, err)
            return self._error(call, "execution_error", str(err), started)
        except RepochatError as err:
            logger.warning("tool.upstream_failed tool=%s call_id=%s err=%s", call.name, call.id, err)
            return self._error(call, "upstream_error", str(err), started)
        except Exception as err:
            logger.exception("tool.execution_failed tool=%s call_id=%s", call.name, call.id)
            return self._error(call, "execution_error", str(err) or type(err).__name__, started)

        result = result_obj.model_dump()
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "tool.success tool=%s call_id=%s duration_ms=%s result_bytes=%s",
            call.name,
            call.id,
            duration_ms,
            len(json.dumps(result, ensure_ascii=False).encode("utf-8")),
        )
        return ToolEnvelope(call_id=call.id, tool=call.name, ok=True, duration_ms=duration_ms, result=result)

    async def dispatch(self, call: ToolCall, ctx: ToolContext) -> ToolResult:
        return (await self.execute(call, ctx)).to_tool_result()


async def read_file(req: ReadFileRequest, ctx: ToolContext) -> ReadFileResponse:
    content = await ctx.overlay.get(req.path)
    cap = ctx.read_max_chars or settings.READ_FILE_MAX_CHARS
    return ReadFileResponse(content=content[:cap])


async def update_file(req: UpdateFileRequest, ctx: ToolContext) -> UpdateFileResponse:
    target: Optional[str] = req.path or ctx.active_path
    if not target:
        raise ToolExecutionError("No target file: pass 'path' or ask the user to open a file first.")

    ctx.overlay.set(target, req.code)
    if ctx.tree.grow(target):
        logger.info("tool.update_file.created path=%s", target)

    if ctx.on_file_update is not None:
        try:
            ctx.on_file_update(FileUpdate(path=target, new_content=req.code, description=req.description))
        except Exception:
            logger.exception("tool.update_file.notify_failed path=%s", target)
    return UpdateFileResponse()


def build_default_tool_runtime() -> ToolRuntime:
    rt = ToolRuntime()
    rt.register(
        ToolSpec(
            name="read_file",
            description=(
                "Reads the content of a file in the repository, including unsaved changes made in this session. "
                "Use it to inspect code before answering or editing."
            ),
            model=ReadFileRequest,
            parameters=READ_FILE_PARAMETERS,
            handler=read_file,
        )
    )
    rt.register(
        ToolSpec(
            name="update_file",
            description=(
                "Creates or overwrites a file with new content. Provide the COMPLETE file content. "
                "If path is omitted the currently viewed file is updated."
            ),
            model=UpdateFileRequest,
            parameters=UPDATE_FILE_PARAMETERS,
            handler=update_file,
        )
    )
    return rt
