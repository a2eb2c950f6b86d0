from __future__ import annotations

import re
from typing import Any

from ..models.chat import RepoDetails
from ..settings import settings
from .llm import user_content

_FENCE_OPEN_RE = re.compile(r"^```[\w-]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")

MAX_LISTED_PATHS = 2000


def system_instruction(repo: RepoDetails | None, file_paths: list[str]) -> str:
    repo_line = f"{repo.owner}/{repo.name} (branch {repo.default_branch})" if repo else "unknown repository"
    listed = file_paths[:MAX_LISTED_PATHS]
    more = len(file_paths) - len(listed)
    structure = "\n".join(f"- {p}" for p in listed) or "- (empty)"
    if more > 0:
        structure += f"\n- ... and {more} more files"
    return (
        "You are an expert Senior Software Engineer and Code Reviewer.\n"
        f"You are assisting a user in viewing and improving the GitHub repository {repo_line}.\n\n"
        "Tools:\n"
        "- read_file(path): read any file of the repository, including files changed in this session.\n"
        "- update_file(path?, code, description): write the COMPLETE new content of a file. "
        "Omit path to update the file the user is viewing. Use a new path to create a file.\n\n"
        "Rules:\n"
        "- Read a file before changing it unless you are creating it.\n"
        "- Never send partial files or diffs to update_file.\n"
        "- After updating files, briefly explain what you changed.\n\n"
        "Output Formatting:\n"
        "- Use Markdown for all responses.\n"
        "- Use code blocks with language specifiers for code.\n"
        "- Be concise but helpful.\n\n"
        "If provided with file context, specifically refer to lines of code if possible.\n"
        "If provided with an image, analyze the visual elements, UI/UX, or errors shown.\n\n"
        "REPOSITORY FILES\n"
        f"{structure}\n"
    )


def user_turn_text(text: str, current_file: dict[str, str] | None) -> str:
    if not current_file:
        return text
    content = str(current_file.get("content") or "")
    cap = settings.CONTEXT_FILE_MAX_CHARS
    note = "\n(Content truncated)" if len(content) > cap else ""
    return (
        "[CONTEXT]\n"
        f"Current File: {current_file.get('path')}\n"
        "File Content:\n"
        "```\n"
        f"{content[:cap]}\n"
        "```"
        f"{note}\n\n"
        "[USER QUERY]\n"
        f"{text}"
    )


def file_edit_task(path: str | None, prompt: str) -> str:
    prefix = f"[TASK: Edit '{path}'] " if path else "[TASK: Edit Repository] "
    return (
        f"{prefix}{prompt}\n\n"
        "Please update the code using the 'update_file' tool. "
        "Check other files with 'read_file' if you need context about imports or styles."
    )


def global_edit_task(prompt: str) -> str:
    return (
        f"[TASK: Global App Edit] {prompt}\n\n"
        "Find the relevant file (search for it or read file structure) and update it using 'update_file'."
    )


def rewrite_messages(code: str, instruction: str, filename: str, image: str | None = None) -> list[dict[str, Any]]:
    system = (
        "You are an expert coding assistant.\n"
        f'The user wants to modify a file named "{filename}".\n'
        "Return ONLY the valid, complete code for the modified file.\n"
        "Do not wrap it in markdown code blocks. Do not include any conversational text.\n"
        "Ensure you preserve the existing functionality unless asked to change it.\n"
        "If an image is provided, use it as a visual reference for the requested changes."
    )
    if code:
        text = f"[ORIGINAL CODE]\n{code}\n\n[INSTRUCTION]\n{instruction}\n"
    else:
        text = f'[INSTRUCTION]\n{instruction}\n\nGenerate the full code for the file "{filename}".\n'
    return [{"role": "system", "content": system}, {"role": "user", "content": user_content(text, image)}]


def strip_code_fences(text: str) -> str:
    out = (text or "").strip()
    out = _FENCE_OPEN_RE.sub("", out, count=1)
    return _FENCE_CLOSE_RE.sub("", out, count=1)
