from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from ..core.errors import FileResolutionError, RepositoryError, RepositoryNotFoundError, RepoValidationError
from ..models.chat import RepoDetails
from ..models.tree import TreeEntry
from ..settings import settings

logger = logging.getLogger(__name__)

UNDECODABLE_PLACEHOLDER = "Error: Could not decode file content. It might be binary or too large to preview."

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

BINARY_EXTENSIONS = {
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".webp",
    ".bmp",
    ".ico",
    ".pdf",
    ".zip",
    ".gz",
    ".tgz",
    ".bz2",
    ".7z",
    ".jar",
    ".class",
    ".exe",
    ".dll",
    ".so",
    ".dylib",
    ".woff",
    ".woff2",
    ".ttf",
    ".otf",
    ".mp3",
    ".mp4",
    ".mov",
    ".wasm",
}


def parse_repo_url(url: str) -> tuple[str, str]:
    raw = str(url or "").strip()
    if not raw:
        raise RepoValidationError("Repository URL is required")
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or parsed.hostname != "github.com":
        raise RepoValidationError("Invalid GitHub URL. Format: https://github.com/owner/repo")
    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) < 2:
        raise RepoValidationError("Invalid GitHub URL. Format: https://github.com/owner/repo")
    owner, repo = parts[0], parts[1].removesuffix(".git")
    if not _NAME_RE.match(owner) or not _NAME_RE.match(repo):
        raise RepoValidationError("Invalid GitHub URL. Format: https://github.com/owner/repo")
    return owner, repo


def _is_binary_extension(path: str | None) -> bool:
    p = str(path or "").strip().lower()
    if not p:
        return False
    suffix = PurePosixPath(p).suffix
    return bool(suffix and suffix in BINARY_EXTENSIONS)


def _looks_binary_bytes(raw: bytes) -> bool:
    if not raw:
        return False
    sample = raw[:8192]
    if b"\x00" in sample:
        return True
    try:
        sample.decode("utf-8")
        return False
    except UnicodeDecodeError:
        pass
    text_range = bytes(bytearray({7, 8, 9, 10, 12, 13, 27} | set(range(0x20, 0x7F))))
    non_text = sample.translate(None, text_range)
    return (len(non_text) / max(1, len(sample))) > 0.30


def decode_content(payload: dict[str, Any], path: str | None = None) -> str:
    """Decode a contents/blob API payload to text.

    Base64 payloads are decoded to bytes first and then as UTF-8, so multi-byte
    characters survive. Anything that is not text, by content or by the
    extension of `path`, comes back as a placeholder.
    """
    if _is_binary_extension(path):
        return UNDECODABLE_PLACEHOLDER
    content = payload.get("content")
    if not content:
        return ""
    if payload.get("encoding") != "base64":
        return str(content)
    try:
        raw = base64.b64decode(re.sub(r"\s", "", str(content)), validate=True)
    except (binascii.Error, ValueError):
        logger.warning("github.decode.invalid_base64 sha=%s", payload.get("sha"))
        return UNDECODABLE_PLACEHOLDER
    if _looks_binary_bytes(raw):
        return UNDECODABLE_PLACEHOLDER
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return UNDECODABLE_PLACEHOLDER


def _remote_error_detail(body: str) -> str:
    raw = str(body or "").strip()
    if not raw:
        return ""
    try:
        parsed = json.loads(raw)
    except ValueError:
        return raw[:500]
    if isinstance(parsed, dict):
        for key in ("message", "detail", "error_description"):
            msg = str(parsed.get(key) or "").strip()
            if msg:
                return msg
    return raw[:500]


def _retryable_http_status(code: int) -> bool:
    return int(code) in {429, 500, 502, 503, 504}


def _github_headers(token: str | None) -> dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class GitHubRepository:
    def __init__(
        self,
        *,
        api_base: str | None = None,
        token: str | None = None,
        retries: int | None = None,
        timeout_sec: int = 40,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_base = (api_base or settings.GITHUB_API_BASE).rstrip("/")
        self.token = token if token is not None else settings.GITHUB_TOKEN
        self.retries = max(1, int(retries if retries is not None else settings.REMOTE_HTTP_RETRIES))
        self.timeout_sec = timeout_sec
        self._transport = transport

    def _client(self, timeout_sec: int | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout_sec or self.timeout_sec, transport=self._transport)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        allow_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        headers = _github_headers(token or self.token)
        last_err: Exception | None = None
        for attempt in range(1, self.retries + 1):
            try:
                async with self._client() as client:
                    resp = await client.request(method.upper(), url, headers=headers, params=params, json=json_body)
            except httpx.HTTPError as err:
                last_err = err
                if attempt < self.retries:
                    await asyncio.sleep(0.35 * attempt)
                    continue
                raise RepositoryError(f"GitHub {operation} failed: {err}") from err

            if resp.status_code < 400 or resp.status_code in allow_statuses:
                return resp
            if _retryable_http_status(resp.status_code) and attempt < self.retries:
                logger.warning("github.retry op=%s status=%s attempt=%s", operation, resp.status_code, attempt)
                await asyncio.sleep(0.35 * attempt)
                continue
            detail = _remote_error_detail(resp.text)
            raise RepositoryError(
                f"GitHub {operation} failed ({resp.status_code})" + (f": {detail}" if detail else "")
            )

        raise RepositoryError(f"GitHub {operation} failed: {last_err}")

    async def fetch_repo_details(self, owner: str, repo: str) -> RepoDetails:
        resp = await self._request(
            "GET", f"{self.api_base}/repos/{owner}/{repo}", operation="repository lookup", allow_statuses=(404,)
        )
        if resp.status_code == 404:
            raise RepositoryNotFoundError(f"Repository not found: {owner}/{repo}")
        data = resp.json() or {}
        return RepoDetails(
            owner=str((data.get("owner") or {}).get("login") or owner),
            name=str(data.get("name") or repo),
            description=data.get("description"),
            default_branch=str(data.get("default_branch") or "main"),
            stars=int(data.get("stargazers_count") or 0),
            homepage=data.get("homepage") or None,
        )

    async def fetch_tree(self, owner: str, repo: str, branch: str) -> list[TreeEntry]:
        resp = await self._request(
            "GET",
            f"{self.api_base}/repos/{owner}/{repo}/git/trees/{quote(branch, safe='')}",
            operation="tree listing",
            params={"recursive": "1"},
        )
        body = resp.json() or {}
        if body.get("truncated"):
            logger.warning("github.tree.truncated owner=%s repo=%s branch=%s", owner, repo, branch)
        out: list[TreeEntry] = []
        for item in body.get("tree") or []:
            kind = str(item.get("type") or "")
            path = str(item.get("path") or "").strip()
            if kind not in {"blob", "tree"} or not path:
                continue
            out.append(TreeEntry(path=path, type=kind, sha=item.get("sha"), url=item.get("url")))
        return out

    async def fetch_content(self, url: str, path: str | None = None) -> str:
        resp = await self._request("GET", url, operation="file read", allow_statuses=(404,))
        if resp.status_code == 404:
            raise FileResolutionError("File content not found")
        try:
            payload = resp.json() or {}
        except ValueError:
            return UNDECODABLE_PLACEHOLDER
        return decode_content(payload, path)

    async def commit(
        self,
        owner: str,
        repo: str,
        *,
        path: str,
        content: str,
        message: str,
        branch: str,
        token: str,
    ) -> dict[str, Any]:
        if not str(token or "").strip():
            raise RepoValidationError("A GitHub token is required to commit")
        base_url = f"{self.api_base}/repos/{owner}/{repo}/contents/{quote(path, safe='/')}"

        existing = await self._request(
            "GET", base_url, operation=f"read-before-write {path}", token=token, params={"ref": branch},
            allow_statuses=(404,),
        )
        sha: str | None = None
        if existing.status_code == 200:
            body = existing.json()
            if isinstance(body, dict):
                sha = str(body.get("sha") or "").strip() or None

        payload: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            payload["sha"] = sha

        resp = await self._request("PUT", base_url, operation=f"write {path}", token=token, json_body=payload)
        body = resp.json() or {}
        commit_sha = str(((body.get("commit") or {}).get("sha")) or "").strip() or None
        web_url = str(((body.get("content") or {}).get("html_url")) or f"https://github.com/{owner}/{repo}/blob/{branch}/{path}")
        logger.info("github.commit path=%s branch=%s created=%s commit=%s", path, branch, sha is None, commit_sha)
        return {"path": path, "branch": branch, "created": sha is None, "commit_id": commit_sha, "web_url": web_url}
