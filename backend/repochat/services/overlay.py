from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..core.errors import FileResolutionError, RepochatError
from ..core.paths import normalize_rel_path

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[str]]


@dataclass
class FileRecord:
    remote_content: Optional[str] = None
    cached_content: Optional[str] = None
    local_edit: Optional[str] = None

    def baseline(self) -> Optional[str]:
        if self.cached_content is not None:
            return self.cached_content
        return self.remote_content


def _sha256_text(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8", errors="replace")).hexdigest()


def _normalize_path(path: str) -> str:
    try:
        return normalize_rel_path(path)
    except ValueError as err:
        raise FileResolutionError(f"{err}: {path!r}") from err


class FileOverlay:
    """Three-tier view of file content: local edit over cache over the remote.

    Only `get` may reach the network, through `fetcher`; `set` and `discard`
    touch the local-edit tier alone.
    """

    def __init__(self, fetcher: Fetcher):
        self._fetcher = fetcher
        self._records: dict[str, FileRecord] = {}

    def _record(self, path: str) -> FileRecord:
        rec = self._records.get(path)
        if rec is None:
            rec = FileRecord()
            self._records[path] = rec
        return rec

    async def get(self, path: str) -> str:
        p = _normalize_path(path)
        rec = self._records.get(p)
        if rec is not None:
            if rec.local_edit is not None:
                return rec.local_edit
            if rec.cached_content is not None:
                return rec.cached_content

        logger.info("overlay.fetch path=%s", p)
        try:
            content = await self._fetcher(p)
        except RepochatError as err:
            raise FileResolutionError(str(err)) from err
        self._record(p).cached_content = content
        return content

    def peek(self, path: str) -> Optional[str]:
        rec = self._records.get(_normalize_path(path))
        if rec is None:
            return None
        if rec.local_edit is not None:
            return rec.local_edit
        return rec.baseline()

    def set(self, path: str, content: str) -> None:
        p = _normalize_path(path)
        rec = self._record(p)
        if rec.local_edit == content:
            return
        rec.local_edit = content
        logger.info("overlay.set path=%s hash=%s", p, _sha256_text(content)[:12])

    def discard(self, path: str) -> bool:
        p = _normalize_path(path)
        rec = self._records.get(p)
        if rec is None or rec.local_edit is None:
            return False
        rec.local_edit = None
        logger.info("overlay.discard path=%s", p)
        return True

    def mark_committed(self, path: str, content: str) -> None:
        rec = self._record(_normalize_path(path))
        rec.remote_content = content
        rec.cached_content = content

    def has_edit(self, path: str) -> bool:
        rec = self._records.get(_normalize_path(path))
        return bool(rec and rec.local_edit is not None)

    def is_modified(self, path: str) -> bool:
        rec = self._records.get(_normalize_path(path))
        if rec is None or rec.local_edit is None:
            return False
        return rec.local_edit != rec.baseline()

    def modified_paths(self) -> list[str]:
        return sorted(p for p in self._records if self.is_modified(p))
