from __future__ import annotations


def normalize_rel_path(path: str) -> str:
    """Canonical repository-relative path used as the key by every layer.

    Backslashes become slashes, empty and "." segments are dropped, and ".."
    is rejected. Raises ValueError when nothing is left.
    """
    raw = str(path or "").strip().replace("\\", "/")
    parts = [p for p in raw.split("/") if p and p != "."]
    if any(p == ".." for p in parts):
        raise ValueError("Invalid path")
    if not parts:
        raise ValueError("path is required")
    return "/".join(parts)
