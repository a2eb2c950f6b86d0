from __future__ import annotations

import logging
from typing import Iterable

from ..core.paths import normalize_rel_path
from ..models.tree import FileNode, TreeEntry

logger = logging.getLogger(__name__)


def _sort_key(node: FileNode) -> tuple[int, str]:
    return (0 if node.type == "tree" else 1, node.name)


def _split(path: str) -> list[str]:
    return normalize_rel_path(path).split("/")


def sort_nodes(nodes: Iterable[FileNode]) -> list[FileNode]:
    """Directories first, then case-sensitive by name, applied at every level."""
    out: list[FileNode] = []
    for node in nodes:
        if node.children is not None:
            node = node.model_copy(update={"children": sort_nodes(node.children)})
        out.append(node)
    out.sort(key=_sort_key)
    return out


def insert_path(tree: list[FileNode], path: str) -> list[FileNode]:
    """Return a new tree containing a blob at `path`.

    Missing folders along the way are created. When a node with the leaf's name
    already exists the input list is returned as-is, so repeated inserts are
    no-ops. Nodes of the input are never mutated; untouched subtrees are shared.
    """
    parts = _split(path)

    def _insert(level: list[FileNode], depth: int) -> list[FileNode]:
        name = parts[depth]
        node_path = "/".join(parts[: depth + 1])

        if depth == len(parts) - 1:
            if any(n.name == name for n in level):
                return level
            leaf = FileNode(path=node_path, name=name, type="blob")
            return sorted([*level, leaf], key=_sort_key)

        for idx, node in enumerate(level):
            if node.name != name:
                continue
            if node.type != "tree":
                logger.warning("tree.insert.blocked path=%s blob=%s", path, node.path)
                return level
            children = node.children or []
            updated = _insert(children, depth + 1)
            if updated is children:
                return level
            out = list(level)
            out[idx] = node.model_copy(update={"children": updated})
            return out

        folder = FileNode(path=node_path, name=name, type="tree", children=_insert([], depth + 1))
        return sorted([*level, folder], key=_sort_key)

    return _insert(tree, 0)


def build_tree(entries: Iterable[TreeEntry]) -> list[FileNode]:
    items = [e for e in entries if str(e.path or "").strip("/")]

    # Pass 1: one mutable slot per path.
    children_of: dict[str, list[str]] = {}
    by_path: dict[str, TreeEntry] = {}
    for item in items:
        p = item.path.strip("/")
        by_path[p] = item
        if item.type == "tree":
            children_of[p] = []

    # Pass 2: attach under the parent; listings may be truncated, so orphans are dropped.
    roots: list[str] = []
    dropped = 0
    for p in by_path:
        parent, _, _ = p.rpartition("/")
        if not parent:
            roots.append(p)
        elif parent in children_of:
            children_of[parent].append(p)
        else:
            dropped += 1
    if dropped:
        logger.debug("tree.build.orphans_dropped count=%s", dropped)

    def _node(p: str) -> FileNode:
        item = by_path[p]
        kids = [_node(c) for c in children_of[p]] if item.type == "tree" else None
        return FileNode(
            path=p,
            name=p.rsplit("/", 1)[-1],
            type=item.type,
            sha=item.sha,
            url=item.url,
            children=kids,
        )

    return sort_nodes(_node(p) for p in roots)


def find_node(tree: list[FileNode], path: str) -> FileNode | None:
    try:
        parts = _split(path)
    except ValueError:
        return None
    level = tree
    for depth, name in enumerate(parts):
        match = next((n for n in level if n.name == name), None)
        if match is None:
            return None
        if depth == len(parts) - 1:
            return match
        level = match.children or []
    return None


def file_paths(tree: list[FileNode]) -> list[str]:
    out: list[str] = []
    for node in tree:
        if node.type == "blob":
            out.append(node.path)
        if node.children:
            out.extend(file_paths(node.children))
    return out


class TreeState:
    """Holds the session's current tree; each change swaps in a new value."""

    def __init__(self, nodes: list[FileNode] | None = None):
        self.nodes: list[FileNode] = list(nodes or [])

    def grow(self, path: str) -> bool:
        updated = insert_path(self.nodes, path)
        if updated is self.nodes:
            return False
        self.nodes = updated
        return True

    def find(self, path: str) -> FileNode | None:
        return find_node(self.nodes, path)

    def file_paths(self) -> list[str]:
        return file_paths(self.nodes)
