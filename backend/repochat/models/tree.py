from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict

NodeType = Literal["blob", "tree"]


class TreeEntry(BaseModel):
    """One row of a flat recursive listing from the repository host."""

    path: str
    type: NodeType
    sha: Optional[str] = None
    url: Optional[str] = None


class FileNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    name: str
    type: NodeType
    sha: Optional[str] = None
    url: Optional[str] = None
    children: Optional[List["FileNode"]] = None


FileNode.model_rebuild()
