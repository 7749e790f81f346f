from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class CachedArchive:
    key: str
    path: Path
    fetched_at: float
    size: int


@dataclass(frozen=True)
class Workspace:
    owner: str
    document_id: str
    root: Path
    index_path: Path


@dataclass(frozen=True)
class RangeSpec:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1


class DocumentIndex(BaseModel):
    """Parsed package document of an extracted archive.

    Every path in ``manifest`` and ``spine`` is normalized and relative to the
    workspace root, not to the package document's own directory.
    """

    document_id: str = ""
    title: str | None = None
    opf_path: str = ""
    manifest_dir: str = ""
    manifest: dict[str, str] = Field(default_factory=dict)  # id -> path, declaration order
    spine: list[str] = Field(default_factory=list)
    created_at: float = 0.0


class PublishedMirror(BaseModel):
    owner: str
    document_id: str
    collection_id: str  # e.g. /user/<owner>/epub/<document>/
    spine: list[str]  # relative to collection_id
    title: str = "EPUB"
    uploaded: int = 0
    skipped: int = 0


class Bitstream(BaseModel):
    uuid: str | None
    name: str | None
    size_bytes: int | None = None
    mime_type: str | None = None
    bundle_name: str | None = None
    download_url: str


class Item(BaseModel):
    uuid: str | None
    title: str | None
    url: str
    bitstreams: list[Bitstream] = Field(default_factory=list)


class Collection(BaseModel):
    uuid: str | None
    name: str | None
    url: str
    items: list[Item] = Field(default_factory=list)


class Community(BaseModel):
    uuid: str | None
    name: str | None
    url: str
    collections: list[Collection] = Field(default_factory=list)
