"""Mirror extracted workspaces into a durable, hierarchical content store.

Collection ids end with ``/``; resource ids do not. Publishing is
idempotent: collections are created only when missing, and a file is
uploaded only when no resource of the same id and byte length exists.
Same-length content changes are not detected.
"""

from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO, Protocol

import structlog

from .errors import PublishError
from .models import DocumentIndex, PublishedMirror, Workspace
from .ranges import content_type_for
from .security import normalize_rel_path, safe_join, safe_name
from .workspace import INDEX_FILENAME

log = structlog.get_logger()


class ContentStore(Protocol):
    def collection_exists(self, collection_id: str) -> bool: ...

    def add_collection(self, collection_id: str, display_name: str) -> None: ...

    def resource_length(self, resource_id: str) -> int | None: ...

    def remove_resource(self, resource_id: str) -> None: ...

    def add_resource(
        self, resource_id: str, content: BinaryIO, content_type: str, display_name: str
    ) -> None: ...


class LocalContentStore:
    """ContentStore backed by a directory tree; ids map onto paths below ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, store_id: str) -> Path:
        try:
            return safe_join(self.root, normalize_rel_path(store_id))
        except ValueError as exc:
            raise PublishError(f"Invalid content id: {store_id}") from exc

    def collection_exists(self, collection_id: str) -> bool:
        return self._path(collection_id).is_dir()

    def add_collection(self, collection_id: str, display_name: str) -> None:
        path = self._path(collection_id)
        if not path.parent.is_dir():
            raise PublishError(f"Parent collection missing for {collection_id}")
        try:
            path.mkdir(exist_ok=True)
        except OSError as exc:
            raise PublishError(f"Cannot create collection {collection_id}: {exc}") from exc

    def resource_length(self, resource_id: str) -> int | None:
        path = self._path(resource_id)
        if not path.is_file():
            return None
        return path.stat().st_size

    def remove_resource(self, resource_id: str) -> None:
        self._path(resource_id).unlink(missing_ok=True)

    def add_resource(
        self, resource_id: str, content: BinaryIO, content_type: str, display_name: str
    ) -> None:
        path = self._path(resource_id)
        if path.exists():
            raise PublishError(f"Resource already exists: {resource_id}")
        tmp = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
        try:
            with tmp.open("wb") as fh:
                shutil.copyfileobj(content, fh)
            os.replace(tmp, path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise PublishError(f"Cannot store resource {resource_id}: {exc}") from exc


def user_root(owner: str) -> str:
    return f"/user/{safe_name(owner)}/epub/"


class DurablePublisher:
    def __init__(self, store: ContentStore) -> None:
        self._store = store

    def publish(self, ws: Workspace, index: DocumentIndex) -> PublishedMirror:
        if not ws.root.is_dir():
            raise PublishError(f"Workspace missing for {ws.document_id}")

        collection_id = f"{user_root(ws.owner)}{safe_name(ws.document_id)}/"
        self.ensure_collection(collection_id, f"EPUB {ws.document_id}")

        uploaded = skipped = 0
        for dirpath, dirnames, filenames in os.walk(ws.root):
            dirnames.sort()
            current = Path(dirpath)
            rel_dir = current.relative_to(ws.root).as_posix()
            if rel_dir != ".":
                self.ensure_collection(f"{collection_id}{rel_dir}/", current.name)
            for name in sorted(filenames):
                if rel_dir == "." and name == INDEX_FILENAME:
                    continue
                rel = name if rel_dir == "." else f"{rel_dir}/{name}"
                if self._publish_file(current / name, f"{collection_id}{rel}"):
                    uploaded += 1
                else:
                    skipped += 1

        log.info(
            "workspace_published",
            owner=ws.owner,
            document_id=ws.document_id,
            collection_id=collection_id,
            uploaded=uploaded,
            skipped=skipped,
        )
        return PublishedMirror(
            owner=ws.owner,
            document_id=ws.document_id,
            collection_id=collection_id,
            spine=list(index.spine),
            title=index.title or "EPUB",
            uploaded=uploaded,
            skipped=skipped,
        )

    def ensure_collection(self, collection_id: str, display_name: str) -> None:
        """Create ``collection_id`` and any missing ancestors, outermost first."""
        if self._store.collection_exists(collection_id):
            return
        parent_end = collection_id.rstrip("/").rfind("/")
        if parent_end > 0:
            self.ensure_collection(collection_id[: parent_end + 1], "EPUB")
        self._store.add_collection(collection_id, display_name)

    def _publish_file(self, src: Path, resource_id: str) -> bool:
        """Upload one file; returns False when an identical-length copy already exists."""
        size = src.stat().st_size
        existing = self._store.resource_length(resource_id)
        if existing == size:
            return False
        if existing is not None:
            self._store.remove_resource(resource_id)
        with src.open("rb") as fh:
            self._store.add_resource(resource_id, fh, content_type_for(src.name), src.name)
        return True
