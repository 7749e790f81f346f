from __future__ import annotations

import os
import shutil
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from .models import DocumentIndex, Workspace
from .security import safe_name

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .config import Settings

log = structlog.get_logger()

INDEX_FILENAME = "index.json"
STAGING_MARKER = ".extracting-"


def _now_epoch() -> float:
    return time.time()


class WorkspaceManager:
    """Per-owner, per-document extraction directories with lazy TTL cleanup.

    Layout: ``<workspaces_dir>/<owner>/<document>/`` holding the unpacked entries
    plus ``index.json``. A directory's mtime is its last-touched time.
    """

    def __init__(self, settings: Settings) -> None:
        self.root = Path(settings.workspaces_dir).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = settings.workspace_ttl_seconds

    def owner_dir(self, owner: str) -> Path:
        return self.root / safe_name(owner)

    def get_workspace(self, owner: str, document_id: str) -> Workspace:
        root = self.owner_dir(owner) / safe_name(document_id)
        return Workspace(
            owner=owner,
            document_id=document_id,
            root=root,
            index_path=root / INDEX_FILENAME,
        )

    def touch(self, ws: Workspace) -> None:
        if not ws.root.exists():
            raise FileNotFoundError("Workspace not found")
        os.utime(ws.root)

    def read_index(self, ws: Workspace) -> DocumentIndex | None:
        """Load the persisted index snapshot; any failure reads as "absent"."""
        try:
            return DocumentIndex.model_validate_json(ws.index_path.read_bytes())
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as exc:
            log.warning("index_snapshot_unreadable", path=str(ws.index_path), error=str(exc))
            return None

    @staticmethod
    def write_index(directory: Path, index: DocumentIndex) -> Path:
        path = directory / INDEX_FILENAME
        tmp = directory / f".{INDEX_FILENAME}.{uuid.uuid4().hex}.tmp"
        tmp.write_text(index.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)
        return path

    def staging_dir(self, ws: Workspace) -> Path:
        """Fresh sibling directory to extract into before promotion."""
        staging = ws.root.parent / f"{ws.root.name}{STAGING_MARKER}{uuid.uuid4().hex}"
        staging.mkdir(parents=True)
        return staging

    def promote(self, staging: Path, ws: Workspace) -> None:
        """Replace the workspace directory with a fully extracted staging directory."""
        if ws.root.exists():
            retired = ws.root.parent / f"{ws.root.name}.retired-{uuid.uuid4().hex}"
            os.replace(ws.root, retired)
            shutil.rmtree(retired, ignore_errors=True)
        os.replace(staging, ws.root)
        os.utime(ws.root)

    def delete_workspace(self, ws: Workspace) -> None:
        if ws.root.exists():
            shutil.rmtree(ws.root, ignore_errors=True)

    def iter_owner_workspaces(self, owner: str) -> Iterator[Path]:
        owner_dir = self.owner_dir(owner)
        if not owner_dir.is_dir():
            return
        for child in owner_dir.iterdir():
            if child.is_dir():
                yield child

    def cleanup_expired(self, owner: str) -> int:
        """Delete this owner's workspaces whose last touch is older than the TTL.

        Returns the number of deleted directories.
        """
        if not self.ttl_seconds:
            return 0
        deleted = 0
        now = _now_epoch()
        for child in self.iter_owner_workspaces(owner):
            try:
                last_touch = child.stat().st_mtime
            except FileNotFoundError:
                continue
            if now - last_touch > self.ttl_seconds:
                shutil.rmtree(child, ignore_errors=True)
                deleted += 1
        if deleted:
            log.info("workspace_cleanup_complete", owner=owner, deleted=deleted)
        return deleted
