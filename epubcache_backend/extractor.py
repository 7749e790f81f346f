"""Fetch, unpack and index archives into per-owner workspaces.

State per (owner, document): absent -> extracting -> ready -> stale -> absent.
A ready workspace with a readable index snapshot is returned as-is; an
unreadable snapshot counts as absent and triggers a full re-extraction.
Extraction happens in a staging directory that replaces the workspace only
once the index has been written, so a failed attempt leaves nothing behind.
"""

from __future__ import annotations

import shutil
import time
from typing import TYPE_CHECKING

import structlog

from .errors import ExtractError
from .locks import KeyedLocks
from .manifest import CONTAINER_PATH, find_rootfile_path, parse_package_document
from .workspace import INDEX_FILENAME, WorkspaceManager
from .zip_utils import extract_archive

if TYPE_CHECKING:
    from .config import Settings
    from .fetch_cache import FetchCache
    from .models import DocumentIndex, Workspace

log = structlog.get_logger()


class ArchiveExtractor:
    def __init__(
        self,
        settings: Settings,
        fetch_cache: FetchCache,
        workspaces: WorkspaceManager,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._fetch_cache = fetch_cache
        self.workspaces = workspaces
        self._locks = locks or KeyedLocks()
        self._max_extract_bytes = settings.max_extract_bytes

    def ensure_extracted(self, owner: str, document_id: str) -> DocumentIndex:
        self.workspaces.cleanup_expired(owner)
        ws = self.workspaces.get_workspace(owner, document_id)
        with self._locks.hold(str(ws.root)):
            index = self.workspaces.read_index(ws)
            if index is not None:
                self.workspaces.touch(ws)
                log.debug("workspace_ready", owner=owner, document_id=document_id)
                return index
            return self._extract(ws)

    def _extract(self, ws: Workspace) -> DocumentIndex:
        archive = self._fetch_cache.get_or_fetch(ws.document_id)
        staging = self.workspaces.staging_dir(ws)
        try:
            files = extract_archive(
                archive,
                staging,
                self._max_extract_bytes,
                reserved_names=frozenset({INDEX_FILENAME}),
            )
            opf_rel = find_rootfile_path(staging / CONTAINER_PATH)
            opf_file = staging / opf_rel
            if not opf_file.is_file():
                raise ExtractError("manifest-not-found", "OPF file does not exist")
            index = parse_package_document(opf_file.read_bytes(), opf_rel)
            index.document_id = ws.document_id
            index.created_at = time.time()
            self.workspaces.write_index(staging, index)
            self.workspaces.promote(staging, ws)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        log.info(
            "workspace_extracted",
            owner=ws.owner,
            document_id=ws.document_id,
            files=files,
            spine=len(index.spine),
        )
        return index
