from __future__ import annotations

import os
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from epubcache_backend.auth import RemoteAuthClient
from epubcache_backend.config import Settings
from epubcache_backend.errors import (
    AuthError,
    ConfigurationError,
    EpubCacheError,
    ExtractError,
    FetchError,
    PathError,
    PublishError,
)
from epubcache_backend.extractor import ArchiveExtractor
from epubcache_backend.fetch_cache import FetchCache, RepositorySource
from epubcache_backend.http import build_http_client
from epubcache_backend.locks import KeyedLocks
from epubcache_backend.logging_config import configure_logging
from epubcache_backend.publisher import ContentStore, DurablePublisher, LocalContentStore
from epubcache_backend.ranges import ServedFile, serve_file, serve_workspace_file
from epubcache_backend.repository import RepositoryClient
from epubcache_backend.security import escapes_root
from epubcache_backend.workspace import WorkspaceManager

log = structlog.get_logger()

PrincipalResolver = Callable[[Request], Optional[str]]

EPUB_MEDIA_TYPE = "application/epub+zip"
FILE_HEADERS = {
    "Cache-Control": "private, max-age=86400",
    "X-Content-Type-Options": "nosniff",
}

_STATUS_BY_ERROR: dict[type[EpubCacheError], int] = {
    ConfigurationError: 500,
    PathError: 403,
    AuthError: 502,
    FetchError: 502,
    ExtractError: 502,
    PublishError: 502,
}


@dataclass
class Services:
    settings: Settings
    http_client: httpx.Client
    fetch_cache: FetchCache
    workspaces: WorkspaceManager
    extractor: ArchiveExtractor
    publisher: DurablePublisher
    repository: RepositoryClient


def build_services(
    settings: Settings,
    store: ContentStore | None = None,
    http_client: httpx.Client | None = None,
) -> Services:
    """Wire every backend component once per process."""
    client = http_client or build_http_client(settings)
    auth = RemoteAuthClient(client)
    locks = KeyedLocks()
    fetch_cache = FetchCache(settings, client, RepositorySource(settings, auth), locks=locks)
    workspaces = WorkspaceManager(settings)
    return Services(
        settings=settings,
        http_client=client,
        fetch_cache=fetch_cache,
        workspaces=workspaces,
        extractor=ArchiveExtractor(settings, fetch_cache, workspaces, locks=locks),
        publisher=DurablePublisher(store or LocalContentStore(settings.store_dir)),
        repository=RepositoryClient(settings, client, auth),
    )


def header_principal(header_name: str) -> PrincipalResolver:
    """Principal supplied by the host (reverse proxy / LMS) in a request header."""

    def _resolve(request: Request) -> str | None:
        value = (request.headers.get(header_name) or "").strip()
        return value or None

    return _resolve


def _services(request: Request) -> Services:
    return request.app.state.services


def require_principal(request: Request) -> str:
    owner = request.app.state.principal_resolver(request)
    if not owner:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return owner


def _to_response(served: ServedFile) -> Response:
    if served.path is None:
        # 416: headers only, no body
        return Response(status_code=served.status, headers=served.headers)
    return StreamingResponse(
        served.iter_chunks(),
        status_code=served.status,
        headers=served.headers,
        media_type=served.media_type,
    )


router = APIRouter()


@router.get("/api/proxy")
def proxy_archive(
    request: Request,
    src: Optional[str] = None,
    refresh: bool = False,
) -> Response:
    """Fetch-through download of a whitelisted EPUB, served with Range support."""
    if not src:
        raise HTTPException(status_code=400, detail="Missing src parameter")
    services = _services(request)
    archive = services.fetch_cache.fetch(src, force_refresh=refresh)
    served = serve_file(
        archive.path,
        request.headers.get("range"),
        media_type=EPUB_MEDIA_TYPE,
        extra_headers=FILE_HEADERS,
    )
    return _to_response(served)


@router.get("/api/documents/{document_id}")
def document_index(
    document_id: str,
    request: Request,
    owner: str = Depends(require_principal),
) -> JSONResponse:
    index = _services(request).extractor.ensure_extracted(owner, document_id)
    return JSONResponse(index.model_dump())


def _serve_from_workspace(request: Request, owner: str, document_id: str, file_rel: str) -> Response:
    if escapes_root(file_rel):
        log.warning("path_escape_rejected", owner=owner, document_id=document_id, requested=file_rel)
        raise PathError()
    services = _services(request)
    # Ensures extraction and refreshes the workspace TTL.
    services.extractor.ensure_extracted(owner, document_id)
    ws = services.workspaces.get_workspace(owner, document_id)
    served = serve_workspace_file(ws.root, file_rel, request.headers.get("range"), extra_headers=FILE_HEADERS)
    if served is None:
        raise HTTPException(status_code=404, detail="Not found")
    return _to_response(served)


@router.get("/api/serve")
def serve_query(
    request: Request,
    uuid: Optional[str] = None,
    file_rel: Optional[str] = Query(None, alias="file"),
    owner: str = Depends(require_principal),
) -> Response:
    """Serve an internal file: /api/serve?uuid=<id>&file=<relative path>."""
    if not uuid or not file_rel:
        raise HTTPException(status_code=400, detail="Missing uuid or file")
    return _serve_from_workspace(request, owner, uuid, file_rel)


@router.get("/book/{document_id}/{file_path:path}")
def serve_path(
    document_id: str,
    file_path: str,
    request: Request,
    owner: str = Depends(require_principal),
) -> Response:
    """Path-based serving so relative links inside chapters resolve naturally."""
    if not file_path:
        raise HTTPException(status_code=400, detail="Missing uuid or file path")
    return _serve_from_workspace(request, owner, document_id, file_path)


@router.post("/api/documents/{document_id}/publish")
def publish_document(
    document_id: str,
    request: Request,
    owner: str = Depends(require_principal),
) -> JSONResponse:
    services = _services(request)
    index = services.extractor.ensure_extracted(owner, document_id)
    ws = services.workspaces.get_workspace(owner, document_id)
    mirror = services.publisher.publish(ws, index)
    return JSONResponse(mirror.model_dump())


@router.get("/api/repository/tree")
def repository_tree(
    request: Request,
    refresh: bool = False,
    owner: str = Depends(require_principal),
) -> JSONResponse:
    tree = _services(request).repository.get_tree(force_refresh=refresh)
    return JSONResponse([community.model_dump() for community in tree])


async def _backend_error(request: Request, exc: EpubCacheError) -> JSONResponse:
    status = next(
        (code for kind, code in _STATUS_BY_ERROR.items() if isinstance(exc, kind)),
        500,
    )
    log.warning(
        "request_failed",
        path=request.url.path,
        status=status,
        error=type(exc).__name__,
        reason=exc.reason,
        detail=str(exc),
    )
    return JSONResponse({"detail": str(exc), "reason": exc.reason}, status_code=status)


def create_app(
    settings: Settings | None = None,
    services: Services | None = None,
    principal_resolver: PrincipalResolver | None = None,
) -> FastAPI:
    settings = settings or (services.settings if services else Settings())
    configure_logging(settings)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Expired cache slots are otherwise only swept when a request comes in.
        services.fetch_cache.cleanup_expired()
        try:
            yield
        finally:
            services.http_client.close()

    app = FastAPI(lifespan=lifespan)
    app.state.services = services
    app.state.principal_resolver = principal_resolver or header_principal(settings.principal_header)
    app.add_exception_handler(EpubCacheError, _backend_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "8010"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
