"""Fetch-through file cache for raw EPUB archives.

Cache slots are named by a SHA-256 of the source identity (never of the
content), so the same URL or repository id always maps to the same file.
Downloads stream into a ``.part`` file and are only promoted over the slot
once the whole body is received and starts with the ZIP magic; readers see
either the previous complete archive or the new one.

Expired slots and stale ``.part`` files are swept lazily on every call.
"""

from __future__ import annotations

import hashlib
import os
import re
import shutil
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import structlog

from .errors import ConfigurationError, FetchError
from .locks import KeyedLocks
from .models import CachedArchive

if TYPE_CHECKING:
    from .auth import RemoteAuthClient
    from .config import Settings

log = structlog.get_logger()

ZIP_MAGIC = b"PK"
CACHE_SUFFIX = ".epub"
PART_SUFFIX = ".part"
CHUNK_SIZE = 64 * 1024

_ACCEPT = "application/epub+zip,application/octet-stream;q=0.9,*/*;q=0.1"
_FRONT_DOWNLOAD_RE = re.compile(r"^/bitstreams/(?P<id>[^/?#]+)/download/?$")


def cache_key(identity: str) -> str:
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()


def host_of(url: str) -> str:
    try:
        return (httpx.URL(url).host or "").lower()
    except httpx.InvalidURL:
        return ""


def has_zip_magic(path: Path) -> bool:
    try:
        with path.open("rb") as fh:
            return fh.read(len(ZIP_MAGIC)) == ZIP_MAGIC
    except OSError:
        return False


def _read_head(path: Path, n: int = 8) -> bytes:
    try:
        with path.open("rb") as fh:
            return fh.read(n)
    except OSError:
        return b""


@dataclass(frozen=True)
class DownloadPlan:
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    # Hosts trusted for this download in addition to the allow-list.
    trusted_hosts: frozenset[str] = frozenset()


class RepositorySource:
    """Routes repository objects through the authenticated content endpoint.

    Two identity shapes are recognised: a bare object id, and a front-end
    download URL ``{front}/bitstreams/{id}/download``.
    """

    def __init__(self, settings: Settings, auth: RemoteAuthClient) -> None:
        self._settings = settings
        self._auth = auth

    @staticmethod
    def is_bare_id(identity: str) -> bool:
        return "://" not in identity

    def object_id_for(self, identity: str) -> str | None:
        if self.is_bare_id(identity):
            return identity.strip() or None
        front = self._settings.repository_front_url
        if not front or not identity.startswith(front + "/"):
            return None
        path = identity[len(front):].split("?", 1)[0].split("#", 1)[0]
        match = _FRONT_DOWNLOAD_RE.match(path)
        return match.group("id") if match else None

    @property
    def configured(self) -> bool:
        return self._settings.has_repository_credentials

    def plan(self, object_id: str) -> DownloadPlan:
        settings = self._settings
        if not self.configured:
            raise ConfigurationError(
                "Repository credentials not configured "
                "(EPUBCACHE_REPOSITORY_API_URL / _USER / _PASSWORD)"
            )
        api = settings.repository_api_url
        token = self._auth.authenticate(api, settings.repository_user, settings.repository_password)
        return DownloadPlan(
            url=f"{api}/core/bitstreams/{object_id}/content",
            headers={"Authorization": f"Bearer {token}"},
            trusted_hosts=frozenset({host_of(api)}),
        )


class FetchCache:
    def __init__(
        self,
        settings: Settings,
        client: httpx.Client,
        repository: RepositorySource | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._repository = repository
        self._locks = locks or KeyedLocks()
        self.cache_dir = Path(settings.cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = settings.cache_ttl_seconds
        self.max_bytes = settings.max_bytes
        self.allowed_hosts = settings.allowed_host_set
        log.info(
            "fetch_cache_ready",
            cache_dir=str(self.cache_dir),
            ttl_seconds=self.ttl_seconds,
            max_bytes=self.max_bytes,
            allowed_hosts=sorted(self.allowed_hosts),
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def is_host_allowed(self, url: str, extra: frozenset[str] = frozenset()) -> bool:
        host = host_of(url)
        return bool(host) and (host in self.allowed_hosts or host in extra)

    def cached_path(self, identity: str) -> Path:
        """Return the cache slot for an identity (the file may not exist)."""
        return self.cache_dir / f"{cache_key(identity)}{CACHE_SUFFIX}"

    def lookup(self, identity: str) -> CachedArchive | None:
        path = self.cached_path(identity)
        try:
            st = path.stat()
        except FileNotFoundError:
            return None
        return CachedArchive(key=cache_key(identity), path=path, fetched_at=st.st_mtime, size=st.st_size)

    def invalidate(self, identity: str) -> None:
        path = self.cached_path(identity)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        log.info("cache_invalidated", key=cache_key(identity))

    def _is_fresh(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age <= self.ttl_seconds and has_zip_magic(path)

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def get_or_fetch(self, identity: str, force_refresh: bool = False) -> Path:
        return self.fetch(identity, force_refresh=force_refresh).path

    def fetch(self, identity: str, force_refresh: bool = False) -> CachedArchive:
        object_id = self._classify(identity)
        self.cleanup_expired()

        key = cache_key(identity)
        target = self.cached_path(identity)
        with self._locks.hold(key):
            if not force_refresh and self._is_fresh(target):
                log.debug("cache_hit", key=key)
                return self.lookup(identity)

            plan = self._plan(identity, object_id)
            tmp = self.cache_dir / f"{key}.{uuid.uuid4().hex}{PART_SUFFIX}"
            try:
                size = self._download(plan, tmp)
                self._validate(tmp, size)
                self._promote(tmp, target)
            finally:
                tmp.unlink(missing_ok=True)
            os.utime(target)
            log.info("cache_stored", key=key, size=size, forced=force_refresh)
        return self.lookup(identity)

    def _classify(self, identity: str) -> str | None:
        """Check the identity shape and allow-list; return a repository object id if routed."""
        identity = (identity or "").strip()
        if not identity:
            raise FetchError("invalid-source", "Missing source")
        repository = self._repository
        if repository is not None and repository.is_bare_id(identity):
            return repository.object_id_for(identity)

        scheme = identity.split("://", 1)[0].lower()
        if scheme not in ("http", "https"):
            raise FetchError("invalid-source", "Unsupported URL scheme")
        if not self.is_host_allowed(identity):
            log.warning("fetch_host_rejected", host=host_of(identity))
            raise FetchError("host-not-allowed", f"Host not allowed: {host_of(identity)}")
        if repository is not None:
            return repository.object_id_for(identity)
        return None

    def _plan(self, identity: str, object_id: str | None) -> DownloadPlan:
        repository = self._repository
        if object_id is not None and repository is not None:
            if repository.configured or repository.is_bare_id(identity):
                return repository.plan(object_id)
            log.info("repository_credentials_missing_plain_fetch", object_id=object_id)
        return DownloadPlan(url=identity)

    def _download(self, plan: DownloadPlan, out: Path) -> int:
        url = plan.url
        origin_host = host_of(url)
        allowed = plan.trusted_hosts
        for _ in range(self._settings.max_redirects + 1):
            if not self.is_host_allowed(url, allowed):
                log.warning("fetch_redirect_rejected", host=host_of(url))
                raise FetchError("host-not-allowed", f"Redirected host not allowed: {host_of(url)}")
            headers = {"Accept": _ACCEPT, "Accept-Encoding": "identity"}
            if host_of(url) == origin_host:
                headers.update(plan.headers)
            try:
                with self._client.stream("GET", url, headers=headers) as response:
                    if response.is_redirect:
                        url = str(response.url.join(response.headers["location"]))
                        log.debug("fetch_redirect", status=response.status_code, location=url)
                        continue
                    if not response.is_success:
                        raise FetchError(
                            "upstream-status", f"HTTP {response.status_code} from {host_of(url)}"
                        )
                    return self._stream_to(response, out)
            except httpx.HTTPError as exc:
                log.warning("fetch_transport_error", host=host_of(url), error=str(exc))
                raise FetchError("transport", f"Download failed: {exc}") from exc
        raise FetchError("too-many-redirects", f"More than {self._settings.max_redirects} redirects")

    def _stream_to(self, response: httpx.Response, out: Path) -> int:
        declared = response.headers.get("content-length")
        if declared and declared.isascii() and declared.isdigit() and int(declared) > self.max_bytes:
            raise FetchError("too-large", f"Remote content too large: {declared}")
        written = 0
        with out.open("wb") as fh:
            for chunk in response.iter_bytes(CHUNK_SIZE):
                written += len(chunk)
                if written > self.max_bytes:
                    raise FetchError("too-large", f"Downloaded exceeds max size: {written}")
                fh.write(chunk)
        return written

    def _validate(self, tmp: Path, size: int) -> None:
        if size <= 0:
            raise FetchError("invalid-content", "Downloaded file is empty")
        if not has_zip_magic(tmp):
            head = _read_head(tmp)
            raise FetchError(
                "invalid-content",
                f"Upstream did not return EPUB (ZIP). firstBytes={head.hex()}, length={size}",
            )

    def _promote(self, tmp: Path, target: Path) -> None:
        try:
            os.replace(tmp, target)
        except OSError:
            # e.g. cache dir on another volume than the temp file
            shutil.copyfile(tmp, target)
            tmp.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """Delete cache slots and partial downloads older than the TTL."""
        deleted = 0
        now = time.time()
        for child in self.cache_dir.iterdir():
            if not child.is_file() or child.suffix not in (CACHE_SUFFIX, PART_SUFFIX):
                continue
            try:
                if now - child.stat().st_mtime > self.ttl_seconds:
                    child.unlink()
                    deleted += 1
            except FileNotFoundError:
                continue
        if deleted:
            log.info("cache_cleanup_complete", deleted=deleted)
        return deleted
