"""Configuration loading.

Settings are read from environment variables prefixed with ``EPUBCACHE_``
(for example ``EPUBCACHE_CACHE_TTL_SECONDS=3600``). Every field has a default
so the service starts without any configuration; the repository options are
only required once a repository download is actually attempted.

A single Settings instance is built per process and handed to each component.
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_TMP = Path(tempfile.gettempdir())


def _fix_base_url(value: str | None) -> str | None:
    # Repairs bases configured as "http//host" (missing ':').
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if value.startswith("http//"):
        value = "http://" + value[len("http//"):]
    elif value.startswith("https//"):
        value = "https://" + value[len("https//"):]
    return value.rstrip("/")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="EPUBCACHE_", extra="forbid")

    # Raw archive cache
    cache_dir: Path = _TMP / "epubcache-cache"
    cache_ttl_seconds: int = 86400
    max_bytes: int = 200 * 1024 * 1024
    allowed_hosts: str = "127.0.0.1,localhost"
    connect_timeout_seconds: float = 15.0
    read_timeout_seconds: float = 30.0
    max_redirects: int = 5

    # Extraction workspaces
    workspaces_dir: Path = _TMP / "epubcache-books"
    workspace_ttl_hours: float = 24.0
    max_extract_bytes: int = 1024 * 1024 * 1024

    # Durable publish target
    store_dir: Path = _TMP / "epubcache-store"

    # Remote repository
    repository_api_url: str | None = None
    repository_front_url: str | None = None
    repository_user: str | None = None
    repository_password: str | None = None
    repository_tree_ttl_seconds: int = 300

    # Host integration
    principal_header: str = "X-Remote-User"

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "text"

    @field_validator("repository_api_url", "repository_front_url")
    @classmethod
    def _normalize_base_url(cls, v: str | None) -> str | None:
        return _fix_base_url(v)

    @field_validator("cache_ttl_seconds")
    @classmethod
    def _floor_ttl(cls, v: int) -> int:
        return max(60, v)

    @property
    def allowed_host_set(self) -> frozenset[str]:
        return frozenset(h.strip().lower() for h in self.allowed_hosts.split(",") if h.strip())

    @property
    def workspace_ttl_seconds(self) -> float:
        return max(0.0, self.workspace_ttl_hours) * 3600.0

    @property
    def has_repository_credentials(self) -> bool:
        return bool(self.repository_api_url and self.repository_user and self.repository_password)
