"""Unit tests for epubcache_backend.config."""

from __future__ import annotations

import pytest

from epubcache_backend.config import Settings


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.cache_ttl_seconds == 86400
        assert settings.max_bytes == 200 * 1024 * 1024
        assert settings.connect_timeout_seconds == 15.0
        assert settings.read_timeout_seconds == 30.0
        assert settings.has_repository_credentials is False

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EPUBCACHE_ALLOWED_HOSTS", "A.example.org, b.example.org ,")
        settings = Settings()
        assert settings.allowed_host_set == frozenset({"a.example.org", "b.example.org"})

    def test_ttl_floor(self) -> None:
        assert Settings(cache_ttl_seconds=5).cache_ttl_seconds == 60

    def test_base_url_typo_repaired(self) -> None:
        settings = Settings(
            repository_api_url="http//api.example.org/server/api/",
            repository_front_url="https//repo.example.org/",
        )
        assert settings.repository_api_url == "http://api.example.org/server/api"
        assert settings.repository_front_url == "https://repo.example.org"

    def test_blank_base_url_is_none(self) -> None:
        assert Settings(repository_api_url="   ").repository_api_url is None

    def test_credentials_require_all_three(self) -> None:
        partial = Settings(repository_api_url="https://api.example.org", repository_user="u")
        assert partial.has_repository_credentials is False
        full = Settings(
            repository_api_url="https://api.example.org",
            repository_user="u",
            repository_password="p",
        )
        assert full.has_repository_credentials is True

    def test_workspace_ttl_seconds(self) -> None:
        assert Settings(workspace_ttl_hours=2).workspace_ttl_seconds == 7200.0

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValueError):
            Settings(no_such_option=True)
