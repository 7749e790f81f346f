from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from .config import Settings

USER_AGENT = "epubcache/0.1 (+EPUB proxy)"


def build_http_client(settings: Settings) -> httpx.Client:
    """Shared client for archive downloads and repository calls.

    follow_redirects stays False: redirects are followed hop by hop in
    fetch_cache so every target host passes the allow-list before it is contacted.
    """
    timeout = httpx.Timeout(
        settings.read_timeout_seconds,
        connect=settings.connect_timeout_seconds,
    )
    return httpx.Client(
        timeout=timeout,
        follow_redirects=False,
        headers={"User-Agent": USER_AGENT},
    )
