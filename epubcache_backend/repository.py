"""Repository tree enumeration: communities -> collections -> items -> bitstreams.

Every tree build logs in again (see auth.RemoteAuthClient); the finished tree
is kept in a TreeCache for ``repository_tree_ttl_seconds``. Items are listed
once per build and grouped by their owning collection, so each item's owner
is resolved a single time.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from .errors import ConfigurationError, FetchError
from .models import Bitstream, Collection, Community, Item

if TYPE_CHECKING:
    from .auth import RemoteAuthClient
    from .config import Settings

log = structlog.get_logger()

PAGE_SIZE = 1000
ORIGINAL_BUNDLE = "ORIGINAL"


class TreeCache:
    """Holds one value for ``ttl_seconds``; explicit invalidate() drops it early."""

    def __init__(self, ttl_seconds: float) -> None:
        self.ttl_seconds = ttl_seconds if ttl_seconds > 0 else 300
        self._lock = threading.Lock()
        self._value: list[Community] | None = None
        self._stored_at = 0.0

    def get(self) -> list[Community] | None:
        with self._lock:
            if self._value is None or time.monotonic() - self._stored_at > self.ttl_seconds:
                return None
            return self._value

    def put(self, value: list[Community]) -> None:
        with self._lock:
            self._value = value
            self._stored_at = time.monotonic()

    def invalidate(self) -> None:
        with self._lock:
            self._value = None


def _with_size(href: str) -> str:
    return href + ("&" if "?" in href else "?") + f"size={PAGE_SIZE}"


def _embedded(resp: dict[str, Any] | None, key: str) -> list[dict[str, Any]]:
    if not resp:
        return []
    embedded = resp.get("_embedded")
    if not isinstance(embedded, dict):
        return []
    items = embedded.get(key)
    return items if isinstance(items, list) else []


def _link(obj: dict[str, Any], rel: str) -> str | None:
    links = obj.get("_links")
    if not isinstance(links, dict):
        return None
    target = links.get(rel)
    if not isinstance(target, dict):
        return None
    href = target.get("href")
    return str(href) if href is not None else None


def _str(value: Any) -> str | None:
    return None if value is None else str(value)


def _item_title(item: dict[str, Any]) -> str | None:
    metadata = item.get("metadata")
    if not isinstance(metadata, dict):
        return None
    values = metadata.get("dc.title")
    if isinstance(values, list) and values and isinstance(values[0], dict):
        return _str(values[0].get("value"))
    return None


class RepositoryClient:
    def __init__(
        self,
        settings: Settings,
        client: httpx.Client,
        auth: RemoteAuthClient,
        cache: TreeCache | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._auth = auth
        self.cache = cache or TreeCache(settings.repository_tree_ttl_seconds)
        self._build_lock = threading.Lock()

    @property
    def api(self) -> str:
        if not self._settings.has_repository_credentials:
            raise ConfigurationError("Repository credentials not configured")
        return self._settings.repository_api_url

    @property
    def front(self) -> str:
        return self._settings.repository_front_url or self._settings.repository_api_url or ""

    def download_url(self, bitstream_id: str) -> str:
        return f"{self.front}/bitstreams/{bitstream_id}/download"

    def get_tree(self, force_refresh: bool = False) -> list[Community]:
        with self._build_lock:
            if not force_refresh:
                cached = self.cache.get()
                if cached is not None:
                    log.debug("repository_tree_cache_hit", communities=len(cached))
                    return cached
            tree = self._build_tree()
            self.cache.put(tree)
            return tree

    def _get_json(self, url: str, token: str) -> dict[str, Any]:
        try:
            response = self._client.get(
                url,
                headers={"Accept": "application/json", "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise FetchError("transport", f"GET {url} failed: {exc}") from exc
        if not response.is_success:
            log.warning("repository_get_failed", url=url, status=response.status_code)
            raise FetchError("upstream-status", f"GET {url} -> HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise FetchError("invalid-content", f"GET {url} returned invalid JSON") from exc
        return data if isinstance(data, dict) else {}

    def _build_tree(self) -> list[Community]:
        settings = self._settings
        api = self.api
        token = self._auth.authenticate(api, settings.repository_user, settings.repository_password)

        items_by_collection = self._items_by_collection(api, token)

        tree: list[Community] = []
        communities = _embedded(self._get_json(f"{api}/core/communities?size={PAGE_SIZE}", token), "communities")
        for community in communities:
            c_uuid = _str(community.get("uuid"))
            node = Community(
                uuid=c_uuid,
                name=_str(community.get("name")),
                url=f"{self.front}/communities/{c_uuid}",
            )
            collections_url = f"{api}/core/communities/{c_uuid}/collections?size={PAGE_SIZE}"
            for col in _embedded(self._get_json(collections_url, token), "collections"):
                col_uuid = _str(col.get("uuid"))
                node.collections.append(
                    Collection(
                        uuid=col_uuid,
                        name=_str(col.get("name")),
                        url=f"{self.front}/collections/{col_uuid}",
                        items=[self._item_node(item, token) for item in items_by_collection.get(col_uuid, [])],
                    )
                )
            tree.append(node)

        log.info("repository_tree_built", communities=len(tree))
        return tree

    def _items_by_collection(self, api: str, token: str) -> dict[str | None, list[dict[str, Any]]]:
        grouped: dict[str | None, list[dict[str, Any]]] = defaultdict(list)
        items = _embedded(self._get_json(f"{api}/core/items?size={PAGE_SIZE}", token), "items")
        for item in items:
            owning_href = _link(item, "owningCollection")
            if owning_href is None:
                continue
            owner = self._get_json(owning_href, token)
            owner_uuid = _str(owner.get("uuid"))
            if owner_uuid is not None:
                grouped[owner_uuid].append(item)
        log.debug("repository_items_grouped", items=len(items), collections=len(grouped))
        return grouped

    def _item_node(self, item: dict[str, Any], token: str) -> Item:
        item_uuid = _str(item.get("uuid"))
        node = Item(uuid=item_uuid, title=_item_title(item), url=f"{self.front}/items/{item_uuid}")
        bundles_href = _link(item, "bundles")
        if bundles_href is None:
            return node
        for bundle in _embedded(self._get_json(_with_size(bundles_href), token), "bundles"):
            bundle_name = _str(bundle.get("name"))
            if not bundle_name or bundle_name.upper() != ORIGINAL_BUNDLE:
                continue
            bits_href = _link(bundle, "bitstreams")
            if bits_href is None:
                continue
            for bs in _embedded(self._get_json(_with_size(bits_href), token), "bitstreams"):
                bs_uuid = _str(bs.get("uuid"))
                size = bs.get("sizeBytes")
                node.bitstreams.append(
                    Bitstream(
                        uuid=bs_uuid,
                        name=_str(bs.get("name")),
                        size_bytes=size if isinstance(size, int) else None,
                        mime_type=_str(bs.get("mimeType")),
                        bundle_name=bundle_name,
                        download_url=self.download_url(bs_uuid or ""),
                    )
                )
        return node
