"""Container and package-document parsing.

``META-INF/container.xml`` points at the package document (OPF) through a
``rootfile`` element; the OPF declares the title, the manifest (id -> href)
and the spine (ordered idrefs). Both documents must be well-formed: lxml
parses them strictly first, then BeautifulSoup walks the elements. A
document without a ``package`` root is treated as invalid.
"""

from __future__ import annotations

import re
from pathlib import Path
from urllib.parse import unquote

from bs4 import BeautifulSoup
from bs4.element import Tag
from lxml import etree

from .errors import ExtractError
from .models import DocumentIndex
from .security import normalize_rel_path

CONTAINER_PATH = "META-INF/container.xml"

_HTML_HREF_RE = re.compile(r".*\.x?html?$", re.IGNORECASE)


def _parse_xml(raw: bytes, label: str) -> BeautifulSoup:
    # bs4's "xml" builder recovers from broken markup, so well-formedness is checked first.
    try:
        etree.fromstring(raw, etree.XMLParser(resolve_entities=False, no_network=True))
    except etree.XMLSyntaxError as exc:
        raise ExtractError("invalid-manifest", f"Invalid {label}: {exc}") from exc
    return BeautifulSoup(raw, "xml")


def _clean_href(href: str) -> str:
    # hrefs are URLs: drop the fragment and percent-decoding before treating as a path.
    return unquote(href.split("#", 1)[0])


def resolve_rel(base_dir: str, rel: str) -> str:
    """Resolve an href against the package document's directory, relative to the root."""
    if not base_dir:
        return normalize_rel_path(rel)
    return normalize_rel_path(f"{base_dir}/{rel}")


def find_rootfile_path(container_xml: Path) -> str:
    """Return the normalized package document path declared in container.xml."""
    if not container_xml.is_file():
        raise ExtractError("manifest-not-found", f"{CONTAINER_PATH} not found")
    soup = _parse_xml(container_xml.read_bytes(), "container.xml")

    for rootfile in soup.find_all("rootfile"):
        if not isinstance(rootfile, Tag):
            continue
        full_path = rootfile.get("full-path")
        if full_path:
            rel = normalize_rel_path(str(full_path))
            if rel:
                return rel
    raise ExtractError("manifest-not-found", f"OPF path not found in {CONTAINER_PATH}")


def parse_package_document(raw: bytes, opf_rel: str) -> DocumentIndex:
    """Build a DocumentIndex from OPF bytes located at ``opf_rel`` inside the workspace.

    Rules:
    - title: first ``dc:title``, else first ``title``
    - manifest: every ``item`` with both ``id`` and ``href``, in document order
    - spine: ``itemref/@idref`` resolved through the manifest; unknown ids skipped
    - empty spine falls back to the first manifest entry with an (x)html extension
    """
    soup = _parse_xml(raw, "OPF")
    if soup.find("package") is None:
        raise ExtractError("invalid-manifest", "Invalid OPF: no package element")

    opf_dir = opf_rel.rsplit("/", 1)[0] if "/" in opf_rel else ""

    title_tag = soup.find("dc:title") or soup.find("title")
    title = title_tag.get_text().strip() if isinstance(title_tag, Tag) else None

    raw_manifest: dict[str, str] = {}
    for item in soup.find_all("item"):
        if not isinstance(item, Tag):
            continue
        item_id = item.get("id")
        href = item.get("href")
        if item_id is None or href is None:
            continue
        raw_manifest[str(item_id)] = _clean_href(str(href))

    # join with the OPF directory before normalizing so a leading ".." pops it
    manifest = {item_id: resolve_rel(opf_dir, href) for item_id, href in raw_manifest.items()}

    spine: list[str] = []
    for ref in soup.find_all("itemref"):
        if not isinstance(ref, Tag):
            continue
        path = manifest.get(str(ref.get("idref") or ""))
        if path:
            spine.append(path)

    if not spine:
        for item_id, href in raw_manifest.items():
            if _HTML_HREF_RE.match(href) and manifest[item_id]:
                spine.append(manifest[item_id])
                break

    return DocumentIndex(
        title=title or None,
        opf_path=opf_rel,
        manifest_dir=opf_dir,
        manifest=manifest,
        spine=spine,
    )
