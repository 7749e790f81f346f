"""Shared fixtures: isolated settings and in-memory EPUB archives."""

from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest

from epubcache_backend.config import Settings

BOOK_HOST = "books.example.org"
BOOK_URL = f"https://{BOOK_HOST}/library/moby-dick.epub"

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{opf_path}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def build_opf(title: str | None, items: list[tuple[str, str]], spine: list[str]) -> str:
    manifest = "\n".join(
        f'    <item id="{item_id}" href="{href}" media-type="application/xhtml+xml"/>'
        for item_id, href in items
    )
    itemrefs = "\n".join(f'    <itemref idref="{idref}"/>' for idref in spine)
    title_xml = f"    <dc:title>{title}</dc:title>" if title is not None else ""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="uid">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
{title_xml}
  </metadata>
  <manifest>
{manifest}
  </manifest>
  <spine>
{itemrefs}
  </spine>
</package>
"""


def build_epub(
    files: dict[str, bytes | str] | None = None,
    opf_path: str | None = "OEBPS/content.opf",
    opf: str | None = None,
) -> bytes:
    """Zip ``files`` into an EPUB; adds mimetype, container.xml and a default OPF.

    With ``opf_path=None`` no container.xml is written.
    """
    if files is None:
        files = {
            "OEBPS/ch1.xhtml": "<html><body>One</body></html>",
            "OEBPS/ch2.xhtml": "<html><body>Two</body></html>",
            "OEBPS/ch3.xhtml": "<html><body>Three</body></html>",
            "OEBPS/style.css": "body { margin: 0 }",
        }
    if opf is None:
        opf = build_opf(
            "Moby Dick",
            [("c1", "ch1.xhtml"), ("c2", "ch2.xhtml"), ("c3", "ch3.xhtml"), ("css", "style.css")],
            ["c1", "c2", "c3"],
        )
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        if opf_path is not None:
            zf.writestr("META-INF/container.xml", CONTAINER_XML.format(opf_path=opf_path))
            zf.writestr(opf_path, opf)
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        cache_dir=tmp_path / "cache",
        workspaces_dir=tmp_path / "books",
        store_dir=tmp_path / "store",
        allowed_hosts=f"{BOOK_HOST},localhost",
        cache_ttl_seconds=3600,
        max_bytes=1024 * 1024,
    )


@pytest.fixture()
def repo_settings(tmp_path: Path) -> Settings:
    """Settings with repository credentials configured."""
    return Settings(
        cache_dir=tmp_path / "cache",
        workspaces_dir=tmp_path / "books",
        store_dir=tmp_path / "store",
        allowed_hosts="repo.example.org",
        repository_api_url="https://api.example.org/server/api/",
        repository_front_url="https://repo.example.org",
        repository_user="svc@example.org",
        repository_password="s3cret",
    )


@pytest.fixture()
def epub_bytes() -> bytes:
    return build_epub()
