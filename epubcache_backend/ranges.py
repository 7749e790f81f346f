"""File delivery with single-range ``Range: bytes=`` support.

Only the first sub-range of a header is honored. Forms: ``N-M``, ``N-`` and
``-N``; ``end`` is clamped to the last byte and ``start > end`` yields 416
with ``Content-Range: bytes */<length>``. Headers that do not parse are
ignored and the whole file is sent with 200.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from .errors import PathError
from .models import RangeSpec
from .security import escapes_root, is_within, normalize_rel_path

log = structlog.get_logger()

CHUNK_SIZE = 64 * 1024
OCTET_STREAM = "application/octet-stream"

_RANGE_RE = re.compile(r"\s*(\d*)\s*-\s*(\d*)\s*", re.ASCII)

_CONTENT_TYPES = {
    ".xhtml": "text/html; charset=utf-8",
    ".html": "text/html; charset=utf-8",
    ".htm": "text/html; charset=utf-8",
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".xml": "application/xml",
    ".opf": "application/oebps-package+xml",
    ".ncx": "application/x-dtbncx+xml",
    ".epub": "application/epub+zip",
}


def content_type_for(name: str) -> str:
    return _CONTENT_TYPES.get(Path(name).suffix.lower(), OCTET_STREAM)


class RangeNotSatisfiable(Exception):
    """Internal signal from parse_range; surfaces as a 416 ServedFile, never to callers."""


def parse_range(header: str | None, length: int) -> RangeSpec | None:
    """Parse a Range header against a file of ``length`` bytes.

    Returns None when there is no usable header (serve the full file) and
    raises RangeNotSatisfiable when the clamped range is empty.
    """
    if not header:
        return None
    header = header.strip()
    if not header.lower().startswith("bytes="):
        return None
    match = _RANGE_RE.fullmatch(header[len("bytes="):].split(",", 1)[0])
    if match is None:
        return None
    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        # suffix form: the last N bytes
        start = max(0, length - int(last))
        end = length - 1
    else:
        start = int(first)
        end = int(last) if last else length - 1

    end = min(end, length - 1)
    if start > end:
        raise RangeNotSatisfiable()
    return RangeSpec(start=start, end=end)


@dataclass
class ServedFile:
    status: int
    headers: dict[str, str]
    media_type: str
    path: Path | None = None
    offset: int = 0
    count: int = 0
    chunk_size: int = field(default=CHUNK_SIZE, repr=False)

    def iter_chunks(self) -> Iterator[bytes]:
        """Yield exactly ``count`` bytes starting at ``offset``.

        A client that hangs up stops the iteration; closing the generator closes the file.
        """
        if self.path is None or self.count <= 0:
            return
        remaining = self.count
        with self.path.open("rb") as fh:
            fh.seek(self.offset)
            while remaining > 0:
                chunk = fh.read(min(self.chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk


def serve_file(
    path: Path,
    range_header: str | None,
    media_type: str | None = None,
    extra_headers: dict[str, str] | None = None,
) -> ServedFile:
    """Describe the response for a regular file (existence is the caller's concern)."""
    length = path.stat().st_size
    media_type = media_type or content_type_for(path.name)
    headers = {"Accept-Ranges": "bytes"}
    if extra_headers:
        headers.update(extra_headers)

    try:
        spec = parse_range(range_header, length)
    except RangeNotSatisfiable:
        headers["Content-Range"] = f"bytes */{length}"
        return ServedFile(status=416, headers=headers, media_type=media_type)

    if spec is None:
        headers["Content-Length"] = str(length)
        return ServedFile(status=200, headers=headers, media_type=media_type, path=path, count=length)

    headers["Content-Range"] = f"bytes {spec.start}-{spec.end}/{length}"
    headers["Content-Length"] = str(spec.length)
    return ServedFile(
        status=206,
        headers=headers,
        media_type=media_type,
        path=path,
        offset=spec.start,
        count=spec.length,
    )


def resolve_workspace_file(workspace_root: Path, relative_path: str) -> Path | None:
    """Map a requested path to a file inside ``workspace_root``.

    Raises PathError for traversal attempts; returns None for "no such file".
    """
    if escapes_root(relative_path):
        log.warning("path_escape_rejected", requested=relative_path)
        raise PathError()
    rel = normalize_rel_path(relative_path)
    if not rel:
        return None
    base = Path(os.path.realpath(workspace_root))
    target = Path(os.path.realpath(base / rel))
    if not is_within(base, target):
        log.warning("path_escape_rejected", requested=relative_path)
        raise PathError()
    if not target.is_file():
        return None
    return target


def serve_workspace_file(
    workspace_root: Path,
    relative_path: str,
    range_header: str | None,
    extra_headers: dict[str, str] | None = None,
) -> ServedFile | None:
    target = resolve_workspace_file(workspace_root, relative_path)
    if target is None:
        return None
    return serve_file(target, range_header, extra_headers=extra_headers)
