from __future__ import annotations

import shutil
import zipfile
from pathlib import Path

from .errors import ExtractError
from .security import normalize_rel_path, safe_join

COPY_BUFFER = 64 * 1024


def is_zip_file(path: Path) -> bool:
    try:
        return zipfile.is_zipfile(path)
    except OSError:
        return False


def extract_archive(
    zip_path: Path,
    dest_dir: Path,
    max_total_bytes: int,
    reserved_names: frozenset[str] = frozenset(),
) -> int:
    """Unpack every entry of ``zip_path`` into ``dest_dir``.

    Rules:
    - Entry names go through normalize_rel_path (Zip Slip defense); names that
      normalize to "" are skipped, as are names in ``reserved_names``
    - Directory entries are created; file entries are streamed to disk
    - The declared uncompressed total must stay under ``max_total_bytes``

    Returns the number of files written.
    """
    try:
        zf = zipfile.ZipFile(zip_path)
    except (zipfile.BadZipFile, OSError) as exc:
        raise ExtractError("invalid-archive", f"Invalid ZIP: {exc}") from exc

    written = 0
    with zf:
        members = zf.infolist()
        total = sum(info.file_size for info in members)
        if total > max_total_bytes:
            raise ExtractError("too-large", f"Archive expands to {total} bytes")

        for info in members:
            name = normalize_rel_path(info.filename)
            if not name or name in reserved_names:
                continue
            try:
                out = safe_join(dest_dir, name)
            except ValueError as exc:
                raise ExtractError("invalid-archive", f"Unsafe path in ZIP: {info.filename}") from exc

            try:
                if info.is_dir():
                    out.mkdir(parents=True, exist_ok=True)
                    continue
                out.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, out.open("wb") as dst:
                    shutil.copyfileobj(src, dst, COPY_BUFFER)
            except (zipfile.BadZipFile, NotImplementedError, OSError) as exc:
                # corrupt data, unsupported compression, or a file/dir name clash
                raise ExtractError("invalid-archive", f"Cannot extract {name}: {exc}") from exc
            written += 1
    return written
