from __future__ import annotations

import os
import re
from pathlib import Path


_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]")


def normalize_rel_path(raw: str | None) -> str:
    """Normalize an archive entry name or a requested path into a safe relative path.

    Both separator styles are accepted. Leading separators, empty and ``.``
    segments are dropped; ``..`` pops the previous segment and is discarded
    when there is nothing left to pop, so the result can never climb above
    the root. An empty result means "no file" and must be rejected by callers.
    """
    if not raw:
        return ""
    stack: list[str] = []
    for part in raw.replace("\\", "/").split("/"):
        if not part or part == ".":
            continue
        if part == "..":
            if stack:
                stack.pop()
            continue
        stack.append(part)
    return "/".join(stack)


def escapes_root(raw: str | None) -> bool:
    """True when ``raw`` contains a ``..`` that would climb above its root.

    normalize_rel_path silently drops such segments; request handlers use this
    to reject the attempt outright instead of serving the rewritten path.
    """
    if not raw:
        return False
    depth = 0
    for part in raw.replace("\\", "/").split("/"):
        if not part or part == ".":
            continue
        if part == "..":
            if depth == 0:
                return True
            depth -= 1
        else:
            depth += 1
    return False


def safe_name(value: str | None) -> str:
    """Turn an owner or document id into a single directory name."""
    if not value:
        return "unknown"
    cleaned = _UNSAFE_NAME_RE.sub("_", value)
    if cleaned in (".", ".."):
        return cleaned.replace(".", "_")
    return cleaned


def is_within(base_dir: Path, candidate: Path) -> bool:
    """Textual containment check: equal to base, or under base plus a separator."""
    base = str(base_dir)
    target = str(candidate)
    return target == base or target.startswith(base.rstrip(os.sep) + os.sep)


def safe_join(base_dir: Path, rel: str) -> Path:
    """Join a normalized relative path onto base_dir and ensure the result stays inside.

    This defends against path traversal (including via symlinks, since both
    sides are resolved) when serving or extracting user-controlled paths.
    """
    base_dir = base_dir.resolve()
    resolved = (base_dir / normalize_rel_path(rel)).resolve()
    if not is_within(base_dir, resolved):
        raise ValueError("Path traversal attempt")
    return resolved
