"""Backend for the EPUB fetch-through cache and renderer.

This package intentionally keeps FastAPI route handlers thin:
- fetch-through archive cache (allow-list, size caps, atomic promotion, TTL sweep)
- repository login handshake + tree enumeration
- per-owner extraction workspaces with TTL cleanup
- safe file serving with single-range HTTP semantics
- publishing workspaces into a durable content store

Security note:
Owner ids come from the host (already authenticated). Workspaces are never
shared across owners, and every caller-supplied path goes through
security.normalize_rel_path before it touches the filesystem.
"""
