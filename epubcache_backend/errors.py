"""Exception hierarchy for fetching, extracting, serving and publishing.

Each error carries a short machine-readable ``reason`` so callers (the HTTP
layer, tests) can branch on the failure kind without parsing messages.
Unsatisfiable byte ranges are not errors; see ranges.ServedFile.
"""

from __future__ import annotations

__all__ = [
    "EpubCacheError",
    "ConfigurationError",
    "AuthError",
    "FetchError",
    "ExtractError",
    "PathError",
    "PublishError",
]


class EpubCacheError(RuntimeError):
    """Base exception for every failure raised by the backend."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


class ConfigurationError(EpubCacheError):
    """Raised when a required setting (credentials, base URL) is missing."""

    def __init__(self, message: str) -> None:
        super().__init__("configuration", message)


class AuthError(EpubCacheError):
    """Raised when the CSRF + login handshake with the repository fails."""


class FetchError(EpubCacheError):
    """Raised when an archive cannot be downloaded, or is rejected after download."""


class ExtractError(EpubCacheError):
    """Raised when an archive cannot be unpacked or its manifest cannot be read."""


class PathError(EpubCacheError):
    """Raised when a caller-supplied path tries to leave its root directory."""

    def __init__(self, message: str = "Path outside book directory") -> None:
        super().__init__("escape", message)


class PublishError(EpubCacheError):
    """Raised when the durable content store rejects a collection or resource."""

    def __init__(self, message: str) -> None:
        super().__init__("publish", message)
