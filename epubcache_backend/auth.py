"""Repository login handshake.

The repository API protects login with a double-submit CSRF token:

1. ``GET {api}/security/csrf`` (no redirects) sets the XSRF cookie.
2. ``POST {api}/authn/login`` with the token echoed as ``X-XSRF-TOKEN`` and as
   the same cookie returns ``Authorization: Bearer <token>``.

Tokens are never stored; every top-level repository operation logs in again.
The HTTP client is shared, so its cookie jar is emptied after each handshake
to keep session cookies from leaking into later requests.
"""

from __future__ import annotations

import httpx
import structlog

from .errors import AuthError
from .logging_config import redact

log = structlog.get_logger()

XSRF_COOKIE = "DSPACE-XSRF-COOKIE"
XSRF_HEADER = "X-XSRF-TOKEN"


def extract_cookie(set_cookie_headers: list[str], name: str) -> str | None:
    """Find ``name=value`` among raw Set-Cookie header values."""
    prefix = name + "="
    for header in set_cookie_headers:
        for part in header.split(";"):
            part = part.strip()
            if part.startswith(prefix):
                value = part[len(prefix):]
                if value:
                    return value
    return None


class RemoteAuthClient:
    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    def authenticate(self, api_base: str, identity: str, secret: str) -> str:
        """Run the CSRF + login handshake and return the bearer token."""
        api_base = api_base.rstrip("/")
        log.info("repository_auth_start", api_base=api_base, user=identity)
        try:
            xsrf = self._fetch_csrf(api_base)
            return self._login(api_base, identity, secret, xsrf)
        finally:
            self._client.cookies.clear()

    def _fetch_csrf(self, api_base: str) -> str:
        url = f"{api_base}/security/csrf"
        try:
            response = self._client.get(url, follow_redirects=False)
        except httpx.HTTPError as exc:
            log.error("repository_csrf_transport_error", url=url, error=str(exc))
            raise AuthError("transport", f"CSRF request failed: {exc}") from exc

        if not response.is_success:
            log.error("repository_csrf_failed", url=url, status=response.status_code)
            raise AuthError("csrf-unavailable", f"No CSRF cookie (HTTP {response.status_code})")

        xsrf = extract_cookie(response.headers.get_list("set-cookie"), XSRF_COOKIE)
        if xsrf is None:
            log.error("repository_csrf_missing_cookie", url=url, status=response.status_code)
            raise AuthError("csrf-unavailable", "XSRF token not found")
        log.debug("repository_csrf_ok", token=redact(xsrf))
        return xsrf

    def _login(self, api_base: str, identity: str, secret: str, xsrf: str) -> str:
        url = f"{api_base}/authn/login"
        try:
            response = self._client.post(
                url,
                data={"user": identity, "password": secret},
                headers={
                    XSRF_HEADER: xsrf,
                    "Cookie": f"{XSRF_COOKIE}={xsrf}",
                },
                follow_redirects=False,
            )
        except httpx.HTTPError as exc:
            log.error("repository_login_transport_error", url=url, error=str(exc))
            raise AuthError("transport", f"Login request failed: {exc}") from exc

        auth_header = response.headers.get("authorization")
        if not auth_header or not auth_header.lower().startswith("bearer "):
            log.error(
                "repository_login_failed",
                url=url,
                status=response.status_code,
                password_length=len(secret or ""),
            )
            raise AuthError("login-failed", "No Bearer token in login response")

        token = auth_header[len("bearer "):].strip()
        if not token:
            raise AuthError("login-failed", "Empty Bearer token in login response")
        log.info("repository_auth_ok", token=redact(token))
        return token
