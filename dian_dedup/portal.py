"""HTTP client for the DIAN document portal."""

from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional
from urllib.parse import quote, urlparse

import httpx

from .errors import FetchError
from .logging import get_logger
from .models import AuthResult, Credential, PortalSession

logger = get_logger(__name__)

ZIP_SIGNATURE = b"PK"
UNAUTHORIZED_STATUSES = {401, 403}


class PortalClient:
    """Performs the token handshake and downloads document bundles.

    A single ``httpx.Client`` is shared; its cookie jar is loaded from the
    caller's session before each request and cleared afterwards, so cookies
    never leak between credentials.
    """

    def __init__(
        self,
        download_base_url: str,
        user_agent: str,
        connect_timeout: float = 15.0,
        timeout: float = 120.0,
        auth_timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.download_base_url = download_base_url.rstrip("/")
        self.auth_timeout = httpx.Timeout(auth_timeout, connect=connect_timeout)
        self.total_timeout = timeout
        parsed = urlparse(self.download_base_url)
        self.referer = f"{parsed.scheme}://{parsed.netloc}/"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            transport=transport,
        )
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._client.close()

    def authenticate(self, credential: Credential) -> AuthResult:
        """Open a portal session. Never raises; failures come back as ``success=False``."""
        with self._lock:
            self._client.cookies.clear()
            try:
                response = self._client.get(
                    credential.url,
                    headers={"Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"},
                    timeout=self.auth_timeout,
                )
                cookies = _export_cookies(self._client.cookies)
            except httpx.HTTPError as exc:
                logger.warning(
                    "portal_auth_transport_error",
                    fingerprint=credential.fingerprint,
                    error=str(exc),
                )
                return AuthResult(success=False, status_code=0, error=str(exc))
            finally:
                self._client.cookies.clear()

        success = response.status_code == 200
        logger.info(
            "portal_auth",
            fingerprint=credential.fingerprint,
            status_code=response.status_code,
            success=success,
            cookies=len(cookies),
        )
        return AuthResult(
            success=success,
            status_code=response.status_code,
            cookies=cookies if success else [],
            error=None if success else f"HTTP {response.status_code}",
        )

    def fetch_document(self, lookup_key: str, session: PortalSession) -> bytes:
        """Download the zip bundle for ``lookup_key``; refreshed cookies are written back to ``session``.

        The whole download, body included, must finish within ``timeout``
        seconds. A non-archive answer that came through a redirect or as
        HTML is the portal's login page, so the session is reported as
        unauthorized.
        """
        url = self.download_url(lookup_key)
        started = time.monotonic()
        with self._lock:
            self._client.cookies.clear()
            _load_cookies(self._client.cookies, session.cookies)
            try:
                with self._client.stream(
                    "GET",
                    url,
                    headers={
                        "Accept": "application/zip, application/octet-stream, */*",
                        "Referer": self.referer,
                    },
                ) as response:
                    body = self._read_body(response, lookup_key, started)
                session.cookies = _export_cookies(self._client.cookies)
            except httpx.TimeoutException as exc:
                raise FetchError(f"Timed out downloading {lookup_key}: {exc}", FetchError.TRANSPORT) from exc
            except httpx.HTTPError as exc:
                raise FetchError(f"Connection error downloading {lookup_key}: {exc}", FetchError.TRANSPORT) from exc
            finally:
                self._client.cookies.clear()

        status = response.status_code
        if status in UNAUTHORIZED_STATUSES:
            raise FetchError(f"Portal rejected the session (HTTP {status})", FetchError.UNAUTHORIZED, status)
        if status != 200:
            raise FetchError(f"HTTP {status}", FetchError.HTTP_STATUS, status)

        if body[:2] != ZIP_SIGNATURE:
            content_type = response.headers.get("content-type", "").lower()
            if response.history or content_type.startswith("text/html"):
                logger.warning(
                    "portal_session_expired",
                    lookup_key=lookup_key,
                    redirected=bool(response.history),
                    content_type=content_type,
                )
                raise FetchError(
                    f"Portal answered {lookup_key} with a login page",
                    FetchError.UNAUTHORIZED,
                    status,
                )
            raise FetchError("Downloaded file is not a valid zip archive", FetchError.INVALID_FORMAT, status)

        logger.info("portal_fetch", lookup_key=lookup_key, size=len(body))
        return body

    def _read_body(self, response: httpx.Response, lookup_key: str, started: float) -> bytes:
        chunks: List[bytes] = []
        for chunk in response.iter_bytes():
            chunks.append(chunk)
            if time.monotonic() - started > self.total_timeout:
                raise FetchError(
                    f"Download of {lookup_key} exceeded {self.total_timeout:g}s",
                    FetchError.TRANSPORT,
                )
        return b"".join(chunks)

    def download_url(self, lookup_key: str) -> str:
        delimiter = "&" if "?" in self.download_base_url else "?"
        return f"{self.download_base_url}{delimiter}trackId={quote(lookup_key, safe='')}"


def _export_cookies(cookies: httpx.Cookies) -> List[Dict[str, str]]:
    return [
        {"name": cookie.name, "value": cookie.value or "", "domain": cookie.domain, "path": cookie.path}
        for cookie in cookies.jar
    ]


def _load_cookies(cookies: httpx.Cookies, stored: List[Dict[str, str]]) -> None:
    for item in stored:
        cookies.set(
            item["name"],
            item.get("value", ""),
            domain=item.get("domain", ""),
            path=item.get("path", "/"),
        )
