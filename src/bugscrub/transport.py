"""HTTP transport to the remote collector.

The transport sends bytes and classifies what came back.  It does not retry:
scheduling another attempt is the queue's job.

Authentication is whatever the caller configured: an API key header, a
bearer token (optionally refreshable once on 401), or a custom header set.
"""

from __future__ import annotations

import email.utils
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Generator, Mapping
from urllib.parse import urlsplit

import httpx

from .errors import ConfigError, DeliveryError

logger = logging.getLogger(__name__)

REPORTS_PATH = "/api/v1/reports"
PRESIGN_PATH = "/api/v1/uploads/presigned-url"
DEFAULT_TIMEOUT = 30.0
UPLOAD_TIMEOUT = 60.0
CHUNK_SIZE = 64 * 1024
RATE_LIMIT_STATUS = 429
# Collector answers meaning "no direct-upload channel here"
_NO_CHANNEL_STATUS = (404, 405, 501)
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}

ProgressCallback = Callable[[int, int], None]


# -- Authentication ---


class ApiKeyAuth(httpx.Auth):
    """Static API key header."""

    def __init__(self, key: str, header: str = "X-API-Key") -> None:
        self.key = key
        self.header = header

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers[self.header] = self.key
        yield request


class BearerAuth(httpx.Auth):
    """Bearer token; ``refresh`` returns a new token after a 401."""

    def __init__(self, token: str, refresh: Callable[[], str] | None = None) -> None:
        self.token = token
        self.refresh = refresh

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self.token}"
        yield request

    def refresh_token(self) -> bool:
        if self.refresh is None:
            return False
        self.token = self.refresh()
        return True


class HeaderAuth(httpx.Auth):
    """Arbitrary caller-supplied header set."""

    def __init__(self, headers: Mapping[str, str]) -> None:
        self.headers = dict(headers)

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers.update(self.headers)
        yield request


# -- Outcome classification ---


def parse_retry_after(headers: Mapping[str, str], now: float | None = None) -> float | None:
    """Seconds to wait from Retry-After (seconds or HTTP-date) or X-RateLimit-Reset."""
    now = time.time() if now is None else now
    normalized = {k.lower(): v for k, v in headers.items()}

    retry_after = normalized.get("retry-after")
    if retry_after is not None:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass
        try:
            when = email.utils.parsedate_to_datetime(retry_after)
            return max(0.0, when.timestamp() - now)
        except (TypeError, ValueError):
            logger.warning("Unparseable Retry-After header: %s", retry_after)
            return None

    reset_ts = normalized.get("x-ratelimit-reset")
    if reset_ts is not None:
        try:
            return max(0.0, float(reset_ts) - now)
        except ValueError:
            logger.warning("Unparseable X-RateLimit-Reset header: %s", reset_ts)
    return None


def check_response(response: httpx.Response) -> httpx.Response:
    """Return a 2xx response; raise a classified DeliveryError otherwise.

    5xx and 429 are retriable (429 carries the server's suggested delay);
    every other non-2xx status is permanent.
    """
    status = response.status_code
    if 200 <= status < 300:
        return response
    if status == RATE_LIMIT_STATUS:
        raise DeliveryError(
            "rate limited by collector",
            retriable=True, status_code=status,
            retry_after=parse_retry_after(response.headers),
        )
    if status >= 500:
        raise DeliveryError(f"collector error {status}", retriable=True, status_code=status)
    raise DeliveryError(f"collector rejected report: {status}", retriable=False, status_code=status)


def error_from_exception(exc: httpx.HTTPError) -> DeliveryError:
    """Network errors and timeouts are always retriable."""
    return DeliveryError(f"{type(exc).__name__}: {exc}", retriable=True)


# -- Transport ---


@dataclass(frozen=True)
class UploadChannel:
    """A presigned upload target advertised by the collector."""
    upload_url: str
    storage_key: str


async def _chunks(data: bytes, chunk_size: int, on_progress: ProgressCallback | None) -> AsyncIterator[bytes]:
    total = len(data)
    sent = 0
    for offset in range(0, total, chunk_size):
        chunk = data[offset:offset + chunk_size]
        yield chunk
        sent += len(chunk)
        if on_progress is not None:
            on_progress(sent, total)


def validate_endpoint(endpoint: str) -> str:
    """Require https, except for loopback hosts."""
    parts = urlsplit(endpoint)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigError("endpoint", f"not an absolute http(s) URL: {endpoint!r}")
    if parts.scheme != "https" and parts.hostname not in _LOCAL_HOSTS:
        raise ConfigError("endpoint", "must use https (plain http is only allowed for localhost)")
    return endpoint.rstrip("/")


class CollectorTransport:
    """Sends sanitized reports and attachments to the collector."""

    def __init__(
        self,
        endpoint: str,
        auth: httpx.Auth | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.endpoint = validate_endpoint(endpoint)
        self.auth = auth
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def _post(self, url: str, body: bytes, headers: Mapping[str, str], on_progress: ProgressCallback | None) -> httpx.Response:
        return await self._client.post(
            url,
            content=_chunks(body, self.chunk_size, on_progress),
            headers={**headers, "Content-Length": str(len(body))},
            auth=self.auth,
            timeout=self.timeout,
        )

    async def send_report(
        self,
        body: bytes,
        headers: Mapping[str, str],
        on_progress: ProgressCallback | None = None,
    ) -> httpx.Response:
        """POST a report body. Raises DeliveryError unless the collector accepted it."""
        url = self.endpoint + REPORTS_PATH
        try:
            response = await self._post(url, body, headers, on_progress)
            if response.status_code == 401 and isinstance(self.auth, BearerAuth) and self.auth.refresh is not None:
                logger.warning("Token expired, attempting refresh")
                try:
                    self.auth.refresh_token()
                except Exception:
                    # Keep the original 401; it is classified as permanent below
                    logger.exception("Token refresh failed")
                else:
                    response = await self._post(url, body, headers, on_progress)
        except httpx.HTTPError as exc:
            raise error_from_exception(exc) from exc
        return check_response(response)

    async def request_upload_channel(self, kind: str, filename: str, content_type: str) -> UploadChannel | None:
        """Ask the collector for a presigned upload URL; None if it offers none."""
        try:
            response = await self._client.post(
                self.endpoint + PRESIGN_PATH,
                json={"fileType": kind, "filename": filename, "contentType": content_type},
                auth=self.auth,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise error_from_exception(exc) from exc
        if response.status_code in _NO_CHANNEL_STATUS:
            return None
        check_response(response)
        data = response.json()
        data = data.get("data", data)
        try:
            return UploadChannel(upload_url=data["uploadUrl"], storage_key=data["storageKey"])
        except (KeyError, TypeError) as exc:
            raise DeliveryError("malformed presigned-url response", retriable=True) from exc

    async def upload(
        self,
        channel: UploadChannel,
        data: bytes,
        content_type: str,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """PUT an attachment straight to its presigned URL (no collector auth)."""
        try:
            response = await self._client.put(
                channel.upload_url,
                content=_chunks(data, self.chunk_size, on_progress),
                headers={"Content-Type": content_type, "Content-Length": str(len(data))},
                timeout=UPLOAD_TIMEOUT,
            )
        except httpx.HTTPError as exc:
            raise error_from_exception(exc) from exc
        check_response(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
