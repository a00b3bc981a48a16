from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from urllib.parse import unquote_to_bytes

import httpx

from gamecard.core.config import settings
from gamecard.core.errors import ResourceFetchError
from gamecard.core.http import assets_client, request_with_retries
from gamecard.core.logger import get_logger

log = get_logger("providers.resources")

_GENERIC_TYPES = {"", "application/octet-stream", "binary/octet-stream", "text/plain"}


@dataclass(frozen=True)
class InlinedResource:
    url: str
    data: bytes
    content_type: str
    via: str

    @property
    def data_uri(self) -> str:
        return to_data_uri(self.data, self.content_type)

    @property
    def size_label(self) -> str:
        return f"{len(self.data) / 1024:.1f} KB"


def sniff_content_type(data: bytes, default: str = "application/octet-stream") -> str:
    head = data[:512]
    if head[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if head[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if head[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head[:4] == b"wOF2":
        return "font/woff2"
    if head[:4] == b"wOFF":
        return "font/woff"
    if head[:4] == b"OTTO":
        return "font/otf"
    if head[:4] in (b"\x00\x01\x00\x00", b"true"):
        return "font/ttf"
    stripped = head.lstrip().lower()
    if stripped.startswith(b"<svg") or (stripped.startswith(b"<?xml") and b"<svg" in stripped):
        return "image/svg+xml"
    return default


def to_data_uri(data: bytes, content_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def decode_data_uri(uri: str) -> tuple[bytes, str]:
    if not uri.startswith("data:") or "," not in uri:
        raise ValueError("not a data URI")
    header, payload = uri[5:].split(",", 1)
    parts = header.split(";")
    content_type = parts[0] or "text/plain"
    if "base64" in parts[1:]:
        try:
            return base64.b64decode(payload, validate=False), content_type
        except binascii.Error as e:
            raise ValueError(f"invalid base64 payload: {e}") from e
    return unquote_to_bytes(payload), content_type


def is_remote(url: str | None) -> bool:
    low = (url or "").strip().lower()
    return low.startswith("http://") or low.startswith("https://")


class ResourceFetcher:
    """Fetches fonts and images: direct first, then the same-origin proxy.

    Both stages share one timeout budget. Anything that does not end in bytes
    raises ``ResourceFetchError``; callers decide whether that is fatal.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        proxy_url: str | None = None,
        timeout: float | None = None,
        retries: int | None = None,
        max_bytes: int | None = None,
        _sleep=asyncio.sleep,
    ):
        self._client = client
        self.proxy_url = (settings.image_proxy_url if proxy_url is None else proxy_url).strip()
        self.timeout = settings.fetch_timeout_seconds if timeout is None else timeout
        self.retries = settings.fetch_retries if retries is None else retries
        self.max_bytes = settings.fetch_max_bytes if max_bytes is None else max_bytes
        self._sleep = _sleep

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else assets_client()

    async def fetch(self, url: str, *, retries: int | None = None) -> bytes:
        return (await self.fetch_resource(url, retries=retries)).data

    async def fetch_resource(self, url: str, *, retries: int | None = None) -> InlinedResource:
        target = (url or "").strip()
        if not target:
            raise ResourceFetchError(target, "empty resource URL")
        if target.startswith("data:"):
            try:
                data, content_type = decode_data_uri(target)
            except ValueError as e:
                raise ResourceFetchError(target[:64], f"malformed data URI: {e}", cause=e) from e
            return InlinedResource(url=target, data=data, content_type=content_type, via="inline")
        if not is_remote(target):
            raise ResourceFetchError(target, f"unsupported URL scheme: {target[:64]}")
        attempts = self.retries if retries is None else retries
        try:
            return await asyncio.wait_for(self._fetch_chain(target, attempts), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            log.warning("resource_fetch_timeout url=%s timeout=%.1fs", target, self.timeout)
            raise ResourceFetchError(target, f"timed out after {self.timeout:.0f}s: {target}", cause=e) from e

    async def _fetch_chain(self, url: str, retries: int) -> InlinedResource:
        try:
            data, content_type = await self._get(url, None, retries)
            return InlinedResource(url=url, data=data, content_type=content_type, via="direct")
        except (httpx.HTTPError, ResourceFetchError) as direct_error:
            if not self.proxy_url:
                log.warning("resource_fetch_failed url=%s error=%s proxy=none", url, direct_error)
                raise ResourceFetchError(url, f"failed to load {url}", cause=direct_error) from direct_error
            log.info("resource_fetch_direct_failed url=%s error=%s; trying proxy", url, direct_error)
        try:
            data, content_type = await self._get(self.proxy_url, {"url": url}, retries)
            return InlinedResource(url=url, data=data, content_type=content_type, via="proxy")
        except (httpx.HTTPError, ResourceFetchError) as proxy_error:
            log.warning("resource_fetch_failed url=%s error=%s", url, proxy_error)
            raise ResourceFetchError(url, f"failed to load {url}", cause=proxy_error) from proxy_error

    async def _get(self, url: str, params: dict | None, retries: int) -> tuple[bytes, str]:
        resp = await request_with_retries(
            self.client,
            "GET",
            url,
            params=params,
            retries=retries,
            backoff_base=0.4,
            backoff_max=2.0,
            _sleep=self._sleep,
        )
        try:
            if resp.status_code < 200 or resp.status_code >= 300:
                raise ResourceFetchError(url, f"HTTP {resp.status_code}")
            data = await resp.aread()
        finally:
            await resp.aclose()
        if not data:
            raise ResourceFetchError(url, "empty response body")
        if len(data) > self.max_bytes:
            raise ResourceFetchError(url, f"response exceeds {self.max_bytes} bytes")
        header_type = (resp.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
        content_type = header_type if header_type not in _GENERIC_TYPES else sniff_content_type(data)
        return data, content_type
