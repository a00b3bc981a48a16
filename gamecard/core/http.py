import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from http.cookiejar import CookieJar, DefaultCookiePolicy

import httpx

from .config import settings
from .logger import get_logger

log = get_logger("core.http")

_DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}
_USER_AGENT = "gamecard/1.0 (+image export)"
_assets_client: httpx.AsyncClient | None = None
_telegram_client: httpx.AsyncClient | None = None
_telegram_token: str | None = None


def _http_limits() -> httpx.Limits:
    return httpx.Limits(max_connections=20, max_keepalive_connections=10)


def _credentialless_jar() -> CookieJar:
    # An empty allow-list rejects every Set-Cookie, so no credentials ride along.
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


def assets_client() -> httpx.AsyncClient:
    global _assets_client
    if _assets_client is None or _assets_client.is_closed:
        _assets_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.fetch_timeout_seconds),
            limits=_http_limits(),
            follow_redirects=True,
            cookies=_credentialless_jar(),
            headers={"User-Agent": _USER_AGENT},
        )
    return _assets_client


def telegram_client() -> httpx.AsyncClient:
    global _telegram_client, _telegram_token
    token = (settings.telegram_bot_token or "").strip()
    if not token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not configured")
    if _telegram_client is None or _telegram_client.is_closed or _telegram_token != token:
        _telegram_token = token
        _telegram_client = httpx.AsyncClient(
            base_url=f"https://api.telegram.org/bot{token}",
            timeout=httpx.Timeout(20.0),
            limits=_http_limits(),
        )
    return _telegram_client


async def init_http_clients() -> None:
    assets_client()
    if settings.telegram_bot_token:
        telegram_client()


async def close_http_clients() -> None:
    global _assets_client, _telegram_client, _telegram_token
    if _assets_client is not None and not _assets_client.is_closed:
        await _assets_client.aclose()
    if _telegram_client is not None and not _telegram_client.is_closed:
        await _telegram_client.aclose()
    _assets_client = None
    _telegram_client = None
    _telegram_token = None


def _parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    raw = (value or "").strip()
    if not raw:
        return None
    if raw.replace(".", "", 1).isdigit():
        return float(raw)
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _backoff_delay(attempt: int, base: float, cap: float, retry_after: float | None) -> float:
    delay = min(cap, base * (2 ** attempt))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


async def request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict | None = None,
    retries: int = 3,
    backoff_base: float = 0.5,
    backoff_max: float = 8.0,
    retry_statuses: set[int] | None = None,
    retry_exceptions: tuple[type[BaseException], ...] = (httpx.RequestError,),
    _sleep=asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    """Send a request, retrying transport errors and retryable statuses.

    The last retryable response is returned rather than raised so callers can
    map the status themselves.
    """
    statuses = retry_statuses or _DEFAULT_RETRY_STATUSES
    attempt = 0
    while True:
        try:
            response = await client.request(method, url, params=params, **kwargs)
        except retry_exceptions as e:
            if attempt >= retries:
                raise
            delay = _backoff_delay(attempt, backoff_base, backoff_max, None)
            log.debug("http_retry url=%s attempt=%s error=%s delay=%.2fs", url, attempt + 1, type(e).__name__, delay)
        else:
            if response.status_code not in statuses or attempt >= retries:
                return response
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            await response.aclose()
            delay = _backoff_delay(attempt, backoff_base, backoff_max, retry_after)
            log.debug("http_retry url=%s attempt=%s status=%s delay=%.2fs", url, attempt + 1, response.status_code, delay)
        await _sleep(delay)
        attempt += 1
