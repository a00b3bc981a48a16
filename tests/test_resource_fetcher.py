import asyncio

import httpx
import pytest

from conftest import no_sleep, png_bytes
from gamecard.core.errors import ResourceFetchError
from gamecard.data.providers import resources
from gamecard.data.providers.resources import ResourceFetcher

PROXY = "https://app.test/image-proxy"


def _fetcher(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("proxy_url", PROXY)
    kwargs.setdefault("retries", 0)
    return ResourceFetcher(client, _sleep=no_sleep, **kwargs)


def test_direct_fetch_returns_bytes_and_header_type():
    logo = png_bytes()

    def handler(request):
        return httpx.Response(200, content=logo, headers={"content-type": "image/png"}, request=request)

    res = asyncio.run(_fetcher(handler).fetch_resource("https://cdn.test/logo.png"))
    assert res.data == logo
    assert res.via == "direct"
    assert res.data_uri.startswith("data:image/png;base64,")


def test_falls_back_to_proxy_with_encoded_url():
    logo = png_bytes()
    seen = []

    def handler(request):
        seen.append(request.url)
        if request.url.host == "cdn.test":
            return httpx.Response(403, request=request)
        return httpx.Response(200, content=logo, headers={"content-type": "application/octet-stream"}, request=request)

    target = "https://cdn.test/logo.png?size=big&v=2"
    res = asyncio.run(_fetcher(handler).fetch_resource(target))
    assert res.via == "proxy"
    assert res.content_type == "image/png"
    assert seen[-1].host == "app.test"
    assert seen[-1].params["url"] == target


def test_both_stages_failing_raises_fetch_error():
    def handler(request):
        if request.url.host == "cdn.test":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(502, request=request)

    with pytest.raises(ResourceFetchError) as exc:
        asyncio.run(_fetcher(handler).fetch_resource("https://cdn.test/missing.png"))
    assert exc.value.url == "https://cdn.test/missing.png"


def test_without_proxy_direct_failure_is_final():
    calls = []

    def handler(request):
        calls.append(request.url.host)
        return httpx.Response(404, request=request)

    with pytest.raises(ResourceFetchError):
        asyncio.run(_fetcher(handler, proxy_url="").fetch("https://cdn.test/a.png"))
    assert calls == ["cdn.test"]


def test_combined_timeout_covers_both_stages():
    async def handler(request):
        await asyncio.sleep(1.0)
        return httpx.Response(200, content=b"late", request=request)

    with pytest.raises(ResourceFetchError) as exc:
        asyncio.run(_fetcher(handler, timeout=0.05).fetch("https://cdn.test/slow.png"))
    assert "timed out" in exc.value.message


def test_oversized_and_empty_bodies_are_rejected():
    def handler(request):
        if request.url.path == "/big.png":
            return httpx.Response(200, content=b"x" * 64, request=request)
        return httpx.Response(200, content=b"", request=request)

    fetcher = _fetcher(handler, proxy_url="", max_bytes=32)
    with pytest.raises(ResourceFetchError):
        asyncio.run(fetcher.fetch("https://cdn.test/big.png"))
    with pytest.raises(ResourceFetchError):
        asyncio.run(fetcher.fetch("https://cdn.test/empty.png"))


def test_data_uri_is_decoded_without_network():
    def handler(request):
        raise AssertionError("no request expected")

    uri = resources.to_data_uri(b"<svg/>", "image/svg+xml")
    res = asyncio.run(_fetcher(handler).fetch_resource(uri))
    assert res.data == b"<svg/>"
    assert res.content_type == "image/svg+xml"
    assert res.via == "inline"


def test_non_http_scheme_is_rejected():
    with pytest.raises(ResourceFetchError):
        asyncio.run(_fetcher(lambda r: httpx.Response(200, request=r)).fetch("ftp://cdn.test/a.png"))


def test_sniff_content_type_by_magic():
    assert resources.sniff_content_type(png_bytes()) == "image/png"
    assert resources.sniff_content_type(b"\xff\xd8\xff\xe0rest") == "image/jpeg"
    assert resources.sniff_content_type(b"wOF2....") == "font/woff2"
    assert resources.sniff_content_type(b"  <svg xmlns='x'/>") == "image/svg+xml"
    assert resources.sniff_content_type(b"????") == "application/octet-stream"
