import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import png_bytes
from gamecard import main
from gamecard.core.errors import EncodingError
from gamecard.services.delivery import EncodedImage


@pytest.fixture()
def api_client():
    return TestClient(main.app)


@pytest.fixture()
def upstream(monkeypatch):
    seen = []
    logo = png_bytes()

    def handler(request):
        seen.append(str(request.url))
        if request.url.path == "/logo.png":
            return httpx.Response(200, content=logo, headers={"content-type": "image/png"}, request=request)
        return httpx.Response(404, request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    monkeypatch.setattr(main, "assets_client", lambda: client)
    monkeypatch.setattr(main.settings, "proxy_allowed_hosts_raw", "", raising=False)
    return seen, logo


def test_missing_and_non_http_urls_are_rejected(api_client):
    assert api_client.get("/image-proxy").status_code == 400
    resp = api_client.get("/image-proxy", params={"url": "ftp://cdn.test/logo.png"})
    assert resp.status_code == 400
    assert resp.headers["access-control-allow-origin"] == "*"


def test_proxy_passes_bytes_through_with_cors_and_cache_headers(api_client, upstream):
    seen, logo = upstream
    resp = api_client.get("/image-proxy", params={"url": "https://cdn.test/logo.png"})
    assert resp.status_code == 200
    assert resp.content == logo
    assert resp.headers["content-type"] == "image/png"
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers["cache-control"] == "public, max-age=3600"
    assert seen == ["https://cdn.test/logo.png"]


def test_upstream_error_maps_to_502(api_client, upstream):
    resp = api_client.get("/image-proxy", params={"url": "https://cdn.test/gone.png"})
    assert resp.status_code == 502


def test_disallowed_host_is_forbidden(api_client, upstream, monkeypatch):
    monkeypatch.setattr(main.settings, "proxy_allowed_hosts_raw", "img.federation.test", raising=False)
    assert api_client.get("/image-proxy", params={"url": "https://cdn.test/logo.png"}).status_code == 403


class _FakeController:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def export(self, template, records, *, methods, **kwargs):
        self.calls.append((template.id, records, kwargs))
        if self.error is not None:
            raise self.error
        image = EncodedImage(data=b"img", file_name="game-g1-1.png", content_type="image/png", format="png", width=1, height=1)
        await methods[0].deliver(image)

        class _Result:
            warnings = ("images layer was not rendered",)

        return _Result()


def test_export_endpoint_returns_attachment(api_client, monkeypatch):
    fake = _FakeController()
    monkeypatch.setattr(main, "_controller", fake)
    resp = api_client.post(
        "/api/v1/export",
        json={"template": {"id": "t1", "format": "1:1"}, "records": [{"id": "g1"}], "fileName": "game-g1-1.png"},
    )
    assert resp.status_code == 200
    assert resp.content == b"img"
    assert resp.headers["content-disposition"] == 'attachment; filename="game-g1-1.png"'
    assert resp.headers["x-export-warnings"] == "1"
    assert fake.calls[0][2]["target_file_name"] == "game-g1-1.png"


def test_export_endpoint_maps_encoding_errors_to_422(api_client, monkeypatch):
    monkeypatch.setattr(main, "_controller", _FakeController(EncodingError("unsupported export format: gif")))
    resp = api_client.post("/api/v1/export", json={"template": {"format": "1:1"}, "format": "gif"})
    assert resp.status_code == 422
    assert "gif" in resp.json()["detail"]
