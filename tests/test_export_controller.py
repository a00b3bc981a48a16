import asyncio
import io

import httpx
import pytest
from PIL import Image

from conftest import BOX_FONT_URL, no_sleep, png_bytes
from gamecard.core.errors import DeliveryError, EncodingError
from gamecard.data.models import Template
from gamecard.data.providers.cache import ResourceCache
from gamecard.data.providers.resources import ResourceFetcher
from gamecard.services import export
from gamecard.services.delivery import DownloadDelivery
from gamecard.services.events import ExportEvents, ExportFailed, ExportSucceeded, ProgressEvent, ResourceState
from gamecard.services.export import ExportController
from gamecard.services.fonts import FontEmbedder
from gamecard.services.rasterizer import Rasterizer

LOGO_URL = "https://cdn.test/lions.png"

TEMPLATE = {
    "id": "matchday",
    "category": "game",
    "format": "1:1",
    "backgroundColor": "#203040",
    "elements": [
        {"type": "api-image", "id": "home-logo", "apiField": "teamHomeLogo", "x": 100, "y": 100, "width": 200, "height": 200},
        {"type": "api-text", "id": "home", "apiField": "teamHome", "content": "HOME", "x": 100, "y": 500,
         "fontFamily": "test box", "fontSize": 80, "fill": "#ffffff"},
        {"type": "api-text", "id": "away", "apiField": "game.teamAway", "content": "AWAY", "x": 600, "y": 500,
         "fontFamily": "Test Box", "fontSize": 80, "fill": "#ffffff"},
    ],
}
RECORD = {"id": "g1", "teamHome": "LIONS", "teamAway": "TIGERS", "teamHomeLogo": LOGO_URL}


def _controller(handler, registry, tmp_path):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = ResourceFetcher(client, proxy_url="", retries=0, _sleep=no_sleep)
    return ExportController(
        fetcher,
        registry=registry,
        embedder=FontEmbedder(fetcher, registry=registry, cache=ResourceCache(), retries=1),
        rasterizer=Rasterizer(markup_fallback=False, registry=registry),
        download_dir=tmp_path,
    )


def _assets(box_font, logo=None):
    logo = logo or png_bytes((220, 20, 20, 255), (200, 200))

    def handler(request):
        if str(request.url) == BOX_FONT_URL:
            return httpx.Response(200, content=box_font, headers={"content-type": "font/ttf"}, request=request)
        if str(request.url) == LOGO_URL:
            return httpx.Response(200, content=logo, headers={"content-type": "image/png"}, request=request)
        return httpx.Response(404, request=request)

    return handler


def test_end_to_end_export_draws_every_layer(requires_cairo, box_font, box_registry, tmp_path):
    controller = _controller(_assets(box_font), box_registry, tmp_path)
    events = ExportEvents()
    result = asyncio.run(
        controller.export(
            Template.model_validate(TEMPLATE),
            [RECORD],
            scale=2,
            format="png",
            events=events,
            methods=[DownloadDelivery(tmp_path)],
        )
    )

    assert result.method == "download"
    assert result.file_name.startswith("game-g1-") and result.file_name.endswith(".png")
    img = Image.open(tmp_path / result.file_name).convert("RGBA")
    assert img.size == (2160, 2160)
    assert img.getpixel((20, 20))[:3] == (0x20, 0x30, 0x40)
    assert img.getpixel((400, 400))[:3] == (220, 20, 20)
    # First glyph of each team name: logical x 104..144, baseline 500, cap 56px at 80px.
    assert img.getpixel((240, 960))[:3] == (255, 255, 255)
    assert img.getpixel((1240, 960))[:3] == (255, 255, 255)
    assert img.getpixel((240, 1040))[:3] == (0x20, 0x30, 0x40)

    assert result.rendered.strategies == {"background": "skipped", "images": "primary", "text": "primary"}
    statuses = {s.identifier: s.state for s in events.statuses}
    assert statuses[LOGO_URL] == ResourceState.LOADED
    assert statuses["font Test Box 400 normal"] == ResourceState.LOADED
    assert isinstance(events.terminal, ExportSucceeded)


def test_failed_image_degrades_without_failing_the_export(box_font, box_registry, tmp_path):
    template = Template.model_validate(
        {
            "format": "1:1",
            "backgroundColor": "#000000",
            "elements": [
                {"type": "image", "id": "sponsor", "href": "https://cdn.test/missing.png", "x": 10, "y": 10, "width": 50, "height": 50},
                {"type": "text", "id": "t", "content": "FINAL", "x": 100, "y": 200, "fontFamily": "Test Box", "fontSize": 40, "fill": "#ffffff"},
            ],
        }
    )
    controller = _controller(_assets(box_font), box_registry, tmp_path)
    events = ExportEvents()
    result = asyncio.run(controller.export(template, [], events=events, methods=[DownloadDelivery(tmp_path)]))

    statuses = {s.identifier: s for s in events.statuses}
    assert statuses["https://cdn.test/missing.png"].state == ResourceState.ERROR
    assert result.rendered.strategies["images"] == "skipped"
    assert result.file_name.startswith("game-custom-")
    percents = [e.percent for e in events.history if isinstance(e, ProgressEvent)]
    assert percents == sorted(percents) and percents[-1] == 100
    assert isinstance(events.terminal, ExportSucceeded)


def test_unreachable_font_is_reported_and_text_degrades(box_registry, tmp_path):
    def handler(request):
        return httpx.Response(503, request=request)

    template = Template.model_validate(
        {"format": "1:1", "elements": [{"type": "text", "id": "t", "content": "X", "fontFamily": "Test Box"}]}
    )
    controller = _controller(handler, box_registry, tmp_path)
    events = ExportEvents()
    result = asyncio.run(controller.export(template, [], events=events, methods=[DownloadDelivery(tmp_path)]))

    assert events.statuses[0].state == ResourceState.ERROR
    assert result.rendered.strategies["text"] == "failed"
    assert result.warnings


def test_exhausted_delivery_emits_single_failure(box_font, box_registry, tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    controller = _controller(_assets(box_font), box_registry, tmp_path)
    events = ExportEvents()
    template = Template.model_validate({"format": "1:1"})

    with pytest.raises(DeliveryError):
        asyncio.run(controller.export(template, [], events=events, methods=[DownloadDelivery(blocker)]))

    terminal = [e for e in events.history if isinstance(e, (ExportFailed, ExportSucceeded))]
    assert len(terminal) == 1 and terminal[0].error_type == "DeliveryError"


def test_target_name_decides_format_and_extension(box_font, box_registry, tmp_path):
    controller = _controller(_assets(box_font), box_registry, tmp_path)
    rendered = asyncio.run(controller.render(Template.model_validate({"format": "4:5"}), [], file_name="../out/card.jpg", scale=1))
    assert rendered.encoded.file_name == "card.jpg"
    assert rendered.encoded.format == "jpeg"
    assert Image.open(io.BytesIO(rendered.encoded.data)).size == (1080, 1350)


def test_explicit_format_rewrites_conflicting_extension(box_font, box_registry, tmp_path):
    controller = _controller(_assets(box_font), box_registry, tmp_path)
    rendered = asyncio.run(
        controller.render(Template.model_validate({"format": "1:1"}), [], format="jpeg", file_name="card.png", scale=1)
    )
    assert rendered.encoded.file_name == "card.jpg"
    assert rendered.encoded.content_type == "image/jpeg"
    assert Image.open(io.BytesIO(rendered.encoded.data)).format == "JPEG"

    kept = asyncio.run(
        controller.render(Template.model_validate({"format": "1:1"}), [], format="jpeg", file_name="card.jpeg", scale=1)
    )
    assert kept.encoded.file_name == "card.jpeg"


def test_file_name_helpers():
    assert export.build_file_name("game", "g7", "png", now=1700000000.5) == "game-g7-1700000000500.png"
    assert export.build_file_name("", None, "jpeg", now=1.0) == "game-custom-1000.jpg"
    assert export.format_from_name("x.WEBP") == "webp"
    assert export.format_from_name("x") is None
    assert export.normalize_format("JPG") == "jpeg"
    with pytest.raises(EncodingError):
        export.normalize_format("gif")


def test_jpeg_encoding_flattens_transparency():
    img = Image.new("RGBA", (8, 8), (0, 0, 0, 0))
    data = export.encode(img, "jpeg", quality=95)
    decoded = Image.open(io.BytesIO(data))
    assert decoded.format == "JPEG"
    assert decoded.convert("RGB").getpixel((4, 4)) == (255, 255, 255)
