import asyncio

import pytest

from gamecard.core.errors import DeliveryError
from gamecard.services import delivery
from gamecard.services.delivery import (
    ClientInfo,
    DownloadDelivery,
    EncodedImage,
    OpenInBrowserDelivery,
    ShareDelivery,
)


def _image(name="game-g1-1.png"):
    return EncodedImage(data=b"\x89PNG-data", file_name=name, content_type="image/png", format="png", width=1, height=1)


def test_client_classification():
    assert ClientInfo("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)").is_mobile
    assert ClientInfo("Mozilla/5.0 (X11; Linux x86_64)", max_touch_points=5).is_mobile
    assert not ClientInfo("Mozilla/5.0 (Windows NT 10.0; Win64; x64)").is_mobile
    assert ClientInfo.from_headers({"User-Agent": "Desktop", "Sec-CH-UA-Mobile": "?1"}).is_mobile


def test_chain_order_for_mobile_and_desktop(tmp_path):
    mobile = delivery.delivery_chain(ClientInfo(force_mobile=True), download_dir=tmp_path)
    desktop = delivery.delivery_chain(ClientInfo(), download_dir=tmp_path)
    assert [m.name for m in mobile] == ["share", "open", "download"]
    assert [m.name for m in desktop] == ["download"]


def test_download_writes_complete_file(tmp_path):
    location = asyncio.run(DownloadDelivery(tmp_path).deliver(_image()))
    assert (tmp_path / "game-g1-1.png").read_bytes() == b"\x89PNG-data"
    assert location.endswith("game-g1-1.png")
    assert [p.name for p in tmp_path.iterdir()] == ["game-g1-1.png"]


def test_mobile_chain_falls_through_to_download(tmp_path, monkeypatch):
    monkeypatch.setattr(delivery.settings, "telegram_bot_token", "", raising=False)
    opened = []

    def opener(uri):
        opened.append(uri)
        return False

    methods = [ShareDelivery(chat_id=-100), OpenInBrowserDelivery(opener, tmp_path / "open"), DownloadDelivery(tmp_path / "dl")]
    outcome = asyncio.run(delivery.deliver(_image(), methods))

    assert outcome.method == "download"
    assert opened and opened[0].startswith("file://")
    # The staged copy for the browser is removed when nothing opened it.
    assert list((tmp_path / "open").iterdir()) == []
    assert (tmp_path / "dl" / "game-g1-1.png").exists()


def test_share_uses_telegram_provider(monkeypatch):
    sent = {}

    async def fake_send_photo(chat_id, data, **kwargs):
        sent.update(chat_id=chat_id, data=data, **kwargs)
        return 55

    monkeypatch.setattr(delivery.settings, "telegram_bot_token", "token", raising=False)
    monkeypatch.setattr(delivery.telegram, "send_photo", fake_send_photo)

    location = asyncio.run(ShareDelivery(chat_id=-100).deliver(_image()))
    assert location == "telegram:-100/55"
    assert sent["filename"] == "game-g1-1.png"
    assert sent["content_type"] == "image/png"


def test_exhausted_chain_raises_delivery_error(tmp_path, monkeypatch):
    monkeypatch.setattr(delivery.settings, "telegram_bot_token", "", raising=False)
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    with pytest.raises(DeliveryError) as exc:
        asyncio.run(delivery.deliver(_image(), [ShareDelivery(chat_id=1), DownloadDelivery(blocker)]))
    assert exc.value.method == "all"
    assert "share" in exc.value.message and "download" in exc.value.message
