from __future__ import annotations

import asyncio
import os
import re
import tempfile
import webbrowser
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Protocol, Sequence

from gamecard.core.config import settings
from gamecard.core.errors import DeliveryError
from gamecard.core.logger import get_logger
from gamecard.data.providers import telegram

log = get_logger("services.delivery")

_MOBILE_UA_RE = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini|Mobile", re.IGNORECASE)


@dataclass(frozen=True)
class ClientInfo:
    user_agent: str = ""
    max_touch_points: int = 0
    force_mobile: bool = False

    @property
    def is_mobile(self) -> bool:
        if self.force_mobile:
            return True
        return bool(_MOBILE_UA_RE.search(self.user_agent or "")) or self.max_touch_points > 1

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> ClientInfo:
        lowered = {k.lower(): v for k, v in headers.items()}
        touch = lowered.get("x-max-touch-points") or "0"
        try:
            touch_points = int(touch)
        except ValueError:
            touch_points = 0
        mobile_hint = (lowered.get("sec-ch-ua-mobile") or "").strip() == "?1"
        return cls(user_agent=lowered.get("user-agent", ""), max_touch_points=touch_points, force_mobile=mobile_hint)


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    file_name: str
    content_type: str
    format: str
    width: int
    height: int


@dataclass(frozen=True)
class DeliveryOutcome:
    method: str
    location: str


class DeliveryMethod(Protocol):
    name: str

    async def deliver(self, image: EncodedImage) -> str: ...


def write_atomic(directory: Path, file_name: str, data: bytes) -> Path:
    """Write ``data`` so that ``directory/file_name`` is either complete or absent."""
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / file_name
    fd, tmp_name = tempfile.mkstemp(prefix=".partial-", dir=str(directory))
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    return target


class DownloadDelivery:
    name = "download"

    def __init__(self, directory: Path | str | None = None):
        self.directory = Path(directory) if directory is not None else Path(settings.download_dir)

    async def deliver(self, image: EncodedImage) -> str:
        try:
            path = await asyncio.to_thread(write_atomic, self.directory, image.file_name, image.data)
        except OSError as e:
            raise DeliveryError(self.name, f"could not save {image.file_name}: {e}", cause=e) from e
        log.info("export_downloaded path=%s bytes=%s", path, len(image.data))
        return str(path)


class ShareDelivery:
    name = "share"

    def __init__(self, chat_id: int | None = None, *, caption: str | None = None):
        self.chat_id = settings.share_chat if chat_id is None else chat_id
        self.caption = caption

    async def deliver(self, image: EncodedImage) -> str:
        if self.chat_id is None or not (settings.telegram_bot_token or "").strip():
            raise DeliveryError(self.name, "share target is not configured")
        try:
            msg_id = await telegram.send_photo(
                self.chat_id,
                image.data,
                filename=image.file_name,
                content_type=image.content_type,
                caption=self.caption,
                # sendPhoto takes JPEG only; other formats go out as documents.
                as_document=image.format != "jpeg",
            )
        except DeliveryError:
            raise
        except Exception as e:
            raise DeliveryError(self.name, f"share failed: {e}", cause=e) from e
        log.info("export_shared chat_id=%s message_id=%s", self.chat_id, msg_id)
        return f"telegram:{self.chat_id}/{msg_id}"


class OpenInBrowserDelivery:
    name = "open"

    def __init__(self, opener: Callable[[str], bool] | None = None, directory: Path | str | None = None):
        self.opener = opener or webbrowser.open
        self.directory = Path(directory) if directory is not None else Path(tempfile.gettempdir()) / "gamecard"

    async def deliver(self, image: EncodedImage) -> str:
        try:
            path = await asyncio.to_thread(write_atomic, self.directory, image.file_name, image.data)
        except OSError as e:
            raise DeliveryError(self.name, f"could not stage {image.file_name}: {e}", cause=e) from e
        opened = await asyncio.to_thread(self.opener, path.resolve().as_uri())
        if not opened:
            path.unlink(missing_ok=True)
            raise DeliveryError(self.name, "no browser available to open the image")
        log.info("export_opened path=%s", path)
        return str(path)


def delivery_chain(client: ClientInfo | None = None, *, download_dir: Path | str | None = None) -> list[DeliveryMethod]:
    """Mobile: share, then open in a new context, then download. Desktop: download."""
    info = client or ClientInfo()
    download = DownloadDelivery(download_dir)
    if info.is_mobile:
        return [ShareDelivery(), OpenInBrowserDelivery(), download]
    return [download]


async def deliver(image: EncodedImage, methods: Sequence[DeliveryMethod]) -> DeliveryOutcome:
    errors: list[str] = []
    for method in methods:
        try:
            location = await method.deliver(image)
        except DeliveryError as e:
            log.warning("delivery_failed method=%s error=%s", method.name, e.message)
            errors.append(f"{method.name}: {e.message}")
            continue
        return DeliveryOutcome(method=method.name, location=location)
    raise DeliveryError("all", "could not deliver the image (" + "; ".join(errors or ["no delivery method"]) + ")")


class AttachmentDelivery:
    """Keeps the encoded image in memory for an HTTP response body."""

    name = "attachment"

    def __init__(self) -> None:
        self.image: EncodedImage | None = None

    async def deliver(self, image: EncodedImage) -> str:
        self.image = image
        return f"attachment:{image.file_name}"
