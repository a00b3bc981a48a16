from __future__ import annotations

import asyncio
import io
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from PIL import Image

from gamecard.core.config import settings
from gamecard.core.errors import BindingUnresolved, EncodingError, ExportError, ResourceFetchError
from gamecard.core.logger import get_logger
from gamecard.data.models import DataRecord, GroupElement, ImageElement, Template
from gamecard.data.providers.resources import InlinedResource, ResourceFetcher, is_remote
from gamecard.services.binding import normalize_records, resolve_template
from gamecard.services.delivery import (
    ClientInfo,
    DeliveryMethod,
    EncodedImage,
    deliver,
    delivery_chain,
)
from gamecard.services.events import ExportEvents, ExportSucceeded, ResourceState
from gamecard.services.fonts import (
    FontEmbedder,
    FontFaceBlock,
    FontRegistry,
    canonicalize_fonts,
    collect_used_variants,
    font_registry,
)
from gamecard.services.layers import Layer, LayeredScene, separate
from gamecard.services.rasterizer import Rasterizer

log = get_logger("services.export")

_EXTENSIONS = {"png": "png", "jpeg": "jpg", "webp": "webp"}
_FORMAT_BY_EXT = {"png": "png", "jpg": "jpeg", "jpeg": "jpeg", "webp": "webp"}
_CONTENT_TYPES = {"png": "image/png", "jpeg": "image/jpeg", "webp": "image/webp"}


@dataclass(frozen=True)
class RenderedImage:
    encoded: EncodedImage
    image: Image.Image
    warnings: tuple[str, ...]
    strategies: Mapping[str, str]
    unresolved: tuple[BindingUnresolved, ...]


@dataclass(frozen=True)
class ExportResult:
    file_name: str
    method: str
    location: str
    size_bytes: int
    warnings: tuple[str, ...]
    rendered: RenderedImage


def normalize_format(value: str | None) -> str | None:
    raw = (value or "").strip().lower().lstrip(".")
    if not raw:
        return None
    fmt = _FORMAT_BY_EXT.get(raw)
    if fmt is None:
        raise EncodingError(f"unsupported export format: {value}")
    return fmt


def format_from_name(file_name: str | None) -> str | None:
    suffix = Path(file_name or "").suffix.lower().lstrip(".")
    return _FORMAT_BY_EXT.get(suffix)


def build_file_name(category: str, record_id: str | None, fmt: str, *, now: float | None = None) -> str:
    stamp = int((time.time() if now is None else now) * 1000)
    return f"{category or 'game'}-{record_id or 'custom'}-{stamp}.{_EXTENSIONS[fmt]}"


def _target_name(target: str, fmt: str) -> str:
    name = Path(target).name
    named_fmt = format_from_name(name)
    if named_fmt is None:
        return f"{name}.{_EXTENSIONS[fmt]}"
    if named_fmt != fmt:
        # The extension always names the encoding that was written.
        return Path(name).with_suffix("." + _EXTENSIONS[fmt]).name
    return name


def encode(image: Image.Image, fmt: str, *, quality: int | None = None) -> bytes:
    buf = io.BytesIO()
    try:
        if fmt == "png":
            image.save(buf, format="PNG", optimize=False)
        elif fmt == "jpeg":
            flat = Image.new("RGBA", image.size, (255, 255, 255, 255))
            flat.alpha_composite(image.convert("RGBA"))
            flat.convert("RGB").save(
                buf,
                format="JPEG",
                quality=settings.jpeg_quality if quality is None else quality,
                subsampling=0,
            )
        elif fmt == "webp":
            image.save(buf, format="WEBP", lossless=True)
        else:
            raise EncodingError(f"unsupported export format: {fmt}")
    except (OSError, ValueError, KeyError) as e:
        raise EncodingError(f"could not encode image as {fmt.upper()}: {e}", cause=e) from e
    data = buf.getvalue()
    if not data:
        raise EncodingError(f"encoder produced no {fmt.upper()} data")
    return data


def _inline_elements(elements, resources: Mapping[str, InlinedResource]) -> tuple:
    out = []
    for element in elements:
        if isinstance(element, ImageElement):
            href = element.href
            if href.startswith("data:"):
                out.append(element)
            elif href in resources:
                out.append(element.model_copy(update={"href": resources[href].data_uri}))
            # Failed or empty images are left out; the slot stays transparent.
            continue
        if isinstance(element, GroupElement):
            out.append(element.model_copy(update={"children": _inline_elements(element.children, resources)}))
            continue
        out.append(element)
    return tuple(out)


def _inline_layer(layer: Layer, resources: Mapping[str, InlinedResource]) -> Layer:
    return layer.with_elements(_inline_elements(layer.elements, resources))


class ExportController:
    """Runs one template through binding, inlining, rasterization and encoding."""

    def __init__(
        self,
        fetcher: ResourceFetcher | None = None,
        *,
        registry: FontRegistry | None = None,
        embedder: FontEmbedder | None = None,
        rasterizer: Rasterizer | None = None,
        scale: float | None = None,
        download_dir: Path | str | None = None,
    ):
        self.fetcher = fetcher or ResourceFetcher()
        self.registry = registry or font_registry
        self.embedder = embedder or FontEmbedder(self.fetcher, registry=self.registry)
        self.rasterizer = rasterizer or Rasterizer(registry=self.registry)
        self.scale = settings.export_scale if scale is None else scale
        self.download_dir = download_dir

    async def _fetch_image(self, url: str, events: ExportEvents) -> InlinedResource | None:
        events.status(url, ResourceState.LOADING)
        try:
            resource = await self.fetcher.fetch_resource(url)
        except ResourceFetchError as e:
            events.status(url, ResourceState.ERROR, error=e.message)
            return None
        events.status(url, ResourceState.LOADED, size=resource.size_label)
        return resource

    async def _load_images(self, layered: LayeredScene, events: ExportEvents) -> dict[str, InlinedResource]:
        urls: list[str] = []
        for element in layered.image_elements():
            href = element.href
            if not href or href.startswith("data:") or href in urls:
                continue
            urls.append(href)
        for url in urls:
            events.status(url, ResourceState.PENDING)
        remote = [url for url in urls if is_remote(url)]
        for url in urls:
            if url not in remote:
                events.status(url, ResourceState.ERROR, error="unsupported image URL")
        results = await asyncio.gather(*(self._fetch_image(url, events) for url in remote))
        return {url: res for url, res in zip(remote, results) if res is not None}

    async def _load_fonts(self, layered: LayeredScene, events: ExportEvents) -> FontFaceBlock:
        used = collect_used_variants(layered.text.elements, self.registry)
        block = await self.embedder.embed_all(used)
        for face in block.faces:
            identifier = f"font {face.family} {face.weight} {face.style}"
            if face.inlined:
                events.status(identifier, ResourceState.LOADED, size=f"{len(face.data) / 1024:.1f} KB")
            else:
                events.status(identifier, ResourceState.ERROR, error=f"referenced remotely: {face.source_url}")
        return block

    async def render(
        self,
        template: Template,
        records: Iterable[DataRecord | Mapping[str, Any]] | None,
        *,
        scale: float | None = None,
        format: str | None = None,
        file_name: str | None = None,
        background_image: str | None = None,
        events: ExportEvents | None = None,
    ) -> RenderedImage:
        events = events or ExportEvents()
        factor = self.scale if scale is None else scale
        if factor <= 0:
            raise ExportError(f"scale must be positive, got {factor}")
        fmt = normalize_format(format) or format_from_name(file_name) or settings.export_format
        recs = normalize_records(records)

        events.progress(10, "Preparing template...")
        scene = resolve_template(template, recs, background_image=background_image)
        layered = separate(replace(scene, elements=canonicalize_fonts(scene.elements, self.registry)))

        events.progress(30, "Loading images and fonts...")
        images, fonts = await asyncio.gather(self._load_images(layered, events), self._load_fonts(layered, events))
        layered = LayeredScene(
            width=layered.width,
            height=layered.height,
            background_color=layered.background_color,
            background=_inline_layer(layered.background, images),
            images=_inline_layer(layered.images, images),
            text=_inline_layer(layered.text, images),
        )
        failed = sum(1 for s in events.statuses if s.state == ResourceState.ERROR)
        events.progress(60, f"Resources loaded ({len(events.statuses) - failed}/{len(events.statuses)})")

        events.progress(70, "Rendering image...")
        raster = await asyncio.to_thread(self.rasterizer.rasterize, layered, fonts, factor)

        events.progress(90, "Finalizing...")
        data = await asyncio.to_thread(encode, raster.image, fmt)
        name = _target_name(file_name, fmt) if file_name else build_file_name(
            template.category, recs[0].id if recs else None, fmt
        )
        encoded = EncodedImage(
            data=data,
            file_name=name,
            content_type=_CONTENT_TYPES[fmt],
            format=fmt,
            width=raster.image.width,
            height=raster.image.height,
        )
        log.info(
            "export_rendered template=%s file=%s size=%sx%s bytes=%s warnings=%s",
            template.id,
            name,
            encoded.width,
            encoded.height,
            len(data),
            len(raster.warnings),
        )
        return RenderedImage(
            encoded=encoded,
            image=raster.image,
            warnings=tuple(raster.warnings),
            strategies=dict(raster.strategies),
            unresolved=scene.unresolved,
        )

    async def export(
        self,
        template: Template,
        records: Iterable[DataRecord | Mapping[str, Any]] | None,
        *,
        target_file_name: str | None = None,
        client: ClientInfo | None = None,
        scale: float | None = None,
        format: str | None = None,
        background_image: str | None = None,
        events: ExportEvents | None = None,
        methods: Sequence[DeliveryMethod] | None = None,
    ) -> ExportResult:
        events = events or ExportEvents()
        try:
            rendered = await self.render(
                template,
                records,
                scale=scale,
                format=format,
                file_name=target_file_name,
                background_image=background_image,
                events=events,
            )
            events.progress(100, f"Image ready: {rendered.encoded.file_name}")
            chain = list(methods) if methods is not None else delivery_chain(client, download_dir=self.download_dir)
            outcome = await deliver(rendered.encoded, chain)
        except ExportError as e:
            log.warning("export_failed template=%s error=%s", template.id, e.message)
            events.failed(e.message, e)
            raise
        except Exception as e:
            log.exception("export_failed template=%s", template.id)
            events.failed("Export failed unexpectedly. Please try again.", e)
            raise
        result = ExportResult(
            file_name=rendered.encoded.file_name,
            method=outcome.method,
            location=outcome.location,
            size_bytes=len(rendered.encoded.data),
            warnings=rendered.warnings,
            rendered=rendered,
        )
        events.succeeded(
            ExportSucceeded(
                file_name=result.file_name,
                method=result.method,
                location=result.location,
                size_bytes=result.size_bytes,
                warnings=result.warnings,
            )
        )
        return result
