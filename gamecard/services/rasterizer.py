"""Layer rasterization and compositing.

Each layer has a primary strategy and falls back to headless Chromium only
after the primary raised. Background and image layers go through cairosvg;
the text layer is drawn glyph by glyph with Pillow so that the baseline and
letter spacing do not depend on a browser's SVG text engine.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Callable

from PIL import Image, UnidentifiedImageError

from gamecard.core.config import settings
from gamecard.core.errors import RasterizationError
from gamecard.core.logger import get_logger
from gamecard.data.models import GroupElement, TextElement, walk_elements
from gamecard.services import markup_render
from gamecard.services.fonts import FontFaceBlock, FontRegistry
from gamecard.services.layers import Layer, LayeredScene
from gamecard.services.markup import layer_html, layer_svg
from gamecard.services.text_render import FontLoader, draw_text_layer, parse_color

log = get_logger("services.rasterizer")


@dataclass
class RasterResult:
    image: Image.Image
    warnings: list[str] = field(default_factory=list)
    strategies: dict[str, str] = field(default_factory=dict)


def _png_to_image(png: bytes, size: tuple[int, int], layer: str) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(png))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise RasterizationError(layer, "renderer returned an unreadable bitmap", cause=e) from e
    img = img.convert("RGBA")
    if img.size != size:
        img = img.resize(size, Image.LANCZOS)
    return img


def svg_to_image(svg: str, size: tuple[int, int], layer: str = "svg") -> Image.Image:
    try:
        import cairosvg
    except (ImportError, OSError) as e:
        # cairocffi raises OSError when libcairo itself is missing.
        raise RasterizationError(layer, "cairosvg is unavailable", cause=e) from e
    try:
        png = cairosvg.svg2png(
            bytestring=svg.encode("utf-8"),
            output_width=size[0],
            output_height=size[1],
        )
    except Exception as e:
        raise RasterizationError(layer, f"vector rasterization failed: {e}", cause=e) from e
    return _png_to_image(png, size, layer)


def _has_non_text(layer: Layer) -> bool:
    return any(
        not isinstance(el, (TextElement, GroupElement))
        for el in walk_elements(layer.elements)
    )


class Rasterizer:
    def __init__(
        self,
        *,
        markup_fallback: bool | None = None,
        text_failure_fatal: bool | None = None,
        markup_timeout_ms: int | None = None,
        markup_renderer: Callable[..., bytes] | None = None,
        registry: FontRegistry | None = None,
    ):
        self.markup_fallback = settings.markup_fallback_enabled if markup_fallback is None else markup_fallback
        self.text_failure_fatal = (
            settings.text_layer_failure_fatal if text_failure_fatal is None else text_failure_fatal
        )
        self.markup_timeout_ms = markup_timeout_ms
        self.markup_renderer = markup_renderer or markup_render.render_markup
        self.registry = registry

    def rasterize(self, layers: LayeredScene, fonts: FontFaceBlock, scale: float) -> RasterResult:
        size = (int(round(layers.width * scale)), int(round(layers.height * scale)))
        bg = parse_color(layers.background_color) or (0, 0, 0, 0)
        try:
            canvas = Image.new("RGBA", size, bg)
        except (MemoryError, ValueError) as e:
            raise RasterizationError("canvas", f"cannot allocate a {size[0]}x{size[1]} canvas", cause=e) from e

        result = RasterResult(image=canvas)
        loader = FontLoader(fonts, self.registry)
        for layer in layers.ordered():
            if layer.empty:
                result.strategies[layer.name] = "skipped"
                continue
            primary = self._text_primary if layer.name == "text" else self._vector_primary
            try:
                img = primary(layer, size, scale, loader)
                result.strategies[layer.name] = "primary"
            except RasterizationError as primary_error:
                log.warning("layer_primary_failed layer=%s error=%s", layer.name, primary_error.message)
                try:
                    img = self._markup_fallback(layer, size, scale, fonts)
                    result.strategies[layer.name] = "fallback"
                except RasterizationError as fallback_error:
                    result.strategies[layer.name] = "failed"
                    message = f"{layer.name} layer was not rendered: {fallback_error.message}"
                    if layer.name == "text" and self.text_failure_fatal:
                        raise RasterizationError(layer.name, message, cause=fallback_error) from fallback_error
                    log.warning("layer_render_failed layer=%s error=%s", layer.name, fallback_error.message)
                    result.warnings.append(message)
                    continue
            canvas.alpha_composite(img)
        log.info(
            "rasterize_done size=%sx%s strategies=%s warnings=%s",
            size[0],
            size[1],
            ",".join(f"{k}:{v}" for k, v in result.strategies.items()),
            len(result.warnings),
        )
        return result

    def _vector_primary(self, layer: Layer, size, scale: float, loader: FontLoader) -> Image.Image:
        return svg_to_image(layer_svg(layer, scale=scale), size, layer.name)

    def _text_primary(self, layer: Layer, size, scale: float, loader: FontLoader) -> Image.Image:
        if _has_non_text(layer):
            img = svg_to_image(layer_svg(layer, scale=scale, include_text=False), size, layer.name)
        else:
            img = Image.new("RGBA", size, (0, 0, 0, 0))
        try:
            drawn = draw_text_layer(img, layer.elements, loader, scale=scale)
        except (OSError, ValueError) as e:
            raise RasterizationError(layer.name, f"text drawing failed: {e}", cause=e) from e
        log.debug("text_layer_drawn elements=%s", drawn)
        return img

    def _markup_fallback(self, layer: Layer, size, scale: float, fonts: FontFaceBlock) -> Image.Image:
        if not self.markup_fallback:
            raise RasterizationError(layer.name, "markup fallback is disabled")
        font_css = fonts.css() if layer.texts() else ""
        png = self.markup_renderer(
            layer_html(layer, font_css=font_css),
            layer.width,
            layer.height,
            scale=scale,
            layer=layer.name,
            timeout_ms=self.markup_timeout_ms,
        )
        return _png_to_image(png, size, layer.name)


def rasterize(
    layers: LayeredScene,
    width: int,
    height: int,
    scale: float,
    background_color: str,
    fonts: FontFaceBlock,
    *,
    rasterizer: Rasterizer | None = None,
) -> RasterResult:
    scene = layers
    if (width, height, background_color) != (layers.width, layers.height, layers.background_color):
        scene = LayeredScene(
            width=width,
            height=height,
            background_color=background_color,
            background=layers.background,
            images=layers.images,
            text=layers.text,
        )
    return (rasterizer or Rasterizer()).rasterize(scene, fonts, scale)
