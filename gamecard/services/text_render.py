from __future__ import annotations

import io
from typing import Sequence

from PIL import Image, ImageColor, ImageDraw, ImageFont

from gamecard.core.errors import RasterizationError
from gamecard.core.logger import get_logger
from gamecard.data.models import GroupElement, TextElement
from gamecard.services.fonts import FontFaceBlock, FontRegistry, font_registry, to_sfnt

log = get_logger("services.text_render")

_ANCHORS = {"start": "ls", "middle": "ms", "end": "rs"}
_TRANSPARENT = {"", "none", "transparent"}


def parse_color(value: str | None, opacity: float = 1.0) -> tuple[int, int, int, int] | None:
    raw = (value or "").strip()
    if raw.lower() in _TRANSPARENT:
        return None
    try:
        rgb = ImageColor.getrgb(raw)
    except ValueError:
        log.warning("color_unparsed value=%s", raw)
        return None
    alpha = rgb[3] if len(rgb) == 4 else 255
    alpha = int(round(alpha * max(0.0, min(1.0, opacity))))
    return (rgb[0], rgb[1], rgb[2], alpha)


def layout_run(
    advances: Sequence[float],
    x: float,
    letter_spacing: float = 0.0,
    anchor: str = "start",
) -> tuple[list[float], float]:
    """Pen positions for a letter-spaced run.

    Every glyph advances by its own width plus ``letter_spacing``; the run
    advance is ``sum(advances) + letter_spacing * (n - 1)`` and places the run
    relative to ``x`` for the anchor.
    """
    n = len(advances)
    total = (sum(advances) + letter_spacing * (n - 1)) if n else 0.0
    if anchor == "middle":
        cursor = x - total / 2.0
    elif anchor == "end":
        cursor = x - total
    else:
        cursor = x
    positions: list[float] = []
    for advance in advances:
        positions.append(cursor)
        cursor += advance + letter_spacing
    return positions, total


def _apply_weight(font: ImageFont.FreeTypeFont, weight: str) -> None:
    try:
        axes = font.get_variation_axes()
    except OSError:
        return
    values = []
    for axis in axes:
        name = axis.get("name")
        if isinstance(name, bytes):
            name = name.decode("latin-1", "ignore")
        if "weight" in str(name).lower():
            values.append(max(axis["minimum"], min(axis["maximum"], int(weight))))
        else:
            values.append(axis["default"])
    try:
        font.set_variation_by_axes(values)
    except (OSError, ValueError) as e:
        log.debug("font_variation_skipped weight=%s error=%s", weight, e)


class FontLoader:
    """Pillow fonts for the faces of one export, keyed by (family, weight, style, px)."""

    def __init__(self, faces: FontFaceBlock, registry: FontRegistry | None = None):
        self.faces = faces
        self.registry = registry or font_registry
        self._fonts: dict[tuple[str, str, str, int], ImageFont.FreeTypeFont] = {}

    def font(self, family: str, weight: str, style: str, size_px: float) -> ImageFont.FreeTypeFont:
        canonical = self.registry.resolve_family(family)
        size = max(1, int(round(size_px)))
        key = (canonical, weight, style, size)
        cached = self._fonts.get(key)
        if cached is not None:
            return cached
        face = self.faces.face_for(canonical, weight, style)
        if face is None or face.data is None:
            raise RasterizationError("text", f"font {canonical} {weight} {style} is not inlined")
        try:
            font = ImageFont.truetype(io.BytesIO(to_sfnt(face.data)), size=size)
        except (OSError, ValueError) as e:
            raise RasterizationError("text", f"font {canonical} could not be loaded", cause=e) from e
        _apply_weight(font, weight)
        self._fonts[key] = font
        return font


def _paste(canvas: Image.Image, tile: Image.Image, left: int, top: int) -> None:
    src_x = max(0, -left)
    src_y = max(0, -top)
    dst_x = max(0, left)
    dst_y = max(0, top)
    if src_x >= tile.width or src_y >= tile.height or dst_x >= canvas.width or dst_y >= canvas.height:
        return
    canvas.alpha_composite(tile, dest=(dst_x, dst_y), source=(src_x, src_y))


def draw_text(
    canvas: Image.Image,
    element: TextElement,
    loader: FontLoader,
    *,
    scale: float = 1.0,
    offset: tuple[float, float] = (0.0, 0.0),
) -> None:
    """Draw one text element; ``y`` is the alphabetic baseline."""
    text = element.content
    if not text:
        return
    fill = parse_color(element.fill)
    stroke = parse_color(element.stroke) if element.stroke and element.stroke_width > 0 else None
    if fill is None and stroke is None:
        return
    font = loader.font(element.font_family, element.font_weight, element.font_style, element.font_size * scale)
    stroke_px = int(round(element.stroke_width * scale / 2)) if stroke else 0
    x = (offset[0] + element.x) * scale
    y = (offset[1] + element.y) * scale
    spacing = element.letter_spacing * scale

    if spacing:
        advances = [font.getlength(ch) for ch in text]
        positions, _ = layout_run(advances, x, spacing, element.text_anchor)
        glyphs = list(zip(text, positions))
        anchor = "ls"
    else:
        glyphs = [(text, x)]
        anchor = _ANCHORS.get(element.text_anchor, "ls")

    boxes = [font.getbbox(chunk, anchor=anchor, stroke_width=stroke_px) for chunk, _ in glyphs]
    left = int(min(px + box[0] for (_, px), box in zip(glyphs, boxes))) - 2
    top = int(y + min(box[1] for box in boxes)) - 2
    right = int(max(px + box[2] for (_, px), box in zip(glyphs, boxes))) + 2
    bottom = int(y + max(box[3] for box in boxes)) + 2
    if right <= left or bottom <= top:
        return

    tile = Image.new("RGBA", (right - left, bottom - top), (0, 0, 0, 0))
    draw = ImageDraw.Draw(tile)
    for chunk, px in glyphs:
        draw.text(
            (px - left, y - top),
            chunk,
            font=font,
            fill=fill or (0, 0, 0, 0),
            anchor=anchor,
            stroke_width=stroke_px,
            stroke_fill=stroke,
        )
    if element.opacity < 1:
        alpha = tile.getchannel("A").point(lambda a: int(a * max(0.0, element.opacity)))
        tile.putalpha(alpha)
    _paste(canvas, tile, left, top)


def draw_text_layer(canvas: Image.Image, elements, loader: FontLoader, *, scale: float = 1.0) -> int:
    """Draw every text element (groups translate their children); returns the count drawn."""

    def _walk(items, offset: tuple[float, float]) -> int:
        count = 0
        for element in items:
            if isinstance(element, GroupElement):
                count += _walk(element.children, (offset[0] + element.x, offset[1] + element.y))
            elif isinstance(element, TextElement) and element.content:
                draw_text(canvas, element, loader, scale=scale, offset=offset)
                count += 1
        return count

    return _walk(elements, (0.0, 0.0))
