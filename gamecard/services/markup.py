"""SVG and HTML markup for one layer.

The same document feeds cairosvg (primary) and headless Chromium (fallback),
so both strategies see identical geometry.
"""

from __future__ import annotations

import html

from gamecard.data.models import GroupElement, ImageElement, PathElement, RectElement, TextElement

_SVG_NS = "http://www.w3.org/2000/svg"
_XLINK_NS = "http://www.w3.org/1999/xlink"


def _num(value: float) -> str:
    text = f"{float(value):.3f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


def _attrs(pairs) -> str:
    out = []
    for name, value in pairs:
        if value is None or value == "":
            continue
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = _num(value)
        out.append(f'{name}="{html.escape(str(value), quote=True)}"')
    return " ".join(out)


def _opacity(value: float) -> float | None:
    return None if value >= 1 else max(0.0, value)


def _stroke(element) -> list[tuple[str, object]]:
    if not element.stroke or element.stroke_width <= 0:
        return []
    return [("stroke", element.stroke), ("stroke-width", element.stroke_width)]


def element_svg(element, *, include_text: bool = True) -> str:
    if isinstance(element, RectElement):
        return "<rect {} />".format(
            _attrs(
                [
                    ("x", element.x),
                    ("y", element.y),
                    ("width", element.width),
                    ("height", element.height),
                    ("rx", element.rx or None),
                    ("ry", element.ry or None),
                    ("fill", element.fill),
                    *_stroke(element),
                    ("opacity", _opacity(element.opacity)),
                ]
            )
        )
    if isinstance(element, ImageElement):
        if not element.href:
            return ""
        return "<image {} />".format(
            _attrs(
                [
                    ("x", element.x),
                    ("y", element.y),
                    ("width", element.width),
                    ("height", element.height),
                    ("href", element.href),
                    ("xlink:href", element.href),
                    ("preserveAspectRatio", "xMidYMid meet"),
                    ("opacity", _opacity(element.opacity)),
                ]
            )
        )
    if isinstance(element, PathElement):
        if not element.path_data:
            return ""
        return "<path {} />".format(
            _attrs(
                [
                    ("d", element.path_data),
                    ("fill", element.fill),
                    *_stroke(element),
                    ("opacity", _opacity(element.opacity)),
                ]
            )
        )
    if isinstance(element, TextElement):
        if not include_text or not element.content:
            return ""
        attrs = _attrs(
            [
                ("x", element.x),
                ("y", element.y),
                ("font-family", f"'{element.font_family}'"),
                ("font-size", element.font_size),
                ("font-weight", element.font_weight),
                ("font-style", element.font_style),
                ("fill", element.fill),
                *_stroke(element),
                ("letter-spacing", element.letter_spacing or None),
                ("text-anchor", element.text_anchor),
                ("opacity", _opacity(element.opacity)),
            ]
        )
        return f'<text xml:space="preserve" {attrs}>{html.escape(element.content, quote=False)}</text>'
    if isinstance(element, GroupElement):
        inner = "".join(element_svg(child, include_text=include_text) for child in element.children)
        if not inner:
            return ""
        if element.x or element.y:
            return f'<g transform="translate({_num(element.x)},{_num(element.y)})">{inner}</g>'
        return f"<g>{inner}</g>"
    raise TypeError(f"unsupported element type: {type(element).__name__}")


def layer_svg(layer, *, scale: float = 1.0, include_text: bool = True) -> str:
    """Serialize a layer as a standalone SVG document at ``scale`` × logical size."""
    body = "".join(element_svg(el, include_text=include_text) for el in layer.elements)
    defs = f"<defs>{layer.defs}</defs>" if layer.defs else ""
    return (
        f'<svg xmlns="{_SVG_NS}" xmlns:xlink="{_XLINK_NS}" '
        f'width="{_num(layer.width * scale)}" height="{_num(layer.height * scale)}" '
        f'viewBox="0 0 {layer.width} {layer.height}">'
        f"{defs}{body}</svg>"
    )


def layer_html(layer, *, font_css: str = "") -> str:
    svg = layer_svg(layer)
    return (
        "<!doctype html><html><head><meta charset='utf-8'>"
        f"<style>html,body{{margin:0;padding:0;background:transparent;}}svg{{display:block;}}\n{font_css}</style>"
        f"</head><body>{svg}</body></html>"
    )
