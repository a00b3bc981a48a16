import io
import os
import string
import sys
from pathlib import Path

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("IMAGE_PROXY_URL", "")
os.environ.setdefault("MARKUP_FALLBACK_ENABLED", "false")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "")


def _cairo_available() -> bool:
    try:
        import cairosvg  # noqa: F401
    except (ImportError, OSError):
        return False
    return True


def build_box_font(family: str = "Test Box", advance: int = 600) -> bytes:
    """A TrueType font whose every glyph is a filled box of the same advance."""
    from fontTools.fontBuilder import FontBuilder
    from fontTools.pens.ttGlyphPen import TTGlyphPen

    chars = string.ascii_letters + string.digits + " .:-,"
    glyph_order = [".notdef"] + [f"g{ord(c)}" for c in chars]
    fb = FontBuilder(1000, isTTF=True)
    fb.setupGlyphOrder(glyph_order)
    fb.setupCharacterMap({ord(c): f"g{ord(c)}" for c in chars})
    glyphs = {}
    for name in glyph_order:
        pen = TTGlyphPen(None)
        if name != "g32":
            pen.moveTo((50, 0))
            pen.lineTo((50, 700))
            pen.lineTo((advance - 50, 700))
            pen.lineTo((advance - 50, 0))
            pen.closePath()
        glyphs[name] = pen.glyph()
    fb.setupGlyf(glyphs)
    fb.setupHorizontalMetrics({name: (advance, 50) for name in glyph_order})
    fb.setupHorizontalHeader(ascent=800, descent=-200)
    fb.setupNameTable({"familyName": family, "styleName": "Regular"})
    fb.setupOS2(sTypoAscender=800, sTypoDescender=-200, usWinAscent=800, usWinDescent=200)
    fb.setupPost()
    buf = io.BytesIO()
    fb.save(buf)
    return buf.getvalue()


def png_bytes(color=(220, 20, 20, 255), size=(64, 64)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture(scope="session")
def box_font() -> bytes:
    return build_box_font()


@pytest.fixture()
def logo_png() -> bytes:
    return png_bytes()


@pytest.fixture()
def requires_cairo():
    if not _cairo_available():
        pytest.skip("libcairo is not available")


async def no_sleep(_delay):
    return None


BOX_FONT_URL = "https://fonts.test/box.ttf"


@pytest.fixture()
def box_registry():
    from gamecard.services.fonts import FontConfig, FontRegistry, FontVariant

    cfg = FontConfig(
        key="test-box",
        display_name="Test Box",
        css_family="Test Box",
        variants=(FontVariant("400", "normal", BOX_FONT_URL),),
    )
    return FontRegistry({"test-box": cfg}, default_family="Test Box")


@pytest.fixture()
def box_faces(box_font):
    from gamecard.services.fonts import FontFace, FontFaceBlock

    face = FontFace(
        family="Test Box",
        weight="400",
        style="normal",
        source_url=BOX_FONT_URL,
        format="truetype",
        data=box_font,
        content_type="font/ttf",
    )
    return FontFaceBlock(faces=(face,))
