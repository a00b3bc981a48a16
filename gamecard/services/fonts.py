"""Font catalog, family-name normalization and font-face embedding.

Only the (family, weight, style) triples that a template actually draws are
fetched. A face that cannot be fetched keeps its remote URL so the export
still completes; such an image is only reproducible while that URL resolves.
"""

from __future__ import annotations

import asyncio
import io
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable

from fontTools.ttLib import TTFont

from gamecard.core.config import settings
from gamecard.core.errors import ResourceFetchError
from gamecard.core.logger import get_logger
from gamecard.data.models import GroupElement, TextElement, normalize_weight, walk_elements
from gamecard.data.providers.cache import ResourceCache, font_cache
from gamecard.data.providers.resources import ResourceFetcher, to_data_uri

log = get_logger("services.fonts")

GENERIC_FAMILIES = frozenset(
    {
        "serif",
        "sans-serif",
        "monospace",
        "cursive",
        "fantasy",
        "system-ui",
        "ui-serif",
        "ui-sans-serif",
        "ui-monospace",
        "ui-rounded",
        "emoji",
        "math",
        "fangsong",
        "inherit",
        "initial",
        "unset",
        "-apple-system",
        "blinkmacsystemfont",
    }
)
_STYLE_SUFFIXES = (
    "regular",
    "italic",
    "oblique",
    "extrabold",
    "extralight",
    "semibold",
    "bold",
    "light",
    "medium",
    "black",
    "thin",
    "book",
)


@dataclass(frozen=True)
class FontVariant:
    weight: str
    style: str
    url: str

    @property
    def format(self) -> str:
        low = self.url.lower()
        if ".woff2" in low:
            return "woff2"
        if ".woff" in low:
            return "woff"
        if ".otf" in low:
            return "opentype"
        return "truetype"


@dataclass(frozen=True)
class FontConfig:
    key: str
    display_name: str
    css_family: str
    variants: tuple[FontVariant, ...]
    aliases: tuple[str, ...] = ()


def _variants(*rows: tuple[str, str, str]) -> tuple[FontVariant, ...]:
    return tuple(FontVariant(weight=w, style=s, url=u) for w, s, u in rows)


_GSTATIC = "https://fonts.gstatic.com/s"
_MONTSERRAT = f"{_GSTATIC}/montserrat/v26/JTUHjIg1_i6t8kCHKm4532VJOt5-QNFgpCtr6Hw5aXpsog.woff2"
_MONTSERRAT_ITALIC = f"{_GSTATIC}/montserrat/v26/JTUFjIg1_i6t8kCHKm459Wx7xQYXK0vOozobij6fPc.woff2"
_OPEN_SANS = f"{_GSTATIC}/opensans/v40/memSYaGs126MiZpBA-UvWbX2vVnXBbObj2OVZyOOSr4dVJWUgsjZ0B4gaVc.woff2"
_OPEN_SANS_ITALIC = f"{_GSTATIC}/opensans/v40/memQYaGs126MiZpBA-UFUIcVXSCEkx2cmqvXlWqWuU6FxZCJgg.woff2"

AVAILABLE_FONTS: dict[str, FontConfig] = {
    "bebas-neue": FontConfig(
        key="bebas-neue",
        display_name="Bebas Neue",
        css_family="Bebas Neue",
        variants=_variants(("400", "normal", f"{_GSTATIC}/bebasneue/v14/JTUSjIg69CK48gW7PXoo9Wdhyzbi.woff2")),
        aliases=("Bebas",),
    ),
    "roboto": FontConfig(
        key="roboto",
        display_name="Roboto",
        css_family="Roboto",
        variants=_variants(
            ("100", "normal", f"{_GSTATIC}/roboto/v30/KFOkCnqEu92Fr1MmgVxIIzI.woff2"),
            ("100", "italic", f"{_GSTATIC}/roboto/v30/KFOjCnqEu92Fr1Mu51TjASc6CsQ.woff2"),
            ("300", "normal", f"{_GSTATIC}/roboto/v30/KFOlCnqEu92Fr1MmSU5fBBc4.woff2"),
            ("300", "italic", f"{_GSTATIC}/roboto/v30/KFOjCnqEu92Fr1Mu51TjASc3CsQ.woff2"),
            ("400", "normal", f"{_GSTATIC}/roboto/v30/KFOmCnqEu92Fr1Mu4mxP.woff2"),
            ("400", "italic", f"{_GSTATIC}/roboto/v30/KFOkCnqEu92Fr1Mu51xIIzI.woff2"),
            ("500", "normal", f"{_GSTATIC}/roboto/v30/KFOlCnqEu92Fr1MmEU9fBBc4.woff2"),
            ("500", "italic", f"{_GSTATIC}/roboto/v30/KFOjCnqEu92Fr1Mu51S7ABc3CsQ.woff2"),
            ("700", "normal", f"{_GSTATIC}/roboto/v30/KFOlCnqEu92Fr1MmWUlfBBc4.woff2"),
            ("700", "italic", f"{_GSTATIC}/roboto/v30/KFOjCnqEu92Fr1Mu51TzABc3CsQ.woff2"),
            ("900", "normal", f"{_GSTATIC}/roboto/v30/KFOlCnqEu92Fr1MmYUtfBBc4.woff2"),
            ("900", "italic", f"{_GSTATIC}/roboto/v30/KFOjCnqEu92Fr1Mu51TLABc3CsQ.woff2"),
        ),
    ),
    "open-sans": FontConfig(
        key="open-sans",
        display_name="Open Sans",
        css_family="Open Sans",
        variants=_variants(
            *((w, "normal", _OPEN_SANS) for w in ("300", "400", "500", "600", "700", "800")),
            *((w, "italic", _OPEN_SANS_ITALIC) for w in ("300", "400", "500", "600", "700", "800")),
        ),
    ),
    "lato": FontConfig(
        key="lato",
        display_name="Lato",
        css_family="Lato",
        variants=_variants(
            ("100", "normal", f"{_GSTATIC}/lato/v24/S6u8w4BMUTPHh30AXC-qNiXg7Q.woff2"),
            ("100", "italic", f"{_GSTATIC}/lato/v24/S6u-w4BMUTPHjxsIPx-oPCLC79U1.woff2"),
            ("300", "normal", f"{_GSTATIC}/lato/v24/S6u9w4BMUTPHh7USSwiPGQ3q5d0.woff2"),
            ("300", "italic", f"{_GSTATIC}/lato/v24/S6u_w4BMUTPHjxsI9w2_Gwftx9897g.woff2"),
            ("400", "normal", f"{_GSTATIC}/lato/v24/S6uyw4BMUTPHjx4wXiWtFCc.woff2"),
            ("400", "italic", f"{_GSTATIC}/lato/v24/S6u8w4BMUTPHjxsAXC-qNiXg7Q.woff2"),
            ("700", "normal", f"{_GSTATIC}/lato/v24/S6u9w4BMUTPHh6UVSwiPGQ3q5d0.woff2"),
            ("700", "italic", f"{_GSTATIC}/lato/v24/S6u_w4BMUTPHjxsI5wq_Gwftx9897g.woff2"),
            ("900", "normal", f"{_GSTATIC}/lato/v24/S6u9w4BMUTPHh50XSwiPGQ3q5d0.woff2"),
            ("900", "italic", f"{_GSTATIC}/lato/v24/S6u_w4BMUTPHjxsI3wi_Gwftx9897g.woff2"),
        ),
    ),
    "montserrat": FontConfig(
        key="montserrat",
        display_name="Montserrat",
        css_family="Montserrat",
        variants=_variants(
            *(
                (w, s, _MONTSERRAT if s == "normal" else _MONTSERRAT_ITALIC)
                for w in ("100", "200", "300", "400", "500", "600", "700", "800", "900")
                for s in ("normal", "italic")
            )
        ),
    ),
}


def _key(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def _strip_style_suffix(key: str) -> str:
    changed = True
    while changed and key:
        changed = False
        for suffix in _STYLE_SUFFIXES:
            if key.endswith(suffix) and len(key) > len(suffix):
                key = key[: -len(suffix)]
                changed = True
    return key


def _clean_entry(entry: str) -> str:
    return entry.strip().strip("'\"").strip()


class FontRegistry:
    def __init__(self, fonts: dict[str, FontConfig] | None = None, *, default_family: str | None = None):
        self._fonts = dict(AVAILABLE_FONTS if fonts is None else fonts)
        self._by_family = {cfg.css_family: cfg for cfg in self._fonts.values()}
        self._index: dict[str, str] = {}
        for cfg in self._fonts.values():
            for name in (cfg.key, cfg.display_name, cfg.css_family, *cfg.aliases):
                self._index[_key(name)] = cfg.css_family
        default = default_family if default_family is not None else settings.default_font_family
        self.default_family = self.normalize(default) or next(iter(self._by_family), "")

    def normalize(self, raw: str | None) -> str | None:
        """Map a typed or imported family name to one canonical family, or None."""
        for entry in (raw or "").split(","):
            name = _clean_entry(entry)
            if not name or name.lower() in GENERIC_FAMILIES:
                continue
            key = _key(name)
            family = self._index.get(key) or self._index.get(_strip_style_suffix(key))
            if family:
                return family
        return None

    def resolve_family(self, raw: str | None) -> str:
        return self.normalize(raw) or self.default_family

    def get(self, family: str) -> FontConfig | None:
        cfg = self._by_family.get(family)
        if cfg is None:
            normalized = self.normalize(family)
            cfg = self._by_family.get(normalized) if normalized else None
        return cfg

    def families(self) -> list[str]:
        return list(self._by_family)

    def variants_for(self, family: str) -> list[FontVariant]:
        cfg = self.get(family)
        return list(cfg.variants) if cfg else []

    def select_variant(self, family: str, weight: str, style: str) -> FontVariant | None:
        variants = self.variants_for(family)
        if not variants:
            return None
        want_weight = normalize_weight(weight)
        for variant in variants:
            if variant.weight == want_weight and variant.style == style:
                return variant
        # Approximation: the first declared variant stands in for a missing weight/style.
        log.info(
            "font_variant_approximate family=%s wanted=%s/%s using=%s/%s",
            family,
            want_weight,
            style,
            variants[0].weight,
            variants[0].style,
        )
        return variants[0]


font_registry = FontRegistry()


def normalize(raw: str | None) -> str | None:
    return font_registry.normalize(raw)


def variants_for(family: str) -> list[FontVariant]:
    return font_registry.variants_for(family)


@dataclass(frozen=True)
class FontFace:
    family: str
    weight: str
    style: str
    source_url: str
    format: str
    data: bytes | None = None
    content_type: str = "font/woff2"

    @property
    def inlined(self) -> bool:
        return self.data is not None

    @property
    def src(self) -> str:
        if self.data is None:
            return self.source_url
        return to_data_uri(self.data, self.content_type)

    def css(self) -> str:
        return (
            "@font-face{"
            f"font-family:'{self.family}';"
            f"font-style:{self.style};font-weight:{self.weight};font-display:block;"
            f"src:url({self.src}) format('{self.format}');"
            "}"
        )


@dataclass(frozen=True)
class FontFaceBlock:
    faces: tuple[FontFace, ...] = ()

    def css(self) -> str:
        return "\n".join(face.css() for face in self.faces)

    def face_for(self, family: str, weight: str, style: str) -> FontFace | None:
        fallback = None
        for face in self.faces:
            if face.family != family:
                continue
            if face.weight == weight and face.style == style:
                return face
            if fallback is None:
                fallback = face
        return fallback

    @property
    def remote_faces(self) -> tuple[FontFace, ...]:
        return tuple(face for face in self.faces if not face.inlined)

    def merged(self, other: FontFaceBlock) -> FontFaceBlock:
        return FontFaceBlock(faces=self.faces + other.faces)


def collect_used_variants(elements, registry: FontRegistry | None = None) -> list[tuple[str, str, str]]:
    """Distinct (family, weight, style) triples drawn by the resolved text elements."""
    reg = registry or font_registry
    used: set[tuple[str, str, str]] = set()
    for element in walk_elements(elements):
        if not isinstance(element, TextElement) or not element.content:
            continue
        family = reg.resolve_family(element.font_family)
        used.add((family, element.font_weight, element.font_style))
    return sorted(used)


class FontEmbedder:
    def __init__(
        self,
        fetcher: ResourceFetcher,
        *,
        registry: FontRegistry | None = None,
        cache: ResourceCache | None = None,
        retries: int | None = None,
    ):
        self.fetcher = fetcher
        self.registry = registry or font_registry
        self.cache = font_cache if cache is None else cache
        # At least one retry per font URL.
        self.retries = max(1, settings.fetch_retries if retries is None else retries)

    async def embed(self, family: str, used: Iterable[tuple[str, str]]) -> FontFaceBlock:
        cfg = self.registry.get(family)
        if cfg is None:
            return FontFaceBlock()
        wanted = sorted({(normalize_weight(w), s) for w, s in used})
        picks = [(w, s, self.registry.select_variant(cfg.css_family, w, s)) for w, s in wanted]
        picks = [(w, s, v) for w, s, v in picks if v is not None]
        # Variable fonts serve many weights from one URL; fetch each URL once.
        urls = sorted({v.url for _, _, v in picks})
        loaded = await asyncio.gather(*(self._load(cfg.css_family, url) for url in urls))
        data_by_url = dict(zip(urls, loaded))
        faces = tuple(
            FontFace(
                family=cfg.css_family,
                weight=weight,
                style=style,
                source_url=variant.url,
                format=variant.format,
                data=data_by_url[variant.url],
                content_type=f"font/{variant.format}" if variant.format.startswith("woff") else "font/ttf",
            )
            for weight, style, variant in picks
        )
        return FontFaceBlock(faces=faces)

    async def embed_all(self, used: Iterable[tuple[str, str, str]]) -> FontFaceBlock:
        by_family: dict[str, list[tuple[str, str]]] = {}
        for family, weight, style in used:
            by_family.setdefault(family, []).append((weight, style))
        blocks = await asyncio.gather(*(self.embed(family, pairs) for family, pairs in by_family.items()))
        out = FontFaceBlock()
        for block in blocks:
            out = out.merged(block)
        return out

    async def _load(self, family: str, url: str) -> bytes | None:
        cached = self.cache.get(url)
        if cached is not None:
            return cached
        try:
            resource = await self.fetcher.fetch_resource(url, retries=self.retries)
        except ResourceFetchError as e:
            log.warning("font_embed_failed family=%s url=%s error=%s; referencing remote URL", family, url, e.message)
            return None
        return self.cache.put_if_absent(url, resource.data)


@lru_cache(maxsize=32)
def to_sfnt(data: bytes) -> bytes:
    """Unwrap WOFF/WOFF2 into plain TrueType/OpenType bytes that FreeType loads."""
    if data[:4] not in (b"wOFF", b"wOF2"):
        return data
    font = TTFont(io.BytesIO(data))
    font.flavor = None
    out = io.BytesIO()
    font.save(out)
    return out.getvalue()


def canonicalize_fonts(elements, registry: FontRegistry | None = None) -> tuple:
    """Rewrite every text element's family to its canonical (or default) family."""
    reg = registry or font_registry
    out = []
    for element in elements:
        if isinstance(element, TextElement):
            family = reg.resolve_family(element.font_family)
            if family != element.font_family:
                element = element.model_copy(update={"font_family": family})
        elif isinstance(element, GroupElement):
            element = element.model_copy(update={"children": canonicalize_fonts(element.children, reg)})
        out.append(element)
    return tuple(out)
