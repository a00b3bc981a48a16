from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from gamecard.core.config import settings
from gamecard.core.logger import get_logger
from gamecard.data.models import (
    GroupElement,
    ImageElement,
    PathElement,
    RectElement,
    TextElement,
    walk_elements,
)
from gamecard.services.binding import ResolvedScene

log = get_logger("services.layers")


class LayerRole(str, Enum):
    BACKGROUND = "background"
    SHAPE = "shape"
    IMAGE = "image"
    TEXT = "text"


@dataclass(frozen=True)
class Layer:
    name: str
    width: int
    height: int
    defs: str
    elements: tuple

    @property
    def empty(self) -> bool:
        return not self.elements

    def images(self) -> list[ImageElement]:
        return [el for el in walk_elements(self.elements) if isinstance(el, ImageElement)]

    def texts(self) -> list[TextElement]:
        return [el for el in walk_elements(self.elements) if isinstance(el, TextElement)]

    def with_elements(self, elements) -> Layer:
        return Layer(self.name, self.width, self.height, self.defs, tuple(elements))


@dataclass(frozen=True)
class LayeredScene:
    width: int
    height: int
    background_color: str
    background: Layer
    images: Layer
    text: Layer

    def ordered(self) -> tuple[Layer, Layer, Layer]:
        """Fixed paint order: background, images, text."""
        return (self.background, self.images, self.text)

    def image_elements(self) -> Iterator[ImageElement]:
        for layer in self.ordered():
            yield from layer.images()


def _covers_canvas(element, width: int, height: int, threshold: float) -> bool:
    if element.x != 0 or element.y != 0:
        return False
    return element.width >= width * threshold and element.height >= height * threshold


def _contains(group: GroupElement, kind) -> bool:
    return any(isinstance(el, kind) for el in walk_elements(group.children))


def classify(element, width: int, height: int, threshold: float | None = None) -> LayerRole:
    limit = settings.background_coverage_threshold if threshold is None else threshold
    if isinstance(element, TextElement):
        return LayerRole.TEXT
    if isinstance(element, (RectElement, ImageElement)):
        if _covers_canvas(element, width, height, limit):
            return LayerRole.BACKGROUND
        return LayerRole.IMAGE if isinstance(element, ImageElement) else LayerRole.SHAPE
    if isinstance(element, PathElement):
        return LayerRole.SHAPE
    if isinstance(element, GroupElement):
        if _contains(element, TextElement):
            return LayerRole.TEXT
        if _contains(element, ImageElement):
            return LayerRole.IMAGE
        return LayerRole.BACKGROUND
    raise TypeError(f"unsupported element type: {type(element).__name__}")


def separate(scene: ResolvedScene, threshold: float | None = None) -> LayeredScene:
    background: list = []
    images: list = []
    text: list = []
    targets = {
        LayerRole.BACKGROUND: background,
        # Foreground shapes sit with the images, above the background.
        LayerRole.SHAPE: images,
        LayerRole.IMAGE: images,
        LayerRole.TEXT: text,
    }
    for element in scene.elements:
        targets[classify(element, scene.width, scene.height, threshold)].append(element)
    log.debug(
        "layers_separated background=%s images=%s text=%s",
        len(background),
        len(images),
        len(text),
    )

    def _layer(name: str, elements: list) -> Layer:
        return Layer(name=name, width=scene.width, height=scene.height, defs=scene.defs, elements=tuple(elements))

    return LayeredScene(
        width=scene.width,
        height=scene.height,
        background_color=scene.background_color,
        background=_layer("background", background),
        images=_layer("images", images),
        text=_layer("text", text),
    )
