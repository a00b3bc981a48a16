from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TemplateFormat(str, Enum):
    PORTRAIT = "4:5"
    SQUARE = "1:1"
    LANDSCAPE = "1100:800"

    @property
    def dimensions(self) -> tuple[int, int]:
        return _FORMAT_DIMENSIONS[self]


_FORMAT_DIMENSIONS = {
    TemplateFormat.PORTRAIT: (1080, 1350),
    TemplateFormat.SQUARE: (1080, 1080),
    TemplateFormat.LANDSCAPE: (1100, 800),
}

_WEIGHT_KEYWORDS = {
    "thin": "100",
    "extralight": "200",
    "light": "300",
    "normal": "400",
    "regular": "400",
    "medium": "500",
    "semibold": "600",
    "bold": "700",
    "extrabold": "800",
    "black": "900",
}


def normalize_weight(value: Any) -> str:
    raw = str(value if value is not None else "400").strip().lower().replace("-", "")
    if raw in _WEIGHT_KEYWORDS:
        return _WEIGHT_KEYWORDS[raw]
    try:
        num = int(float(raw))
    except ValueError:
        return "400"
    num = max(100, min(900, int(round(num / 100.0)) * 100))
    return str(num)


class _ElementBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str
    x: float = 0.0
    y: float = 0.0
    z_index: int | None = Field(default=None, alias="zIndex")


class _TextFields(_ElementBase):
    content: str = ""
    font_family: str = Field("Bebas Neue", alias="fontFamily")
    font_size: float = Field(16.0, alias="fontSize")
    font_weight: str = Field("400", alias="fontWeight")
    font_style: Literal["normal", "italic"] = Field("normal", alias="fontStyle")
    fill: str = "#000000"
    stroke: str | None = None
    stroke_width: float = Field(0.0, alias="strokeWidth")
    letter_spacing: float = Field(0.0, alias="letterSpacing")
    text_anchor: Literal["start", "middle", "end"] = Field("start", alias="textAnchor")
    opacity: float = 1.0

    @field_validator("font_weight", mode="before")
    @classmethod
    def _weight(cls, value: Any) -> str:
        return normalize_weight(value)

    @field_validator("font_style", mode="before")
    @classmethod
    def _style(cls, value: Any) -> str:
        style = str(value or "normal").strip().lower()
        return "italic" if style in {"italic", "oblique"} else "normal"


class TextElement(_TextFields):
    type: Literal["text"] = "text"


class BoundTextElement(_TextFields):
    type: Literal["api-text"] = "api-text"
    api_field: str = Field(alias="apiField")


class _ImageFields(_ElementBase):
    href: str = ""
    width: float = 0.0
    height: float = 0.0
    opacity: float = 1.0


class ImageElement(_ImageFields):
    type: Literal["image"] = "image"


class BoundImageElement(_ImageFields):
    type: Literal["api-image"] = "api-image"
    api_field: str = Field(alias="apiField")


class RectElement(_ElementBase):
    type: Literal["rect"] = "rect"
    width: float = 0.0
    height: float = 0.0
    fill: str = "#000000"
    rx: float = 0.0
    ry: float = 0.0
    stroke: str | None = None
    stroke_width: float = Field(0.0, alias="strokeWidth")
    opacity: float = 1.0


class PathElement(_ElementBase):
    type: Literal["path"] = "path"
    path_data: str = Field("", alias="pathData")
    fill: str = "#000000"
    stroke: str | None = None
    stroke_width: float = Field(0.0, alias="strokeWidth")
    opacity: float = 1.0


class GroupElement(_ElementBase):
    type: Literal["group"] = "group"
    children: tuple["Element", ...] = ()


Element = Annotated[
    Union[
        TextElement,
        BoundTextElement,
        ImageElement,
        BoundImageElement,
        RectElement,
        PathElement,
        GroupElement,
    ],
    Field(discriminator="type"),
]

# What the binding resolver hands on: no field references left.
ResolvedElement = Union[TextElement, ImageElement, RectElement, PathElement, GroupElement]

GroupElement.model_rebuild()


def walk_elements(elements) -> Iterator[Any]:
    for element in elements:
        yield element
        if isinstance(element, GroupElement):
            yield from walk_elements(element.children)


class Template(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str = ""
    name: str = ""
    version: int = 1
    category: str = "game"
    format: TemplateFormat = TemplateFormat.PORTRAIT
    background_color: str = Field("#ffffff", alias="backgroundColor")
    use_background_placeholder: bool = Field(False, alias="useBackgroundPlaceholder")
    defs: str = ""
    elements: tuple[Element, ...] = ()

    @model_validator(mode="after")
    def _unique_ids(self):
        seen: set[str] = set()
        for element in walk_elements(self.elements):
            if element.id in seen:
                raise ValueError(f"duplicate element id {element.id!r}")
            seen.add(element.id)
        return self

    @property
    def width(self) -> int:
        return self.format.dimensions[0]

    @property
    def height(self) -> int:
        return self.format.dimensions[1]


class GameField(str, Enum):
    TEAM_HOME = "teamHome"
    TEAM_AWAY = "teamAway"
    DATE = "date"
    TIME = "time"
    RESULT = "result"
    RESULT_DETAIL = "resultDetail"
    TEAM_HOME_LOGO = "teamHomeLogo"
    TEAM_AWAY_LOGO = "teamAwayLogo"
    LOCATION = "location"
    CITY = "city"
    LEAGUE = "league"
    ROUND = "round"

    @classmethod
    def parse(cls, name: str) -> GameField | None:
        try:
            return cls(name)
        except ValueError:
            return None


_FIELD_ATTRS = {
    GameField.TEAM_HOME: "team_home",
    GameField.TEAM_AWAY: "team_away",
    GameField.DATE: "date",
    GameField.TIME: "time",
    GameField.RESULT: "result",
    GameField.RESULT_DETAIL: "result_detail",
    GameField.TEAM_HOME_LOGO: "team_home_logo",
    GameField.TEAM_AWAY_LOGO: "team_away_logo",
    GameField.LOCATION: "location",
    GameField.CITY: "city",
    GameField.LEAGUE: "league",
    GameField.ROUND: "round",
}


class DataRecord(BaseModel):
    """One game as delivered by a federation API client."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str = ""
    team_home: str | None = Field(None, alias="teamHome")
    team_away: str | None = Field(None, alias="teamAway")
    date: str | None = None
    time: str | None = None
    result: str | None = None
    result_detail: str | None = Field(None, alias="resultDetail")
    team_home_logo: str | None = Field(None, alias="teamHomeLogo")
    team_away_logo: str | None = Field(None, alias="teamAwayLogo")
    location: str | None = None
    city: str | None = None
    league: str | None = None
    round: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        out: dict[str, Any] = {}
        for key, value in data.items():
            if value is None or isinstance(value, (dict, list, tuple)):
                continue
            out[str(key)] = str(value)
        if "id" not in out and "gameId" in out:
            out["id"] = out["gameId"]
        return out

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> DataRecord:
        return cls.model_validate(dict(payload or {}))

    def get(self, name: str) -> str | None:
        field = GameField.parse(name)
        if field is None:
            return None
        return getattr(self, _FIELD_ATTRS[field])
