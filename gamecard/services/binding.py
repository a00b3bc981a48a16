from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from gamecard.core.errors import BindingUnresolved
from gamecard.core.logger import get_logger
from gamecard.data.models import (
    BoundImageElement,
    BoundTextElement,
    DataRecord,
    GameField,
    GroupElement,
    ImageElement,
    ResolvedElement,
    Template,
    TextElement,
)

log = get_logger("services.binding")

MAX_RECORDS = 3
BACKGROUND_PLACEHOLDER_ID = "__background__"

_RECORD_PREFIXES = (("game-2.", 1), ("game-3.", 2))
_PRIMARY_PREFIX = "game."
# Templates saved before prefix routing wrote `teamHome2` for `game-2.teamHome`.
_LEGACY_SUFFIX_RE = re.compile(r"^(?P<field>[A-Za-z]+)(?P<game>[23])$")


@dataclass(frozen=True)
class FieldReference:
    record_index: int
    fields: tuple[str, ...]


@dataclass(frozen=True)
class ResolvedScene:
    width: int
    height: int
    background_color: str
    defs: str
    elements: tuple[ResolvedElement, ...]
    unresolved: tuple[BindingUnresolved, ...] = field(default=(), compare=False)


def parse_reference(raw: str) -> FieldReference:
    ref = (raw or "").strip()
    index = 0
    for prefix, idx in _RECORD_PREFIXES:
        if ref.startswith(prefix):
            ref = ref[len(prefix):]
            index = idx
            break
    else:
        if ref.startswith(_PRIMARY_PREFIX):
            ref = ref[len(_PRIMARY_PREFIX):]
    fields = tuple(part.strip() for part in ref.split(",") if part.strip())
    if index == 0 and len(fields) == 1 and GameField.parse(fields[0]) is None:
        m = _LEGACY_SUFFIX_RE.match(fields[0])
        if m and GameField.parse(m.group("field")) is not None:
            return FieldReference(record_index=int(m.group("game")) - 1, fields=(m.group("field"),))
    return FieldReference(record_index=index, fields=fields)


def normalize_records(records: Iterable[DataRecord | Mapping[str, Any]] | None) -> tuple[DataRecord, ...]:
    out: list[DataRecord] = []
    for rec in records or ():
        out.append(rec if isinstance(rec, DataRecord) else DataRecord.from_mapping(rec))
    if len(out) > MAX_RECORDS:
        log.warning("binding_records_truncated given=%s max=%s", len(out), MAX_RECORDS)
        out = out[:MAX_RECORDS]
    return tuple(out)


def resolve_value(reference: str, records: Sequence[DataRecord]) -> str | None:
    ref = parse_reference(reference)
    if ref.record_index >= len(records):
        return None
    record = records[ref.record_index]
    values: list[str] = []
    for name in ref.fields:
        value = record.get(name)
        if value is None:
            continue
        value = value.strip()
        if value:
            values.append(value)
    if not values:
        return None
    return " ".join(values)


def _plain(element, target):
    data = element.model_dump(exclude={"type", "api_field"})
    return target.model_validate(data)


def resolve(
    element,
    records: Sequence[DataRecord],
    unresolved: list[BindingUnresolved] | None = None,
) -> ResolvedElement:
    if isinstance(element, BoundTextElement):
        value = resolve_value(element.api_field, records)
        resolved = _plain(element, TextElement)
        if value is None:
            if unresolved is not None:
                unresolved.append(BindingUnresolved(element.id, element.api_field))
            return resolved
        return resolved.model_copy(update={"content": value})
    if isinstance(element, BoundImageElement):
        value = resolve_value(element.api_field, records)
        resolved = _plain(element, ImageElement)
        if value is None:
            if unresolved is not None:
                unresolved.append(BindingUnresolved(element.id, element.api_field))
            return resolved
        return resolved.model_copy(update={"href": value})
    if isinstance(element, GroupElement):
        children = tuple(resolve(child, records, unresolved) for child in _z_ordered(element.children))
        return element.model_copy(update={"children": children})
    return element


def _z_ordered(elements: Iterable[Any]) -> list[Any]:
    # sorted() is stable, so sequence order breaks zIndex ties.
    return sorted(elements, key=lambda el: el.z_index if el.z_index is not None else 0)


def _with_background_placeholder(template: Template, background_image: str | None) -> list[Any]:
    elements = list(template.elements)
    if not (template.use_background_placeholder and background_image):
        return elements
    lowest = min((el.z_index or 0 for el in elements), default=0)
    placeholder = ImageElement(
        id=BACKGROUND_PLACEHOLDER_ID,
        x=0,
        y=0,
        width=template.width,
        height=template.height,
        href=background_image,
        z_index=lowest - 1,
    )
    return [placeholder, *elements]


def resolve_template(
    template: Template,
    records: Iterable[DataRecord | Mapping[str, Any]] | None,
    *,
    background_image: str | None = None,
) -> ResolvedScene:
    recs = normalize_records(records)
    unresolved: list[BindingUnresolved] = []
    elements = tuple(
        resolve(el, recs, unresolved)
        for el in _z_ordered(_with_background_placeholder(template, background_image))
    )
    if unresolved:
        log.debug(
            "binding_fallback template=%s elements=%s",
            template.id,
            ",".join(u.element_id for u in unresolved),
        )
    return ResolvedScene(
        width=template.width,
        height=template.height,
        background_color=template.background_color,
        defs=template.defs,
        elements=elements,
        unresolved=tuple(unresolved),
    )
