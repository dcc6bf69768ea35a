"""
Declarative schematic description (version 1).

Callers send the whole desired state of the managed part of a schematic page:
components, net flags, net ports, texts, free wires and pin-to-pin
connections.  Coordinates are either native schematic units (``sch``, 0.01
inch) or millimetres; conversion to native units happens once, when the
description is reconciled into the document.
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import RpcError

SCH_UNITS_PER_MM = 1 / 0.254

Units = Literal["sch", "mm"]
NonEmptyStr = Annotated[str, Field(min_length=1)]
Line = Union[list[float], list[list[float]]]


class _IrModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        strict=True,
        allow_inf_nan=False,
    )


class PageIntent(_IrModel):
    ensure: bool | None = None
    board_name: NonEmptyStr | None = None
    schematic_name: NonEmptyStr | None = None
    page_name: NonEmptyStr | None = None
    clear: bool | None = None
    clear_mode: Literal["mcp", "all"] | None = None


class ComponentSpec(_IrModel):
    id: NonEmptyStr
    device_uuid: NonEmptyStr
    library_uuid: NonEmptyStr | None = None
    x: float
    y: float
    sub_part_name: NonEmptyStr | None = None
    rotation: float | None = None
    mirror: bool | None = None
    add_into_bom: bool | None = None
    add_into_pcb: bool | None = None
    designator: str | None = None
    # explicit null clears the display name, absence leaves it untouched
    name: str | None = None


class NetFlagSpec(_IrModel):
    id: NonEmptyStr
    identification: Literal["Power", "Ground", "AnalogGround", "ProtectGround"]
    net: NonEmptyStr
    x: float
    y: float
    rotation: float | None = None
    mirror: bool | None = None


class NetPortSpec(_IrModel):
    id: NonEmptyStr
    direction: Literal["IN", "OUT", "BI"]
    net: NonEmptyStr
    x: float
    y: float
    rotation: float | None = None
    mirror: bool | None = None


class WireSpec(_IrModel):
    id: NonEmptyStr
    net: NonEmptyStr | None = None
    line: Line

    @field_validator("line")
    @classmethod
    def _check_line(cls, value: Line) -> Line:
        polylines = [value] if not value or not isinstance(value[0], list) else value
        if not polylines or not polylines[0]:
            raise ValueError("line must contain at least one segment")
        for polyline in polylines:
            if len(polyline) < 4 or len(polyline) % 2:
                raise ValueError("each polyline needs an even number (>= 4) of coordinates")
        return value


class TextSpec(_IrModel):
    id: NonEmptyStr
    x: float
    y: float
    content: NonEmptyStr
    rotation: float | None = None
    text_color: str | None = None
    font_name: str | None = None
    font_size: float | None = None
    bold: bool | None = None
    italic: bool | None = None
    under_line: bool | None = None
    align_mode: int | None = None


class PinEndpoint(_IrModel):
    component_id: NonEmptyStr
    pin_number: NonEmptyStr | None = None
    pin_name: NonEmptyStr | None = None

    @model_validator(mode="after")
    def _require_selector(self) -> "PinEndpoint":
        if not self.pin_number and not self.pin_name:
            raise ValueError("pinNumber or pinName is required")
        return self


class ConnectionSpec(_IrModel):
    id: NonEmptyStr
    from_: PinEndpoint = Field(alias="from")
    to: PinEndpoint
    net: NonEmptyStr | None = None
    style: Literal["manhattan", "straight"] | None = None
    mid_x: float | None = None


class DrcRequest(_IrModel):
    strict: bool | None = None
    user_interface: bool | None = None


class CaptureRequest(_IrModel):
    save_path: NonEmptyStr | None = None
    file_name: NonEmptyStr | None = None
    force: bool | None = None


class PostActions(_IrModel):
    drc: DrcRequest | None = None
    save: bool | None = None
    zoom_to_all: bool | None = None
    capture_png: CaptureRequest | None = None


class DeletePatch(_IrModel):
    components: list[NonEmptyStr] | None = None
    net_flags: list[NonEmptyStr] | None = None
    net_ports: list[NonEmptyStr] | None = None
    texts: list[NonEmptyStr] | None = None
    wires: list[NonEmptyStr] | None = None
    connections: list[NonEmptyStr] | None = None

    def ids_for(self, kind: str) -> list[str]:
        return list(getattr(self, kind) or [])


class Patch(_IrModel):
    delete: DeletePatch | None = None


class SchematicIr(_IrModel):
    version: Literal[1]
    units: Units = "sch"
    page: PageIntent | None = None
    patch: Patch | None = None
    components: list[ComponentSpec] = Field(default_factory=list)
    net_flags: list[NetFlagSpec] = Field(default_factory=list)
    net_ports: list[NetPortSpec] = Field(default_factory=list)
    texts: list[TextSpec] = Field(default_factory=list)
    wires: list[WireSpec] = Field(default_factory=list)
    connections: list[ConnectionSpec] = Field(default_factory=list)
    post: PostActions | None = None


# (attribute on SchematicIr / mapping, label used in duplicate-id faults)
ENTITY_KINDS: tuple[tuple[str, str], ...] = (
    ("components", "component"),
    ("net_flags", "netFlag"),
    ("net_ports", "netPort"),
    ("texts", "text"),
    ("wires", "wire"),
    ("connections", "connection"),
)


def validation_error_data(exc: ValidationError) -> list[dict[str, Any]]:
    return json.loads(exc.json(include_url=False))


def parse_schematic_ir(params: Any) -> SchematicIr:
    try:
        return SchematicIr.model_validate(params)
    except ValidationError as exc:
        raise RpcError("INVALID_IR", "Invalid SchematicIR", validation_error_data(exc)) from exc


def ensure_unique_ids(items: Iterable[Any], label: str) -> None:
    seen: set[str] = set()
    for item in items:
        if item.id in seen:
            raise RpcError("DUPLICATE_ID", f"Duplicate {label} id: {item.id}")
        seen.add(item.id)


def ensure_unique_ir_ids(ir: SchematicIr) -> None:
    for attr, label in ENTITY_KINDS:
        ensure_unique_ids(getattr(ir, attr), label)


def to_sch_units(value: float, units: Units) -> float:
    if units == "mm":
        return value * SCH_UNITS_PER_MM
    return value


def map_line(line: Line, units: Units) -> Line:
    if line and isinstance(line[0], list):
        return [[to_sch_units(n, units) for n in segment] for segment in line]  # type: ignore[union-attr]
    return [to_sch_units(n, units) for n in line]  # type: ignore[arg-type]
