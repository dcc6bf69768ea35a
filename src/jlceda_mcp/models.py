from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SCHEMATIC_PAGE_DOCUMENT_TYPE = 1


@dataclass(slots=True)
class DocumentInfo:
    document_type: int
    uuid: str
    tab_id: str

    @property
    def is_schematic_page(self) -> bool:
        return self.document_type == SCHEMATIC_PAGE_DOCUMENT_TYPE

    def as_dict(self) -> dict[str, Any]:
        return {
            "documentType": self.document_type,
            "uuid": self.uuid,
            "tabId": self.tab_id,
        }


@dataclass(slots=True)
class DeviceRef:
    uuid: str
    library_uuid: str

    def as_dict(self) -> dict[str, Any]:
        return {"uuid": self.uuid, "libraryUuid": self.library_uuid}


@dataclass(slots=True)
class PinInfo:
    primitive_id: str
    x: float
    y: float
    pin_number: str
    pin_name: str
    rotation: float = 0.0
    pin_length: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "primitiveId": self.primitive_id,
            "x": self.x,
            "y": self.y,
            "pinNumber": self.pin_number,
            "pinName": self.pin_name,
            "rotation": self.rotation,
            "pinLength": self.pin_length,
        }


@dataclass(slots=True)
class WireSegment:
    x1: float
    y1: float
    x2: float
    y2: float

    def as_dict(self) -> dict[str, Any]:
        return {"x1": self.x1, "y1": self.y1, "x2": self.x2, "y2": self.y2}


@dataclass(slots=True)
class ParsedWire:
    wire_id: str
    net: str | None = None
    segments: list[WireSegment] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "wireId": self.wire_id,
            "net": self.net,
            "segments": [segment.as_dict() for segment in self.segments],
        }


@dataclass(slots=True)
class AppliedEntity:
    primitive_id: str
    action: str

    def as_dict(self) -> dict[str, Any]:
        return {"primitiveId": self.primitive_id, "action": self.action}
