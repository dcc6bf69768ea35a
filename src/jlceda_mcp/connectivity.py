from __future__ import annotations

import logging
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .errors import RpcError
from .host import DocumentHost, read_document_source, resolve_document
from .ir import validation_error_data
from .models import WireSegment
from .pins import PinCache, select_pins
from .wires import bfs_reachable, build_adjacency, parse_wires_from_document_source, point_key

_LOGGER = logging.getLogger(__name__)

DEFAULT_SOURCE_MAX_CHARS = 800_000

_NonEmpty = Annotated[str, Field(min_length=1)]


class _ArgsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)


class ExpectedPoint(_ArgsModel):
    ref: _NonEmpty | None = None
    x: float | None = None
    y: float | None = None
    primitive_id: _NonEmpty | None = None
    pin_number: _NonEmpty | None = None
    pin_name: _NonEmpty | None = None
    allow_many: bool = False

    @model_validator(mode="after")
    def _require_location(self) -> "ExpectedPoint":
        has_xy = self.x is not None and self.y is not None
        has_pin = self.primitive_id is not None and (self.pin_number or self.pin_name)
        if not has_xy and not has_pin:
            raise ValueError("Provide either (x,y) or (primitiveId + (pinNumber|pinName)).")
        return self

    @property
    def is_coordinate(self) -> bool:
        return self.x is not None and self.y is not None


class NetExpectation(_ArgsModel):
    name: _NonEmpty
    wire_primitive_ids: list[_NonEmpty] | None = None
    points: list[ExpectedPoint] = Field(default_factory=list)


class VerifyNetsArgs(_ArgsModel):
    nets: list[NetExpectation]
    require_connected: bool = True
    max_chars: int = Field(default=DEFAULT_SOURCE_MAX_CHARS, gt=0)
    document_uuid: _NonEmpty | None = None


def parse_verify_nets_args(params: Any) -> VerifyNetsArgs:
    try:
        return VerifyNetsArgs.model_validate(params)
    except ValidationError as exc:
        raise RpcError("INVALID_PARAMS", "Invalid verifyNets arguments", validation_error_data(exc)) from exc


def _to_doc_frame(x: float, y: float) -> tuple[float, float]:
    # document source stores Y pointing the other way
    return float(x), -float(y)


async def _expected_points(net: NetExpectation, pins: PinCache) -> list[tuple[str, str]]:
    """(label, point key) pairs for every expected point of ``net``."""
    expected: list[tuple[str, str]] = []
    for point in net.points:
        if point.is_coordinate:
            x, y = _to_doc_frame(point.x, point.y)  # type: ignore[arg-type]
            ref = point.ref or f"({_format_number(point.x)},{_format_number(point.y)})"
            expected.append((ref, point_key(x, y)))
            continue

        primitive_id = str(point.primitive_id)
        selected = select_pins(
            await pins.get(primitive_id),
            pin_number=point.pin_number,
            pin_name=point.pin_name,
            allow_many=point.allow_many,
            label=primitive_id,
        )
        for pin in selected:
            x, y = _to_doc_frame(pin.x, pin.y)
            ref = point.ref or f"{primitive_id}.{pin.pin_name or pin.pin_number or '?'}"
            expected.append((ref, point_key(x, y)))
    return expected


def _format_number(value: float | None) -> str:
    if value is None:
        return "?"
    return str(int(value)) if float(value).is_integer() else str(value)


async def verify_nets(host: DocumentHost, params: Any) -> dict[str, Any]:
    """Check expected nets against the wire graph rebuilt from document source.

    For each net this reports requested wires absent from the document, wires
    carrying a different net name, expected points not touching any segment,
    and, when ``requireConnected`` is set, present points that cannot be
    reached from the first present point.
    """
    args = parse_verify_nets_args(params)
    document_uuid = await resolve_document(host, args.document_uuid)
    doc = await read_document_source(host, document_uuid, max_chars=args.max_chars)
    if not doc["source"]:
        raise RpcError("DOCUMENT_SOURCE_UNAVAILABLE", "No document source returned")

    net_names = {net.name for net in args.nets}
    wire_ids = {wire_id for net in args.nets for wire_id in (net.wire_primitive_ids or [])}
    by_id = [bool(net.wire_primitive_ids) for net in args.nets]
    if all(by_id):
        parsed = parse_wires_from_document_source(doc["source"], wire_ids=wire_ids)
    elif not any(by_id):
        parsed = parse_wires_from_document_source(doc["source"], net_names=net_names)
    else:
        # mixed request: each net picks its own wires from the full parse
        parsed = parse_wires_from_document_source(doc["source"])

    pins = PinCache(host, document_uuid, missing_code="NOT_FOUND")
    results: dict[str, dict[str, Any]] = {}

    for net in args.nets:
        expected = await _expected_points(net, pins)
        wanted_wire_ids = net.wire_primitive_ids or []
        missing_wire_ids = [wire_id for wire_id in wanted_wire_ids if wire_id not in parsed]
        net_mismatch: list[dict[str, Any]] = []
        segments: list[WireSegment] = []

        if wanted_wire_ids:
            wire_count = len(wanted_wire_ids)
            for wire_id in wanted_wire_ids:
                wire = parsed.get(wire_id)
                if wire is None:
                    continue
                if wire.net and wire.net != net.name:
                    net_mismatch.append({"wireId": wire_id, "expected": net.name, "actual": wire.net})
                segments.extend(wire.segments)
        else:
            matching = [wire for wire in parsed.values() if wire.net == net.name]
            wire_count = len(matching)
            for wire in matching:
                segments.extend(wire.segments)

        adjacency = build_adjacency(segments)
        missing_points = [f"{ref}@{key}" for ref, key in expected if key not in adjacency]
        present = [(ref, key) for ref, key in expected if key in adjacency]

        disconnected: list[str] = []
        if args.require_connected and len(present) >= 2:
            reachable = bfs_reachable(adjacency, present[0][1])
            disconnected = [f"{ref}@{key}" for ref, key in present if key not in reachable]

        ok = not (missing_wire_ids or net_mismatch or missing_points or disconnected)
        results[net.name] = {
            "ok": ok,
            "wires": wire_count,
            "segments": len(segments),
            "missingWireIds": missing_wire_ids,
            "netMismatch": net_mismatch,
            "missingPoints": missing_points,
            "disconnected": disconnected,
        }
        if not ok:
            _LOGGER.info(
                "Net %s failed verification: %d missing points, %d disconnected",
                net.name,
                len(missing_points),
                len(disconnected),
            )

    return {
        "ok": all(result["ok"] for result in results.values()),
        "results": results,
        "doc": {"truncated": doc["truncated"], "totalChars": doc["totalChars"]},
    }
