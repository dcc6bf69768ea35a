"""
In-process stand-in for the EDA document host.

``SandboxDocumentHost`` keeps schematic pages in memory and implements the
whole ``DocumentHost`` surface: primitive CRUD, pin geometry from a small
device catalog, document-source records in the same ``head||body|`` format the
editor emits, and netlists derived from wire/pin coincidence.  The server uses
it when no editor is attached, and the tests use it as their fake.

Connectivity is endpoint based: a pin joins a net when it sits exactly on a
wire vertex (after rounding), and every vertex of one wire primitive belongs
to the same net.  Wires crossing mid-segment are not joined.
"""
from __future__ import annotations

import itertools
import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import anyio

from .errors import RpcError, safe_file_name
from .host import PrimitiveKind
from .models import SCHEMATIC_PAGE_DOCUMENT_TYPE, DeviceRef, DocumentInfo, PinInfo
from .wires import point_key

_LOGGER = logging.getLogger(__name__)

PCB_DOCUMENT_TYPE = 3
API_NETLIST_TYPES = frozenset({"JLCEDA", "EasyEDA", "Protel2", "PADS"})

# 1x1 transparent PNG
_PLACEHOLDER_PNG = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000100e221bc330000000049454e44ae426082"
)


def _normalize_orientation(rotation: float | None, mirror: bool | None) -> str:
    quarter = int(round((rotation or 0) / 90.0)) % 4
    return f"{'M' if mirror else 'R'}{quarter * 90}"


def _transform_point(x: float, y: float, orientation: str) -> tuple[float, float]:
    if orientation == "R90":
        return -y, x
    if orientation == "R180":
        return -x, -y
    if orientation == "R270":
        return y, -x
    if orientation == "M0":
        return -x, y
    if orientation == "M90":
        return y, x
    if orientation == "M180":
        return x, -y
    if orientation == "M270":
        return -y, -x
    return x, y


@dataclass(slots=True)
class SandboxPin:
    number: str
    name: str
    dx: float
    dy: float


@dataclass(slots=True)
class SandboxDevice:
    uuid: str
    library_uuid: str
    name: str
    designator_prefix: str
    pins: list[SandboxPin]
    footprint: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "uuid": self.uuid,
            "libraryUuid": self.library_uuid,
            "name": self.name,
            "designatorPrefix": self.designator_prefix,
            "footprint": self.footprint,
            "pins": [{"number": p.number, "name": p.name, "dx": p.dx, "dy": p.dy} for p in self.pins],
        }


SANDBOX_LIBRARY_UUID = "sandbox-lib"


def default_devices() -> list[SandboxDevice]:
    return [
        SandboxDevice(
            uuid="dev-resistor",
            library_uuid=SANDBOX_LIBRARY_UUID,
            name="Resistor",
            designator_prefix="R",
            footprint="R0603",
            pins=[SandboxPin("1", "1", -20, 0), SandboxPin("2", "2", 20, 0)],
        ),
        SandboxDevice(
            uuid="dev-capacitor",
            library_uuid=SANDBOX_LIBRARY_UUID,
            name="Capacitor",
            designator_prefix="C",
            footprint="C0603",
            pins=[SandboxPin("1", "1", -20, 0), SandboxPin("2", "2", 20, 0)],
        ),
        SandboxDevice(
            uuid="dev-led",
            library_uuid=SANDBOX_LIBRARY_UUID,
            name="LED",
            designator_prefix="D",
            footprint="LED0805",
            pins=[SandboxPin("1", "A", -20, 0), SandboxPin("2", "K", 20, 0)],
        ),
        SandboxDevice(
            uuid="dev-ldo",
            library_uuid=SANDBOX_LIBRARY_UUID,
            name="LDO Regulator",
            designator_prefix="U",
            footprint="SOT-223",
            pins=[
                SandboxPin("1", "GND", 0, 30),
                SandboxPin("2", "VOUT", 30, 0),
                SandboxPin("3", "VIN", -30, 0),
                SandboxPin("4", "GND", 10, 30),
            ],
        ),
    ]


@dataclass(slots=True)
class _Primitive:
    primitive_id: str
    kind: PrimitiveKind
    props: dict[str, Any]


@dataclass(slots=True)
class _Page:
    uuid: str
    tab_id: str
    board_name: str | None
    schematic_name: str | None
    page_name: str | None
    primitives: dict[str, _Primitive] = field(default_factory=dict)
    saved: bool = False

    def info(self) -> DocumentInfo:
        return DocumentInfo(
            document_type=SCHEMATIC_PAGE_DOCUMENT_TYPE,
            uuid=self.uuid,
            tab_id=self.tab_id,
        )

    def of_kind(self, *kinds: PrimitiveKind) -> list[_Primitive]:
        return [primitive for primitive in self.primitives.values() if primitive.kind in kinds]


def _line_points(line: Any) -> list[list[tuple[float, float]]]:
    polylines = line if line and isinstance(line[0], list) else [line]
    return [
        [(float(polyline[i]), float(polyline[i + 1])) for i in range(0, len(polyline) - 1, 2)]
        for polyline in polylines
    ]


def _valid_line(line: Any) -> bool:
    if not isinstance(line, list) or not line:
        return False
    polylines = line if isinstance(line[0], list) else [line]
    return all(
        isinstance(polyline, list) and len(polyline) >= 4 and len(polyline) % 2 == 0
        for polyline in polylines
    )


class _UnionFind:
    def __init__(self) -> None:
        self.parent: dict[str, str] = {}

    def find(self, key: str) -> str:
        self.parent.setdefault(key, key)
        root = key
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[key] != root:
            self.parent[key], key = root, self.parent[key]
        return root

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self.parent[root_b] = root_a


class SandboxDocumentHost:
    def __init__(
        self,
        devices: list[SandboxDevice] | None = None,
        *,
        netlist_api_supported: bool = True,
        netlist_delay_s: float = 0.0,
    ) -> None:
        self.devices: dict[str, SandboxDevice] = {
            device.uuid: device for device in (devices if devices is not None else default_devices())
        }
        self.pages: dict[str, _Page] = {}
        self.netlist_api_supported = netlist_api_supported
        self.netlist_delay_s = netlist_delay_s
        self.mutations: list[tuple[str, str]] = []
        self._current: DocumentInfo | None = None
        self._ids = itertools.count(1)
        self._designators: dict[str, dict[str, int]] = {}

    # -- documents -------------------------------------------------------

    def _page(self, document_uuid: str) -> _Page:
        page = self.pages.get(document_uuid)
        if page is None:
            raise RpcError("NOT_FOUND", f"Schematic page not found: {document_uuid}")
        return page

    def open_page(
        self,
        *,
        board_name: str | None = None,
        schematic_name: str | None = None,
        page_name: str | None = None,
    ) -> DocumentInfo:
        page = _Page(
            uuid=uuid.uuid4().hex,
            tab_id=f"tab-{next(self._ids)}",
            board_name=board_name,
            schematic_name=schematic_name,
            page_name=page_name or "P1",
        )
        self.pages[page.uuid] = page
        self._current = page.info()
        self.mutations.append(("open_page", page.uuid))
        return self._current

    def focus_non_schematic(self) -> None:
        self._current = DocumentInfo(document_type=PCB_DOCUMENT_TYPE, uuid="pcb-doc", tab_id="tab-pcb")

    def close_all(self) -> None:
        self._current = None

    async def get_current_document(self) -> DocumentInfo | None:
        return self._current

    async def ensure_schematic_page(
        self,
        *,
        board_name: str | None = None,
        schematic_name: str | None = None,
        page_name: str | None = None,
    ) -> DocumentInfo:
        current = self._current
        if current is not None and current.is_schematic_page:
            page = self.pages[current.uuid]
            if page_name is None or page.page_name == page_name:
                return current
        for page in self.pages.values():
            if page_name is not None and page.page_name == page_name:
                self._current = page.info()
                return self._current
        return self.open_page(board_name=board_name, schematic_name=schematic_name, page_name=page_name)

    async def resolve_device(self, device_uuid: str) -> DeviceRef | None:
        device = self.devices.get(device_uuid)
        if device is None:
            return None
        return DeviceRef(uuid=device.uuid, library_uuid=device.library_uuid)

    # -- primitives ------------------------------------------------------

    def _next_designator(self, document_uuid: str, prefix: str) -> str:
        counters = self._designators.setdefault(document_uuid, {})
        counters[prefix] = counters.get(prefix, 0) + 1
        return f"{prefix}{counters[prefix]}"

    async def create_primitive(
        self, document_uuid: str, kind: PrimitiveKind, props: dict[str, Any]
    ) -> str | None:
        page = self._page(document_uuid)
        stored = dict(props)
        if kind is PrimitiveKind.COMPONENT:
            device = self.devices.get(str(props.get("deviceUuid")))
            if device is None or device.library_uuid != props.get("libraryUuid"):
                return None
            stored.setdefault("designator", self._next_designator(document_uuid, device.designator_prefix))
            stored.setdefault("name", device.name)
        elif kind is PrimitiveKind.WIRE:
            if not _valid_line(props.get("line")):
                return None
        elif kind is PrimitiveKind.TEXT:
            if not props.get("content"):
                return None
        elif not props.get("net"):
            return None
        primitive_id = f"e{next(self._ids)}"
        page.primitives[primitive_id] = _Primitive(primitive_id=primitive_id, kind=kind, props=stored)
        page.saved = False
        self.mutations.append(("create", kind.value))
        return primitive_id

    async def modify_primitive(
        self, document_uuid: str, kind: PrimitiveKind, primitive_id: str, props: dict[str, Any]
    ) -> bool:
        page = self._page(document_uuid)
        primitive = page.primitives.get(primitive_id)
        if primitive is None or primitive.kind is not kind:
            return False
        if "line" in props and not _valid_line(props["line"]):
            return False
        for key, value in props.items():
            if key == "otherProperty" and isinstance(value, dict):
                primitive.props.setdefault("otherProperty", {}).update(value)
            else:
                primitive.props[key] = value
        page.saved = False
        self.mutations.append(("modify", kind.value))
        return True

    async def delete_primitives(
        self, document_uuid: str, kind: PrimitiveKind, primitive_ids: list[str]
    ) -> bool:
        page = self._page(document_uuid)
        removed = False
        for primitive_id in primitive_ids:
            primitive = page.primitives.get(primitive_id)
            if primitive is None or primitive.kind is not kind:
                continue
            del page.primitives[primitive_id]
            removed = True
        if removed:
            page.saved = False
        self.mutations.append(("delete", kind.value))
        return removed

    async def list_primitive_ids(self, document_uuid: str, kind: PrimitiveKind) -> list[str]:
        return [primitive.primitive_id for primitive in self._page(document_uuid).of_kind(kind)]

    async def list_tagged_primitives(self, document_uuid: str) -> list[dict[str, Any]]:
        page = self._page(document_uuid)
        records: list[dict[str, Any]] = []
        for primitive in page.of_kind(PrimitiveKind.COMPONENT, PrimitiveKind.NET_FLAG, PrimitiveKind.NET_PORT):
            tags = primitive.props.get("otherProperty")
            if not tags:
                continue
            record = {
                "primitiveId": primitive.primitive_id,
                "kind": primitive.kind.value,
                "otherProperty": dict(tags),
            }
            for key in ("net", "identification", "direction", "designator"):
                if key in primitive.props:
                    record[key] = primitive.props[key]
            records.append(record)
        return records

    def primitive_props(self, document_uuid: str, primitive_id: str) -> dict[str, Any]:
        return dict(self._page(document_uuid).primitives[primitive_id].props)

    # -- geometry --------------------------------------------------------

    def _pins_for(self, primitive: _Primitive) -> list[PinInfo]:
        props = primitive.props
        x = float(props.get("x", 0))
        y = float(props.get("y", 0))
        if primitive.kind is not PrimitiveKind.COMPONENT:
            net = str(props.get("net", ""))
            return [PinInfo(primitive_id=f"{primitive.primitive_id}:1", x=x, y=y, pin_number="1", pin_name=net)]
        device = self.devices[str(props["deviceUuid"])]
        orientation = _normalize_orientation(props.get("rotation"), props.get("mirror"))
        pins: list[PinInfo] = []
        for pin in device.pins:
            dx, dy = _transform_point(pin.dx, pin.dy, orientation)
            pins.append(
                PinInfo(
                    primitive_id=f"{primitive.primitive_id}:{pin.number}",
                    x=x + dx,
                    y=y + dy,
                    pin_number=pin.number,
                    pin_name=pin.name,
                    rotation=float(props.get("rotation") or 0),
                )
            )
        return pins

    async def get_component_pins(self, document_uuid: str, primitive_id: str) -> list[PinInfo] | None:
        primitive = self._page(document_uuid).primitives.get(primitive_id)
        if primitive is None or primitive.kind in (PrimitiveKind.WIRE, PrimitiveKind.TEXT):
            return None
        return self._pins_for(primitive)

    # -- document source -------------------------------------------------

    async def get_document_source(self, document_uuid: str) -> str | None:
        page = self._page(document_uuid)
        records: list[tuple[dict[str, Any], dict[str, Any]]] = [
            ({"type": "DOCTYPE"}, {"docType": "SCH_PAGE", "uuid": page.uuid}),
        ]
        for primitive in page.primitives.values():
            props = primitive.props
            if primitive.kind is PrimitiveKind.WIRE:
                records.append(({"type": "WIRE", "id": primitive.primitive_id}, {"zIndex": 0}))
                index = 0
                for points in _line_points(props["line"]):
                    for (x1, y1), (x2, y2) in zip(points, points[1:]):
                        index += 1
                        records.append(
                            (
                                {"type": "LINE", "id": f"{primitive.primitive_id}_l{index}"},
                                {
                                    "lineGroup": primitive.primitive_id,
                                    "startX": x1,
                                    "startY": -y1,
                                    "endX": x2,
                                    "endY": -y2,
                                },
                            )
                        )
                if props.get("net"):
                    records.append(
                        (
                            {"type": "ATTR", "id": f"{primitive.primitive_id}_net"},
                            {"parentId": primitive.primitive_id, "key": "NET", "value": props["net"]},
                        )
                    )
            elif primitive.kind is PrimitiveKind.TEXT:
                records.append(
                    (
                        {"type": "TEXT", "id": primitive.primitive_id},
                        {"x": props.get("x"), "y": -float(props.get("y", 0)), "value": props.get("content")},
                    )
                )
            else:
                records.append(
                    (
                        {"type": "COMPONENT", "id": primitive.primitive_id},
                        {
                            "x": props.get("x"),
                            "y": -float(props.get("y", 0)),
                            "rotation": props.get("rotation", 0),
                            "component": props.get("deviceUuid") or primitive.kind.value,
                        },
                    )
                )
        return "\n".join(f"{json.dumps(head)}||{json.dumps(body)}|" for head, body in records)

    # -- netlist ---------------------------------------------------------

    def compute_nets(self, document_uuid: str) -> dict[str, list[tuple[str, str]]]:
        """Net name -> [(designator, pin number)] for every connected component pin."""
        page = self._page(document_uuid)
        groups = _UnionFind()
        wire_nets: list[tuple[str, str]] = []
        wire_keys: list[str] = []
        for wire in page.of_kind(PrimitiveKind.WIRE):
            keys = [point_key(x, y) for points in _line_points(wire.props["line"]) for x, y in points]
            for key in keys[1:]:
                groups.union(keys[0], key)
            wire_keys.append(keys[0])
            if wire.props.get("net"):
                wire_nets.append((keys[0], str(wire.props["net"])))
        wire_roots = {groups.find(key) for key in wire_keys}

        named: dict[str, str] = {}
        members: dict[str, list[tuple[str, str]]] = {}
        pin_counts: dict[str, int] = {}
        for primitive in page.of_kind(PrimitiveKind.COMPONENT, PrimitiveKind.NET_FLAG, PrimitiveKind.NET_PORT):
            for pin in self._pins_for(primitive):
                root = groups.find(point_key(pin.x, pin.y))
                pin_counts[root] = pin_counts.get(root, 0) + 1
                if primitive.kind is PrimitiveKind.COMPONENT:
                    designator = str(primitive.props.get("designator") or primitive.primitive_id)
                    members.setdefault(root, []).append((designator, pin.pin_number))
                else:
                    named.setdefault(root, str(primitive.props["net"]))
        for key, net in wire_nets:
            named.setdefault(groups.find(key), net)

        nets: dict[str, list[tuple[str, str]]] = {}
        auto_index = itertools.count(1)
        for root, endpoints in members.items():
            if root not in named and root not in wire_roots and pin_counts.get(root, 0) < 2:
                continue
            name = named.get(root) or f"$N{next(auto_index)}"
            nets.setdefault(name, []).extend(endpoints)
        return nets

    def _render_netlist(self, document_uuid: str, netlist_type: str) -> str:
        page = self._page(document_uuid)
        nets = self.compute_nets(document_uuid)
        components = page.of_kind(PrimitiveKind.COMPONENT)
        if netlist_type in ("JLCEDA", "EasyEDA"):
            pin_nets = {(ref, pin): net for net, endpoints in nets.items() for ref, pin in endpoints}
            payload: dict[str, Any] = {}
            for component in components:
                designator = str(component.props.get("designator") or component.primitive_id)
                device = self.devices[str(component.props["deviceUuid"])]
                payload[component.primitive_id] = {
                    "props": {"Designator": designator, "Name": component.props.get("name") or device.name},
                    "pinInfoMap": {
                        pin.number: {
                            "name": pin.name,
                            "number": pin.number,
                            "net": pin_nets.get((designator, pin.number), ""),
                        }
                        for pin in device.pins
                    },
                }
            return json.dumps(payload, indent=2)
        if netlist_type == "PADS":
            lines = ["*PADS-PCB*", "*PART*"]
            for component in components:
                device = self.devices[str(component.props["deviceUuid"])]
                lines.append(f"{component.props.get('designator')} {device.footprint or device.name}")
            lines.append("*NET*")
            for net, endpoints in nets.items():
                lines.append(f"*SIGNAL* {net}")
                lines.append(" ".join(f"{ref}.{pin}" for ref, pin in endpoints))
            lines.append("*END*")
            return "\n".join(lines) + "\n"
        lines = []
        for component in components:
            device = self.devices[str(component.props["deviceUuid"])]
            lines.extend(["[", str(component.props.get("designator")), device.footprint, device.name, "]"])
        for net, endpoints in nets.items():
            lines.extend(["(", net, *(f"{ref}-{pin}" for ref, pin in endpoints), ")"])
        return "\n".join(lines) + "\n"

    async def get_netlist(self, document_uuid: str, netlist_type: str) -> str:
        if self.netlist_delay_s > 0:
            await anyio.sleep(self.netlist_delay_s)
        if not self.netlist_api_supported or netlist_type not in API_NETLIST_TYPES:
            raise RpcError("NOT_SUPPORTED", f"Netlist API does not support {netlist_type}")
        return self._render_netlist(document_uuid, netlist_type)

    async def export_netlist_file(self, document_uuid: str, netlist_type: str) -> bytes | str | None:
        render_type = netlist_type if netlist_type in API_NETLIST_TYPES else "Protel2"
        return self._render_netlist(document_uuid, render_type).encode("utf-8")

    # -- post actions ----------------------------------------------------

    def _page_for_tab(self, tab_id: str) -> _Page:
        for page in self.pages.values():
            if page.tab_id == tab_id:
                return page
        raise RpcError("NOT_FOUND", f"Tab not found: {tab_id}")

    async def zoom_to_all(self, tab_id: str) -> None:
        self._page_for_tab(tab_id)

    async def run_drc(self, document_uuid: str, *, strict: bool, user_interface: bool) -> bool:
        if not strict:
            return True
        connected = {
            (ref, pin) for endpoints in self.compute_nets(document_uuid).values() for ref, pin in endpoints
        }
        for component in self._page(document_uuid).of_kind(PrimitiveKind.COMPONENT):
            designator = str(component.props.get("designator") or component.primitive_id)
            device = self.devices[str(component.props["deviceUuid"])]
            if any((designator, pin.number) not in connected for pin in device.pins):
                return False
        return True

    async def save_document(self, document_uuid: str) -> bool:
        self._page(document_uuid).saved = True
        return True

    async def capture_png(
        self,
        tab_id: str,
        *,
        save_path: str | None,
        file_name: str,
        force: bool,
    ) -> dict[str, Any]:
        self._page_for_tab(tab_id)
        name = safe_file_name(file_name, fallback="capture.png")
        if save_path is None:
            return {"fileName": name, "downloaded": True}
        target = Path(save_path).expanduser() / name
        if target.exists() and not force:
            raise RpcError("CAPTURE_FAILED", f"File already exists: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(_PLACEHOLDER_PNG)
        _LOGGER.info("Sandbox capture written to %s", target)
        return {"fileName": name, "savedTo": str(target)}
