from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError

from .errors import RpcError, error_payload, safe_file_name
from .host import MAPPING_KIND_PRIMITIVES, DocumentHost, PrimitiveKind, require_schematic_page
from .ir import (
    ENTITY_KINDS,
    ComponentSpec,
    ConnectionSpec,
    NetFlagSpec,
    NetPortSpec,
    SchematicIr,
    TextSpec,
    WireSpec,
    ensure_unique_ir_ids,
    map_line,
    parse_schematic_ir,
    to_sch_units,
)
from .mapping import (
    ComponentEntry,
    NetFlagEntry,
    NetPortEntry,
    SchematicMap,
    SchematicMapStore,
    SimpleEntry,
    create_empty_schematic_map,
)
from .models import AppliedEntity, DeviceRef, DocumentInfo
from .pins import PinCache, select_pin

_LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

PROGRESS_TITLE = "MCP: Applying schematic"

# mapping collection -> key used in tool results
RESULT_KEYS: dict[str, str] = {
    "components": "components",
    "net_flags": "netFlags",
    "net_ports": "netPorts",
    "texts": "texts",
    "wires": "wires",
    "connections": "connections",
}

TAG_ID = "__mcp_id"
TAG_DEVICE_UUID = "__mcp_deviceUuid"
TAG_LIBRARY_UUID = "__mcp_libraryUuid"
TAG_TYPE = "__mcp_type"


def _log_apply_event(level: int, event: str, **fields: Any) -> None:
    payload = {"event": event, **fields}
    try:
        encoded = json.dumps(payload, sort_keys=True, default=str)
    except Exception:  # noqa: BLE001
        encoded = str(payload)
    _LOGGER.log(level, "schematic_apply %s", encoded)


def _compact(**fields: Any) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


class _Progress:
    def __init__(self, total: int, callback: ProgressCallback | None) -> None:
        self.total = total
        self.done = 0
        self.last = -1
        self.callback = callback

    def _report(self, percent: int) -> None:
        if percent <= self.last:
            return
        self.last = percent
        if self.callback is not None:
            self.callback(percent, PROGRESS_TITLE)

    def start(self) -> None:
        self._report(0)

    def bump(self) -> None:
        self.done += 1
        if not self.total:
            return
        self._report(min(99, self.done * 100 // self.total))

    def finish(self) -> None:
        self._report(100)


async def _best_effort_delete(
    host: DocumentHost, document_uuid: str, kind: PrimitiveKind, primitive_ids: list[str]
) -> None:
    if not primitive_ids:
        return
    try:
        await host.delete_primitives(document_uuid, kind, primitive_ids)
    except Exception as exc:  # noqa: BLE001
        _log_apply_event(
            logging.DEBUG,
            "delete_ignored",
            kind=kind.value,
            primitive_ids=primitive_ids,
            error=str(exc),
        )


async def _try_modify(
    host: DocumentHost,
    document_uuid: str,
    kind: PrimitiveKind,
    primitive_id: str,
    props: dict[str, Any],
) -> bool:
    try:
        return bool(await host.modify_primitive(document_uuid, kind, primitive_id, props))
    except Exception as exc:  # noqa: BLE001
        _log_apply_event(
            logging.DEBUG,
            "modify_failed",
            kind=kind.value,
            primitive_id=primitive_id,
            error=str(exc),
        )
        return False


async def _create(
    host: DocumentHost,
    document_uuid: str,
    kind: PrimitiveKind,
    props: dict[str, Any],
    *,
    fault_code: str,
    fault_message: str,
) -> str:
    try:
        primitive_id = await host.create_primitive(document_uuid, kind, props)
    except RpcError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise RpcError(fault_code, f"{fault_message}: {exc}") from exc
    if not primitive_id:
        raise RpcError(fault_code, fault_message)
    return primitive_id


async def _clear_page(host: DocumentHost, document_uuid: str) -> dict[str, int]:
    counts = {"wires": 0, "texts": 0, "components": 0}
    buckets = {
        PrimitiveKind.WIRE: "wires",
        PrimitiveKind.TEXT: "texts",
        PrimitiveKind.COMPONENT: "components",
        PrimitiveKind.NET_FLAG: "components",
        PrimitiveKind.NET_PORT: "components",
    }
    for kind, bucket in buckets.items():
        primitive_ids = await host.list_primitive_ids(document_uuid, kind)
        if primitive_ids:
            await host.delete_primitives(document_uuid, kind, primitive_ids)
        counts[bucket] += len(primitive_ids)
    return counts


async def _clear_managed(host: DocumentHost, document_uuid: str, mapping: SchematicMap) -> dict[str, int]:
    counts = {"wires": 0, "texts": 0, "components": 0}
    buckets = {"wires": "wires", "connections": "wires", "texts": "texts"}
    grouped: dict[PrimitiveKind, list[str]] = {}
    for collection, kind in MAPPING_KIND_PRIMITIVES.items():
        primitive_ids = [entry.primitive_id for entry in mapping.entries(collection).values()]
        grouped.setdefault(kind, []).extend(primitive_ids)
        counts[buckets.get(collection, "components")] += len(primitive_ids)
    for kind, primitive_ids in grouped.items():
        await _best_effort_delete(host, document_uuid, kind, primitive_ids)
    return counts


class _ApplyRun:
    def __init__(
        self,
        host: DocumentHost,
        ir: SchematicIr,
        page: DocumentInfo,
        mapping: SchematicMap,
        progress: _Progress,
    ) -> None:
        self.host = host
        self.ir = ir
        self.units = ir.units
        self.page = page
        self.document_uuid = page.uuid
        self.mapping = mapping
        self.progress = progress
        self.applied: dict[str, dict[str, AppliedEntity]] = {key: {} for key in RESULT_KEYS}
        self.pins = PinCache(host, page.uuid)

    def _record(self, collection: str, logical_id: str, primitive_id: str, action: str) -> None:
        self.applied[collection][logical_id] = AppliedEntity(primitive_id=primitive_id, action=action)
        _log_apply_event(
            logging.INFO,
            "upsert",
            document_uuid=self.document_uuid,
            kind=RESULT_KEYS[collection],
            id=logical_id,
            primitive_id=primitive_id,
            action=action,
        )
        self.progress.bump()

    def applied_payload(self) -> dict[str, dict[str, Any]]:
        return {
            RESULT_KEYS[collection]: {logical_id: entity.as_dict() for logical_id, entity in entries.items()}
            for collection, entries in self.applied.items()
        }

    async def _upsert(
        self,
        collection: str,
        logical_id: str,
        *,
        kind: PrimitiveKind,
        can_update: bool,
        update_props: dict[str, Any],
        create_props: dict[str, Any],
        fault_code: str,
        fault_message: str,
    ) -> tuple[str, str]:
        existing = self.mapping.entries(collection).get(logical_id)
        if existing is not None and can_update:
            if await _try_modify(self.host, self.document_uuid, kind, existing.primitive_id, update_props):
                return existing.primitive_id, "updated"
        if existing is not None:
            await _best_effort_delete(self.host, self.document_uuid, kind, [existing.primitive_id])
        primitive_id = await _create(
            self.host,
            self.document_uuid,
            kind,
            create_props,
            fault_code=fault_code,
            fault_message=fault_message,
        )
        return primitive_id, "replaced" if existing is not None else "created"

    async def delete_requested(self) -> dict[str, list[str]]:
        deleted: dict[str, list[str]] = {}
        patch = self.ir.patch.delete if self.ir.patch else None
        if patch is None:
            return deleted
        for collection, _label in ENTITY_KINDS:
            entries = self.mapping.entries(collection)
            kind = MAPPING_KIND_PRIMITIVES[collection]
            for logical_id in patch.ids_for(collection):
                entry = entries.get(logical_id)
                if entry is not None:
                    await _best_effort_delete(self.host, self.document_uuid, kind, [entry.primitive_id])
                    del entries[logical_id]
                    deleted.setdefault(RESULT_KEYS[collection], []).append(logical_id)
                self.progress.bump()
        if deleted:
            _log_apply_event(logging.INFO, "deleted", document_uuid=self.document_uuid, deleted=deleted)
        return deleted

    async def _resolve_device(self, spec: ComponentSpec) -> DeviceRef:
        if spec.library_uuid:
            return DeviceRef(uuid=spec.device_uuid, library_uuid=spec.library_uuid)
        device = await self.host.resolve_device(spec.device_uuid)
        if device is None:
            raise RpcError("NOT_FOUND", f"Device not found: {spec.device_uuid}")
        return device

    async def upsert_component(self, spec: ComponentSpec) -> None:
        ref = await self._resolve_device(spec)
        existing = self.mapping.components.get(spec.id)
        tags = {
            TAG_ID: spec.id,
            TAG_DEVICE_UUID: spec.device_uuid,
            TAG_LIBRARY_UUID: ref.library_uuid,
        }
        display = _compact(designator=spec.designator)
        if "name" in spec.model_fields_set:
            display["name"] = spec.name
        x = to_sch_units(spec.x, self.units)
        y = to_sch_units(spec.y, self.units)

        same_device = (
            existing is not None
            and existing.device_uuid == spec.device_uuid
            and existing.library_uuid == ref.library_uuid
        )
        update_props = {
            **_compact(
                x=x,
                y=y,
                rotation=spec.rotation,
                mirror=spec.mirror,
                addIntoBom=spec.add_into_bom,
                addIntoPcb=spec.add_into_pcb,
            ),
            **display,
            "otherProperty": tags,
        }
        create_props = _compact(
            deviceUuid=ref.uuid,
            libraryUuid=ref.library_uuid,
            x=x,
            y=y,
            subPartName=spec.sub_part_name,
            rotation=spec.rotation,
            mirror=spec.mirror,
            addIntoBom=spec.add_into_bom,
            addIntoPcb=spec.add_into_pcb,
        )
        primitive_id, action = await self._upsert(
            "components",
            spec.id,
            kind=PrimitiveKind.COMPONENT,
            can_update=same_device,
            update_props=update_props,
            create_props=create_props,
            fault_code="PLACE_FAILED",
            fault_message=f"Failed to place device for component {spec.id}",
        )
        if action != "updated":
            await _try_modify(
                self.host,
                self.document_uuid,
                PrimitiveKind.COMPONENT,
                primitive_id,
                {**display, "otherProperty": tags},
            )
        self.mapping.components[spec.id] = ComponentEntry(
            primitive_id=primitive_id,
            device_uuid=spec.device_uuid,
            library_uuid=ref.library_uuid,
        )
        self._record("components", spec.id, primitive_id, action)

    async def upsert_net_flag(self, spec: NetFlagSpec) -> None:
        existing = self.mapping.net_flags.get(spec.id)
        x = to_sch_units(spec.x, self.units)
        y = to_sch_units(spec.y, self.units)
        placement = _compact(x=x, y=y, rotation=spec.rotation, mirror=spec.mirror, net=spec.net)
        primitive_id, action = await self._upsert(
            "net_flags",
            spec.id,
            kind=PrimitiveKind.NET_FLAG,
            can_update=existing is not None and existing.identification == spec.identification,
            update_props={**placement, "otherProperty": {TAG_ID: spec.id, TAG_TYPE: "netFlag"}},
            create_props={**placement, "identification": spec.identification},
            fault_code="PLACE_FAILED",
            fault_message=f"Failed to create net flag {spec.id}",
        )
        if action != "updated":
            await _try_modify(
                self.host,
                self.document_uuid,
                PrimitiveKind.NET_FLAG,
                primitive_id,
                {"otherProperty": {TAG_ID: spec.id, TAG_TYPE: "netFlag"}},
            )
        self.mapping.net_flags[spec.id] = NetFlagEntry(
            primitive_id=primitive_id,
            identification=spec.identification,
            net=spec.net,
        )
        self._record("net_flags", spec.id, primitive_id, action)

    async def upsert_net_port(self, spec: NetPortSpec) -> None:
        existing = self.mapping.net_ports.get(spec.id)
        x = to_sch_units(spec.x, self.units)
        y = to_sch_units(spec.y, self.units)
        placement = _compact(x=x, y=y, rotation=spec.rotation, mirror=spec.mirror, net=spec.net)
        primitive_id, action = await self._upsert(
            "net_ports",
            spec.id,
            kind=PrimitiveKind.NET_PORT,
            can_update=existing is not None and existing.direction == spec.direction,
            update_props={**placement, "otherProperty": {TAG_ID: spec.id, TAG_TYPE: "netPort"}},
            create_props={**placement, "direction": spec.direction},
            fault_code="PLACE_FAILED",
            fault_message=f"Failed to create net port {spec.id}",
        )
        if action != "updated":
            await _try_modify(
                self.host,
                self.document_uuid,
                PrimitiveKind.NET_PORT,
                primitive_id,
                {"otherProperty": {TAG_ID: spec.id, TAG_TYPE: "netPort"}},
            )
        self.mapping.net_ports[spec.id] = NetPortEntry(
            primitive_id=primitive_id,
            direction=spec.direction,
            net=spec.net,
        )
        self._record("net_ports", spec.id, primitive_id, action)

    async def upsert_text(self, spec: TextSpec) -> None:
        props = _compact(
            x=to_sch_units(spec.x, self.units),
            y=to_sch_units(spec.y, self.units),
            content=spec.content,
            rotation=spec.rotation,
            textColor=spec.text_color,
            fontName=spec.font_name,
            fontSize=spec.font_size,
            bold=spec.bold,
            italic=spec.italic,
            underLine=spec.under_line,
            alignMode=spec.align_mode,
        )
        primitive_id, action = await self._upsert(
            "texts",
            spec.id,
            kind=PrimitiveKind.TEXT,
            can_update=True,
            update_props=props,
            create_props=props,
            fault_code="CREATE_FAILED",
            fault_message=f"Failed to create text {spec.id}",
        )
        self.mapping.texts[spec.id] = SimpleEntry(primitive_id=primitive_id)
        self._record("texts", spec.id, primitive_id, action)

    async def _upsert_wire(
        self,
        collection: str,
        logical_id: str,
        line: Any,
        net: str | None,
        *,
        fault_code: str,
        fault_message: str,
    ) -> None:
        props = _compact(line=line, net=net)
        primitive_id, action = await self._upsert(
            collection,
            logical_id,
            kind=PrimitiveKind.WIRE,
            can_update=True,
            update_props=props,
            create_props=props,
            fault_code=fault_code,
            fault_message=fault_message,
        )
        self.mapping.entries(collection)[logical_id] = SimpleEntry(primitive_id=primitive_id)
        self._record(collection, logical_id, primitive_id, action)

    async def upsert_wire(self, spec: WireSpec) -> None:
        await self._upsert_wire(
            "wires",
            spec.id,
            map_line(spec.line, self.units),
            spec.net,
            fault_code="CREATE_FAILED",
            fault_message=f"Failed to create wire {spec.id}",
        )

    async def _component_pins(self, component_id: str) -> list[Any]:
        entry = self.mapping.components.get(component_id)
        if entry is None:
            raise RpcError("INVALID_IR", f"Unknown componentId: {component_id}")
        return await self.pins.get(entry.primitive_id, label=component_id)

    async def connection_line(self, spec: ConnectionSpec) -> list[float]:
        from_pins = await self._component_pins(spec.from_.component_id)
        to_pins = await self._component_pins(spec.to.component_id)
        start = select_pin(
            from_pins,
            pin_number=spec.from_.pin_number,
            pin_name=spec.from_.pin_name,
            label="from",
        )
        end = select_pin(
            to_pins,
            pin_number=spec.to.pin_number,
            pin_name=spec.to.pin_name,
            label="to",
        )
        x1, y1, x2, y2 = start.x, start.y, end.x, end.y
        if spec.style == "straight":
            return [x1, y1, x2, y2]
        mid_x = to_sch_units(spec.mid_x, self.units) if spec.mid_x is not None else (x1 + x2) / 2
        return [x1, y1, mid_x, y1, mid_x, y2, x2, y2]

    async def upsert_connection(self, spec: ConnectionSpec) -> None:
        line = await self.connection_line(spec)
        await self._upsert_wire(
            "connections",
            spec.id,
            line,
            spec.net,
            fault_code="WIRE_CREATE_FAILED",
            fault_message=f"Failed to create connection wire {spec.id}",
        )

    async def upsert_all(self) -> None:
        for component in self.ir.components:
            await self.upsert_component(component)
        for net_flag in self.ir.net_flags:
            await self.upsert_net_flag(net_flag)
        for net_port in self.ir.net_ports:
            await self.upsert_net_port(net_port)
        for text in self.ir.texts:
            await self.upsert_text(text)
        for wire in self.ir.wires:
            await self.upsert_wire(wire)
        for connection in self.ir.connections:
            await self.upsert_connection(connection)

    async def _post_step(self, name: str, action: Callable[[], Any]) -> dict[str, Any]:
        try:
            outcome = await action()
        except Exception as exc:  # noqa: BLE001
            _log_apply_event(
                logging.WARNING,
                "post_action_failed",
                document_uuid=self.document_uuid,
                action=name,
                error=str(exc),
            )
            payload: dict[str, Any] = {"ok": False, "error": error_payload(exc)}
        else:
            if isinstance(outcome, dict):
                payload = {"ok": True, **outcome}
            elif outcome is None:
                payload = {"ok": True}
            else:
                payload = {"ok": bool(outcome)}
        self.progress.bump()
        return payload

    async def run_post_actions(self) -> dict[str, Any]:
        post = self.ir.post
        results: dict[str, Any] = {}
        if post is None:
            return results
        tab_id = self.page.tab_id
        if post.zoom_to_all:
            results["zoomToAll"] = await self._post_step(
                "zoomToAll", lambda: self.host.zoom_to_all(tab_id)
            )
        if post.drc is not None:
            drc = post.drc
            results["drc"] = await self._post_step(
                "drc",
                lambda: self.host.run_drc(
                    self.document_uuid,
                    strict=bool(drc.strict),
                    user_interface=bool(drc.user_interface),
                ),
            )
        if post.save:
            results["save"] = await self._post_step(
                "save", lambda: self.host.save_document(self.document_uuid)
            )
        if post.capture_png is not None:
            capture = post.capture_png
            stamp = safe_file_name(datetime.now(timezone.utc).isoformat())
            file_name = safe_file_name(capture.file_name or f"jlceda_mcp_schematic_{stamp}.png")
            results["capturePng"] = await self._post_step(
                "capturePng",
                lambda: self.host.capture_png(
                    tab_id,
                    save_path=capture.save_path,
                    file_name=file_name,
                    force=bool(capture.force),
                ),
            )
        return results


def _count_steps(ir: SchematicIr) -> int:
    total = 0
    if ir.patch is not None and ir.patch.delete is not None:
        total += sum(len(ir.patch.delete.ids_for(collection)) for collection, _ in ENTITY_KINDS)
    total += sum(len(getattr(ir, collection)) for collection, _ in ENTITY_KINDS)
    if ir.post is not None:
        total += sum(
            1
            for requested in (
                ir.post.zoom_to_all,
                ir.post.drc is not None,
                ir.post.save,
                ir.post.capture_png is not None,
            )
            if requested
        )
    return total


async def _resolve_page(host: DocumentHost, ir: SchematicIr) -> DocumentInfo:
    page = ir.page
    if page is None or page.ensure is None or page.ensure:
        await host.ensure_schematic_page(
            board_name=page.board_name if page else None,
            schematic_name=page.schematic_name if page else None,
            page_name=page.page_name if page else None,
        )
    return await require_schematic_page(host)


async def apply_schematic_ir(
    host: DocumentHost,
    store: SchematicMapStore,
    params: Any,
    *,
    on_progress: ProgressCallback | None = None,
) -> dict[str, Any]:
    """Reconcile a schematic description into the focused schematic page.

    Validation and duplicate-id checks happen before any document call.
    Entities are upserted in a fixed kind order, the identity map is saved
    once after every mutation, and post actions report their own failures
    instead of aborting the run.
    """
    ir = parse_schematic_ir(params)
    ensure_unique_ir_ids(ir)

    progress = _Progress(_count_steps(ir), on_progress)
    progress.start()

    page = await _resolve_page(host, ir)
    mapping = store.load(page.uuid)
    _log_apply_event(
        logging.INFO,
        "apply_start",
        document_uuid=page.uuid,
        units=ir.units,
        steps=progress.total,
        mapped=mapping.counts(),
    )

    cleared: dict[str, int] | None = None
    if ir.page is not None and ir.page.clear:
        if (ir.page.clear_mode or "mcp") == "all":
            cleared = await _clear_page(host, page.uuid)
        else:
            cleared = await _clear_managed(host, page.uuid, mapping)
        mapping = create_empty_schematic_map()
        _log_apply_event(
            logging.INFO,
            "cleared",
            document_uuid=page.uuid,
            mode=ir.page.clear_mode or "mcp",
            counts=cleared,
        )

    run = _ApplyRun(host, ir, page, mapping, progress)
    deleted = await run.delete_requested()
    await run.upsert_all()

    try:
        store.save(page.uuid, mapping)
    except RpcError as exc:
        _log_apply_event(logging.ERROR, "map_save_failed", document_uuid=page.uuid, error=exc.message)
        raise RpcError(
            exc.code,
            exc.message,
            {
                "documentUuid": page.uuid,
                "applied": run.applied_payload(),
                "map": mapping.to_storage_dict(),
            },
        ) from exc

    post = await run.run_post_actions()
    progress.finish()

    result: dict[str, Any] = {
        "ok": True,
        "page": {"uuid": page.uuid, "tabId": page.tab_id},
        "units": ir.units,
        "applied": run.applied_payload(),
        "post": post,
    }
    if cleared is not None:
        result["cleared"] = cleared
    if deleted:
        result["deleted"] = deleted
    return result


def _tag(record: dict[str, Any], name: str) -> str:
    tags = record.get("otherProperty") or {}
    value = tags.get(name) if isinstance(tags, dict) else None
    return "" if value is None else str(value)


async def rebuild_schematic_map(
    host: DocumentHost,
    store: SchematicMapStore,
    document_uuid: str,
) -> dict[str, Any]:
    """Recover component, net flag and net port entries from primitive tags.

    Texts, wires and connections carry no tags; their existing entries are
    kept only while the primitive they point at still exists.
    """
    previous = store.load(document_uuid)
    rebuilt = create_empty_schematic_map()
    duplicates: list[str] = []
    skipped: list[str] = []

    for record in await host.list_tagged_primitives(document_uuid):
        primitive_id = str(record.get("primitiveId") or "")
        logical_id = _tag(record, TAG_ID)
        if not primitive_id or not logical_id:
            continue
        kind = record.get("kind")
        try:
            if kind == PrimitiveKind.COMPONENT.value:
                target: dict[str, Any] = rebuilt.components
                entry: Any = ComponentEntry(
                    primitive_id=primitive_id,
                    device_uuid=_tag(record, TAG_DEVICE_UUID),
                    library_uuid=_tag(record, TAG_LIBRARY_UUID),
                )
            elif kind == PrimitiveKind.NET_FLAG.value and _tag(record, TAG_TYPE) == "netFlag":
                target = rebuilt.net_flags
                entry = NetFlagEntry(
                    primitive_id=primitive_id,
                    identification=record.get("identification"),
                    net=record.get("net"),
                )
            elif kind == PrimitiveKind.NET_PORT.value and _tag(record, TAG_TYPE) == "netPort":
                target = rebuilt.net_ports
                entry = NetPortEntry(
                    primitive_id=primitive_id,
                    direction=record.get("direction"),
                    net=record.get("net"),
                )
            else:
                skipped.append(primitive_id)
                continue
        except ValidationError:
            skipped.append(primitive_id)
            continue
        if logical_id in target:
            duplicates.append(logical_id)
            continue
        target[logical_id] = entry

    for collection in ("texts", "wires", "connections"):
        live = set(await host.list_primitive_ids(document_uuid, MAPPING_KIND_PRIMITIVES[collection]))
        for logical_id, entry in previous.entries(collection).items():
            if entry.primitive_id in live:
                rebuilt.entries(collection)[logical_id] = entry

    store.save(document_uuid, rebuilt)
    _log_apply_event(
        logging.INFO,
        "map_rebuilt",
        document_uuid=document_uuid,
        counts=rebuilt.counts(),
        duplicates=duplicates,
        skipped=skipped,
    )
    return {
        "ok": True,
        "documentUuid": document_uuid,
        "counts": rebuilt.counts(),
        "duplicates": duplicates,
        "skipped": skipped,
    }
