"""
Collaborator interface the reconciliation and verification code runs against.

Everything that touches the live document goes through ``DocumentHost``.  The
document identity is passed explicitly into every primitive call instead of
being implied by whichever tab currently has focus.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from .errors import RpcError
from .models import DeviceRef, DocumentInfo, PinInfo


class PrimitiveKind(str, Enum):
    COMPONENT = "component"
    NET_FLAG = "netFlag"
    NET_PORT = "netPort"
    TEXT = "text"
    WIRE = "wire"


# mapping collection -> primitive kind that backs it
MAPPING_KIND_PRIMITIVES: dict[str, PrimitiveKind] = {
    "components": PrimitiveKind.COMPONENT,
    "net_flags": PrimitiveKind.NET_FLAG,
    "net_ports": PrimitiveKind.NET_PORT,
    "texts": PrimitiveKind.TEXT,
    "wires": PrimitiveKind.WIRE,
    "connections": PrimitiveKind.WIRE,
}


class DocumentHost(Protocol):
    async def get_current_document(self) -> DocumentInfo | None: ...

    async def ensure_schematic_page(
        self,
        *,
        board_name: str | None = None,
        schematic_name: str | None = None,
        page_name: str | None = None,
    ) -> DocumentInfo: ...

    async def resolve_device(self, device_uuid: str) -> DeviceRef | None: ...

    async def create_primitive(
        self, document_uuid: str, kind: PrimitiveKind, props: dict[str, Any]
    ) -> str | None: ...

    async def modify_primitive(
        self, document_uuid: str, kind: PrimitiveKind, primitive_id: str, props: dict[str, Any]
    ) -> bool: ...

    async def delete_primitives(
        self, document_uuid: str, kind: PrimitiveKind, primitive_ids: list[str]
    ) -> bool: ...

    async def list_primitive_ids(self, document_uuid: str, kind: PrimitiveKind) -> list[str]: ...

    async def list_tagged_primitives(self, document_uuid: str) -> list[dict[str, Any]]: ...

    async def get_component_pins(self, document_uuid: str, primitive_id: str) -> list[PinInfo] | None: ...

    async def get_document_source(self, document_uuid: str) -> str | None: ...

    async def get_netlist(self, document_uuid: str, netlist_type: str) -> str: ...

    async def export_netlist_file(self, document_uuid: str, netlist_type: str) -> bytes | str | None: ...

    async def zoom_to_all(self, tab_id: str) -> None: ...

    async def run_drc(self, document_uuid: str, *, strict: bool, user_interface: bool) -> bool: ...

    async def save_document(self, document_uuid: str) -> bool: ...

    async def capture_png(
        self,
        tab_id: str,
        *,
        save_path: str | None,
        file_name: str,
        force: bool,
    ) -> dict[str, Any]: ...


async def require_schematic_page(host: DocumentHost) -> DocumentInfo:
    info = await host.get_current_document()
    if info is None:
        raise RpcError("NO_ACTIVE_DOCUMENT", "No active document")
    if not info.is_schematic_page:
        raise RpcError("NOT_IN_SCHEMATIC_PAGE", "Current document is not a schematic page")
    return info


async def resolve_document(host: DocumentHost, document_uuid: str | None) -> str:
    if document_uuid:
        return document_uuid
    return (await require_schematic_page(host)).uuid


async def read_document_source(
    host: DocumentHost, document_uuid: str, *, max_chars: int
) -> dict[str, Any]:
    source = await host.get_document_source(document_uuid)
    if source is None:
        raise RpcError("DOCUMENT_SOURCE_UNAVAILABLE", "No document source returned")
    total = len(source)
    truncated = total > max_chars
    return {
        "source": source[:max_chars] if truncated else source,
        "truncated": truncated,
        "totalChars": total,
    }
