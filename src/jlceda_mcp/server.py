from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Any, Literal

from mcp.server.fastmcp import FastMCP

from .connectivity import DEFAULT_SOURCE_MAX_CHARS, verify_nets
from .host import DocumentHost, read_document_source, require_schematic_page, resolve_document
from .mapping import JsonFileStorage, KeyValueStorage, MemoryStorage, SchematicMapStore
from .netlist import DEFAULT_NETLIST_MAX_CHARS, DEFAULT_NETLIST_TYPE, verify_netlist
from .reconcile import PROGRESS_TITLE, apply_schematic_ir, rebuild_schematic_map
from .sandbox import SandboxDocumentHost

_LOGGER = logging.getLogger(__name__)

mcp = FastMCP("jlceda-mcp")


def _read_env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _read_env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        _LOGGER.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


_DEFAULT_STATE_PATH = os.getenv("JLCEDA_MCP_STATE_PATH")
_DEFAULT_MEMORY_STATE = _read_env_bool("JLCEDA_MCP_MEMORY_STATE", default=False)
_DEFAULT_NETLIST_TIMEOUT = _read_env_float("JLCEDA_MCP_NETLIST_TIMEOUT", 30.0)

_host: DocumentHost = SandboxDocumentHost()
_storage: KeyValueStorage = MemoryStorage()
_map_store = SchematicMapStore(_storage)
_state_path: Path | None = None
_netlist_timeout: float = _DEFAULT_NETLIST_TIMEOUT


def _default_state_path() -> Path:
    if _DEFAULT_STATE_PATH:
        return Path(_DEFAULT_STATE_PATH).expanduser().resolve()
    return (Path(os.getcwd()) / ".jlceda_mcp_state.json").resolve()


def _configure(
    *,
    host: DocumentHost | None = None,
    state_path: Path | None = None,
    memory_state: bool | None = None,
    netlist_timeout: float | None = None,
) -> None:
    global _host, _storage, _map_store, _state_path, _netlist_timeout
    _host = host if host is not None else SandboxDocumentHost()
    use_memory = _DEFAULT_MEMORY_STATE if memory_state is None else bool(memory_state)
    if use_memory:
        _state_path = None
        _storage = MemoryStorage()
    else:
        _state_path = state_path or _default_state_path()
        _storage = JsonFileStorage(_state_path)
    _map_store = SchematicMapStore(_storage)
    _netlist_timeout = _DEFAULT_NETLIST_TIMEOUT if netlist_timeout is None else float(netlist_timeout)


def _log_progress(percent: int, title: str) -> None:
    _LOGGER.debug("%s: %d%%", title, percent)


def _drop_none(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@mcp.tool()
async def getServerStatus() -> dict[str, Any]:
    """Backend, state storage and current document of this server."""
    current = await _host.get_current_document()
    return {
        "host": type(_host).__name__,
        "state_path": str(_state_path) if _state_path else None,
        "memory_state": _state_path is None,
        "netlist_timeout_s": _netlist_timeout,
        "current_document": current.as_dict() if current else None,
        "progress_title": PROGRESS_TITLE,
    }


@mcp.tool()
async def getCurrentDocument() -> dict[str, Any]:
    """Focused document, or null when nothing is open."""
    current = await _host.get_current_document()
    return {"document": current.as_dict() if current else None}


@mcp.tool()
async def ensureSchematicPage(
    board_name: str | None = None,
    schematic_name: str | None = None,
    page_name: str | None = None,
) -> dict[str, Any]:
    """Focus a schematic page, reusing the current one when it already is one."""
    await _host.ensure_schematic_page(
        board_name=board_name,
        schematic_name=schematic_name,
        page_name=page_name,
    )
    page = await require_schematic_page(_host)
    return {"page": page.as_dict()}


@mcp.tool()
async def getDocumentSource(
    max_chars: int = DEFAULT_SOURCE_MAX_CHARS,
    document_uuid: str | None = None,
) -> dict[str, Any]:
    """Raw document-source records of a schematic page (truncated to max_chars)."""
    target = await resolve_document(_host, document_uuid)
    return {"documentUuid": target, **await read_document_source(_host, target, max_chars=max_chars)}


@mcp.tool()
async def getComponentPins(primitive_id: str, document_uuid: str | None = None) -> dict[str, Any]:
    """Pin numbers, names and absolute coordinates of a placed component."""
    target = await resolve_document(_host, document_uuid)
    pins = await _host.get_component_pins(target, primitive_id)
    return {
        "primitiveId": primitive_id,
        "found": pins is not None,
        "pins": [pin.as_dict() for pin in pins or []],
    }


@mcp.tool()
async def applySchematicIr(ir: dict[str, Any]) -> dict[str, Any]:
    """
    Reconcile a declarative schematic description (SchematicIR v1) into the
    focused schematic page.

    Re-applying the same description updates primitives in place; entities
    whose device, flag identification or port direction changed are replaced.
    The logical-id to primitive-id map is persisted per page.
    """
    return await apply_schematic_ir(_host, _map_store, ir, on_progress=_log_progress)


@mcp.tool()
async def verifyNets(
    nets: list[dict[str, Any]],
    require_connected: bool = True,
    max_chars: int = DEFAULT_SOURCE_MAX_CHARS,
    document_uuid: str | None = None,
) -> dict[str, Any]:
    """
    Check expected nets against wire geometry read from the document source.

    Each net: {name, wirePrimitiveIds?, points: [{x, y} | {primitiveId,
    pinNumber|pinName, allowMany?}, ref?]}.
    """
    return await verify_nets(
        _host,
        _drop_none(
            {
                "nets": nets,
                "requireConnected": require_connected,
                "maxChars": max_chars,
                "documentUuid": document_uuid,
            }
        ),
    )


@mcp.tool()
async def verifyNetlist(
    nets: list[dict[str, Any]],
    netlist_type: Literal["JLCEDA", "EasyEDA", "Protel2", "PADS", "Allegro", "DISA"] = DEFAULT_NETLIST_TYPE,
    timeout_s: float | None = None,
    max_chars: int = DEFAULT_NETLIST_MAX_CHARS,
    document_uuid: str | None = None,
) -> dict[str, Any]:
    """
    Check expected net membership ({name, endpoints: [{ref, pin}]}) against
    the exported netlist, falling back to a file export when the netlist API
    times out or is unsupported.
    """
    return await verify_netlist(
        _host,
        _drop_none(
            {
                "nets": nets,
                "netlistType": netlist_type,
                "timeoutS": timeout_s if timeout_s is not None else _netlist_timeout,
                "maxChars": max_chars,
                "documentUuid": document_uuid,
            }
        ),
    )


@mcp.tool()
async def getSchematicMap(document_uuid: str | None = None) -> dict[str, Any]:
    """Persisted logical-id to primitive-id map of a schematic page."""
    target = await resolve_document(_host, document_uuid)
    mapping = _map_store.load(target)
    return {"documentUuid": target, "counts": mapping.counts(), "map": mapping.to_storage_dict()}


@mcp.tool()
async def deleteSchematicMap(document_uuid: str | None = None) -> dict[str, Any]:
    """Forget the persisted map of a schematic page; primitives are left alone."""
    target = await resolve_document(_host, document_uuid)
    _map_store.delete(target)
    _LOGGER.info("Deleted schematic map for document %s", target)
    return {"ok": True, "documentUuid": target}


@mcp.tool()
async def rebuildSchematicMap(document_uuid: str | None = None) -> dict[str, Any]:
    """Recover the persisted map from identity tags stored on placed primitives."""
    target = await resolve_document(_host, document_uuid)
    return await rebuild_schematic_map(_host, _map_store, target)


@mcp.tool()
def listSandboxDevices() -> dict[str, Any]:
    """Device catalog of the in-process sandbox host (empty for other hosts)."""
    if not isinstance(_host, SandboxDocumentHost):
        return {"devices": []}
    return {"devices": [device.as_dict() for device in _host.devices.values()]}


def main() -> None:
    parser = argparse.ArgumentParser(description="MCP server for declarative JLCEDA schematic sync")
    parser.add_argument(
        "--state-path",
        default=_DEFAULT_STATE_PATH,
        help="JSON file holding the per-page schematic maps",
    )
    parser.add_argument(
        "--memory-state",
        dest="memory_state",
        action="store_true",
        help="Keep schematic maps in memory only",
    )
    parser.set_defaults(memory_state=None)
    parser.add_argument(
        "--netlist-timeout",
        type=float,
        default=_DEFAULT_NETLIST_TIMEOUT,
        help="Default netlist API timeout in seconds before falling back to file export",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("JLCEDA_MCP_LOG_LEVEL", "WARNING"),
        help="Python logging level",
    )
    parser.add_argument(
        "--transport",
        default="stdio",
        choices=["stdio", "sse", "streamable-http"],
        help="MCP transport",
    )
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper())
    _configure(
        state_path=Path(args.state_path).expanduser().resolve() if args.state_path else None,
        memory_state=args.memory_state,
        netlist_timeout=args.netlist_timeout,
    )
    mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
