from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Annotated, Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import RpcError

_LOGGER = logging.getLogger(__name__)

STORAGE_PREFIX = "jlceda_mcp_schematic_map_v1:"

_Id = Annotated[str, Field(min_length=1)]


class _MapModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ComponentEntry(_MapModel):
    primitive_id: _Id
    device_uuid: _Id
    library_uuid: _Id


class NetFlagEntry(_MapModel):
    primitive_id: _Id
    identification: Literal["Power", "Ground", "AnalogGround", "ProtectGround"]
    net: _Id


class NetPortEntry(_MapModel):
    primitive_id: _Id
    direction: Literal["IN", "OUT", "BI"]
    net: _Id


class SimpleEntry(_MapModel):
    primitive_id: _Id


class SchematicMap(_MapModel):
    version: Literal[1] = 1
    components: dict[str, ComponentEntry] = Field(default_factory=dict)
    net_flags: dict[str, NetFlagEntry] = Field(default_factory=dict)
    net_ports: dict[str, NetPortEntry] = Field(default_factory=dict)
    texts: dict[str, SimpleEntry] = Field(default_factory=dict)
    wires: dict[str, SimpleEntry] = Field(default_factory=dict)
    connections: dict[str, SimpleEntry] = Field(default_factory=dict)

    def entries(self, kind: str) -> dict[str, Any]:
        return getattr(self, kind)

    def counts(self) -> dict[str, int]:
        return {
            "components": len(self.components),
            "netFlags": len(self.net_flags),
            "netPorts": len(self.net_ports),
            "texts": len(self.texts),
            "wires": len(self.wires),
            "connections": len(self.connections),
        }

    def to_storage_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def create_empty_schematic_map() -> SchematicMap:
    return SchematicMap()


def schematic_map_storage_key(document_uuid: str) -> str:
    return f"{STORAGE_PREFIX}{document_uuid}"


class KeyValueStorage(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> bool: ...

    def delete(self, key: str) -> None: ...


class MemoryStorage:
    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    def get(self, key: str) -> Any:
        return copy.deepcopy(self._values.get(key))

    def set(self, key: str, value: Any) -> bool:
        self._values[key] = copy.deepcopy(value)
        return True

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._values)


class JsonFileStorage:
    """All keys live in one JSON object file, rewritten atomically on every change."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Ignoring unreadable state file '%s': %s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            return {}
        return payload

    def _write_all(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self.path)

    def get(self, key: str) -> Any:
        return self._read_all().get(key)

    def set(self, key: str, value: Any) -> bool:
        payload = self._read_all()
        payload[key] = value
        self._write_all(payload)
        return True

    def delete(self, key: str) -> None:
        payload = self._read_all()
        if payload.pop(key, None) is not None:
            self._write_all(payload)

    def keys(self) -> list[str]:
        return sorted(self._read_all())


class SchematicMapStore:
    """Per-document logical-id to primitive-id map kept in a key/value storage."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self.storage = storage

    def create_empty(self) -> SchematicMap:
        return create_empty_schematic_map()

    def load(self, document_uuid: str) -> SchematicMap:
        key = schematic_map_storage_key(document_uuid)
        raw = self.storage.get(key)
        if not raw:
            return create_empty_schematic_map()
        if not isinstance(raw, dict):
            _LOGGER.warning("Discarding non-object schematic map for document %s", document_uuid)
            return create_empty_schematic_map()
        try:
            return SchematicMap.model_validate(raw)
        except ValidationError as exc:
            _LOGGER.warning(
                "Discarding invalid schematic map for document %s (%d errors)",
                document_uuid,
                exc.error_count(),
            )
            return create_empty_schematic_map()

    def save(self, document_uuid: str, mapping: SchematicMap) -> None:
        key = schematic_map_storage_key(document_uuid)
        try:
            ok = self.storage.set(key, mapping.to_storage_dict())
        except OSError as exc:
            raise RpcError("STORAGE_WRITE_FAILED", f"Failed to persist schematic map: {exc}") from exc
        if not ok:
            raise RpcError("STORAGE_WRITE_FAILED", "Failed to persist schematic map")

    def delete(self, document_uuid: str) -> None:
        self.storage.delete(schematic_map_storage_key(document_uuid))
