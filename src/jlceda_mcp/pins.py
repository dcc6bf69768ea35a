from __future__ import annotations

from .errors import RpcError
from .host import DocumentHost
from .models import PinInfo


def _matches(pins: list[PinInfo], attr: str, wanted: str) -> list[PinInfo]:
    return [pin for pin in pins if str(getattr(pin, attr)) == wanted]


def select_pins(
    pins: list[PinInfo],
    *,
    pin_number: str | None = None,
    pin_name: str | None = None,
    allow_many: bool = False,
    label: str = "pin",
) -> list[PinInfo]:
    """Pick pins by exact number first, then by exact name.

    A single match wins.  Several matches are ambiguous, except that
    ``allow_many`` accepts every pin sharing the requested name.
    """
    if pin_number:
        matched = _matches(pins, "pin_number", str(pin_number))
        if len(matched) == 1:
            return matched
        if len(matched) > 1:
            raise RpcError("AMBIGUOUS_PIN", f"Multiple pins match {label}.pinNumber={pin_number}")

    if pin_name:
        matched = _matches(pins, "pin_name", str(pin_name))
        if len(matched) == 1:
            return matched
        if len(matched) > 1:
            if allow_many:
                return matched
            raise RpcError("AMBIGUOUS_PIN", f"Multiple pins match {label}.pinName={pin_name}")

    raise RpcError("PIN_NOT_FOUND", f"Pin not found for {label} (provide pinNumber or pinName)")


def select_pin(
    pins: list[PinInfo],
    *,
    pin_number: str | None = None,
    pin_name: str | None = None,
    label: str = "pin",
) -> PinInfo:
    return select_pins(pins, pin_number=pin_number, pin_name=pin_name, label=label)[0]


class PinCache:
    """One pin lookup per primitive for the lifetime of a single operation."""

    def __init__(self, host: DocumentHost, document_uuid: str, *, missing_code: str = "PIN_NOT_FOUND") -> None:
        self.host = host
        self.document_uuid = document_uuid
        self.missing_code = missing_code
        self._pins: dict[str, list[PinInfo]] = {}
        self.lookups = 0

    async def get(self, primitive_id: str, *, label: str | None = None) -> list[PinInfo]:
        cached = self._pins.get(primitive_id)
        if cached is not None:
            return cached
        self.lookups += 1
        pins = await self.host.get_component_pins(self.document_uuid, primitive_id)
        if pins is None:
            raise RpcError(self.missing_code, f"Pins not found for component {label or primitive_id}")
        self._pins[primitive_id] = pins
        return pins
