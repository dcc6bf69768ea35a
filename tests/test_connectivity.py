from __future__ import annotations

import unittest
from dataclasses import replace
from functools import partial
from typing import Any

import anyio

from jlceda_mcp.connectivity import verify_nets
from jlceda_mcp.errors import RpcError
from jlceda_mcp.mapping import MemoryStorage, SchematicMapStore
from jlceda_mcp.reconcile import apply_schematic_ir
from jlceda_mcp.sandbox import SandboxDocumentHost

IR: dict[str, Any] = {
    "version": 1,
    "components": [
        {"id": "R1", "deviceUuid": "dev-resistor", "x": 100, "y": 100},
        {"id": "C1", "deviceUuid": "dev-capacitor", "x": 200, "y": 160},
    ],
    "wires": [{"id": "stub", "net": "SIG", "line": [300, 0, 340, 0]}],
    "connections": [
        {
            "id": "n1",
            "from": {"componentId": "R1", "pinNumber": "2"},
            "to": {"componentId": "C1", "pinNumber": "1"},
            "net": "SIG",
        }
    ],
}


class _CountingHost(SandboxDocumentHost):
    def __init__(self) -> None:
        super().__init__()
        self.pin_lookups = 0

    async def get_component_pins(self, document_uuid, primitive_id):  # type: ignore[override]
        self.pin_lookups += 1
        return await super().get_component_pins(document_uuid, primitive_id)


class _NanPinHost(SandboxDocumentHost):
    broken = False

    async def get_component_pins(self, document_uuid, primitive_id):  # type: ignore[override]
        pins = await super().get_component_pins(document_uuid, primitive_id)
        if pins is None or not self.broken:
            return pins
        return [replace(pin, x=float("nan"), y=float("nan")) for pin in pins]


class TestVerifyNets(unittest.TestCase):
    def setUp(self) -> None:
        self.host = _CountingHost()
        store = SchematicMapStore(MemoryStorage())
        self.applied = anyio.run(apply_schematic_ir, self.host, store, IR)["applied"]
        self.host.pin_lookups = 0
        self.r1 = self.applied["components"]["R1"]["primitiveId"]
        self.c1 = self.applied["components"]["C1"]["primitiveId"]
        self.n1 = self.applied["connections"]["n1"]["primitiveId"]

    def verify(self, nets: list[dict[str, Any]], **kwargs: Any) -> dict[str, Any]:
        return anyio.run(partial(verify_nets, self.host, {"nets": nets, **kwargs}))

    def test_connected_pins_pass(self) -> None:
        result = self.verify(
            [
                {
                    "name": "SIG",
                    "wirePrimitiveIds": [self.n1],
                    "points": [
                        {"primitiveId": self.r1, "pinNumber": "2"},
                        {"primitiveId": self.c1, "pinNumber": "1"},
                        {"x": 150, "y": 100},
                    ],
                }
            ]
        )
        self.assertTrue(result["ok"], result)
        sig = result["results"]["SIG"]
        self.assertEqual(sig["wires"], 1)
        self.assertEqual(sig["segments"], 3)
        self.assertEqual(sig["missingPoints"], [])
        self.assertFalse(result["doc"]["truncated"])

    def test_net_name_filter_finds_separate_islands(self) -> None:
        result = self.verify(
            [
                {
                    "name": "SIG",
                    "points": [
                        {"primitiveId": self.r1, "pinNumber": "2", "ref": "R1.2"},
                        {"x": 300, "y": 0},
                    ],
                }
            ]
        )
        sig = result["results"]["SIG"]
        self.assertFalse(result["ok"])
        self.assertEqual(sig["wires"], 2)
        self.assertEqual(sig["missingPoints"], [])
        self.assertEqual(sig["disconnected"], ["(300,0)@300,0"])

    def test_wire_id_and_name_nets_in_one_request(self) -> None:
        result = self.verify(
            [
                {"name": "LINK", "wirePrimitiveIds": [self.n1], "points": []},
                {"name": "SIG", "points": [{"x": 300, "y": 0}, {"x": 340, "y": 0}]},
            ]
        )
        link = result["results"]["LINK"]
        self.assertEqual(link["wires"], 1)
        self.assertEqual(link["netMismatch"], [{"wireId": self.n1, "expected": "LINK", "actual": "SIG"}])
        sig = result["results"]["SIG"]
        self.assertTrue(sig["ok"], sig)
        self.assertEqual(sig["wires"], 2)
        self.assertEqual(sig["missingPoints"], [])

    def test_non_finite_pin_position_is_reported_missing(self) -> None:
        host = _NanPinHost()
        store = SchematicMapStore(MemoryStorage())
        applied = anyio.run(apply_schematic_ir, host, store, IR)["applied"]
        r1 = applied["components"]["R1"]["primitiveId"]
        host.broken = True
        point = {"primitiveId": r1, "pinNumber": "2", "ref": "R1.2"}
        result = anyio.run(verify_nets, host, {"nets": [{"name": "SIG", "points": [point]}]})
        self.assertFalse(result["ok"])
        self.assertEqual(result["results"]["SIG"]["missingPoints"], ["R1.2@NaN,NaN"])

    def test_connectivity_check_can_be_disabled(self) -> None:
        result = self.verify(
            [{"name": "SIG", "points": [{"primitiveId": self.r1, "pinNumber": "2"}, {"x": 300, "y": 0}]}],
            requireConnected=False,
        )
        self.assertTrue(result["ok"])

    def test_missing_points_use_document_frame_keys(self) -> None:
        result = self.verify([{"name": "SIG", "points": [{"x": 999, "y": 999}]}])
        self.assertEqual(result["results"]["SIG"]["missingPoints"], ["(999,999)@999,-999"])
        self.assertEqual(result["results"]["SIG"]["disconnected"], [])

    def test_unconnected_pin_is_missing(self) -> None:
        result = self.verify([{"name": "SIG", "points": [{"primitiveId": self.r1, "pinNumber": "1"}]}])
        self.assertEqual(result["results"]["SIG"]["missingPoints"], [f"{self.r1}.1@80,-100"])

    def test_wire_ids_report_missing_and_mismatched_nets(self) -> None:
        result = self.verify([{"name": "VCC", "wirePrimitiveIds": [self.n1, "missing"], "points": []}])
        vcc = result["results"]["VCC"]
        self.assertEqual(vcc["wires"], 2)
        self.assertEqual(vcc["missingWireIds"], ["missing"])
        self.assertEqual(vcc["netMismatch"], [{"wireId": self.n1, "expected": "VCC", "actual": "SIG"}])
        self.assertFalse(vcc["ok"])

    def test_pins_are_fetched_once_per_primitive(self) -> None:
        self.verify(
            [
                {"name": "SIG", "points": [{"primitiveId": self.r1, "pinNumber": "2"}]},
                {"name": "OTHER", "points": [{"primitiveId": self.r1, "pinNumber": "1"}]},
            ]
        )
        self.assertEqual(self.host.pin_lookups, 1)

    def test_bad_selectors_and_arguments(self) -> None:
        with self.assertRaises(RpcError) as ctx:
            self.verify([{"name": "SIG", "points": [{"primitiveId": "nope", "pinNumber": "1"}]}])
        self.assertEqual(ctx.exception.code, "NOT_FOUND")

        with self.assertRaises(RpcError) as ctx:
            self.verify([{"name": "SIG", "points": [{"primitiveId": self.r1, "pinNumber": "9"}]}])
        self.assertEqual(ctx.exception.code, "PIN_NOT_FOUND")

        with self.assertRaises(RpcError) as ctx:
            self.verify([{"name": "SIG", "points": [{"ref": "floating"}]}])
        self.assertEqual(ctx.exception.code, "INVALID_PARAMS")

    def test_allow_many_expands_shared_pin_names(self) -> None:
        store = SchematicMapStore(MemoryStorage())
        applied = anyio.run(
            apply_schematic_ir,
            self.host,
            store,
            {"version": 1, "components": [{"id": "U1", "deviceUuid": "dev-ldo", "x": 0, "y": 0}]},
        )["applied"]
        u1 = applied["components"]["U1"]["primitiveId"]
        with self.assertRaises(RpcError) as ctx:
            self.verify([{"name": "GND", "points": [{"primitiveId": u1, "pinName": "GND"}]}])
        self.assertEqual(ctx.exception.code, "AMBIGUOUS_PIN")

        result = self.verify([{"name": "GND", "points": [{"primitiveId": u1, "pinName": "GND", "allowMany": True}]}])
        self.assertEqual(
            result["results"]["GND"]["missingPoints"],
            [f"{u1}.GND@0,-30", f"{u1}.GND@10,-30"],
        )

    def test_truncated_source_is_reported(self) -> None:
        result = self.verify([{"name": "SIG", "points": []}], maxChars=40)
        self.assertTrue(result["doc"]["truncated"])
        self.assertGreater(result["doc"]["totalChars"], 40)


if __name__ == "__main__":
    unittest.main()
