from __future__ import annotations

import json
import tempfile
import unittest
from functools import partial
from pathlib import Path

import anyio

from jlceda_mcp import server
from jlceda_mcp.errors import RpcError
from jlceda_mcp.mapping import STORAGE_PREFIX
from jlceda_mcp.sandbox import SandboxDocumentHost

IR = {
    "version": 1,
    "components": [
        {"id": "R1", "deviceUuid": "dev-resistor", "x": 100, "y": 100},
        {"id": "C1", "deviceUuid": "dev-capacitor", "x": 200, "y": 160},
    ],
    "connections": [
        {
            "id": "n1",
            "from": {"componentId": "R1", "pinNumber": "2"},
            "to": {"componentId": "C1", "pinNumber": "1"},
            "net": "SIG",
        }
    ],
}


class TestServerStatePersistence(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp(prefix="jlceda_state_test_"))
        self.state_path = self.temp_dir / "state.json"
        self.host = SandboxDocumentHost()
        server._configure(host=self.host, state_path=self.state_path, memory_state=False)

    def tearDown(self) -> None:
        server._configure(memory_state=True)

    def test_map_persisted_and_reloaded(self) -> None:
        result = anyio.run(server.applySchematicIr, IR)
        document_uuid = result["page"]["uuid"]
        self.assertTrue(self.state_path.exists())
        payload = json.loads(self.state_path.read_text(encoding="utf-8"))
        self.assertEqual(list(payload), [f"{STORAGE_PREFIX}{document_uuid}"])

        server._configure(host=self.host, state_path=self.state_path, memory_state=False)
        stored = anyio.run(server.getSchematicMap)
        self.assertEqual(stored["documentUuid"], document_uuid)
        self.assertEqual(stored["counts"]["components"], 2)
        self.assertEqual(stored["counts"]["connections"], 1)

        again = anyio.run(server.applySchematicIr, IR)
        self.assertEqual(again["applied"]["components"]["R1"]["action"], "updated")

    def test_delete_then_rebuild_from_tags(self) -> None:
        anyio.run(server.applySchematicIr, IR)
        deleted = anyio.run(server.deleteSchematicMap)
        self.assertTrue(deleted["ok"])
        self.assertEqual(anyio.run(server.getSchematicMap)["counts"]["components"], 0)

        rebuilt = anyio.run(server.rebuildSchematicMap)
        self.assertTrue(rebuilt["ok"])
        self.assertEqual(rebuilt["counts"]["components"], 2)
        self.assertEqual(anyio.run(server.getSchematicMap)["counts"]["components"], 2)

    def test_memory_state_writes_nothing(self) -> None:
        server._configure(host=self.host, memory_state=True)
        anyio.run(server.applySchematicIr, IR)
        self.assertFalse(self.state_path.exists())
        status = anyio.run(server.getServerStatus)
        self.assertTrue(status["memory_state"])
        self.assertIsNone(status["state_path"])
        self.assertEqual(status["host"], "SandboxDocumentHost")

    def test_status_reports_state_path_and_timeout(self) -> None:
        server._configure(host=self.host, state_path=self.state_path, memory_state=False, netlist_timeout=7.5)
        status = anyio.run(server.getServerStatus)
        self.assertEqual(status["state_path"], str(self.state_path))
        self.assertEqual(status["netlist_timeout_s"], 7.5)
        self.assertIsNone(status["current_document"])


class TestServerDocumentTools(unittest.TestCase):
    def setUp(self) -> None:
        self.host = SandboxDocumentHost()
        server._configure(host=self.host, memory_state=True)

    def tearDown(self) -> None:
        server._configure(memory_state=True)

    def test_document_discovery(self) -> None:
        self.assertEqual(anyio.run(server.getCurrentDocument), {"document": None})
        ensured = anyio.run(partial(server.ensureSchematicPage, page_name="Power"))
        self.assertEqual(ensured["page"]["documentType"], 1)
        current = anyio.run(server.getCurrentDocument)
        self.assertEqual(current["document"]["uuid"], ensured["page"]["uuid"])

    def test_tools_require_a_schematic_page(self) -> None:
        self.host.focus_non_schematic()
        with self.assertRaises(RpcError) as ctx:
            anyio.run(server.getSchematicMap)
        self.assertEqual(ctx.exception.code, "NOT_IN_SCHEMATIC_PAGE")

    def test_pins_and_source(self) -> None:
        result = anyio.run(server.applySchematicIr, IR)
        r1 = result["applied"]["components"]["R1"]["primitiveId"]
        pins = anyio.run(server.getComponentPins, r1)
        self.assertTrue(pins["found"])
        self.assertEqual([(pin["x"], pin["y"]) for pin in pins["pins"]], [(80.0, 100.0), (120.0, 100.0)])
        self.assertFalse(anyio.run(server.getComponentPins, "missing")["found"])

        source = anyio.run(partial(server.getDocumentSource, max_chars=50))
        self.assertTrue(source["truncated"])
        self.assertEqual(len(source["source"]), 50)

    def test_verification_tools(self) -> None:
        result = anyio.run(server.applySchematicIr, IR)
        r1 = result["applied"]["components"]["R1"]["primitiveId"]
        c1 = result["applied"]["components"]["C1"]["primitiveId"]
        nets = anyio.run(
            server.verifyNets,
            [
                {
                    "name": "SIG",
                    "points": [
                        {"primitiveId": r1, "pinNumber": "2"},
                        {"primitiveId": c1, "pinNumber": "1"},
                    ],
                }
            ],
        )
        self.assertTrue(nets["ok"], nets)

        netlist = anyio.run(
            partial(
                server.verifyNetlist,
                [{"name": "SIG", "endpoints": [{"ref": "R1", "pin": "2"}, {"ref": "C1", "pin": "1"}]}],
                netlist_type="PADS",
            )
        )
        self.assertTrue(netlist["ok"], netlist["results"])
        self.assertEqual(netlist["netlist"]["netlistType"], "PADS")

    def test_sandbox_catalog(self) -> None:
        devices = server.listSandboxDevices()["devices"]
        self.assertEqual({device["uuid"] for device in devices}, set(self.host.devices))


if __name__ == "__main__":
    unittest.main()
