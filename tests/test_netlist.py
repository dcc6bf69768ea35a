from __future__ import annotations

import json
import unittest
from functools import partial
from typing import Any

import anyio

from jlceda_mcp.errors import RpcError
from jlceda_mcp.mapping import MemoryStorage, SchematicMapStore
from jlceda_mcp.netlist import (
    check_netlist,
    decode_netlist_bytes,
    fetch_netlist_text,
    parse_netlist,
    verify_netlist,
)
from jlceda_mcp.reconcile import apply_schematic_ir
from jlceda_mcp.sandbox import SandboxDocumentHost

PROTEL2 = "\n".join(
    [
        "[",
        "R1",
        "R0603",
        "Resistor",
        "]",
        "(",
        '"VCC"',
        "r1-2",
        "C1-1",
        ")",
        "(",
        "GND",
        "C1-2",
        ")",
    ]
)

PADS = "\n".join(
    [
        "*PADS-PCB*",
        "*PART*",
        "R1 R0603",
        "*NET*",
        "*SIGNAL* VCC",
        "R1.2 C1.1",
        "*SIGNAL* GND",
        "C1.2 bogus",
        "*END*",
    ]
)

CIRCUIT: dict[str, Any] = {
    "version": 1,
    "components": [
        {"id": "R1", "deviceUuid": "dev-resistor", "x": 100, "y": 100},
        {"id": "C1", "deviceUuid": "dev-capacitor", "x": 200, "y": 160},
    ],
    "netFlags": [{"id": "gnd", "identification": "Ground", "net": "GND", "x": 80, "y": 100}],
    "connections": [
        {
            "id": "n1",
            "from": {"componentId": "R1", "pinNumber": "2"},
            "to": {"componentId": "C1", "pinNumber": "1"},
            "net": "SIG",
        }
    ],
}

EXPECTED_NETS = [
    {"name": "SIG", "endpoints": [{"ref": "R1", "pin": "2"}, {"ref": "C1", "pin": "1"}]},
    {"name": "GND", "endpoints": [{"ref": "R1", "pin": "1"}]},
]


class TestParseNetlist(unittest.TestCase):
    def test_protel2_blocks_and_normalization(self) -> None:
        parsed = parse_netlist(PROTEL2)
        self.assertTrue(parsed.ok)
        self.assertEqual(parsed.format_guess, "protel2")
        self.assertEqual(set(parsed.nets), {"VCC", "GND"})
        self.assertEqual([(ep.ref, ep.pin) for ep in parsed.nets["VCC"]], [("r1", "2"), ("C1", "1")])

    def test_protel2_truncation_is_reported(self) -> None:
        parsed = parse_netlist("(\nVCC\nR1-1\n")
        self.assertTrue(parsed.ok)
        self.assertTrue(any("truncated" in warning for warning in parsed.warnings))

    def test_pads_signals(self) -> None:
        parsed = parse_netlist(PADS)
        self.assertEqual(parsed.format_guess, "pads")
        self.assertEqual(len(parsed.nets["VCC"]), 2)
        self.assertEqual([(ep.ref, ep.pin) for ep in parsed.nets["GND"]], [("C1", "2")])
        self.assertTrue(any("bogus" in warning for warning in parsed.warnings))

    def test_json_pin_info_map(self) -> None:
        payload = {
            "e1": {
                "props": {"Designator": "R1"},
                "pinInfoMap": {
                    "1": {"number": "1", "net": "GND"},
                    "2": {"number": "2", "net": ""},
                },
            },
            "e2": {"props": {}, "pinInfoMap": {"1": {"number": "1", "net": "GND"}}},
        }
        parsed = parse_netlist(json.dumps(payload))
        self.assertEqual(parsed.format_guess, "jlceda-json")
        self.assertEqual([(ep.ref, ep.pin) for ep in parsed.nets["GND"]], [("R1", "1")])
        self.assertIn("Component e2 has no designator", parsed.warnings)

    def test_unusable_inputs(self) -> None:
        self.assertEqual(parse_netlist("   ").format_guess, "empty")
        unknown = parse_netlist("just some words")
        self.assertFalse(unknown.ok)
        self.assertEqual(unknown.format_guess, "unknown")
        broken = parse_netlist("{not json")
        self.assertFalse(broken.ok)
        self.assertEqual(broken.format_guess, "jlceda-json")
        no_nets = parse_netlist("[\nR1\n]\n(\n)\n")
        self.assertFalse(no_nets.ok)

    def test_decode_respects_byte_order_marks(self) -> None:
        self.assertEqual(decode_netlist_bytes(b"\xef\xbb\xbfVCC"), "VCC")
        self.assertEqual(decode_netlist_bytes("GND".encode("utf-16")), "GND")
        self.assertEqual(decode_netlist_bytes(b"plain"), "plain")

    def test_decode_without_byte_order_mark_guesses_utf16_order(self) -> None:
        text = "(\nVCC\nR1-1\n)"
        self.assertEqual(decode_netlist_bytes(text.encode("utf-16le")), text)
        self.assertEqual(decode_netlist_bytes(text.encode("utf-16be")), text)

    def test_utf16_json_export_is_recognized(self) -> None:
        payload = json.dumps({"e1": {"props": {"Designator": "R1"}, "pinInfoMap": {"1": {"number": "1", "net": "GND"}}}})
        for encoding in ("utf-16", "utf-16-le", "utf-8-sig"):
            parsed = parse_netlist(decode_netlist_bytes(payload.encode(encoding)))
            self.assertEqual(parsed.format_guess, "jlceda-json", encoding)
            self.assertTrue(parsed.ok, encoding)

    def test_leading_byte_order_mark_in_text_is_ignored(self) -> None:
        self.assertEqual(parse_netlist("\ufeff" + PROTEL2).format_guess, "protel2")


class TestCheckNetlist(unittest.TestCase):
    def test_lookup_is_case_and_quote_insensitive(self) -> None:
        results = check_netlist(
            parse_netlist('(\n"VCC"\nr1-2\n)'),
            [{"name": "vcc", "endpoints": [{"ref": "R1", "pin": "2"}]}],
        )
        self.assertEqual(
            results["vcc"],
            {"ok": True, "netFound": True, "missingEndpoints": [], "wrongNet": []},
        )

    def test_wrong_net_and_missing_endpoints(self) -> None:
        results = check_netlist(
            parse_netlist(PROTEL2),
            [
                {"name": "VCC", "endpoints": [{"ref": "C1", "pin": "2"}, {"ref": "U9", "pin": "1"}]},
                {"name": "NOPE", "endpoints": [{"ref": "R1", "pin": "2"}]},
            ],
        )
        vcc = results["VCC"]
        self.assertFalse(vcc["ok"])
        self.assertEqual(vcc["wrongNet"], [{"ref": "C1", "pin": "2", "actual": ["GND"]}])
        self.assertEqual(vcc["missingEndpoints"], [{"ref": "U9", "pin": "1"}])
        self.assertFalse(results["NOPE"]["netFound"])
        self.assertEqual(results["NOPE"]["wrongNet"][0]["actual"], ["VCC"])


class _FailingNetlistHost(SandboxDocumentHost):
    async def get_netlist(self, document_uuid, netlist_type):  # type: ignore[override]
        raise RpcError("HOST_CRASHED", "netlist engine crashed")


class _NoExportHost(SandboxDocumentHost):
    async def export_netlist_file(self, document_uuid, netlist_type):  # type: ignore[override]
        return None


class _Utf16ExportHost(SandboxDocumentHost):
    async def export_netlist_file(self, document_uuid, netlist_type):  # type: ignore[override]
        return self._render_netlist(document_uuid, "JLCEDA").encode("utf-16")


class TestFetchAndVerify(unittest.TestCase):
    def build(self, host: SandboxDocumentHost) -> str:
        store = SchematicMapStore(MemoryStorage())
        result = anyio.run(apply_schematic_ir, host, store, CIRCUIT)
        return result["page"]["uuid"]

    def fetch(self, host: SandboxDocumentHost, document_uuid: str, **kwargs: Any) -> dict[str, Any]:
        return anyio.run(partial(fetch_netlist_text, host, document_uuid, **kwargs))

    def test_api_netlist_is_used_when_available(self) -> None:
        host = SandboxDocumentHost()
        doc = self.build(host)
        fetched = self.fetch(host, doc, netlist_type="Protel2")
        self.assertEqual(fetched["source"], "api")
        self.assertFalse(fetched["truncated"])
        self.assertIn("R1-2", fetched["netlist"])

    def test_unsupported_api_falls_back_to_export(self) -> None:
        host = SandboxDocumentHost(netlist_api_supported=False)
        doc = self.build(host)
        fetched = self.fetch(host, doc)
        self.assertEqual(fetched["source"], "export")
        self.assertEqual(fetched["netlistType"], "JLCEDA")

    def test_timeout_falls_back_to_export(self) -> None:
        host = SandboxDocumentHost(netlist_delay_s=5.0)
        doc = self.build(host)
        fetched = self.fetch(host, doc, timeout_s=0.05)
        self.assertEqual(fetched["source"], "export")

    def test_utf16_export_is_decoded_and_verified(self) -> None:
        host = _Utf16ExportHost(netlist_api_supported=False)
        doc = self.build(host)
        fetched = self.fetch(host, doc)
        self.assertEqual(fetched["source"], "export")
        self.assertTrue(fetched["netlist"].startswith("{"))

        result = anyio.run(verify_netlist, host, {"nets": EXPECTED_NETS})
        self.assertTrue(result["ok"], result["results"])
        self.assertEqual(result["netlist"]["source"], "export")
        self.assertEqual(result["parsed"]["formatGuess"], "jlceda-json")

    def test_other_host_errors_propagate(self) -> None:
        host = _FailingNetlistHost()
        doc = self.build(host)
        with self.assertRaises(RpcError) as ctx:
            self.fetch(host, doc)
        self.assertEqual(ctx.exception.code, "HOST_CRASHED")

    def test_failed_export_raises(self) -> None:
        host = _NoExportHost(netlist_api_supported=False)
        doc = self.build(host)
        with self.assertRaises(RpcError) as ctx:
            self.fetch(host, doc)
        self.assertEqual(ctx.exception.code, "EXPORT_FAILED")

    def test_truncation(self) -> None:
        host = SandboxDocumentHost()
        doc = self.build(host)
        fetched = self.fetch(host, doc, netlist_type="PADS", max_chars=10)
        self.assertTrue(fetched["truncated"])
        self.assertEqual(len(fetched["netlist"]), 10)
        self.assertGreater(fetched["totalChars"], 10)

    def test_verify_netlist_in_every_api_format(self) -> None:
        host = SandboxDocumentHost()
        self.build(host)
        for netlist_type in ("JLCEDA", "Protel2", "PADS"):
            result = anyio.run(verify_netlist, host, {"netlistType": netlist_type, "nets": EXPECTED_NETS})
            self.assertTrue(result["ok"], (netlist_type, result["results"]))
            self.assertEqual(result["netlist"]["source"], "api")
            self.assertNotIn("netlist", result["netlist"])
            self.assertEqual(result["parsed"]["nets"], 2)

    def test_verify_netlist_reports_membership_failures(self) -> None:
        host = SandboxDocumentHost()
        self.build(host)
        result = anyio.run(
            verify_netlist,
            host,
            {"nets": [{"name": "SIG", "endpoints": [{"ref": "R1", "pin": "1"}]}]},
        )
        self.assertFalse(result["ok"])
        self.assertEqual(result["results"]["SIG"]["wrongNet"], [{"ref": "R1", "pin": "1", "actual": ["GND"]}])

    def test_verify_netlist_validates_arguments(self) -> None:
        host = SandboxDocumentHost()
        self.build(host)
        for params in (
            {"nets": []},
            {"nets": [{"name": "SIG", "endpoints": []}]},
            {"netlistType": "Spice", "nets": EXPECTED_NETS},
            {"timeoutS": 0, "nets": EXPECTED_NETS},
        ):
            with self.assertRaises(RpcError, msg=str(params)) as ctx:
                anyio.run(verify_netlist, host, params)
            self.assertEqual(ctx.exception.code, "INVALID_PARAMS")


if __name__ == "__main__":
    unittest.main()
