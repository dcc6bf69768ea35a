#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import anyio
from mcp.client.session import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client


def _extract_call_result(payload: Any) -> Any:
    structured = getattr(payload, "structuredContent", None)
    if structured is not None:
        if isinstance(structured, dict) and "result" in structured:
            return structured["result"]
        return structured

    content = getattr(payload, "content", None) or []
    if not content:
        return None

    text = getattr(content[0], "text", None)
    if text is not None:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return None


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


SMOKE_IR = {
    "version": 1,
    "page": {"pageName": "Smoke"},
    "components": [
        {"id": "R1", "deviceUuid": "dev-resistor", "x": 100, "y": 100},
        {"id": "D1", "deviceUuid": "dev-led", "x": 200, "y": 160},
    ],
    "netFlags": [{"id": "gnd", "identification": "Ground", "net": "GND", "x": 220, "y": 160}],
    "connections": [
        {
            "id": "led",
            "from": {"componentId": "R1", "pinNumber": "2"},
            "to": {"componentId": "D1", "pinName": "A"},
            "net": "LED_A",
        }
    ],
    "post": {"zoomToAll": True, "save": True},
}


async def _run_smoke_test(args: argparse.Namespace) -> None:
    server_args = ["--transport", "stdio"]
    if args.state_path:
        server_args += ["--state-path", str(Path(args.state_path).expanduser().resolve())]
    else:
        server_args.append("--memory-state")
    server_params = StdioServerParameters(
        command=args.server_command,
        args=server_args,
        cwd=str(Path(args.server_cwd).expanduser().resolve()),
    )

    async with stdio_client(server_params) as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream) as session:
            init = await session.initialize()
            print(f"Connected to {init.serverInfo.name} {init.serverInfo.version}")

            tools_result = await session.list_tools()
            tool_names = {tool.name for tool in tools_result.tools}
            required_tools = {
                "getServerStatus",
                "ensureSchematicPage",
                "applySchematicIr",
                "verifyNets",
                "verifyNetlist",
                "getSchematicMap",
                "rebuildSchematicMap",
            }
            missing_tools = required_tools - tool_names
            _require(not missing_tools, f"Missing required tools: {sorted(missing_tools)}")
            print(f"Tool check passed ({len(tool_names)} tools)")

            status = _extract_call_result(await session.call_tool("getServerStatus", {}))
            _require(isinstance(status, dict), "getServerStatus did not return an object")
            print(f"Host: {status.get('host')}")

            applied = _extract_call_result(await session.call_tool("applySchematicIr", {"ir": SMOKE_IR}))
            _require(isinstance(applied, dict), "applySchematicIr did not return an object")
            _require(applied.get("ok") is True, f"Apply failed: {applied}")
            components = applied["applied"]["components"]
            _require(set(components) == {"R1", "D1"}, f"Unexpected components: {components}")
            print(f"Apply passed (document={applied['page']['uuid']})")

            reapplied = _extract_call_result(await session.call_tool("applySchematicIr", {"ir": SMOKE_IR}))
            actions = {entry["action"] for entry in reapplied["applied"]["components"].values()}
            _require(actions == {"updated"}, f"Re-apply was not idempotent: {actions}")
            print("Idempotence check passed")

            nets = _extract_call_result(
                await session.call_tool(
                    "verifyNets",
                    {
                        "nets": [
                            {
                                "name": "LED_A",
                                "points": [
                                    {"primitiveId": components["R1"]["primitiveId"], "pinNumber": "2"},
                                    {"primitiveId": components["D1"]["primitiveId"], "pinName": "A"},
                                ],
                            }
                        ]
                    },
                )
            )
            _require(isinstance(nets, dict) and nets.get("ok") is True, f"verifyNets failed: {nets}")
            print("Wire connectivity check passed")

            netlist = _extract_call_result(
                await session.call_tool(
                    "verifyNetlist",
                    {
                        "nets": [
                            {"name": "LED_A", "endpoints": [{"ref": "R1", "pin": "2"}, {"ref": "D1", "pin": "1"}]},
                            {"name": "GND", "endpoints": [{"ref": "D1", "pin": "2"}]},
                        ],
                        "netlist_type": args.netlist_type,
                    },
                )
            )
            _require(isinstance(netlist, dict), "verifyNetlist did not return an object")
            _require(netlist.get("ok") is True, f"verifyNetlist failed: {netlist.get('results')}")
            print(f"Netlist check passed (source={netlist['netlist']['source']})")

            mapping = _extract_call_result(await session.call_tool("getSchematicMap", {}))
            _require(mapping["counts"]["components"] == 2, f"Unexpected map counts: {mapping['counts']}")
            print("Schematic map check passed")

    print("MCP smoke test passed")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="End-to-end smoke test for jlceda-mcp via MCP stdio transport"
    )
    parser.add_argument(
        "--server-command",
        default="jlceda-mcp",
        help="Command used to launch the MCP server",
    )
    parser.add_argument(
        "--server-cwd",
        default=str(Path(__file__).resolve().parent),
        help="Working directory for launching the server",
    )
    parser.add_argument(
        "--state-path",
        default=None,
        help="Persist schematic maps to this file instead of memory",
    )
    parser.add_argument(
        "--netlist-type",
        default="JLCEDA",
        choices=["JLCEDA", "EasyEDA", "Protel2", "PADS"],
        help="Netlist format to verify against",
    )
    args = parser.parse_args()

    try:
        anyio.run(_run_smoke_test, args)
        return 0
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
