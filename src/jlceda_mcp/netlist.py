"""
Exported-netlist parsing and membership verification.

Three textual shapes are understood:

* ``jlceda-json`` - a JSON object of components, each with ``props.Designator``
  and a ``pinInfoMap`` whose entries carry the pin ``number`` and ``net``.
* ``protel2`` - ``[ ... ]`` component blocks followed by ``( NET  REF-PIN ... )``
  net blocks, one token per line.
* ``pads`` - a ``*NET*`` section of ``*SIGNAL* NAME`` headers followed by
  ``REF.PIN`` tokens.

Net names are stored normalized (trimmed, one layer of double quotes removed,
upper-cased), so lookups must normalize the same way.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

import anyio
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import RpcError
from .host import DocumentHost, resolve_document
from .ir import validation_error_data

_LOGGER = logging.getLogger(__name__)

NetlistType = Literal["JLCEDA", "EasyEDA", "Protel2", "PADS", "Allegro", "DISA"]

DEFAULT_NETLIST_TYPE = "JLCEDA"
DEFAULT_NETLIST_TIMEOUT = 30.0
DEFAULT_NETLIST_MAX_CHARS = 1_000_000
EXCERPT_CHARS = 20_000
FALLBACK_CODES = frozenset({"TIMEOUT", "NOT_SUPPORTED"})

_QUOTED_RE = re.compile(r'^"(.*)"$', re.DOTALL)
_SIGNAL_RE = re.compile(r"^\*SIGNAL\*\s+(\S+)", re.IGNORECASE)


def normalize_net(name: str) -> str:
    return _QUOTED_RE.sub(r"\1", str(name).strip()).upper()


def normalize_ref(ref: str) -> str:
    return str(ref).strip().upper()


def normalize_pin(pin: str) -> str:
    return str(pin).strip().upper()


def endpoint_key(ref: str, pin: str) -> str:
    return f"{normalize_ref(ref)}.{normalize_pin(pin)}"


@dataclass(slots=True)
class NetEndpoint:
    ref: str
    pin: str

    def as_dict(self) -> dict[str, Any]:
        return {"ref": self.ref, "pin": self.pin}


@dataclass(slots=True)
class ParsedNetlist:
    ok: bool
    format_guess: str
    warnings: list[str] = field(default_factory=list)
    nets: dict[str, list[NetEndpoint]] = field(default_factory=dict)

    def add(self, net: str, ref: str, pin: str) -> None:
        key = normalize_net(net)
        if not key:
            return
        endpoints = self.nets.setdefault(key, [])
        candidate = NetEndpoint(ref=ref.strip(), pin=pin.strip())
        if candidate not in endpoints:
            endpoints.append(candidate)

    def summary(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "formatGuess": self.format_guess,
            "warnings": list(self.warnings),
            "nets": len(self.nets),
        }


def _parse_json_netlist(payload: Any, parsed: ParsedNetlist) -> None:
    components = payload.get("components") if isinstance(payload.get("components"), dict) else payload
    for component_id, component in components.items():
        if not isinstance(component, dict):
            continue
        props = component.get("props") or {}
        ref = str(props.get("Designator") or props.get("designator") or "").strip()
        pin_map = component.get("pinInfoMap") or {}
        if not ref or not isinstance(pin_map, dict):
            if pin_map:
                parsed.warnings.append(f"Component {component_id} has no designator")
            continue
        for pin_key, pin_info in pin_map.items():
            if not isinstance(pin_info, dict):
                continue
            net = str(pin_info.get("net") or "").strip()
            if not net:
                continue
            pin = str(pin_info.get("number") or pin_key)
            parsed.add(net, ref, pin)


def _parse_protel2(lines: list[str], parsed: ParsedNetlist) -> None:
    net_name: str | None = None
    in_net = False
    in_component = False
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        if line == "[":
            in_component = True
            continue
        if line == "]":
            in_component = False
            continue
        if in_component:
            continue
        if line == "(":
            in_net = True
            net_name = None
            continue
        if line == ")":
            if in_net and net_name is None:
                parsed.warnings.append("Empty net block")
            in_net = False
            continue
        if not in_net:
            continue
        if net_name is None:
            net_name = line
            continue
        ref, sep, pin = line.rpartition("-")
        if not sep or not ref or not pin:
            parsed.warnings.append(f"Unrecognized endpoint '{line}' in net {net_name}")
            continue
        parsed.add(net_name, ref, pin)
    if in_net:
        parsed.warnings.append("Netlist ended inside a net block (truncated?)")


def _parse_pads(lines: list[str], parsed: ParsedNetlist) -> None:
    net_name: str | None = None
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        signal = _SIGNAL_RE.match(line)
        if signal:
            net_name = signal.group(1)
            parsed.nets.setdefault(normalize_net(net_name), [])
            continue
        if line.startswith("*"):
            net_name = None
            continue
        if net_name is None:
            continue
        for token in line.split():
            ref, sep, pin = token.rpartition(".")
            if not sep or not ref or not pin:
                parsed.warnings.append(f"Unrecognized endpoint '{token}' in net {net_name}")
                continue
            parsed.add(net_name, ref, pin)


def parse_netlist(text: str) -> ParsedNetlist:
    """Best-effort parse of an exported netlist into net -> endpoints."""
    stripped = (text or "").lstrip("\ufeff").strip()
    if not stripped:
        return ParsedNetlist(ok=False, format_guess="empty", warnings=["Netlist text is empty"])

    if stripped.startswith("{"):
        parsed = ParsedNetlist(ok=True, format_guess="jlceda-json")
        try:
            payload = json.loads(stripped)
        except ValueError as exc:
            parsed.ok = False
            parsed.warnings.append(f"JSON netlist could not be decoded: {exc}")
            return parsed
        if not isinstance(payload, dict):
            parsed.ok = False
            parsed.warnings.append("JSON netlist is not an object")
            return parsed
        _parse_json_netlist(payload, parsed)
    else:
        lines = stripped.splitlines()
        if any(_SIGNAL_RE.match(line.strip()) for line in lines):
            parsed = ParsedNetlist(ok=True, format_guess="pads")
            _parse_pads(lines, parsed)
        elif any(line.strip() == "(" for line in lines):
            parsed = ParsedNetlist(ok=True, format_guess="protel2")
            _parse_protel2(lines, parsed)
        else:
            return ParsedNetlist(
                ok=False,
                format_guess="unknown",
                warnings=["Unrecognized netlist format"],
            )

    if not parsed.nets:
        parsed.ok = False
        parsed.warnings.append("No nets found in netlist")
    return parsed


def check_netlist(parsed: ParsedNetlist, nets: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Compare expected net membership against a parsed netlist.

    ``nets`` items are ``{"name": str, "endpoints": [{"ref": str, "pin": str}]}``.
    Results are keyed by the net name as requested.
    """
    endpoint_nets: dict[str, list[str]] = {}
    for net_name, endpoints in parsed.nets.items():
        for endpoint in endpoints:
            endpoint_nets.setdefault(endpoint_key(endpoint.ref, endpoint.pin), []).append(net_name)

    results: dict[str, dict[str, Any]] = {}
    for net in nets:
        key = normalize_net(net["name"])
        net_found = key in parsed.nets
        members = {endpoint_key(ep.ref, ep.pin) for ep in parsed.nets.get(key, [])}
        missing: list[dict[str, str]] = []
        wrong_net: list[dict[str, Any]] = []
        for endpoint in net["endpoints"]:
            wanted = endpoint_key(endpoint["ref"], endpoint["pin"])
            if net_found and wanted in members:
                continue
            actual = endpoint_nets.get(wanted, [])
            if actual:
                wrong_net.append({"ref": endpoint["ref"], "pin": endpoint["pin"], "actual": list(actual)})
            else:
                missing.append({"ref": endpoint["ref"], "pin": endpoint["pin"]})
        results[net["name"]] = {
            "ok": net_found and not missing and not wrong_net,
            "netFound": net_found,
            "missingEndpoints": missing,
            "wrongNet": wrong_net,
        }
    return results


def _decode_utf16_without_bom(blob: bytes) -> str:
    text_le = blob.decode("utf-16le", errors="replace")
    text_be = blob.decode("utf-16be", errors="replace")

    def score(text: str) -> int:
        printable = sum(1 for ch in text if ch.isprintable() or ch in "\n\r\t")
        replacement = text.count("\ufffd")
        return printable - replacement * 10

    return text_le if score(text_le) >= score(text_be) else text_be


def decode_netlist_bytes(blob: bytes) -> str:
    """Decode an exported netlist file; the byte order mark is never kept."""
    if blob.startswith(b"\xef\xbb\xbf"):
        return blob.decode("utf-8-sig", errors="replace")
    if blob.startswith((b"\xff\xfe", b"\xfe\xff")):
        # the "utf-16" codec reads the BOM for byte order and drops it
        return blob.decode("utf-16", errors="replace")

    null_ratio = blob.count(b"\x00") / max(len(blob), 1)
    if null_ratio > 0.10:
        return _decode_utf16_without_bom(blob).replace("\x00", "")
    return blob.decode("utf-8", errors="replace")


def _truncate(text: str, max_chars: int) -> tuple[str, bool]:
    if max_chars > 0 and len(text) > max_chars:
        return text[:max_chars], True
    return text, False


async def fetch_netlist_text(
    host: DocumentHost,
    document_uuid: str,
    *,
    netlist_type: str = DEFAULT_NETLIST_TYPE,
    timeout_s: float = DEFAULT_NETLIST_TIMEOUT,
    max_chars: int = DEFAULT_NETLIST_MAX_CHARS,
) -> dict[str, Any]:
    """Netlist text from the host API, falling back to a file export on timeout."""
    try:
        with anyio.fail_after(timeout_s):
            text = await host.get_netlist(document_uuid, netlist_type)
    except TimeoutError:
        reason = "TIMEOUT"
    except RpcError as exc:
        if exc.code not in FALLBACK_CODES:
            raise
        reason = exc.code
    else:
        netlist, truncated = _truncate(text or "", max_chars)
        return {
            "netlistType": netlist_type,
            "netlist": netlist,
            "truncated": truncated,
            "totalChars": len(text or ""),
            "source": "api",
        }

    _LOGGER.info("Netlist API unavailable (%s); exporting %s netlist file instead", reason, netlist_type)
    exported = await host.export_netlist_file(document_uuid, netlist_type)
    if exported is None:
        raise RpcError("EXPORT_FAILED", "Failed to export netlist file")
    raw = decode_netlist_bytes(exported) if isinstance(exported, bytes) else str(exported)
    netlist, truncated = _truncate(raw, max_chars)
    return {
        "netlistType": netlist_type,
        "netlist": netlist,
        "truncated": truncated,
        "totalChars": len(raw),
        "source": "export",
    }


_NonEmpty = Annotated[str, Field(min_length=1)]


class _ArgsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExpectedEndpoint(_ArgsModel):
    ref: _NonEmpty
    pin: _NonEmpty


class ExpectedNet(_ArgsModel):
    name: _NonEmpty
    endpoints: list[ExpectedEndpoint] = Field(min_length=1)


class VerifyNetlistArgs(_ArgsModel):
    netlist_type: NetlistType = DEFAULT_NETLIST_TYPE
    timeout_s: float = Field(default=DEFAULT_NETLIST_TIMEOUT, gt=0)
    max_chars: int = Field(default=DEFAULT_NETLIST_MAX_CHARS, gt=0)
    nets: list[ExpectedNet] = Field(min_length=1)
    document_uuid: _NonEmpty | None = None


def parse_verify_netlist_args(params: Any) -> VerifyNetlistArgs:
    try:
        return VerifyNetlistArgs.model_validate(params)
    except ValidationError as exc:
        raise RpcError("INVALID_PARAMS", "Invalid verifyNetlist arguments", validation_error_data(exc)) from exc


async def verify_netlist(host: DocumentHost, params: Any) -> dict[str, Any]:
    args = parse_verify_netlist_args(params)
    document_uuid = await resolve_document(host, args.document_uuid)
    fetched = await fetch_netlist_text(
        host,
        document_uuid,
        netlist_type=args.netlist_type,
        timeout_s=args.timeout_s,
        max_chars=args.max_chars,
    )
    raw = fetched["netlist"]
    parsed = parse_netlist(raw)
    results = check_netlist(parsed, [net.model_dump() for net in args.nets])
    return {
        "ok": parsed.ok and all(result["ok"] for result in results.values()),
        "netlist": {key: value for key, value in fetched.items() if key != "netlist"},
        "parsed": parsed.summary(),
        "results": results,
        "excerpt": raw[:EXCERPT_CHARS],
    }
