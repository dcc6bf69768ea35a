"""
Wire graph reconstruction from raw document-source records.

Each record is one line of the form ``<head JSON>||<body JSON>|``.  Only three
record types matter here: ``WIRE`` declares a wire, ``LINE`` adds a segment to
a wire (``lineGroup``), and ``ATTR`` with key ``NET`` names the wire's net.
"""
from __future__ import annotations

import json
import math
import re
from collections import deque
from typing import Any, Iterable

from .models import ParsedWire, WireSegment

_LINE_SPLIT_RE = re.compile(r"\r?\n")


def _round_half_up(value: float) -> str:
    if not math.isfinite(value):
        # never matches a parsed segment, which only keeps finite coordinates
        return "NaN"
    return str(math.floor(value + 0.5))


def point_key(x: float, y: float) -> str:
    # round half up, same as the document source's own rounding
    return f"{_round_half_up(x)},{_round_half_up(y)}"


def parse_record(raw: str) -> tuple[Any, Any] | None:
    line = raw.strip()
    if not line:
        return None
    sep = line.find("||")
    if sep == -1:
        return None
    head_text = line[:sep]
    body_text = line[sep + 2 :]
    if body_text.endswith("|"):
        body_text = body_text[:-1]
    try:
        return json.loads(head_text), json.loads(body_text)
    except ValueError:
        return None


def _field(payload: Any, name: str) -> Any:
    if isinstance(payload, dict):
        return payload.get(name)
    return None


def _text(payload: Any, name: str) -> str:
    value = _field(payload, name)
    return "" if value is None else str(value)


def _finite(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_wires_from_document_source(
    source: str,
    *,
    wire_ids: Iterable[str] | None = None,
    net_names: Iterable[str] | None = None,
) -> dict[str, ParsedWire]:
    """Collect wires, their segments and net names from document source text.

    ``wire_ids`` restricts every record to those wires.  ``net_names`` only
    keeps ``NET`` attributes with a listed value; without ``wire_ids`` it also
    prunes, after the pass, every wire whose net is not listed.
    """
    wanted_wires = set(wire_ids) if wire_ids is not None else None
    wanted_nets = set(net_names) if net_names is not None else None
    wires: dict[str, ParsedWire] = {}

    def ensure(wire_id: str) -> ParsedWire:
        wire = wires.get(wire_id)
        if wire is None:
            wire = ParsedWire(wire_id=wire_id)
            wires[wire_id] = wire
        return wire

    for raw in _LINE_SPLIT_RE.split(source):
        record = parse_record(raw)
        if record is None:
            continue
        head, body = record
        record_type = _text(head, "type")

        if record_type == "WIRE":
            wire_id = _text(head, "id")
            if not wire_id or (wanted_wires is not None and wire_id not in wanted_wires):
                continue
            ensure(wire_id)
        elif record_type == "LINE":
            group = _text(body, "lineGroup")
            if not group or (wanted_wires is not None and group not in wanted_wires):
                continue
            coords = [_finite(_field(body, name)) for name in ("startX", "startY", "endX", "endY")]
            if any(value is None for value in coords):
                continue
            x1, y1, x2, y2 = coords
            ensure(group).segments.append(WireSegment(x1=x1, y1=y1, x2=x2, y2=y2))  # type: ignore[arg-type]
        elif record_type == "ATTR":
            parent = _text(body, "parentId")
            if not parent or (wanted_wires is not None and parent not in wanted_wires):
                continue
            if _text(body, "key") != "NET":
                continue
            value = _text(body, "value")
            if not value or (wanted_nets is not None and value not in wanted_nets):
                continue
            ensure(parent).net = value

    if wanted_nets is not None and wanted_wires is None:
        wires = {
            wire_id: wire
            for wire_id, wire in wires.items()
            if wire.net and wire.net in wanted_nets
        }
    return wires


def build_adjacency(segments: Iterable[WireSegment]) -> dict[str, set[str]]:
    adjacency: dict[str, set[str]] = {}
    for segment in segments:
        a = point_key(segment.x1, segment.y1)
        b = point_key(segment.x2, segment.y2)
        adjacency.setdefault(a, set()).add(b)
        adjacency.setdefault(b, set()).add(a)
    return adjacency


def bfs_reachable(adjacency: dict[str, set[str]], start: str) -> set[str]:
    visited = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for neighbor in adjacency.get(current, ()):
            if neighbor in visited:
                continue
            visited.add(neighbor)
            queue.append(neighbor)
    return visited
