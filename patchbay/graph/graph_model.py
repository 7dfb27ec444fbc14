"""Patch graph data model.

Pure Python, no Qt dependency.  Owns the record types that the GraphStore
keeps in its flat id-keyed maps and that project_io serialises.

Port types:
  AUDIO      – sample stream; wires run output → input only, and an audio
               input accepts at most one incoming wire
  CONTROL    – note/parameter events; wires may run in either direction
  UNIVERSAL  – polymorphic; adopts AUDIO or CONTROL from the first wire that
               touches it (see PortResolution)

Hierarchy
---------
Nodes reference each other by id only.  A node with children is a
*container*: its child ids are ordered, and the subset listed in
special_nodes are the boundary children created from its template, which the
user may not delete.

Composite port ids
------------------
A container port mirrored from one of its panel children is addressed as
"<panelId>:<portId>".  A port mirrored from a canvas-input / canvas-output
child is addressed by that child's node id.  Plain port ids never contain a
colon.
"""

from __future__ import annotations
import copy
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


# ---------------------------------------------------------------------------
# Port type
# ---------------------------------------------------------------------------

class PortType(Enum):
    AUDIO     = "audio"
    CONTROL   = "control"
    UNIVERSAL = "universal"

    @staticmethod
    def parse(value) -> "PortType":
        # 'technical' is the pre-1.0 name for control
        if value == "technical":
            return PortType.CONTROL
        return PortType(value)


class Direction(Enum):
    INPUT  = "input"
    OUTPUT = "output"

    def flipped(self) -> "Direction":
        return Direction.OUTPUT if self is Direction.INPUT else Direction.INPUT


class PortResolution(Enum):
    """Concrete type a universal port has adopted."""
    UNRESOLVED = "unresolved"
    AUDIO      = "audio"
    CONTROL    = "control"

    @staticmethod
    def for_type(ptype: Optional[PortType]) -> "PortResolution":
        if ptype is PortType.AUDIO:
            return PortResolution.AUDIO
        if ptype is PortType.CONTROL:
            return PortResolution.CONTROL
        return PortResolution.UNRESOLVED

    @property
    def port_type(self) -> Optional[PortType]:
        if self is PortResolution.AUDIO:
            return PortType.AUDIO
        if self is PortResolution.CONTROL:
            return PortType.CONTROL
        return None


# ---------------------------------------------------------------------------
# Ids
# ---------------------------------------------------------------------------

_PORT_ID_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
MAX_PORT_ID_LEN = 256


def new_id(prefix: str = "") -> str:
    """Return a fresh id.  Ids are never reused within a process."""
    return f"{prefix}{uuid.uuid4().hex[:16]}"


def composite_port_id(panel_id: str, port_id: str) -> str:
    return f"{panel_id}:{port_id}"


def split_port_id(port_id: str) -> tuple[Optional[str], str]:
    """Split "<panelId>:<portId>" into its parts; plain ids give (None, id)."""
    if ":" not in port_id:
        return None, port_id
    panel_id, _, inner = port_id.partition(":")
    return panel_id, inner


def is_valid_port_id(port_id) -> bool:
    if not isinstance(port_id, str) or not port_id:
        return False
    if ":" in port_id:
        parts = port_id.split(":")
        if len(parts) != 2 or len(port_id) > 2 * MAX_PORT_ID_LEN:
            return False
        return all(bool(p) and len(p) <= MAX_PORT_ID_LEN for p in parts)
    return len(port_id) <= MAX_PORT_ID_LEN and bool(_PORT_ID_RE.match(port_id))


# ---------------------------------------------------------------------------
# Port definition
# ---------------------------------------------------------------------------

@dataclass
class PortDef:
    port_id:    str
    name:       str
    ptype:      PortType
    direction:  Direction
    is_bundled: bool = False
    position:   Optional[tuple[float, float]] = None   # normalised 0–1 anchor
    resolution: PortResolution = PortResolution.UNRESOLVED

    @property
    def is_output(self) -> bool:
        return self.direction is Direction.OUTPUT

    def effective_type(self) -> Optional[PortType]:
        """Concrete type carried by this port; None for an unresolved universal."""
        if self.ptype is PortType.UNIVERSAL:
            return self.resolution.port_type
        return self.ptype

    def to_dict(self) -> dict:
        d = {
            "id": self.port_id,
            "name": self.name,
            "type": self.ptype.value,
            "direction": self.direction.value,
            "isBundled": self.is_bundled,
        }
        if self.position is not None:
            d["position"] = {"x": self.position[0], "y": self.position[1]}
        if self.ptype is PortType.UNIVERSAL:
            d["resolvedType"] = self.resolution.value
        return d

    @staticmethod
    def from_dict(d: dict) -> "PortDef":
        pos = d.get("position")
        resolved = d.get("resolvedType", "unresolved")
        if resolved == "technical":
            resolved = "control"
        return PortDef(
            port_id=d["id"],
            name=d.get("name", ""),
            ptype=PortType.parse(d.get("type", "control")),
            direction=Direction(d.get("direction", "input")),
            is_bundled=bool(d.get("isBundled", False)),
            position=(pos["x"], pos["y"]) if pos else None,
            resolution=PortResolution(resolved),
        )


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

@dataclass
class GraphConnection:
    id: str = field(default_factory=lambda: new_id("conn-"))
    source_node: str = ""
    source_port: str = ""
    target_node: str = ""
    target_port: str = ""
    ctype: PortType = PortType.CONTROL
    is_bundled: bool = False

    def touches(self, node_id: str) -> bool:
        return self.source_node == node_id or self.target_node == node_id

    def same_endpoints(self, other: "GraphConnection") -> bool:
        return (self.source_node == other.source_node and self.source_port == other.source_port and
                self.target_node == other.target_node and self.target_port == other.target_port)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sourceNodeId": self.source_node, "sourcePortId": self.source_port,
            "targetNodeId": self.target_node, "targetPortId": self.target_port,
            "type": self.ctype.value,
            "isBundled": self.is_bundled,
        }

    @staticmethod
    def from_dict(d: dict) -> "GraphConnection":
        return GraphConnection(
            id=d.get("id") or new_id("conn-"),
            source_node=d["sourceNodeId"], source_port=d["sourcePortId"],
            target_node=d["targetNodeId"], target_port=d["targetPortId"],
            ctype=PortType.parse(d.get("type", "control")),
            is_bundled=bool(d.get("isBundled", False)),
        )


# ---------------------------------------------------------------------------
# Instrument row
# ---------------------------------------------------------------------------

BASE_NOTE_RANGE   = (0, 6)
BASE_OCTAVE_RANGE = (0, 8)
BASE_OFFSET_RANGE = (-24, 24)


def _clamp(value, bounds):
    lo, hi = bounds
    return max(lo, min(hi, value))


@dataclass
class InstrumentRow:
    """Per-bundle channel metadata kept on an instrument node.

    base_note    – scale degree 0–6 (C..B)
    base_octave  – 0–8
    base_offset  – semitone offset, −24..24
    key_gains    – one gain per channel, length == port_count
    """
    row_id:      str
    source_node: str
    source_port: str
    target_port: str
    label:       str = ""
    spread:      float = 0.5
    base_note:   int = 0
    base_octave: int = 4
    base_offset: int = 0
    port_count:  int = 1
    key_gains:   list[float] = field(default_factory=list)

    def __post_init__(self):
        self.base_note = _clamp(int(self.base_note), BASE_NOTE_RANGE)
        self.base_octave = _clamp(int(self.base_octave), BASE_OCTAVE_RANGE)
        self.base_offset = _clamp(int(self.base_offset), BASE_OFFSET_RANGE)
        gains = list(self.key_gains)[:self.port_count]
        gains.extend([1.0] * (self.port_count - len(gains)))
        self.key_gains = gains

    def to_dict(self) -> dict:
        return {
            "rowId": self.row_id,
            "sourceNodeId": self.source_node,
            "sourcePortId": self.source_port,
            "targetPortId": self.target_port,
            "label": self.label,
            "spread": self.spread,
            "baseNote": self.base_note,
            "baseOctave": self.base_octave,
            "baseOffset": self.base_offset,
            "portCount": self.port_count,
            "keyGains": list(self.key_gains),
        }

    @staticmethod
    def from_dict(d: dict) -> "InstrumentRow":
        return InstrumentRow(
            row_id=d["rowId"],
            source_node=d.get("sourceNodeId", ""),
            source_port=d.get("sourcePortId", ""),
            target_port=d.get("targetPortId", ""),
            label=d.get("label", ""),
            spread=d.get("spread", 0.5),
            base_note=d.get("baseNote", 0),
            base_octave=d.get("baseOctave", 4),
            base_offset=d.get("baseOffset", 0),
            port_count=d.get("portCount", 1),
            key_gains=d.get("keyGains", []),
        )


# ---------------------------------------------------------------------------
# Viewport
# ---------------------------------------------------------------------------

@dataclass
class Viewport:
    pan_x: float = 0.0
    pan_y: float = 0.0
    zoom:  float = 1.0

    def to_dict(self) -> dict:
        return {"pan": {"x": self.pan_x, "y": self.pan_y}, "zoom": self.zoom}

    @staticmethod
    def from_dict(d: dict) -> "Viewport":
        pan = d.get("pan", {})
        return Viewport(pan.get("x", 0.0), pan.get("y", 0.0), d.get("zoom", 1.0))


# ---------------------------------------------------------------------------
# Graph node
# ---------------------------------------------------------------------------

@dataclass
class GraphNode:
    """One node in the patch graph.

    node_type     – registry key (see registry.py).
    category      – denormalised from the type.
    x, y          – position in the parent level's canvas coords.
    data          – type-specific JSON-compatible dict.
    ports         – ordered; for containers this is the synchronised
                    reflection of the boundary children.
    parent_id     – None for root-level nodes.
    child_ids     – ordered ids of the internal sub-graph.
    special_nodes – template boundary children, protected from deletion.
    """
    node_type:  str
    node_id:    str = field(default_factory=lambda: new_id("node-"))
    category:   str = ""
    x: float = 0.0
    y: float = 0.0
    data:  dict = field(default_factory=dict)
    ports: list[PortDef] = field(default_factory=list)
    parent_id: Optional[str] = None
    child_ids: list[str] = field(default_factory=list)
    special_nodes: list[str] = field(default_factory=list)
    internal_viewport: Optional[Viewport] = None
    show_empty_inputs:  bool = False
    show_empty_outputs: bool = False

    @property
    def is_container(self) -> bool:
        return bool(self.child_ids)

    def get_port(self, port_id: str) -> Optional[PortDef]:
        return next((p for p in self.ports if p.port_id == port_id), None)

    def output_ports(self) -> list[PortDef]: return [p for p in self.ports if p.is_output]
    def input_ports(self)  -> list[PortDef]: return [p for p in self.ports if not p.is_output]

    def to_dict(self) -> dict:
        d = {
            "id": self.node_id,
            "type": self.node_type,
            "category": self.category,
            "position": {"x": self.x, "y": self.y},
            "data": self.data,
            "ports": [p.to_dict() for p in self.ports],
            "parentId": self.parent_id,
            "childIds": list(self.child_ids),
            "specialNodes": list(self.special_nodes),
            "showEmptyInputPorts": self.show_empty_inputs,
            "showEmptyOutputPorts": self.show_empty_outputs,
        }
        if self.internal_viewport is not None:
            d["internalViewport"] = self.internal_viewport.to_dict()
        return d

    @staticmethod
    def from_dict(d: dict) -> "GraphNode":
        pos = d.get("position", {})
        vp = d.get("internalViewport")
        return GraphNode(
            node_type=d["type"],
            node_id=d["id"],
            category=d.get("category", ""),
            x=pos.get("x", 0.0), y=pos.get("y", 0.0),
            data=copy.deepcopy(d.get("data", {})),
            ports=[PortDef.from_dict(p) for p in d.get("ports", [])],
            parent_id=d.get("parentId"),
            child_ids=list(d.get("childIds", [])),
            special_nodes=list(d.get("specialNodes", [])),
            internal_viewport=Viewport.from_dict(vp) if vp else None,
            show_empty_inputs=bool(d.get("showEmptyInputPorts", False)),
            show_empty_outputs=bool(d.get("showEmptyOutputPorts", False)),
        )


def instrument_rows(node: GraphNode) -> list[InstrumentRow]:
    return [InstrumentRow.from_dict(r) for r in node.data.get("rows", [])]
