"""Container port synchronisation.

A container's visible ports are a pure function of its boundary children and
the connections touching them:

  canvas-input   → one container input,  id = child node id
  canvas-output  → one container output, id = child node id
  input-panel    → one container input per panel output,  id = "<panel>:<port>"
  output-panel   → one container output per panel input,  id = "<panel>:<port>"

With only_connected, a boundary port is reflected only while a wire touches
it, either inside (on the proxy) or outside (on the mirrored id), unless the
container shows empty ports on that side.

Panels also keep a free placeholder slot so the user can always wire one
more connection through them; see with_free_slot / trimmed_slots.
"""

from __future__ import annotations
from typing import Iterable, Optional

from .graph_model import (
    Direction, GraphConnection, GraphNode, PortDef, PortResolution, PortType,
    composite_port_id,
)
from .registry import BOUNDARY_TYPES, PANEL_TYPES

SLOT_PREFIX = "slot-"


def touched_endpoints(connections: Iterable[GraphConnection]) -> set[tuple[str, str]]:
    """Every (node_id, port_id) pair that at least one connection touches."""
    out = set()
    for c in connections:
        out.add((c.source_node, c.source_port))
        out.add((c.target_node, c.target_port))
    return out


def panel_side_ports(panel: GraphNode) -> list[PortDef]:
    """The panel ports that face into the container.

    An input panel emits into the container (its outputs); an output panel
    collects from it (its inputs).
    """
    if panel.node_type == "input-panel":
        return panel.output_ports()
    return panel.input_ports()


def _carried_resolution(node: GraphNode) -> PortResolution:
    for p in node.ports:
        if p.ptype is PortType.UNIVERSAL and p.resolution is not PortResolution.UNRESOLVED:
            return p.resolution
    return PortResolution.UNRESOLVED


def _canvas_port(child: GraphNode, want_output: bool) -> Optional[PortDef]:
    return next((p for p in child.ports if p.is_output == want_output), None)


def sync_ports(node: GraphNode, children: list[Optional[GraphNode]],
               connections: Iterable[GraphConnection],
               only_connected: bool = True) -> list[PortDef]:
    """Recompute *node*'s ports from its boundary *children*.

    children must be in node.child_ids order; missing entries may be None.
    The result is deterministic, so calling it twice with the same inputs
    yields equal port lists.
    """
    touched = touched_endpoints(connections)
    carried = _carried_resolution(node)
    ports: list[PortDef] = []

    def visible(child_id, inner_id, outer_id, show_empty) -> bool:
        if not only_connected or show_empty:
            return True
        return (child_id, inner_id) in touched or (node.node_id, outer_id) in touched

    for child in children:
        if child is None or child.node_type not in BOUNDARY_TYPES:
            continue

        if child.node_type in PANEL_TYPES:
            is_input = child.node_type == "input-panel"
            show_empty = node.show_empty_inputs if is_input else node.show_empty_outputs
            labels = child.data.get("portLabels", {})
            for p in panel_side_ports(child):
                outer = composite_port_id(child.node_id, p.port_id)
                if not visible(child.node_id, p.port_id, outer, show_empty):
                    continue
                ports.append(PortDef(
                    port_id=outer,
                    name=labels.get(p.port_id) or p.name or ("In" if is_input else "Out"),
                    ptype=p.ptype,
                    direction=p.direction.flipped(),
                    is_bundled=p.is_bundled,
                    resolution=p.resolution,
                ))
            continue

        is_input = child.node_type == "canvas-input"
        inner = _canvas_port(child, want_output=is_input)
        if inner is None:
            continue
        show_empty = node.show_empty_inputs if is_input else node.show_empty_outputs
        if not visible(child.node_id, inner.port_id, child.node_id, show_empty):
            continue
        ports.append(PortDef(
            port_id=child.node_id,
            name=child.data.get("portName") or inner.name or ("Input" if is_input else "Output"),
            ptype=inner.ptype,
            direction=Direction.INPUT if is_input else Direction.OUTPUT,
            is_bundled=inner.is_bundled,
            resolution=inner.resolution,
        ))

    for side, x in ((False, 0.0), (True, 1.0)):
        group = [p for p in ports if p.is_output == side]
        for i, p in enumerate(group):
            p.position = (x, round((i + 1) / (len(group) + 1), 4))

    for p in ports:
        if p.ptype is PortType.UNIVERSAL and p.resolution is PortResolution.UNRESOLVED:
            p.resolution = carried
        elif p.ptype is not PortType.UNIVERSAL:
            p.resolution = PortResolution.UNRESOLVED
    return ports


# ---------------------------------------------------------------------------
# Dynamic placeholder slots
# ---------------------------------------------------------------------------

def free_panel_ports(panel: GraphNode, connections: Iterable[GraphConnection]) -> list[PortDef]:
    """Panel ports with no wire inside or outside the container."""
    touched = touched_endpoints(connections)
    free = []
    for p in panel_side_ports(panel):
        outer = composite_port_id(panel.node_id, p.port_id)
        if (panel.node_id, p.port_id) in touched:
            continue
        if panel.parent_id and (panel.parent_id, outer) in touched:
            continue
        free.append(p)
    return free


def _next_slot_id(panel: GraphNode) -> str:
    taken = {p.port_id for p in panel.ports}
    n = len(panel_side_ports(panel)) + 1
    while f"{SLOT_PREFIX}{n}" in taken:
        n += 1
    return f"{SLOT_PREFIX}{n}"


def make_slot(panel: GraphNode) -> PortDef:
    side = panel_side_ports(panel)
    direction = Direction.OUTPUT if panel.node_type == "input-panel" else Direction.INPUT
    template = next((p for p in side if not p.is_bundled), None)
    ptype = template.ptype if template else PortType.CONTROL
    return PortDef(port_id=_next_slot_id(panel), name="", ptype=ptype, direction=direction)


def with_free_slot(panel: GraphNode, connections: Iterable[GraphConnection]) -> Optional[list[PortDef]]:
    """Panel ports plus one new placeholder if none is free, else None."""
    if free_panel_ports(panel, connections):
        return None
    return list(panel.ports) + [make_slot(panel)]


def trimmed_slots(panel: GraphNode, connections: Iterable[GraphConnection]) -> Optional[list[PortDef]]:
    """Panel ports with surplus free slots removed, or None if nothing to trim.

    Only ports created by with_free_slot are ever removed; exactly one free
    port is left behind.
    """
    free = free_panel_ports(panel, connections)
    surplus = len(free) - 1
    if surplus <= 0:
        return None
    drop = set()
    for p in reversed(free):
        if surplus == 0:
            break
        if p.port_id.startswith(SLOT_PREFIX):
            drop.add(p.port_id)
            surplus -= 1
    if not drop:
        return None
    return [p for p in panel.ports if p.port_id not in drop]
