"""Bundle expansion.

A bundled output (a keyboard's "keys", a controller's "pads") carries N
parallel channels over one wire.  When such a wire lands on a container's
input panel, the panel grows N channel ports for it and the wire is
retargeted to the first of them.  Instrument targets additionally get an
InstrumentRow describing the channels and N key inputs on their
instrument-visual proxy, each wired from its panel channel.

If the target has no input panel (or an instrument has lost its proxy), the
wire is left as a single bundled connection.
"""

from __future__ import annotations
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Iterable, Mapping

from .graph_model import (
    Direction, GraphConnection, GraphNode, InstrumentRow, PortDef, PortType,
    composite_port_id, new_id, split_port_id,
)
from .port_sync import free_panel_ports, make_slot
from .registry import get_node_definition, is_instrument

if TYPE_CHECKING:
    from .transaction import GraphTxn

log = logging.getLogger(__name__)


def channel_count(nodes: Mapping[str, GraphNode], connections: Iterable[GraphConnection],
                  node_id: str, port_id: str) -> int:
    """Number of parallel channels behind a bundled output.

    Counted from the internal wires feeding the mirrored panel port when there
    is one, otherwise taken from the node's keyCount / channelCount data.
    """
    node = nodes.get(node_id)
    if node is None:
        return 1
    panel_id, inner = split_port_id(port_id)
    if panel_id is not None:
        feeders = sum(1 for c in connections
                      if c.target_node == panel_id and c.target_port == inner)
        if feeders:
            return feeders
    for key in ("keyCount", "channelCount"):
        value = node.data.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
    return 1


def bundle_size(conn: GraphConnection, nodes: Mapping[str, GraphNode],
                connections: Iterable[GraphConnection]) -> int:
    """Channel count a renderer should draw for *conn* (1 for plain wires)."""
    if not conn.is_bundled:
        return 1
    return channel_count(nodes, connections, conn.source_node, conn.source_port)


def bundle_label(node: GraphNode, port: PortDef) -> str:
    name = get_node_definition(node.node_type).name
    return f"{name} {port.name}".strip() if port.name else name


def channel_port_ids(row_id: str, count: int) -> list[str]:
    return [f"{row_id}-ch-{i}" for i in range(count)]


def key_port_ids(row_id: str, count: int) -> list[str]:
    return [f"{row_id}-key-{i}" for i in range(count)]


def _insert_channels(panel: GraphNode, channels: list[PortDef], connections) -> None:
    existing = {p.port_id for p in panel.ports}
    fresh = [p for p in channels if p.port_id not in existing]
    free = {p.port_id for p in free_panel_ports(panel, connections)}

    # channels go in front of the trailing run of free placeholders
    idx = len(panel.ports)
    while idx > 0 and panel.ports[idx - 1].port_id in free and "-ch-" not in panel.ports[idx - 1].port_id:
        idx -= 1
    panel.ports[idx:idx] = fresh

    tail = panel.ports[-1] if panel.ports else None
    if tail is None or tail.port_id not in free or tail.is_bundled or "-ch-" in tail.port_id:
        panel.ports.append(make_slot(panel))


def resolve_bundle(txn: "GraphTxn", conn: GraphConnection) -> GraphConnection:
    """Expand a new bundled connection into *conn*'s target.

    Must run before *conn* is stored in txn.  Returns the connection to store,
    which is *conn* retargeted to the first channel port when expansion
    happened.
    """
    source = txn.node(conn.source_node)
    target = txn.node(conn.target_node)
    src_port = source.get_port(conn.source_port) if source else None
    if source is None or target is None or src_port is None or not src_port.is_bundled:
        return conn

    panel = txn.special_child(target, "input-panel")
    visual = txn.child_of_type(target, "instrument-visual") if is_instrument(target) else None
    panel_id, _ = split_port_id(conn.target_port)
    if panel is None or panel_id != panel.node_id or (is_instrument(target) and visual is None):
        log.info("[Bundles] %s has nowhere to expand %s; keeping a single wire",
                 target.node_id, conn.source_port)
        return conn

    count = channel_count(txn.nodes, txn.connections.values(), conn.source_node, conn.source_port)
    label = bundle_label(source, src_port)
    ctype = src_port.effective_type() or PortType.CONTROL

    rows = [InstrumentRow.from_dict(r) for r in target.data.get("rows", [])]
    row = next((r for r in rows
                if r.source_node == conn.source_node and r.source_port == conn.source_port), None)
    row_id = row.row_id if row else new_id("row-")
    channels = channel_port_ids(row_id, count)

    panel = txn.edit(panel.node_id)
    _insert_channels(panel, [
        PortDef(port_id=cid, name=f"{label} {i + 1}", ptype=ctype, direction=Direction.OUTPUT)
        for i, cid in enumerate(channels)
    ], txn.connections.values())
    labels = dict(panel.data.get("portLabels", {}))
    for i, cid in enumerate(channels):
        labels.setdefault(cid, f"{label} {i + 1}")
    panel.data["portLabels"] = labels

    first_channel = composite_port_id(panel.node_id, channels[0])
    conn = replace(conn, target_port=first_channel)

    if visual is not None:
        if row is None:
            row = InstrumentRow(
                row_id=row_id,
                source_node=conn.source_node,
                source_port=conn.source_port,
                target_port=first_channel,
                label=label,
                port_count=count,
            )
            target = txn.edit(target.node_id)
            target.data["rows"] = [r.to_dict() for r in rows] + [row.to_dict()]
        _wire_keys(txn, panel, visual, row_id, channels, ctype)

    log.debug("[Bundles] expanded %s.%s into %d channels on %s",
              conn.source_node, conn.source_port, count, target.node_id)
    txn.effects.schedule_resync(target.node_id)
    return conn


def _wire_keys(txn: "GraphTxn", panel: GraphNode, visual: GraphNode, row_id: str,
               channels: list[str], ctype: PortType) -> None:
    keys = key_port_ids(row_id, len(channels))
    visual = txn.edit(visual.node_id)
    have = {p.port_id for p in visual.ports}
    for i, kid in enumerate(keys):
        if kid not in have:
            visual.ports.append(PortDef(port_id=kid, name=f"Key {i + 1}", ptype=ctype,
                                        direction=Direction.INPUT))

    for cid, kid in zip(channels, keys):
        wire = GraphConnection(
            id=new_id("conn-"),
            source_node=panel.node_id, source_port=cid,
            target_node=visual.node_id, target_port=kid,
            ctype=ctype,
        )
        if txn.find_connection(wire) is None:
            txn.put_connection(wire)
