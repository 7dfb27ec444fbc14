"""Clipboard and rectangle selection for the patch canvas.

The clipboard holds serialised copies of whole sub-graphs: every selected
node, everything nested inside it, and the wires running between copied
nodes.  Pasting hands back fresh objects with every id remapped, ready for
the GraphStore to insert.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple
from PySide6.QtCore import QRectF, QPointF

from .graph.graph_model import (
    GraphConnection, GraphNode, composite_port_id, new_id, split_port_id,
)
from .graph.registry import node_size

log = logging.getLogger(__name__)


# ============================================================================
# GRAPH CLIPBOARD
# ============================================================================

@dataclass
class ClipboardData:
    """A copied sub-graph, serialised so later edits cannot reach it."""
    nodes: List[dict]        # serialised GraphNodes, parents before children
    connections: List[dict]  # serialised GraphConnections
    top_level: List[str]     # copied ids whose parent was not copied
    origin: QPointF          # top-left of the top-level nodes, for relative paste


def _remap_port_id(port_id: str, id_map: Mapping[str, str]) -> str:
    panel_id, inner = split_port_id(port_id)
    if panel_id is not None and panel_id in id_map:
        return composite_port_id(id_map[panel_id], inner)
    return id_map.get(port_id, port_id)


class GraphClipboard:
    """Copy/paste of node sub-graphs."""

    def __init__(self):
        self.data: Optional[ClipboardData] = None

    def copy(self, nodes: Mapping[str, GraphNode], connections: Mapping[str, GraphConnection],
             node_ids: Iterable[str]) -> int:
        """Copy *node_ids* with their internals.  Returns the node count."""
        closure: list[str] = []
        seen = set()
        for nid in node_ids:
            stack = [nid]
            while stack:
                cur = stack.pop()
                if cur in seen or cur not in nodes:
                    continue
                seen.add(cur)
                closure.append(cur)
                stack.extend(reversed(nodes[cur].child_ids))
        if not closure:
            return 0

        top_level = [nid for nid in closure if nodes[nid].parent_id not in seen]
        origin = QPointF(min(nodes[nid].x for nid in top_level),
                         min(nodes[nid].y for nid in top_level))
        conns = [c.to_dict() for c in connections.values()
                 if c.source_node in seen and c.target_node in seen]

        self.data = ClipboardData(
            nodes=copy.deepcopy([nodes[nid].to_dict() for nid in closure]),
            connections=conns,
            top_level=top_level,
            origin=origin,
        )
        log.info("[Clipboard] copied %d nodes, %d connections", len(closure), len(conns))
        return len(closure)

    def paste(self, parent_id: Optional[str], at: Optional[QPointF],
              offset: float) -> Tuple[List[GraphNode], List[GraphConnection]]:
        """Build fresh copies of the clipboard contents.

        Top-level nodes are re-parented under *parent_id* and moved so the
        copied group's top-left lands on *at*, or shifted by *offset* on both
        axes when no position is given.
        Returns (new_nodes, new_connections); nodes are parents first.
        """
        if not self.data:
            log.info("[Clipboard] nothing to paste")
            return [], []

        delta = (at - self.data.origin) if at is not None else QPointF(offset, offset)
        id_map = {d["id"]: new_id(f"{d['type']}-") for d in self.data.nodes}
        top_level = set(self.data.top_level)

        new_nodes = []
        for d in self.data.nodes:
            node = GraphNode.from_dict(d)
            old_id = node.node_id
            node.node_id = id_map[old_id]
            if old_id in top_level:
                node.parent_id = parent_id
                node.x += delta.x()
                node.y += delta.y()
            else:
                node.parent_id = id_map.get(node.parent_id)
            node.child_ids = [id_map[c] for c in node.child_ids if c in id_map]
            node.special_nodes = [id_map[c] for c in node.special_nodes if c in id_map]
            for port in node.ports:
                port.port_id = _remap_port_id(port.port_id, id_map)
            rows = node.data.get("rows")
            if isinstance(rows, list):
                for row in rows:
                    row["sourceNodeId"] = id_map.get(row.get("sourceNodeId"), row.get("sourceNodeId"))
                    row["targetPortId"] = _remap_port_id(row.get("targetPortId", ""), id_map)
            new_nodes.append(node)

        new_conns = []
        for d in self.data.connections:
            conn = GraphConnection.from_dict(d)
            if conn.source_node not in id_map or conn.target_node not in id_map:
                log.debug("[Clipboard] skipping dangling connection %s", conn.id)
                continue
            conn.id = new_id("conn-")
            conn.source_port = _remap_port_id(conn.source_port, id_map)
            conn.target_port = _remap_port_id(conn.target_port, id_map)
            conn.source_node = id_map[conn.source_node]
            conn.target_node = id_map[conn.target_node]
            new_conns.append(conn)

        log.info("[Clipboard] pasted %d nodes, %d connections", len(new_nodes), len(new_conns))
        return new_nodes, new_conns

    def has_data(self) -> bool:
        return self.data is not None


# ============================================================================
# SELECTION GEOMETRY
# ============================================================================

def node_rect(node: GraphNode) -> QRectF:
    w, h = node_size(node.node_type)
    return QRectF(node.x, node.y, w, h)


def nodes_in_rect(rect: QRectF, nodes: Iterable[GraphNode]) -> List[str]:
    """Ids of the nodes whose body overlaps *rect* (any drag direction)."""
    rect = rect.normalized()
    return [n.node_id for n in nodes if node_rect(n).intersects(rect)]
