"""Copy-on-write working set for one GraphStore mutation.

A GraphTxn starts as shallow copies of the store's maps.  Nodes are deep
copied the first time a mutation edits them, so the committed maps (and every
history snapshot taken from them) are never written through.  Follow-up work
discovered while mutating is queued on txn.effects and drained once by the
store before commit.
"""

from __future__ import annotations
import copy
from typing import Iterable, Optional

from .graph_model import GraphConnection, GraphNode


def _append_unique(items: list, value) -> None:
    if value not in items:
        items.append(value)


class Effects:
    """Ordered, de-duplicated follow-up work for one top-level mutation."""

    def __init__(self):
        self.resync: list[str] = []          # containers whose ports must be recomputed
        self.filled_panels: list[str] = []   # panels whose last free port may be taken
        self.vacated_panels: list[str] = []  # panels that may hold surplus free slots
        self.released_nodes: list[str] = []  # nodes that lost a connection

    def schedule_resync(self, node_id: str) -> None:
        _append_unique(self.resync, node_id)

    def panel_filled(self, panel_id: str) -> None:
        _append_unique(self.filled_panels, panel_id)

    def panel_vacated(self, panel_id: str) -> None:
        _append_unique(self.vacated_panels, panel_id)

    def node_released(self, node_id: str) -> None:
        _append_unique(self.released_nodes, node_id)


class GraphTxn:
    def __init__(self, nodes: dict[str, GraphNode], connections: dict[str, GraphConnection],
                 root_ids: Iterable[str]):
        self.nodes = dict(nodes)
        self.connections = dict(connections)
        self.root_ids = list(root_ids)
        self.effects = Effects()
        self._owned: set[str] = set()

    # -- Nodes --

    def node(self, node_id: Optional[str]) -> Optional[GraphNode]:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def edit(self, node_id: str) -> GraphNode:
        """Return a private, writable copy of *node_id*."""
        node = self.nodes[node_id]
        if node_id not in self._owned:
            node = copy.deepcopy(node)
            self.nodes[node_id] = node
            self._owned.add(node_id)
        return node

    def put(self, node: GraphNode) -> None:
        self.nodes[node.node_id] = node
        self._owned.add(node.node_id)

    def drop(self, node_id: str) -> None:
        self.nodes.pop(node_id, None)
        self._owned.discard(node_id)

    def children(self, node: GraphNode) -> list[Optional[GraphNode]]:
        return [self.nodes.get(cid) for cid in node.child_ids]

    def special_child(self, node: GraphNode, node_type: str) -> Optional[GraphNode]:
        for cid in node.special_nodes:
            child = self.nodes.get(cid)
            if child is not None and child.node_type == node_type:
                return child
        return None

    def child_of_type(self, node: GraphNode, node_type: str) -> Optional[GraphNode]:
        for cid in node.child_ids:
            child = self.nodes.get(cid)
            if child is not None and child.node_type == node_type:
                return child
        return None

    def descendants(self, node_id: str) -> list[str]:
        """node_id plus every node below it, parents before children."""
        out, stack, seen = [], [node_id], set()
        while stack:
            nid = stack.pop()
            if nid in seen or nid not in self.nodes:
                continue
            seen.add(nid)
            out.append(nid)
            stack.extend(reversed(self.nodes[nid].child_ids))
        return out

    def ancestors(self, node_id: str) -> list[str]:
        """Parent chain of node_id, nearest first."""
        out, seen = [], {node_id}
        node = self.nodes.get(node_id)
        while node is not None and node.parent_id is not None and node.parent_id not in seen:
            out.append(node.parent_id)
            seen.add(node.parent_id)
            node = self.nodes.get(node.parent_id)
        return out

    # -- Connections --

    def put_connection(self, conn: GraphConnection) -> None:
        self.connections[conn.id] = conn

    def drop_connection(self, conn_id: str) -> Optional[GraphConnection]:
        return self.connections.pop(conn_id, None)

    def connections_touching(self, node_id: str) -> list[GraphConnection]:
        return [c for c in self.connections.values() if c.touches(node_id)]

    def find_connection(self, other: GraphConnection) -> Optional[GraphConnection]:
        return next((c for c in self.connections.values() if c.same_endpoints(other)), None)
