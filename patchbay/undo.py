"""Undo/redo history for the patch graph.

Snapshots hold the node and connection maps only, as JSON-compatible
entry lists.  Selection, clipboard and viewport are not captured.
"""

import copy
from typing import Optional

from .graph.graph_model import GraphConnection, GraphNode


class UndoStack:
    """Bounded linear history of graph snapshots.

    A snapshot is pushed *before* each mutation, so the stack holds past
    states and the live state sits just beyond the pointer.  The first undo
    from the tip appends the live state so that redo can return to it.
    """

    def __init__(self, max_size: int = 50):
        self.max_size = max_size
        self.stack: list[dict] = []
        self.pointer = -1  # index of the snapshot the next undo restores

    def can_undo(self) -> bool:
        return self.pointer >= 0

    def can_redo(self) -> bool:
        return self.pointer + 2 < len(self.stack)

    def push(self, snapshot: dict):
        """Record *snapshot* and drop any redo future."""
        self.stack = self.stack[:self.pointer + 1]
        self.stack.append(snapshot)
        while len(self.stack) > self.max_size:
            self.stack.pop(0)
        self.pointer = len(self.stack) - 1

    def undo(self, current: dict) -> Optional[dict]:
        """Step back one state; *current* is the live state being left."""
        if not self.can_undo():
            return None
        if self.pointer == len(self.stack) - 1:
            self.stack.append(current)
        snapshot = self.stack[self.pointer]
        self.pointer -= 1
        return snapshot

    def redo(self) -> Optional[dict]:
        if not self.can_redo():
            return None
        self.pointer += 1
        return self.stack[self.pointer + 1]

    def amend_node(self, node_id: str, key: str, value) -> int:
        """Set *key* on *node_id*'s record in every stored snapshot.

        Used for node state that lives outside history, so undo and redo
        carry the latest value instead of reverting it.  Returns the number
        of snapshots touched.
        """
        touched = 0
        for snapshot in self.stack:
            for nid, record in snapshot.get('nodes', []):
                if nid == node_id:
                    record[key] = copy.deepcopy(value)
                    touched += 1
        return touched

    def clear(self):
        self.stack = []
        self.pointer = -1


def capture_state(nodes: dict, connections: dict) -> dict:
    """Capture a serialisable snapshot of the graph maps.

    Snapshots are deep copies, so later edits never reach them.
    """
    return {
        'nodes': copy.deepcopy([[nid, n.to_dict()] for nid, n in nodes.items()]),
        'connections': copy.deepcopy([[cid, c.to_dict()] for cid, c in connections.items()]),
    }


def restore_state(snapshot: dict) -> tuple[dict, dict]:
    """Rebuild (nodes, connections) maps from a snapshot."""
    nodes = {nid: GraphNode.from_dict(d) for nid, d in snapshot.get('nodes', [])}
    connections = {cid: GraphConnection.from_dict(d) for cid, d in snapshot.get('connections', [])}
    return nodes, connections
