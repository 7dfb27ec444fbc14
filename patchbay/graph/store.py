"""Hierarchical graph store.

GraphStore is the single owner of the patch graph: a flat id-keyed map of
nodes, a flat map of connections, the ordered list of root-level node ids,
the current selection, the clipboard and the undo history.

Every public mutation follows the same path:

  1. validate against the committed maps (rejections return None / False and
     leave history and version untouched)
  2. apply the change to a copy-on-write GraphTxn, queueing follow-up work
     on txn.effects
  3. push the pre-mutation snapshot onto the undo stack
  4. drain the effects once: placeholder slots, universal port resets,
     container port re-sync up the ancestor chain, and a final prune of
     connections whose endpoints no longer exist
  5. swap in the new maps, bump version, notify listeners

Instances are created explicitly and handed to whatever needs them; nothing
here is module-global.
"""

from __future__ import annotations
import copy
import logging
from dataclasses import replace
from typing import Callable, Iterable, Optional, Union

from PySide6.QtCore import QPointF, QRectF

from ..clipboard import GraphClipboard, nodes_in_rect
from ..core.settings import Settings
from ..undo import UndoStack, capture_state, restore_state
from .bundles import bundle_size, resolve_bundle
from .graph_model import (
    GraphConnection, GraphNode, InstrumentRow, PortDef, PortResolution, PortType,
    Viewport, instrument_rows, is_valid_port_id, new_id, split_port_id,
)
from .port_sync import free_panel_ports, sync_ports, trimmed_slots, with_free_slot
from .registry import (
    BOUNDARY_TYPES, KEYBOARD_ASSIGNABLE_KEYS, PANEL_TYPES, build_internals,
    can_connect, get_node_definition,
)
from .transaction import GraphTxn

log = logging.getLogger(__name__)

Point = Union[QPointF, tuple[float, float]]

ROW_FIELDS = ("label", "spread", "base_note", "base_octave", "base_offset", "key_gains")


def _xy(position: Point) -> tuple[float, float]:
    if isinstance(position, QPointF):
        return position.x(), position.y()
    x, y = position
    return float(x), float(y)


class GraphStore:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings if settings is not None else Settings()
        self._nodes: dict[str, GraphNode] = {}
        self._connections: dict[str, GraphConnection] = {}
        self._root_ids: list[str] = []
        self.selected_node_ids: set[str] = set()
        self.selected_connection_ids: set[str] = set()
        self.history = UndoStack(self.settings.history_size)
        self.clipboard = GraphClipboard()
        self._version = 0
        self._listeners: list[Callable] = []
        self._flash_listeners: list[Callable] = []

    # -----------------------------------------------------------------------
    # Observers
    # -----------------------------------------------------------------------

    def on_change(self, callback: Callable):
        self._listeners.append(callback)

    def notify(self, source=None):
        for cb in self._listeners:
            cb(source)

    def on_flash(self, callback: Callable):
        """Register callback(node_id) for refused deletions of protected nodes."""
        self._flash_listeners.append(callback)

    def _flash(self, node_id: str):
        log.info("[GraphStore] %s is part of its container's boundary and cannot be removed", node_id)
        for cb in self._flash_listeners:
            cb(node_id)

    # -----------------------------------------------------------------------
    # Read surface
    # -----------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    @property
    def root_node_ids(self) -> list[str]:
        return list(self._root_ids)

    def get_nodes(self) -> dict[str, GraphNode]:
        return dict(self._nodes)

    def get_connections(self) -> dict[str, GraphConnection]:
        return dict(self._connections)

    def get_node(self, node_id) -> Optional[GraphNode]:
        return self._nodes.get(node_id)

    def get_connection(self, conn_id) -> Optional[GraphConnection]:
        return self._connections.get(conn_id)

    def get_root_nodes(self) -> list[GraphNode]:
        return [self._nodes[nid] for nid in self._root_ids if nid in self._nodes]

    def get_node_children(self, node_id) -> list[GraphNode]:
        node = self._nodes.get(node_id)
        if node is None:
            return []
        return [self._nodes[c] for c in node.child_ids if c in self._nodes]

    def get_nodes_at_level(self, parent_id: Optional[str] = None) -> list[GraphNode]:
        if parent_id is None:
            return self.get_root_nodes()
        return self.get_node_children(parent_id)

    def get_connections_at_level(self, parent_id: Optional[str] = None) -> list[GraphConnection]:
        ids = {n.node_id for n in self.get_nodes_at_level(parent_id)}
        return [c for c in self._connections.values()
                if c.source_node in ids and c.target_node in ids]

    def get_nodes_by_type(self, node_type: str) -> list[GraphNode]:
        return [n for n in self._nodes.values() if n.node_type == node_type]

    def get_connections_for_node(self, node_id) -> list[GraphConnection]:
        return [c for c in self._connections.values() if c.touches(node_id)]

    def get_connections_for_port(self, node_id, port_id) -> list[GraphConnection]:
        return [c for c in self._connections.values()
                if (c.source_node == node_id and c.source_port == port_id) or
                   (c.target_node == node_id and c.target_port == port_id)]

    def get_descendant_ids(self, node_id) -> list[str]:
        if node_id not in self._nodes:
            return []
        return self._begin().descendants(node_id)[1:]

    def get_bundle_size(self, conn_id) -> int:
        conn = self._connections.get(conn_id)
        if conn is None:
            return 0
        return bundle_size(conn, self._nodes, self._connections.values())

    def is_protected(self, node_id) -> bool:
        node = self._nodes.get(node_id)
        if node is None or node.parent_id is None:
            return False
        parent = self._nodes.get(node.parent_id)
        return parent is not None and node_id in parent.special_nodes

    def can_undo(self) -> bool:
        return self.history.can_undo()

    def can_redo(self) -> bool:
        return self.history.can_redo()

    # -----------------------------------------------------------------------
    # Transaction plumbing
    # -----------------------------------------------------------------------

    def _begin(self) -> GraphTxn:
        return GraphTxn(self._nodes, self._connections, self._root_ids)

    def _snapshot(self) -> dict:
        return capture_state(self._nodes, self._connections)

    def _commit(self, txn: GraphTxn, source: str, record: bool = True):
        if record:
            self.history.push(self._snapshot())
        self._settle(txn)
        self._nodes = txn.nodes
        self._connections = txn.connections
        self._root_ids = [nid for nid in txn.root_ids if nid in txn.nodes]
        self.selected_node_ids &= self._nodes.keys()
        self.selected_connection_ids &= self._connections.keys()
        self._version += 1
        self.notify(source)

    def _settle(self, txn: GraphTxn):
        """Drain txn.effects once.  Never re-enters the public API."""
        fx = txn.effects

        for pid in fx.filled_panels:
            panel = txn.node(pid)
            if panel is None:
                continue
            ports = with_free_slot(panel, txn.connections.values())
            if ports is not None:
                txn.edit(pid).ports = ports
                self._schedule_endpoint(txn, pid)

        for pid in fx.vacated_panels:
            panel = txn.node(pid)
            if panel is None:
                continue
            ports = trimmed_slots(panel, txn.connections.values())
            if ports is not None:
                txn.edit(pid).ports = ports
                self._schedule_endpoint(txn, pid)

        for nid in fx.released_nodes:
            self._release_universal(txn, nid)

        self._resync(txn, fx.resync)

        dead = self._prune_dangling(txn)
        if dead:
            fx.resync = []
            for c in dead:
                for nid in (c.source_node, c.target_node):
                    self._release_universal(txn, nid)
                    self._schedule_endpoint(txn, nid)
            self._resync(txn, fx.resync)

    def _schedule_endpoint(self, txn: GraphTxn, node_id: str):
        """Queue re-sync of whatever mirrors *node_id*'s ports."""
        node = txn.node(node_id)
        if node is None:
            return
        if node.is_container:
            txn.effects.schedule_resync(node_id)
        if node.node_type in BOUNDARY_TYPES and node.parent_id:
            txn.effects.schedule_resync(node.parent_id)

    def _resync(self, txn: GraphTxn, container_ids: Iterable[str]):
        order: list[str] = []
        for cid in container_ids:
            for nid in [cid] + txn.ancestors(cid):
                if nid not in order:
                    order.append(nid)
        order.sort(key=lambda nid: len(txn.ancestors(nid)), reverse=True)
        for nid in order:
            node = txn.node(nid)
            if node is None or not node.is_container:
                continue
            ports = sync_ports(node, txn.children(node), txn.connections.values())
            if ports != node.ports:
                txn.edit(nid).ports = ports

    def _prune_dangling(self, txn: GraphTxn) -> list[GraphConnection]:
        dead = []
        for c in list(txn.connections.values()):
            src, dst = txn.node(c.source_node), txn.node(c.target_node)
            if (src is None or dst is None or
                    src.get_port(c.source_port) is None or dst.get_port(c.target_port) is None):
                txn.drop_connection(c.id)
                dead.append(c)
        if dead:
            log.debug("[GraphStore] pruned %d connections to vanished ports", len(dead))
        return dead

    def _release_universal(self, txn: GraphTxn, node_id: str):
        node = txn.node(node_id)
        if node is None or txn.connections_touching(node_id):
            return
        if any(p.ptype is PortType.UNIVERSAL and p.resolution is not PortResolution.UNRESOLVED
               for p in node.ports):
            for p in txn.edit(node_id).ports:
                if p.ptype is PortType.UNIVERSAL:
                    p.resolution = PortResolution.UNRESOLVED

    def _resolve_universal(self, txn: GraphTxn, node_id: str, ptype: PortType):
        resolution = PortResolution.for_type(ptype)
        node = txn.node(node_id)
        if node is None or resolution is PortResolution.UNRESOLVED:
            return
        if any(p.ptype is PortType.UNIVERSAL and p.resolution is not resolution for p in node.ports):
            for p in txn.edit(node_id).ports:
                if p.ptype is PortType.UNIVERSAL:
                    p.resolution = resolution

    def _endpoint_panel(self, txn: GraphTxn, node_id: str, port_id: str) -> Optional[str]:
        node = txn.node(node_id)
        if node is not None and node.node_type in PANEL_TYPES:
            return node_id
        panel_id, _ = split_port_id(port_id)
        panel = txn.node(panel_id)
        if panel is not None and panel.node_type in PANEL_TYPES:
            return panel_id
        return None

    def _disconnected(self, txn: GraphTxn, conn: GraphConnection):
        """Queue the follow-up work for a connection that was just dropped."""
        for nid, pid in ((conn.source_node, conn.source_port), (conn.target_node, conn.target_port)):
            txn.effects.node_released(nid)
            panel = self._endpoint_panel(txn, nid, pid)
            if panel is not None:
                txn.effects.panel_vacated(panel)
            self._schedule_endpoint(txn, nid)

    def _delete_subtree(self, txn: GraphTxn, node_id: str):
        doomed = set(txn.descendants(node_id))
        for c in list(txn.connections.values()):
            if c.source_node in doomed or c.target_node in doomed:
                txn.drop_connection(c.id)
                self._disconnected(txn, c)
        node = txn.node(node_id)
        parent = txn.node(node.parent_id)
        if parent is not None:
            parent = txn.edit(parent.node_id)
            parent.child_ids = [c for c in parent.child_ids if c != node_id]
            parent.special_nodes = [c for c in parent.special_nodes if c != node_id]
            txn.effects.schedule_resync(parent.node_id)
        else:
            txn.root_ids = [r for r in txn.root_ids if r != node_id]
        for nid in doomed:
            txn.drop(nid)

    # -----------------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------------

    def _next_keyboard_key(self, txn: GraphTxn, parent_id: Optional[str]) -> int:
        used = {n.data.get("assignedKey") for n in txn.nodes.values()
                if n.node_type == "keyboard" and n.parent_id == parent_id}
        return next((k for k in KEYBOARD_ASSIGNABLE_KEYS if k not in used), KEYBOARD_ASSIGNABLE_KEYS[0])

    def add_node(self, node_type: str, position: Point = (0.0, 0.0),
                 parent_id: Optional[str] = None, initial_data: Optional[dict] = None) -> Optional[str]:
        """Create a node from its registry template and return its id.

        Container types come with their internal sub-graph already built and
        their ports synchronised.  Returns None when *parent_id* is unknown or
        cannot hold children.  Raises UnknownNodeTypeError for a type with no
        registry entry.
        """
        defn = get_node_definition(node_type)
        txn = self._begin()
        parent = txn.node(parent_id)
        if parent_id is not None:
            if parent is None:
                log.warning("[GraphStore] add_node: no parent %s", parent_id)
                return None
            if not get_node_definition(parent.node_type).can_hold_children:
                log.warning("[GraphStore] add_node: %s cannot hold children", parent.node_type)
                return None

        data = copy.deepcopy(defn.default_data)
        data.update(copy.deepcopy(initial_data or {}))
        if node_type == "keyboard" and "assignedKey" not in (initial_data or {}):
            data["assignedKey"] = self._next_keyboard_key(txn, parent_id)

        x, y = _xy(position)
        node = GraphNode(
            node_type=node_type,
            node_id=new_id(f"{node_type}-"),
            category=defn.category,
            x=x, y=y,
            data=data,
            ports=copy.deepcopy(defn.default_ports),
            parent_id=parent_id,
        )

        internals = build_internals(node_type)
        if internals is not None:
            for child in internals.children:
                child.parent_id = node.node_id
                txn.put(child)
            for conn in internals.connections:
                txn.put_connection(conn)
            node.child_ids = [c.node_id for c in internals.children]
            node.special_nodes = list(internals.special_ids)
            node.show_empty_inputs = internals.show_empty_inputs
            node.show_empty_outputs = internals.show_empty_outputs
            node.ports = sync_ports(node, internals.children, txn.connections.values())

        txn.put(node)
        if parent is not None:
            parent = txn.edit(parent_id)
            parent.child_ids.append(node.node_id)
            if node_type in BOUNDARY_TYPES:
                txn.effects.schedule_resync(parent_id)
        else:
            txn.root_ids.append(node.node_id)

        self._commit(txn, 'add_node')
        log.debug("[GraphStore] added %s %s", node_type, node.node_id)
        return node.node_id

    def remove_node(self, node_id) -> bool:
        """Delete a node, everything inside it and every wire touching them."""
        if node_id not in self._nodes:
            return False
        if self.is_protected(node_id):
            self._flash(node_id)
            return False
        txn = self._begin()
        self._delete_subtree(txn, node_id)
        self._commit(txn, 'remove_node')
        return True

    def update_node_position(self, node_id, position: Point) -> bool:
        if node_id not in self._nodes:
            return False
        txn = self._begin()
        node = txn.edit(node_id)
        node.x, node.y = _xy(position)
        self._commit(txn, 'node_position')
        return True

    def update_node_data(self, node_id, patch: dict) -> bool:
        """Shallow-merge *patch* into the node's data.

        Boundary nodes re-sync their container (port names follow
        portName / portLabels); registry-declared fields are copied down to
        the node's proxy descendants.
        """
        if node_id not in self._nodes:
            return False
        txn = self._begin()
        node = txn.edit(node_id)
        node.data.update(copy.deepcopy(patch))
        self._schedule_endpoint(txn, node_id)

        defn = get_node_definition(node.node_type)
        fields = {k: patch[k] for k in defn.propagated_fields if k in patch}
        if fields:
            for did in txn.descendants(node_id)[1:]:
                if txn.nodes[did].node_type in defn.proxy_types:
                    txn.edit(did).data.update(copy.deepcopy(fields))

        self._commit(txn, 'node_data')
        return True

    def update_node_ports(self, node_id, ports: list[PortDef]) -> bool:
        """Replace a node's port list.  Wires to removed ports are dropped."""
        if node_id not in self._nodes:
            return False
        ids = [p.port_id for p in ports]
        if len(set(ids)) != len(ids) or not all(is_valid_port_id(pid) for pid in ids):
            log.warning("[GraphStore] update_node_ports: bad port ids %s", ids)
            return False
        txn = self._begin()
        txn.edit(node_id).ports = copy.deepcopy(list(ports))
        self._schedule_endpoint(txn, node_id)
        self._commit(txn, 'node_ports')
        return True

    def move_node(self, node_id, new_parent_id: Optional[str]) -> bool:
        """Re-parent a node.  Wires touching the node itself are dropped.

        Refuses moves that would place a node inside its own subtree.
        """
        node = self._nodes.get(node_id)
        if node is None or node.parent_id == new_parent_id:
            return False
        if self.is_protected(node_id):
            self._flash(node_id)
            return False

        txn = self._begin()
        if new_parent_id is not None:
            new_parent = txn.node(new_parent_id)
            if new_parent is None or not get_node_definition(new_parent.node_type).can_hold_children:
                return False
            if new_parent_id == node_id or node_id in txn.ancestors(new_parent_id):
                log.warning("[GraphStore] move_node: %s would contain itself", node_id)
                return False

        for c in txn.connections_touching(node_id):
            txn.drop_connection(c.id)
            self._disconnected(txn, c)

        old_parent = txn.node(node.parent_id)
        if old_parent is not None:
            old_parent = txn.edit(old_parent.node_id)
            old_parent.child_ids = [c for c in old_parent.child_ids if c != node_id]
            txn.effects.schedule_resync(old_parent.node_id)
        else:
            txn.root_ids = [r for r in txn.root_ids if r != node_id]

        if new_parent_id is not None:
            txn.edit(new_parent_id).child_ids.append(node_id)
            txn.effects.schedule_resync(new_parent_id)
        else:
            txn.root_ids.append(node_id)
        txn.edit(node_id).parent_id = new_parent_id

        self._commit(txn, 'move_node')
        return True

    def set_internal_viewport(self, node_id, viewport: Viewport) -> bool:
        """Remember where the user left a node's inside.

        Not undoable: the viewport is also written into every history
        snapshot holding the node, so undo and redo keep it.
        """
        if node_id not in self._nodes:
            return False
        txn = self._begin()
        txn.edit(node_id).internal_viewport = replace(viewport)
        self._commit(txn, 'viewport', record=False)
        self.history.amend_node(node_id, 'internalViewport', viewport.to_dict())
        return True

    def update_instrument_row(self, node_id, row_id: str, **fields) -> bool:
        """Edit one InstrumentRow (label, spread, base_note, base_octave,
        base_offset, key_gains).  Values are clamped to their ranges."""
        node = self._nodes.get(node_id)
        unknown = set(fields) - set(ROW_FIELDS)
        if node is None or unknown:
            if unknown:
                log.warning("[GraphStore] update_instrument_row: unknown fields %s", sorted(unknown))
            return False
        rows = instrument_rows(node)
        idx = next((i for i, r in enumerate(rows) if r.row_id == row_id), None)
        if idx is None:
            return False
        rows[idx] = replace(rows[idx], **fields)
        txn = self._begin()
        txn.edit(node_id).data["rows"] = [r.to_dict() for r in rows]
        self._commit(txn, 'instrument_row')
        return True

    # -----------------------------------------------------------------------
    # Connections
    # -----------------------------------------------------------------------

    def add_connection(self, source_node, source_port, target_node, target_port) -> Optional[str]:
        """Wire two ports and return the connection id.

        Returns None (and changes nothing) if either endpoint is missing, the
        wire would loop a node onto itself, or the port types / directions
        are incompatible.  Re-adding an existing wire returns its id.
        """
        txn = self._begin()
        src, dst = txn.node(source_node), txn.node(target_node)
        if src is None or dst is None or source_node == target_node:
            return None
        sp, tp = src.get_port(source_port), dst.get_port(target_port)
        if sp is None or tp is None:
            log.debug("[GraphStore] add_connection: no port %s.%s / %s.%s",
                      source_node, source_port, target_node, target_port)
            return None

        conn = GraphConnection(
            id=new_id("conn-"),
            source_node=source_node, source_port=source_port,
            target_node=target_node, target_port=target_port,
            ctype=sp.effective_type() or tp.effective_type() or PortType.UNIVERSAL,
            is_bundled=sp.is_bundled,
        )
        existing = txn.find_connection(conn)
        if existing is not None:
            return existing.id
        if not can_connect(sp, tp):
            return None

        conn = resolve_bundle(txn, conn)
        existing = txn.find_connection(conn)
        if existing is not None:
            return existing.id

        if conn.ctype is PortType.AUDIO and not tp.is_output:
            for old in list(txn.connections.values()):
                if old.target_node == conn.target_node and old.target_port == conn.target_port:
                    txn.drop_connection(old.id)
                    self._disconnected(txn, old)

        for nid, pid in ((conn.source_node, conn.source_port), (conn.target_node, conn.target_port)):
            panel_id = self._endpoint_panel(txn, nid, pid)
            if panel_id is not None:
                panel = self._nodes.get(panel_id)
                _, inner = split_port_id(pid)
                was_free = panel is not None and inner in {
                    p.port_id for p in free_panel_ports(panel, self._connections.values())}
                if was_free:
                    txn.effects.panel_filled(panel_id)
            self._schedule_endpoint(txn, nid)

        txn.put_connection(conn)
        for nid, port in ((conn.source_node, sp), (conn.target_node, tp)):
            if port.ptype is PortType.UNIVERSAL:
                self._resolve_universal(txn, nid, conn.ctype)

        self._commit(txn, 'add_connection')
        return conn.id

    def remove_connection(self, conn_id) -> bool:
        if conn_id not in self._connections:
            return False
        txn = self._begin()
        conn = txn.drop_connection(conn_id)
        self._disconnected(txn, conn)
        self._commit(txn, 'remove_connection')
        return True

    # -----------------------------------------------------------------------
    # Selection (never bumps version)
    # -----------------------------------------------------------------------

    def select_node(self, node_id, add: bool = False):
        if node_id not in self._nodes:
            return
        if add:
            self.selected_node_ids.add(node_id)
        else:
            self.selected_node_ids = {node_id}
            self.selected_connection_ids = set()
        self.notify('selection')

    def select_nodes(self, node_ids: Iterable[str]):
        self.selected_node_ids = {nid for nid in node_ids if nid in self._nodes}
        self.notify('selection')

    def deselect_node(self, node_id):
        self.selected_node_ids.discard(node_id)
        self.notify('selection')

    def select_connection(self, conn_id, add: bool = False):
        if conn_id not in self._connections:
            return
        if add:
            self.selected_connection_ids.add(conn_id)
        else:
            self.selected_connection_ids = {conn_id}
            self.selected_node_ids = set()
        self.notify('selection')

    def clear_selection(self):
        self.selected_node_ids = set()
        self.selected_connection_ids = set()
        self.notify('selection')

    def select_nodes_in_rect(self, rect: QRectF, parent_id: Optional[str] = None,
                             add: bool = False) -> list[str]:
        """Select every node at *parent_id*'s level overlapping *rect*."""
        ids = nodes_in_rect(rect, self.get_nodes_at_level(parent_id))
        if add:
            self.selected_node_ids |= set(ids)
        else:
            self.selected_node_ids = set(ids)
        self.notify('selection')
        return ids

    # -----------------------------------------------------------------------
    # Bulk operations
    # -----------------------------------------------------------------------

    def delete_selected(self) -> bool:
        """Delete selected wires and nodes as one undo step.

        Protected boundary nodes in the selection are skipped (and flashed)
        unless their container is deleted too.
        """
        txn = self._begin()
        changed = False
        for cid in list(self.selected_connection_ids):
            conn = txn.drop_connection(cid)
            if conn is not None:
                self._disconnected(txn, conn)
                changed = True
        # Outermost first, so nodes removed with a selected ancestor are not revisited.
        selected = [n for n in self._nodes if n in self.selected_node_ids]
        for nid in sorted(selected, key=lambda n: len(txn.ancestors(n))):
            node = txn.node(nid)
            if node is None:
                continue
            parent = txn.node(node.parent_id)
            if parent is not None and nid in parent.special_nodes:
                self._flash(nid)
                continue
            self._delete_subtree(txn, nid)
            changed = True
        if not changed:
            return False
        self._commit(txn, 'delete_selected')
        return True

    def clear_graph(self):
        self.selected_node_ids = set()
        self.selected_connection_ids = set()
        self._commit(GraphTxn({}, {}, []), 'clear')

    def load_graph(self, nodes: Union[dict, Iterable[GraphNode]],
                   connections: Union[dict, Iterable[GraphConnection]]):
        """Replace the whole graph (undoable).

        Parent links to missing nodes are cut and wires to missing ports are
        dropped so the loaded graph is consistent.
        """
        node_list = list(nodes.values()) if isinstance(nodes, dict) else list(nodes)
        conn_list = list(connections.values()) if isinstance(connections, dict) else list(connections)
        node_map = {n.node_id: copy.deepcopy(n) for n in node_list}
        for n in node_map.values():
            if n.parent_id is not None and n.parent_id not in node_map:
                log.warning("[GraphStore] load_graph: %s lost parent %s", n.node_id, n.parent_id)
                n.parent_id = None
            n.child_ids = [c for c in n.child_ids
                           if c in node_map and node_map[c].parent_id == n.node_id]
            n.special_nodes = [c for c in n.special_nodes if c in n.child_ids]
        roots = [nid for nid, n in node_map.items() if n.parent_id is None]
        txn = GraphTxn(node_map, {c.id: copy.deepcopy(c) for c in conn_list}, roots)
        self.selected_node_ids = set()
        self.selected_connection_ids = set()
        self._commit(txn, 'load')

    # -----------------------------------------------------------------------
    # Clipboard
    # -----------------------------------------------------------------------

    def copy_selected(self) -> int:
        ids = [nid for nid in self._nodes if nid in self.selected_node_ids]
        return self.clipboard.copy(self._nodes, self._connections, ids)

    def paste_clipboard(self, position: Optional[Point] = None,
                        parent_id: Optional[str] = None) -> list[str]:
        """Insert a fresh copy of the clipboard at *parent_id*'s level.

        The pasted top-level nodes become the selection; their ids are
        returned.
        """
        if not self.clipboard.has_data():
            return []
        if parent_id is not None:
            parent = self._nodes.get(parent_id)
            if parent is None or not get_node_definition(parent.node_type).can_hold_children:
                return []
        at = None if position is None else QPointF(*_xy(position))
        nodes, conns = self.clipboard.paste(parent_id, at, self.settings.paste_offset)

        txn = self._begin()
        top = []
        for node in nodes:
            txn.put(node)
            if node.parent_id == parent_id:
                top.append(node.node_id)
            if node.is_container:
                txn.effects.schedule_resync(node.node_id)
            txn.effects.node_released(node.node_id)
        if parent_id is not None:
            txn.edit(parent_id).child_ids.extend(top)
            txn.effects.schedule_resync(parent_id)
        else:
            txn.root_ids.extend(top)
        for conn in conns:
            txn.put_connection(conn)

        self._commit(txn, 'paste')
        self.selected_node_ids = set(top)
        self.selected_connection_ids = set()
        self.notify('selection')
        return top

    # -----------------------------------------------------------------------
    # History
    # -----------------------------------------------------------------------

    def undo(self) -> bool:
        snapshot = self.history.undo(self._snapshot())
        if snapshot is None:
            return False
        self._restore(snapshot, 'undo')
        return True

    def redo(self) -> bool:
        snapshot = self.history.redo()
        if snapshot is None:
            return False
        self._restore(snapshot, 'redo')
        return True

    def clear_history(self):
        self.history.clear()

    def _restore(self, snapshot: dict, source: str):
        self._nodes, self._connections = restore_state(snapshot)
        self._root_ids = [nid for nid, n in self._nodes.items() if n.parent_id is None]
        self.selected_node_ids = set()
        self.selected_connection_ids = set()
        self._version += 1
        self.notify(source)

    # -----------------------------------------------------------------------
    # Persisted state
    # -----------------------------------------------------------------------

    def to_state_dict(self) -> dict:
        """The persisted subset: graph, root index, selection and history."""
        return {
            'nodes': [[nid, n.to_dict()] for nid, n in self._nodes.items()],
            'connections': [[cid, c.to_dict()] for cid, c in self._connections.items()],
            'rootNodeIds': list(self._root_ids),
            'selectedNodeIds': sorted(self.selected_node_ids),
            'selectedConnectionIds': sorted(self.selected_connection_ids),
            'history': list(self.history.stack),
            'historyIndex': self.history.pointer,
        }

    def load_state_dict(self, d: dict):
        """Restore from a (migrated) to_state_dict() payload."""
        self._nodes = {nid: GraphNode.from_dict(n) for nid, n in d.get('nodes', [])}
        self._connections = {cid: GraphConnection.from_dict(c) for cid, c in d.get('connections', [])}
        roots = d.get('rootNodeIds')
        if roots is None:
            roots = [nid for nid, n in self._nodes.items() if n.parent_id is None]
        self._root_ids = [nid for nid in roots if nid in self._nodes]
        self.selected_node_ids = {i for i in d.get('selectedNodeIds', []) if i in self._nodes}
        self.selected_connection_ids = {i for i in d.get('selectedConnectionIds', [])
                                        if i in self._connections}
        self.history.stack = list(d.get('history', []))
        self.history.pointer = max(-1, min(int(d.get('historyIndex', -1)), len(self.history.stack) - 1))
        self._version += 1
        self.notify('load')
