"""Navigation through nested graph levels.

The cursor tracks which node's inside is on screen (None = the root level)
and the viewport in use there.  Leaving a level stores its viewport, on the
node itself for inner levels or on the cursor for the root, so that coming
back restores it.  A level seen for the first time is auto-fitted to its
children.
"""

import logging
from dataclasses import replace
from typing import List, Optional

from .clipboard import node_rect
from .graph.graph_model import GraphNode, Viewport

log = logging.getLogger(__name__)


class NavigationCursor:
    def __init__(self, store, settings=None):
        self.store = store
        self.settings = settings if settings is not None else store.settings
        self.current_view_node_id: Optional[str] = None
        self.viewport = Viewport()
        self.root_viewport: Optional[Viewport] = None

    def set_viewport(self, pan_x: float, pan_y: float, zoom: float):
        self.viewport = Viewport(pan_x, pan_y, zoom)

    # -- Level changes --

    def enter_node(self, node_id) -> bool:
        """Show the inside of *node_id*.  Unknown ids are ignored."""
        if self.store.get_node(node_id) is None:
            log.warning("[Navigation] cannot enter unknown node %s", node_id)
            return False
        if node_id == self.current_view_node_id:
            return True
        self._save_current()
        self._show(node_id)
        return True

    def exit_to_parent(self) -> bool:
        if self.current_view_node_id is None:
            return False
        node = self.store.get_node(self.current_view_node_id)
        if node is None:
            self.exit_to_root()
            return True
        self._save_current()
        self._show(node.parent_id)
        return True

    def exit_to_root(self):
        if self.current_view_node_id is None:
            return
        self._save_current()
        self._show(None)

    def _save_current(self):
        if self.current_view_node_id is None:
            self.root_viewport = replace(self.viewport)
        elif self.store.get_node(self.current_view_node_id) is not None:
            self.store.set_internal_viewport(self.current_view_node_id, self.viewport)

    def _show(self, node_id: Optional[str]):
        self.current_view_node_id = node_id
        if node_id is None:
            saved = self.root_viewport
        else:
            saved = self.store.get_node(node_id).internal_viewport
        self.viewport = replace(saved) if saved is not None else self.fit_level(node_id)
        self.store.clear_selection()

    # -- Queries --

    def get_current_path(self) -> List[GraphNode]:
        """Nodes from the outermost entered node down to the current one."""
        path = []
        seen = set()
        node = self.store.get_node(self.current_view_node_id)
        while node is not None and node.node_id not in seen:
            seen.add(node.node_id)
            path.append(node)
            node = self.store.get_node(node.parent_id)
        path.reverse()
        return path

    def get_current_depth(self) -> int:
        return len(self.get_current_path())

    def fit_level(self, node_id: Optional[str]) -> Viewport:
        """Viewport that frames every node at *node_id*'s level."""
        s = self.settings
        children = self.store.get_nodes_at_level(node_id)
        if not children:
            return Viewport(s.view_width / 2, s.view_height / 2, 1.0)

        box = node_rect(children[0])
        for child in children[1:]:
            box = box.united(node_rect(child))
        zoom = min(s.view_width / box.width(), s.view_height / box.height()) * s.fit_padding
        zoom = max(s.min_zoom, min(s.max_zoom, zoom))
        center = box.center()
        return Viewport(s.view_width / 2 - center.x() * zoom,
                        s.view_height / 2 - center.y() * zoom,
                        zoom)
