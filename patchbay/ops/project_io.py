"""Graph persistence, plus workflow file import/export.

Two formats live here:

  Persisted state – the editor's autosave under STORAGE_KEY:
      {"state": {nodes, connections, rootNodeIds, selectedNodeIds,
                 selectedConnectionIds, history, historyIndex},
       "version": 1}
    nodes / connections are [id, record] entry lists.  Loading runs the
    migrations in migrate_state and falls back to an empty graph on any
    parse failure.

  Workflow files – a shareable graph without selection or history:
      {"version": "1.0.0", "name", "createdAt", "nodes", "connections",
       "rootNodeIds"}
    Importing rejects files whose major version differs.
"""

import copy
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from ..graph.graph_model import GraphConnection, GraphNode
from ..undo import restore_state

log = logging.getLogger(__name__)

STORAGE_KEY = 'patchbay-graph-v1'
STATE_VERSION = 1
WORKFLOW_VERSION = '1.0.0'


class StorageQuotaExceeded(Exception):
    """The serialised graph does not fit in the storage quota."""


# ---- Key/value storage ----

class GraphStorage:
    """Directory of JSON documents addressed by key, each capped at *quota* bytes."""

    def __init__(self, directory, quota: Optional[int] = None):
        self.directory = Path(directory)
        self.quota = quota

    def _path(self, key: str) -> Path:
        return self.directory / f'{key}.json'

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text()

    def set_item(self, key: str, text: str):
        size = len(text.encode('utf-8'))
        if self.quota is not None and size > self.quota:
            raise StorageQuotaExceeded(f'{key}: {size} bytes exceeds quota of {self.quota}')
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(key).write_text(text)

    def remove_item(self, key: str):
        self._path(key).unlink(missing_ok=True)


def storage_from_settings(settings) -> GraphStorage:
    return GraphStorage(settings.storage_dir, settings.storage_quota)


# ---- Migrations ----

def _fix_legacy_type(d: dict) -> dict:
    if d.get('type') == 'technical':
        d['type'] = 'control'
    if d.get('resolvedType') == 'technical':
        d['resolvedType'] = 'control'
    return d


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _str_list(value) -> list:
    return [v for v in value if isinstance(v, str)] if isinstance(value, list) else []


def _number(value, default: Optional[float]) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return default


def _migrate_port(d: dict) -> Optional[dict]:
    if not isinstance(d.get('id'), str):
        return None
    pos = _as_dict(d.get('position'))
    if _number(pos.get('x'), None) is None or _number(pos.get('y'), None) is None:
        d.pop('position', None)
    return _fix_legacy_type(d)


def _migrate_node(d: dict) -> Optional[dict]:
    """Coerce one node record into loadable shape, or None if it has no id/type."""
    if not isinstance(d.get('id'), str) or not isinstance(d.get('type'), str):
        return None
    ports = d.get('ports')
    if not isinstance(ports, list):
        ports = []
    d['ports'] = [p for p in (_migrate_port(p) for p in ports if isinstance(p, dict))
                  if p is not None]

    pos = _as_dict(d.get('position'))
    d['position'] = {'x': _number(pos.get('x'), 0.0), 'y': _number(pos.get('y'), 0.0)}
    d['data'] = _as_dict(d.get('data'))
    rows = d['data'].get('rows')
    if rows is not None:
        d['data']['rows'] = [r for r in rows if isinstance(r, dict) and 'rowId' in r] \
            if isinstance(rows, list) else []
    if not isinstance(d.get('parentId'), str):
        d['parentId'] = None
    d['childIds'] = _str_list(d.get('childIds'))
    d['specialNodes'] = _str_list(d.get('specialNodes'))

    vp = d.get('internalViewport')
    if isinstance(vp, dict):
        pan = _as_dict(vp.get('pan'))
        d['internalViewport'] = {
            'pan': {'x': _number(pan.get('x'), 0.0), 'y': _number(pan.get('y'), 0.0)},
            'zoom': _number(vp.get('zoom'), 1.0),
        }
    else:
        d.pop('internalViewport', None)
    return d


def _migrate_connection(d: dict) -> Optional[dict]:
    for key in ('sourceNodeId', 'sourcePortId', 'targetNodeId', 'targetPortId'):
        if not isinstance(d.get(key), str):
            return None
    return _fix_legacy_type(d)


def _entries(value, migrate) -> list:
    """Keep well-formed [id, record] pairs; the record's own id follows the key."""
    if not isinstance(value, list):
        return []
    out = []
    for entry in value:
        if not (isinstance(entry, (list, tuple)) and len(entry) == 2):
            continue
        key, record = entry
        if not isinstance(key, str) or not isinstance(record, dict):
            continue
        if record.get('id') is None:
            record['id'] = key
        if record['id'] != key:
            continue
        record = migrate(record)
        if record is not None:
            out.append([key, record])
    return out


def _migrate_snapshot(snapshot) -> Optional[dict]:
    """Migrate one history entry; None if it would not restore."""
    if not isinstance(snapshot, dict):
        return None
    out = {
        'nodes': _entries(snapshot.get('nodes'), _migrate_node),
        'connections': _entries(snapshot.get('connections'), _migrate_connection),
    }
    try:
        restore_state(out)
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        log.warning("[ProjectIO] dropping unrestorable history entry: %s", e)
        return None
    return out


def empty_state() -> dict:
    return {
        'nodes': [], 'connections': [], 'rootNodeIds': [],
        'selectedNodeIds': [], 'selectedConnectionIds': [],
        'history': [], 'historyIndex': -1,
    }


def migrate_state(raw: dict) -> dict:
    """Bring a persisted state payload up to the current schema.

    - non-list fields become empty lists
    - legacy 'technical' type tags become 'control'
    - node fields of the wrong shape are reset to their defaults; records
      without a string id and type are dropped
    - a missing rootNodeIds index is recomputed from parentId
    - history entries that cannot be restored are dropped and historyIndex
      shifted to keep pointing at the same entry
    """
    state = copy.deepcopy(raw)
    out = empty_state()
    out['nodes'] = _entries(state.get('nodes'), _migrate_node)
    out['connections'] = _entries(state.get('connections'), _migrate_connection)

    roots = state.get('rootNodeIds')
    if isinstance(roots, list):
        out['rootNodeIds'] = [r for r in roots if isinstance(r, str)]
    else:
        out['rootNodeIds'] = [nid for nid, n in out['nodes'] if n.get('parentId') is None]

    for key in ('selectedNodeIds', 'selectedConnectionIds'):
        out[key] = _str_list(state.get(key))

    index = state.get('historyIndex')
    if not isinstance(index, int) or isinstance(index, bool):
        index = -1
    history = state.get('history')
    if isinstance(history, list):
        for i, entry in enumerate(history):
            snapshot = _migrate_snapshot(entry)
            if snapshot is not None:
                out['history'].append(snapshot)
            elif i <= index:
                index -= 1
    out['historyIndex'] = max(-1, min(index, len(out['history']) - 1))
    return out


# ---- Persisted state ----

def dump_state(store) -> str:
    return json.dumps({'state': store.to_state_dict(), 'version': STATE_VERSION})


def parse_state(text: Optional[str]) -> dict:
    """Parse a persisted document; any failure yields an empty state."""
    if not text:
        return empty_state()
    try:
        doc = json.loads(text)
        state = doc['state']
        if not isinstance(state, dict):
            raise TypeError(f"'state' is {type(state).__name__}, not an object")
        return migrate_state(state)
    except (ValueError, KeyError, TypeError) as e:
        log.warning("[ProjectIO] discarding unreadable persisted state: %s", e)
        return empty_state()


def save_store(store, storage: GraphStorage, key: str = STORAGE_KEY) -> bool:
    """Persist the store.

    If the document exceeds the storage quota, history is dropped and the
    write retried once; a second failure is logged and reported as False.
    """
    try:
        storage.set_item(key, dump_state(store))
        return True
    except StorageQuotaExceeded as e:
        log.warning("[ProjectIO] %s; retrying without undo history", e)
    store.clear_history()
    try:
        storage.set_item(key, dump_state(store))
        return True
    except StorageQuotaExceeded as e:
        log.error("[ProjectIO] graph not saved: %s", e)
        return False


def load_store(store, storage: GraphStorage, key: str = STORAGE_KEY) -> bool:
    """Restore the store from *storage*.  Returns False if nothing usable was stored."""
    text = storage.get_item(key)
    state = parse_state(text)
    try:
        store.load_state_dict(state)
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        log.warning("[ProjectIO] persisted graph is malformed, starting empty: %s", e)
        store.load_state_dict(empty_state())
        return False
    return bool(text) and bool(state['nodes'])


# ---- Workflow import / export ----

def export_workflow(store, name: str = 'Untitled') -> dict:
    return {
        'version': WORKFLOW_VERSION,
        'name': name,
        'createdAt': datetime.now(timezone.utc).isoformat(),
        'nodes': [n.to_dict() for n in store.get_nodes().values()],
        'connections': [c.to_dict() for c in store.get_connections().values()],
        'rootNodeIds': store.root_node_ids,
    }


def _records(value) -> list:
    return [d for d in value if isinstance(d, dict)] if isinstance(value, list) else []


def import_workflow(store, source: Union[str, dict]) -> int:
    """Replace the store's graph with a workflow (undoable).

    Returns the number of nodes loaded.  Raises ValueError if *source* is not
    a workflow or was written by an incompatible major version.
    """
    data = json.loads(source) if isinstance(source, str) else source
    version = data.get('version') if isinstance(data, dict) else None
    if not isinstance(version, str):
        raise ValueError("Not a patchbay workflow: missing version")
    if version.split('.')[0] != WORKFLOW_VERSION.split('.')[0]:
        raise ValueError(
            f"Workflow version {version!r} is not compatible with {WORKFLOW_VERSION!r}"
        )
    nodes = [_migrate_node(copy.deepcopy(d)) for d in _records(data.get('nodes'))]
    conns = [_migrate_connection(copy.deepcopy(d)) for d in _records(data.get('connections'))]
    nodes = [GraphNode.from_dict(d) for d in nodes if d is not None]
    conns = [GraphConnection.from_dict(d) for d in conns if d is not None]
    store.load_graph(nodes, conns)
    log.info("[ProjectIO] imported workflow %r (%d nodes)", data.get('name'), len(nodes))
    return len(nodes)


def save_workflow(store, path: str, name: Optional[str] = None):
    """Write the graph to a workflow file.  Raises on I/O error."""
    data = export_workflow(store, name or Path(path).stem)
    with open(path, 'w') as f:
        json.dump(data, f, indent=2)


def load_workflow(store, path: str) -> int:
    """Load a workflow file.  Raises on I/O or JSON errors, ValueError on version."""
    with open(path) as f:
        return import_workflow(store, json.load(f))
