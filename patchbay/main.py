#!/usr/bin/env python3
"""Patchbay - hierarchical patch graph, headless command line.

Loads the autosaved graph from the storage directory and inspects or
converts it.

Usage:
    python -m patchbay.main [tree]                 # print the level tree
    python -m patchbay.main export FILE [--name N] # write a workflow file
    python -m patchbay.main import FILE            # replace graph from a workflow
    python -m patchbay.main demo                   # keyboard → piano → speaker
"""
import argparse
import logging
import sys
from pathlib import Path

# Allow running as a script (python patchbay/main.py) in addition to
# running as a module (python -m patchbay.main).
if not __package__:
    _parent = str(Path(__file__).resolve().parent.parent)
    if _parent not in sys.path:
        sys.path.insert(0, _parent)
    __package__ = "patchbay"

from .core.settings import Settings
from .graph.store import GraphStore
from .ops.project_io import (
    load_store, load_workflow, save_store, save_workflow, storage_from_settings,
)


def format_tree(store, parent_id=None, depth=0) -> list[str]:
    lines = []
    for node in store.get_nodes_at_level(parent_id):
        marker = '*' if store.is_protected(node.node_id) else '-'
        ports = f"{len(node.input_ports())} in / {len(node.output_ports())} out"
        lines.append(f"{'  ' * depth}{marker} {node.node_type} [{node.node_id}] ({ports})")
        lines.extend(format_tree(store, node.node_id, depth + 1))
    return lines


def build_demo(store):
    """Keyboard feeding a piano feeding a speaker."""
    kb = store.add_node('keyboard', (0, 0))
    piano = store.add_node('piano', (300, 0))
    speaker = store.add_node('speaker', (600, 0))
    keys = next(p for p in store.get_node(kb).output_ports() if p.is_bundled)
    notes_in = store.get_node(piano).input_ports()[0]
    audio_out = store.get_node(piano).output_ports()[0]
    store.add_connection(kb, keys.port_id, piano, notes_in.port_id)
    store.add_connection(piano, audio_out.port_id, speaker, 'audio-in')


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Patchbay - hierarchical patch graph')
    parser.add_argument('--settings', type=str, default=None,
                        help='Path to settings.json (default ~/.config/patchbay/settings.json)')
    parser.add_argument('--storage', type=str, default=None,
                        help='Directory holding the autosaved graph')
    parser.add_argument('--debug', action='store_true', help='Verbose logging')
    sub = parser.add_subparsers(dest='command')
    sub.add_parser('tree', help='Print the graph as a level tree')
    p_export = sub.add_parser('export', help='Write the graph to a workflow file')
    p_export.add_argument('path')
    p_export.add_argument('--name', default=None)
    p_import = sub.add_parser('import', help='Replace the graph with a workflow file')
    p_import.add_argument('path')
    sub.add_parser('demo', help='Replace the graph with a small example patch')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format='%(levelname)s %(name)s: %(message)s')

    settings = Settings(args.settings)
    if args.storage:
        settings.storage_dir = args.storage
    store = GraphStore(settings)
    storage = storage_from_settings(settings)
    load_store(store, storage)

    command = args.command or 'tree'
    if command == 'export':
        save_workflow(store, args.path, args.name)
        print(f"Exported {len(store.get_nodes())} nodes to {args.path}")
        return 0
    if command == 'import':
        try:
            count = load_workflow(store, args.path)
        except ValueError as e:
            print(f"Import failed: {e}", file=sys.stderr)
            return 1
        print(f"Imported {count} nodes")
    elif command == 'demo':
        store.clear_graph()
        build_demo(store)

    if command in ('import', 'demo') and not save_store(store, storage):
        return 1
    for line in format_tree(store):
        print(line)
    return 0


if __name__ == '__main__':
    sys.exit(main())
