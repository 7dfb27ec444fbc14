"""Patch graph package.

Public surface:
  GraphNode, GraphConnection, PortDef, PortType,
  Direction, PortResolution, InstrumentRow, Viewport  – model primitives
  get_node_definition, can_connect                    – registry lookups
  sync_ports                                          – container port reflection

GraphStore lives in patchbay.graph.store and is imported from there.
"""

from .graph_model import (
    Direction, GraphConnection, GraphNode, InstrumentRow,
    PortDef, PortResolution, PortType, Viewport,
)
from .registry import UnknownNodeTypeError, can_connect, get_node_definition
from .port_sync import sync_ports

__all__ = [
    "Direction", "GraphConnection", "GraphNode", "InstrumentRow",
    "PortDef", "PortResolution", "PortType", "Viewport",
    "UnknownNodeTypeError", "can_connect", "get_node_definition", "sync_ports",
]
