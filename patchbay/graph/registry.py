"""Node definition registry.

Maps a node type string to its category, default ports, default data, canvas
dimensions and (for container types) the template of its internal sub-graph.

Node types:

  Input:
    keyboard         – computer keyboard as a 30-key controller; bundled "keys"
                       output reflected from its output panel
    microphone       – audio source
    midi             – external MIDI controller; bundled "pads" and "knobs"

  Instruments (control in → audio out), all sharing one template:
    piano, cello, violin, saxophone, strings, keys, winds, instrument

  Effects / routing:
    effect, amplifier, looper, add, subtract, container

  Output:
    speaker, recorder

  Boundary (only meaningful inside a container):
    canvas-input     – one control/audio output inside; one input outside
    canvas-output    – one input inside; one output outside
    input-panel      – many outputs inside; mirrored as container inputs
    output-panel     – many inputs inside; mirrored as container outputs

  Internal proxies:
    keyboard-visual, midi-visual, instrument-visual
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Optional

from .graph_model import (
    Direction, GraphConnection, GraphNode, PortDef, PortType, new_id,
)


class UnknownNodeTypeError(KeyError):
    """A node type with no registry entry was requested."""


INPUT, OUTPUT = Direction.INPUT, Direction.OUTPUT

DEFAULT_NODE_SIZE = (200.0, 150.0)

BOUNDARY_TYPES = frozenset({"canvas-input", "canvas-output", "input-panel", "output-panel"})
PANEL_TYPES = frozenset({"input-panel", "output-panel"})

INSTRUMENT_TYPES = ("piano", "cello", "violin", "saxophone", "strings", "keys", "winds", "instrument")

KEYBOARD_ASSIGNABLE_KEYS = tuple(range(2, 10))

# Rows of a QWERTY keyboard used as keys, top to bottom, plus the space bar.
KEYBOARD_KEYS = (
    list("qwertyuiop") + list("asdfghjkl") +
    list("zxcvbnm") + ["comma", "period", "slash"] + ["space"]
)
KEYBOARD_KEY_LABELS = (
    list("QWERTYUIOP") + list("ASDFGHJKL") +
    list("ZXCVBNM") + [",", ".", "/"] + ["Space"]
)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

@dataclass
class InternalStructure:
    """A freshly materialised internal sub-graph (ids already assigned)."""
    children: list[GraphNode]
    connections: list[GraphConnection]
    special_ids: list[str]
    show_empty_inputs: bool = False
    show_empty_outputs: bool = False


@dataclass
class NodeDefinition:
    node_type: str
    category: str
    name: str
    description: str = ""
    default_ports: list[PortDef] = field(default_factory=list)
    default_data: dict = field(default_factory=dict)
    dimensions: tuple[float, float] = DEFAULT_NODE_SIZE
    internals: Optional[Callable[[], InternalStructure]] = None
    # data keys copied onto descendants of the given proxy types
    propagated_fields: tuple[str, ...] = ()
    proxy_types: tuple[str, ...] = ()

    @property
    def can_hold_children(self) -> bool:
        return self.internals is not None


def _port(port_id, name, ptype, direction, is_bundled=False) -> PortDef:
    return PortDef(port_id=port_id, name=name, ptype=ptype,
                   direction=direction, is_bundled=is_bundled)


def _child(node_type: str, x: float, y: float, ports: list[PortDef], data: Optional[dict] = None) -> GraphNode:
    defn = get_node_definition(node_type)
    return GraphNode(
        node_type=node_type,
        node_id=new_id(f"{node_type}-"),
        category=defn.category,
        x=x, y=y,
        data=dict(data or {}),
        ports=ports,
    )


def _wire(src: GraphNode, src_port: str, dst: GraphNode, dst_port: str, ptype: PortType) -> GraphConnection:
    return GraphConnection(
        id=new_id("conn-"),
        source_node=src.node_id, source_port=src_port,
        target_node=dst.node_id, target_port=dst_port,
        ctype=ptype,
    )


# -- Internal templates --

def _keyboard_internals() -> InternalStructure:
    keys = [_port(f"key-{k}", label, PortType.CONTROL, OUTPUT)
            for k, label in zip(KEYBOARD_KEYS, KEYBOARD_KEY_LABELS)]
    visual = _child("keyboard-visual", 0, 0, keys)
    out_panel = _child(
        "output-panel", 600, 0,
        [_port("keys", "Keys", PortType.CONTROL, INPUT, is_bundled=True)],
        {"portLabels": {"keys": "Keys"}},
    )
    in_panel = _child(
        "input-panel", -400, 0,
        [_port("port-1", "", PortType.CONTROL, OUTPUT)],
    )
    wires = [_wire(visual, p.port_id, out_panel, "keys", PortType.CONTROL) for p in keys]
    return InternalStructure(
        children=[in_panel, visual, out_panel],
        connections=wires,
        special_ids=[in_panel.node_id, out_panel.node_id],
    )


MIDI_PAD_COUNT = 8
MIDI_KNOB_COUNT = 8


def _midi_internals() -> InternalStructure:
    pads = [_port(f"pad-{i + 1}", f"Pad {i + 1}", PortType.CONTROL, OUTPUT)
            for i in range(MIDI_PAD_COUNT)]
    knobs = [_port(f"knob-{i + 1}", f"Knob {i + 1}", PortType.CONTROL, OUTPUT)
             for i in range(MIDI_KNOB_COUNT)]
    visual = _child("midi-visual", 0, 0, pads + knobs, {"deviceId": None, "presetId": "generic"})
    out_panel = _child(
        "output-panel", 600, 0,
        [_port("pads", "Pads", PortType.CONTROL, INPUT, is_bundled=True),
         _port("knobs", "Knobs", PortType.CONTROL, INPUT, is_bundled=True)],
        {"portLabels": {"pads": "Pads", "knobs": "Knobs"}},
    )
    wires = [_wire(visual, p.port_id, out_panel, "pads", PortType.CONTROL) for p in pads]
    wires += [_wire(visual, p.port_id, out_panel, "knobs", PortType.CONTROL) for p in knobs]
    return InternalStructure(
        children=[visual, out_panel],
        connections=wires,
        special_ids=[out_panel.node_id],
    )


def _instrument_internals() -> InternalStructure:
    in_panel = _child(
        "input-panel", -400, 0,
        [_port("port-1", "", PortType.CONTROL, OUTPUT)],
    )
    visual = _child("instrument-visual", 0, 0,
                    [_port("audio-out", "Audio", PortType.AUDIO, OUTPUT)])
    out = _child("canvas-output", 400, 0,
                 [_port("in", "Audio Out", PortType.AUDIO, INPUT)],
                 {"portName": "Audio Out"})
    return InternalStructure(
        children=[in_panel, visual, out],
        connections=[_wire(visual, "audio-out", out, "in", PortType.AUDIO)],
        special_ids=[in_panel.node_id, out.node_id],
        show_empty_inputs=True,
    )


def _container_internals() -> InternalStructure:
    in_panel = _child(
        "input-panel", -400, 0,
        [_port("port-1", "In 1", PortType.UNIVERSAL, OUTPUT),
         _port("port-2", "In 2", PortType.UNIVERSAL, OUTPUT)],
        {"portLabels": {"port-1": "In 1", "port-2": "In 2"}},
    )
    out_panel = _child(
        "output-panel", 400, 0,
        [_port("port-1", "Out", PortType.UNIVERSAL, INPUT)],
        {"portLabels": {"port-1": "Out"}},
    )
    return InternalStructure(
        children=[in_panel, out_panel],
        connections=[],
        special_ids=[in_panel.node_id, out_panel.node_id],
        show_empty_inputs=True,
        show_empty_outputs=True,
    )


# -- Table --

def _leaf(node_type, category, name, ports, data=None, description="") -> NodeDefinition:
    return NodeDefinition(node_type, category, name, description, ports, dict(data or {}))


_DEFINITIONS: dict[str, NodeDefinition] = {}


def register(defn: NodeDefinition) -> None:
    _DEFINITIONS[defn.node_type] = defn


for _d in [
    NodeDefinition(
        "keyboard", "input", "Keyboard", "Computer keyboard as a 30-key controller",
        default_data={"assignedKey": 2, "keyCount": len(KEYBOARD_KEYS), "activeRow": 0,
                      "rowOctaves": [4, 4, 4]},
        internals=_keyboard_internals,
    ),
    NodeDefinition(
        "midi", "input", "MIDI Controller", "External MIDI device",
        default_data={"deviceId": None, "presetId": "generic", "activeChannel": 0},
        internals=_midi_internals,
        propagated_fields=("deviceId", "presetId"),
        proxy_types=("midi-visual",),
    ),
    _leaf("microphone", "input", "Microphone",
          [_port("audio-out", "Audio", PortType.AUDIO, OUTPUT)],
          {"deviceId": None, "gain": 1.0}),
    _leaf("keyboard-visual", "input", "Keys", []),
    _leaf("midi-visual", "input", "MIDI Device", []),
    _leaf("instrument-visual", "instruments", "Instrument", []),
    _leaf("effect", "effects", "Effect",
          [_port("audio-in", "In", PortType.AUDIO, INPUT),
           _port("audio-out", "Out", PortType.AUDIO, OUTPUT),
           _port("mix", "Mix", PortType.CONTROL, INPUT)],
          {"effectType": "reverb", "mix": 0.5}),
    _leaf("amplifier", "effects", "Amplifier",
          [_port("audio-in", "In", PortType.AUDIO, INPUT),
           _port("audio-out", "Out", PortType.AUDIO, OUTPUT),
           _port("gain", "Gain", PortType.CONTROL, INPUT)],
          {"gain": 1.0}),
    _leaf("looper", "effects", "Looper",
          [_port("audio-in", "In", PortType.AUDIO, INPUT),
           _port("audio-out", "Out", PortType.AUDIO, OUTPUT),
           _port("trigger", "Trigger", PortType.CONTROL, INPUT)],
          {"duration": 10, "loops": []}),
    _leaf("add", "utility", "Add",
          [_port("in-1", "A", PortType.UNIVERSAL, INPUT),
           _port("in-2", "B", PortType.UNIVERSAL, INPUT),
           _port("out", "Out", PortType.UNIVERSAL, OUTPUT)]),
    _leaf("subtract", "utility", "Subtract",
          [_port("in-1", "A", PortType.UNIVERSAL, INPUT),
           _port("in-2", "B", PortType.UNIVERSAL, INPUT),
           _port("out", "Out", PortType.UNIVERSAL, OUTPUT)]),
    _leaf("speaker", "output", "Speaker",
          [_port("audio-in", "In", PortType.AUDIO, INPUT)],
          {"volume": 0.8, "isMuted": False}),
    _leaf("recorder", "output", "Recorder",
          [_port("audio-in", "In", PortType.AUDIO, INPUT)],
          {"recordings": []}),
    NodeDefinition(
        "container", "routing", "Container", "Groups nodes behind a panel boundary",
        default_data={"name": "Container"},
        internals=_container_internals,
    ),
    _leaf("canvas-input", "routing", "Input",
          [_port("out", "Out", PortType.CONTROL, OUTPUT)], {"portName": "Input"}),
    _leaf("canvas-output", "routing", "Output",
          [_port("in", "In", PortType.CONTROL, INPUT)], {"portName": "Output"}),
    _leaf("input-panel", "routing", "Inputs", [], {"portLabels": {}}),
    _leaf("output-panel", "routing", "Outputs", [], {"portLabels": {}}),
]:
    register(_d)

for _t in INSTRUMENT_TYPES:
    register(NodeDefinition(
        _t, "instruments", _t.capitalize(), f"{_t.capitalize()} voice",
        default_data={"instrumentId": _t, "rows": []},
        internals=_instrument_internals,
    ))


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

def get_node_definition(node_type: str) -> NodeDefinition:
    try:
        return _DEFINITIONS[node_type]
    except KeyError:
        raise UnknownNodeTypeError(node_type) from None


def node_types() -> list[str]:
    return list(_DEFINITIONS)


def node_size(node_type: str) -> tuple[float, float]:
    defn = _DEFINITIONS.get(node_type)
    return defn.dimensions if defn else DEFAULT_NODE_SIZE


def build_internals(node_type: str) -> Optional[InternalStructure]:
    builder = get_node_definition(node_type).internals
    return builder() if builder else None


def is_instrument(node: GraphNode) -> bool:
    return node.category == "instruments" and node.node_type != "instrument-visual"


# ---------------------------------------------------------------------------
# Connection rules
# ---------------------------------------------------------------------------

def can_connect(source: PortDef, target: PortDef) -> bool:
    """Return True if a wire from *source* to *target* is allowed.

    Rules:
      - Effective types must match; an unresolved universal matches anything.
      - Audio runs output → input only.  So does a wire between two
        unresolved universal ports.
      - Control may run in either direction.
    """
    s, t = source.effective_type(), target.effective_type()
    if s is not None and t is not None and s != t:
        return False
    concrete = s or t
    if concrete is PortType.AUDIO or concrete is None:
        return source.is_output and not target.is_output
    return True
