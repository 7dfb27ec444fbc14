"""Tests for patchbay.graph.graph_model and patchbay.graph.registry."""

import pytest

from patchbay.graph.graph_model import (
    Direction, GraphConnection, GraphNode, InstrumentRow, PortDef,
    PortResolution, PortType, Viewport, composite_port_id, is_valid_port_id,
    split_port_id,
)
from patchbay.graph.registry import (
    KEYBOARD_KEYS, UnknownNodeTypeError, build_internals, can_connect,
    get_node_definition, node_size, node_types,
)


def port(ptype, direction, resolution=PortResolution.UNRESOLVED):
    return PortDef("p", "P", ptype, direction, resolution=resolution)


class TestPortIds:
    """Plain and composite port id handling."""

    def test_valid_plain_ids(self):
        assert is_valid_port_id("port-1")
        assert is_valid_port_id("key_q")

    def test_invalid_plain_ids(self):
        assert not is_valid_port_id("")
        assert not is_valid_port_id("1port")
        assert not is_valid_port_id("has space")
        assert not is_valid_port_id(None)
        assert not is_valid_port_id("a" * 257)

    def test_composite_ids(self):
        assert is_valid_port_id("panel-1:port-1")
        assert not is_valid_port_id("a:b:c")
        assert not is_valid_port_id(":b")
        assert not is_valid_port_id("a:")

    def test_split_and_join(self):
        cid = composite_port_id("panel-1", "ch-0")
        assert cid == "panel-1:ch-0"
        assert split_port_id(cid) == ("panel-1", "ch-0")
        assert split_port_id("plain") == (None, "plain")


class TestSerialisation:
    """to_dict / from_dict of model records."""

    def test_port_round_trip(self):
        p = PortDef("in", "In", PortType.UNIVERSAL, Direction.INPUT,
                    position=(0.0, 0.5), resolution=PortResolution.AUDIO)
        d = p.to_dict()
        assert d["resolvedType"] == "audio"
        assert d["position"] == {"x": 0.0, "y": 0.5}
        assert PortDef.from_dict(d) == p

    def test_legacy_technical_type(self):
        p = PortDef.from_dict({"id": "x", "type": "technical", "direction": "output"})
        assert p.ptype is PortType.CONTROL
        c = GraphConnection.from_dict({
            "id": "c", "sourceNodeId": "a", "sourcePortId": "x",
            "targetNodeId": "b", "targetPortId": "y", "type": "technical",
        })
        assert c.ctype is PortType.CONTROL

    def test_node_round_trip(self):
        node = GraphNode(
            node_type="container", node_id="n1", category="routing", x=10, y=20,
            data={"name": "Box"},
            ports=[PortDef("a:b", "In", PortType.UNIVERSAL, Direction.INPUT)],
            parent_id=None, child_ids=["a"], special_nodes=["a"],
            internal_viewport=Viewport(1, 2, 0.5),
            show_empty_inputs=True,
        )
        d = node.to_dict()
        assert d["internalViewport"] == {"pan": {"x": 1, "y": 2}, "zoom": 0.5}
        assert GraphNode.from_dict(d).to_dict() == d

    def test_from_dict_copies_data(self):
        d = {"id": "n", "type": "speaker", "data": {"volume": 1}}
        node = GraphNode.from_dict(d)
        node.data["volume"] = 0
        assert d["data"]["volume"] == 1


class TestInstrumentRow:
    """InstrumentRow defaults and clamping."""

    def test_defaults(self):
        row = InstrumentRow("r", "kb", "p:keys", "panel:r-ch-0", port_count=4)
        assert row.spread == 0.5
        assert row.base_octave == 4
        assert row.key_gains == [1.0, 1.0, 1.0, 1.0]

    def test_clamps_ranges(self):
        row = InstrumentRow("r", "kb", "k", "t", base_note=9, base_octave=-1,
                            base_offset=40, port_count=2, key_gains=[0.5, 0.2, 0.9])
        assert row.base_note == 6
        assert row.base_octave == 0
        assert row.base_offset == 24
        assert row.key_gains == [0.5, 0.2]

    def test_round_trip(self):
        row = InstrumentRow("r", "kb", "k", "t", label="Keys", port_count=3)
        assert InstrumentRow.from_dict(row.to_dict()) == row


class TestRegistry:
    """Node definitions and templates."""

    def test_unknown_type_raises(self):
        with pytest.raises(UnknownNodeTypeError):
            get_node_definition("theremin")
        with pytest.raises(KeyError):
            get_node_definition("theremin")

    def test_instrument_category(self):
        for t in ("piano", "cello", "violin", "saxophone", "strings", "keys", "winds", "instrument"):
            assert get_node_definition(t).category == "instruments"

    def test_all_types_registered(self):
        expected = {
            "keyboard", "keyboard-visual", "microphone", "midi", "midi-visual", "piano",
            "cello", "violin", "saxophone", "strings", "keys", "winds", "instrument",
            "instrument-visual", "looper", "effect", "amplifier", "speaker", "recorder",
            "canvas-input", "canvas-output", "input-panel", "output-panel", "container",
            "add", "subtract",
        }
        assert expected <= set(node_types())

    def test_node_size_default(self):
        assert node_size("speaker") == (200.0, 150.0)

    def test_keyboard_template(self):
        internals = build_internals("keyboard")
        visual = next(c for c in internals.children if c.node_type == "keyboard-visual")
        assert len(visual.ports) == len(KEYBOARD_KEYS) == 30
        assert len(internals.connections) == 30
        assert len(internals.special_ids) == 2

    def test_templates_get_fresh_ids(self):
        a = build_internals("piano")
        b = build_internals("piano")
        assert {c.node_id for c in a.children}.isdisjoint({c.node_id for c in b.children})

    def test_leaf_has_no_internals(self):
        assert build_internals("speaker") is None


class TestCanConnect:
    """Port compatibility rules."""

    def test_audio_output_to_input(self):
        assert can_connect(port(PortType.AUDIO, Direction.OUTPUT), port(PortType.AUDIO, Direction.INPUT))

    def test_audio_is_directional(self):
        assert not can_connect(port(PortType.AUDIO, Direction.INPUT), port(PortType.AUDIO, Direction.OUTPUT))
        assert not can_connect(port(PortType.AUDIO, Direction.OUTPUT), port(PortType.AUDIO, Direction.OUTPUT))

    def test_control_is_bidirectional(self):
        assert can_connect(port(PortType.CONTROL, Direction.INPUT), port(PortType.CONTROL, Direction.OUTPUT))
        assert can_connect(port(PortType.CONTROL, Direction.OUTPUT), port(PortType.CONTROL, Direction.INPUT))

    def test_type_mismatch(self):
        assert not can_connect(port(PortType.AUDIO, Direction.OUTPUT), port(PortType.CONTROL, Direction.INPUT))

    def test_unresolved_universal_matches_anything(self):
        uni_in = port(PortType.UNIVERSAL, Direction.INPUT)
        assert can_connect(port(PortType.AUDIO, Direction.OUTPUT), uni_in)
        assert can_connect(port(PortType.CONTROL, Direction.OUTPUT), uni_in)

    def test_resolved_universal_is_concrete(self):
        uni = port(PortType.UNIVERSAL, Direction.OUTPUT, PortResolution.AUDIO)
        assert not can_connect(uni, port(PortType.CONTROL, Direction.INPUT))
        assert can_connect(uni, port(PortType.AUDIO, Direction.INPUT))

    def test_two_unresolved_universals_need_direction(self):
        assert can_connect(port(PortType.UNIVERSAL, Direction.OUTPUT), port(PortType.UNIVERSAL, Direction.INPUT))
        assert not can_connect(port(PortType.UNIVERSAL, Direction.INPUT), port(PortType.UNIVERSAL, Direction.INPUT))
