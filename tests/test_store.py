"""Tests for patchbay.graph.store.GraphStore."""

import pytest
from PySide6.QtCore import QRectF

from patchbay.graph.graph_model import Direction, PortDef, PortResolution, PortType
from patchbay.graph.registry import UnknownNodeTypeError
from patchbay.graph.store import GraphStore


def child_of_type(store, node_id, node_type):
    return next(c for c in store.get_node_children(node_id) if c.node_type == node_type)


def build_container_with_amp(store):
    """Microphone → container(input panel → amplifier)."""
    mic = store.add_node("microphone", (0, 0))
    box = store.add_node("container", (300, 0))
    amp = store.add_node("amplifier", (0, 0), parent_id=box)
    in_panel = child_of_type(store, box, "input-panel")
    inner = store.add_connection(in_panel.node_id, "port-1", amp, "audio-in")
    outer = store.add_connection(mic, "audio-out", box, f"{in_panel.node_id}:port-1")
    return mic, box, amp, in_panel, inner, outer


class TestAddNode:
    """Node creation from registry templates."""

    def test_root_node(self, store):
        nid = store.add_node("speaker", (10, 20))
        node = store.get_node(nid)
        assert node.category == "output"
        assert (node.x, node.y) == (10, 20)
        assert [n.node_id for n in store.get_root_nodes()] == [nid]
        assert node.data["volume"] == 0.8

    def test_initial_data_merges(self, store):
        node = store.get_node(store.add_node("speaker", initial_data={"volume": 0.2}))
        assert node.data == {"volume": 0.2, "isMuted": False}

    def test_container_internals(self, store):
        kb = store.get_node(store.add_node("keyboard"))
        children = store.get_node_children(kb.node_id)
        assert [c.node_type for c in children] == ["input-panel", "keyboard-visual", "output-panel"]
        assert all(c.parent_id == kb.node_id for c in children)
        assert len(kb.special_nodes) == 2
        assert len(store.get_connections_at_level(kb.node_id)) == 30
        assert store.get_nodes_at_level(None) == [kb]

    def test_child_node(self, store):
        box = store.add_node("container")
        amp = store.add_node("amplifier", parent_id=box)
        assert store.get_node(amp).parent_id == box
        assert amp in store.get_node(box).child_ids
        assert amp not in store.root_node_ids

    def test_bad_parent(self, store):
        spk = store.add_node("speaker")
        v = store.version
        assert store.add_node("amplifier", parent_id="nope") is None
        assert store.add_node("amplifier", parent_id=spk) is None
        assert store.version == v

    def test_unknown_type(self, store):
        with pytest.raises(UnknownNodeTypeError):
            store.add_node("theremin")

    def test_keyboard_keys_assigned(self, store):
        keys = [store.get_node(store.add_node("keyboard")).data["assignedKey"] for _ in range(9)]
        assert keys == [2, 3, 4, 5, 6, 7, 8, 9, 2]

    def test_keyboard_key_explicit(self, store):
        kb = store.add_node("keyboard", initial_data={"assignedKey": 7})
        assert store.get_node(kb).data["assignedKey"] == 7
        assert store.get_node(store.add_node("keyboard")).data["assignedKey"] == 2

    def test_version_bumps(self, store):
        v = store.version
        store.add_node("speaker")
        assert store.version == v + 1


class TestRemoveNode:
    """Cascading deletion and boundary protection."""

    def test_cascade(self, store):
        mic, box, amp, in_panel, inner, outer = build_container_with_amp(store)
        assert len(store.get_nodes()) == 5
        assert len(store.get_connections()) == 2
        v = store.version
        assert store.remove_node(box)
        assert list(store.get_nodes()) == [mic]
        assert store.get_connections() == {}
        assert store.root_node_ids == [mic]
        assert store.version == v + 1

    def test_child_detaches_from_parent(self, store):
        mic, box, amp, in_panel, inner, outer = build_container_with_amp(store)
        assert store.remove_node(amp)
        assert amp not in store.get_node(box).child_ids
        assert store.get_connection(inner) is None
        assert store.get_connection(outer) is not None

    def test_unknown_is_noop(self, store):
        v = store.version
        assert not store.remove_node("missing")
        assert store.version == v

    def test_protected_boundary_flashes(self, store):
        flashed = []
        store.on_flash(flashed.append)
        piano = store.add_node("piano")
        panel = child_of_type(store, piano, "input-panel")
        v, depth = store.version, len(store.history.stack)
        assert not store.remove_node(panel.node_id)
        assert flashed == [panel.node_id]
        assert store.get_node(panel.node_id) is not None
        assert store.version == v
        assert len(store.history.stack) == depth

    def test_unprotected_child_removable(self, store):
        piano = store.add_node("piano")
        visual = child_of_type(store, piano, "instrument-visual")
        assert store.remove_node(visual.node_id)
        assert len(store.get_node(piano).child_ids) == 2


class TestConnections:
    """add_connection / remove_connection rules."""

    def test_basic(self, store):
        mic = store.add_node("microphone")
        spk = store.add_node("speaker")
        cid = store.add_connection(mic, "audio-out", spk, "audio-in")
        conn = store.get_connection(cid)
        assert conn.ctype is PortType.AUDIO
        assert not conn.is_bundled
        assert store.get_connections_for_port(spk, "audio-in") == [conn]

    def test_duplicate_returns_existing(self, store):
        mic = store.add_node("microphone")
        spk = store.add_node("speaker")
        cid = store.add_connection(mic, "audio-out", spk, "audio-in")
        v = store.version
        assert store.add_connection(mic, "audio-out", spk, "audio-in") == cid
        assert store.version == v
        assert len(store.get_connections()) == 1

    def test_rejections_leave_state_alone(self, store):
        mic = store.add_node("microphone")
        amp = store.add_node("amplifier")
        spk = store.add_node("speaker")
        v, depth = store.version, len(store.history.stack)
        assert store.add_connection("ghost", "audio-out", spk, "audio-in") is None
        assert store.add_connection(mic, "nope", spk, "audio-in") is None
        assert store.add_connection(mic, "audio-out", amp, "gain") is None      # type mismatch
        assert store.add_connection(spk, "audio-in", amp, "audio-in") is None   # audio direction
        assert store.add_connection(amp, "audio-out", amp, "audio-in") is None  # self loop
        assert store.version == v
        assert len(store.history.stack) == depth
        assert store.get_connections() == {}

    def test_single_audio_input(self, store):
        mic1 = store.add_node("microphone")
        mic2 = store.add_node("microphone")
        spk = store.add_node("speaker")
        first = store.add_connection(mic1, "audio-out", spk, "audio-in")
        second = store.add_connection(mic2, "audio-out", spk, "audio-in")
        into = store.get_connections_for_port(spk, "audio-in")
        assert [c.id for c in into] == [second]
        assert store.get_connection(first) is None

    def test_control_inputs_accept_many(self, store):
        a = store.add_node("add")
        b = store.add_node("add")
        amp = store.add_node("amplifier")
        store.add_connection(a, "out", amp, "gain")
        store.add_connection(b, "out", amp, "gain")
        assert len(store.get_connections_for_port(amp, "gain")) == 2

    def test_remove(self, store):
        mic = store.add_node("microphone")
        spk = store.add_node("speaker")
        cid = store.add_connection(mic, "audio-out", spk, "audio-in")
        assert store.remove_connection(cid)
        assert store.get_connections() == {}
        assert not store.remove_connection(cid)


class TestUniversalPorts:
    """Universal port resolution and reset."""

    def test_resolves_on_connect(self, store):
        mic = store.add_node("microphone")
        add = store.add_node("add")
        cid = store.add_connection(mic, "audio-out", add, "in-1")
        assert store.get_connection(cid).ctype is PortType.AUDIO
        assert all(p.resolution is PortResolution.AUDIO for p in store.get_node(add).ports)

    def test_resolved_type_constrains_other_ports(self, store):
        mic = store.add_node("microphone")
        add = store.add_node("add")
        amp = store.add_node("amplifier")
        store.add_connection(mic, "audio-out", add, "in-1")
        assert store.add_connection(add, "out", amp, "gain") is None
        assert store.add_connection(add, "out", amp, "audio-in") is not None

    def test_source_unresolved_takes_target_type(self, store):
        add = store.add_node("add")
        amp = store.add_node("amplifier")
        cid = store.add_connection(add, "out", amp, "gain")
        assert store.get_connection(cid).ctype is PortType.CONTROL
        assert store.get_node(add).get_port("in-2").resolution is PortResolution.CONTROL

    def test_resets_when_last_connection_goes(self, store):
        mic = store.add_node("microphone")
        add = store.add_node("add")
        spk = store.add_node("speaker")
        c1 = store.add_connection(mic, "audio-out", add, "in-1")
        c2 = store.add_connection(add, "out", spk, "audio-in")
        store.remove_connection(c1)
        assert store.get_node(add).get_port("in-1").resolution is PortResolution.AUDIO
        store.remove_connection(c2)
        assert all(p.resolution is PortResolution.UNRESOLVED for p in store.get_node(add).ports)

    def test_container_ports_resolve(self, store):
        mic, box, amp, in_panel, inner, outer = build_container_with_amp(store)
        ports = store.get_node(box).ports
        assert all(p.resolution is PortResolution.AUDIO for p in ports)
        assert store.get_node(in_panel.node_id).get_port("port-1").resolution is PortResolution.AUDIO


class TestUpdates:
    """Position, data, ports and re-parenting."""

    def test_position(self, store):
        spk = store.add_node("speaker")
        assert store.update_node_position(spk, (5, 6))
        assert (store.get_node(spk).x, store.get_node(spk).y) == (5, 6)
        assert not store.update_node_position("nope", (0, 0))

    def test_data_is_shallow_merged(self, store):
        spk = store.add_node("speaker")
        store.update_node_data(spk, {"volume": 0.1})
        assert store.get_node(spk).data == {"volume": 0.1, "isMuted": False}

    def test_data_propagates_to_proxies(self, store):
        midi = store.add_node("midi")
        store.update_node_data(midi, {"deviceId": "dev-1", "activeChannel": 3})
        visual = child_of_type(store, midi, "midi-visual")
        assert visual.data["deviceId"] == "dev-1"
        assert "activeChannel" not in visual.data

    def test_committed_nodes_not_mutated(self, store):
        spk = store.add_node("speaker")
        before = store.get_node(spk)
        store.update_node_data(spk, {"volume": 0.0})
        assert before.data["volume"] == 0.8
        assert store.get_node(spk) is not before

    def test_ports_replace_prunes_wires(self, store):
        mic = store.add_node("microphone")
        spk = store.add_node("speaker")
        store.add_connection(mic, "audio-out", spk, "audio-in")
        new_ports = [PortDef("left", "L", PortType.AUDIO, Direction.INPUT)]
        assert store.update_node_ports(spk, new_ports)
        assert [p.port_id for p in store.get_node(spk).ports] == ["left"]
        assert store.get_connections() == {}

    def test_ports_rejects_bad_ids(self, store):
        spk = store.add_node("speaker")
        dup = [PortDef("a", "", PortType.AUDIO, Direction.INPUT)] * 2
        assert not store.update_node_ports(spk, dup)
        assert not store.update_node_ports(spk, [PortDef("9x", "", PortType.AUDIO, Direction.INPUT)])

    def test_panel_port_removal_prunes_outer_wire(self, store):
        mic, box, amp, in_panel, inner, outer = build_container_with_amp(store)
        keep = [p for p in in_panel.ports if p.port_id != "port-1"]
        store.update_node_ports(in_panel.node_id, keep)
        assert store.get_connection(inner) is None
        assert store.get_connection(outer) is None
        assert store.get_node(box).get_port(f"{in_panel.node_id}:port-1") is None

    def test_move_node(self, store):
        a = store.add_node("container")
        b = store.add_node("container", parent_id=a)
        assert store.move_node(b, None)
        assert b in store.root_node_ids
        assert b not in store.get_node(a).child_ids
        assert store.get_node(b).parent_id is None

    def test_move_rejects_cycle(self, store):
        a = store.add_node("container")
        b = store.add_node("container", parent_id=a)
        c = store.add_node("container", parent_id=b)
        v = store.version
        assert not store.move_node(a, c)
        assert not store.move_node(a, a)
        assert store.version == v
        assert store.get_node(a).parent_id is None

    def test_move_drops_wires(self, store):
        mic = store.add_node("microphone")
        spk = store.add_node("speaker")
        box = store.add_node("container")
        store.add_connection(mic, "audio-out", spk, "audio-in")
        assert store.move_node(spk, box)
        assert store.get_connections() == {}
        assert spk in store.get_node(box).child_ids

    def test_move_protected(self, store):
        flashed = []
        store.on_flash(flashed.append)
        box = store.add_node("container")
        panel = child_of_type(store, box, "output-panel")
        assert not store.move_node(panel.node_id, None)
        assert flashed == [panel.node_id]


class TestSelection:
    """Selection never bumps version."""

    def test_select_and_clear(self, store):
        a = store.add_node("speaker")
        b = store.add_node("speaker")
        v = store.version
        store.select_node(a)
        store.select_node(b, add=True)
        assert store.selected_node_ids == {a, b}
        store.select_node(a)
        assert store.selected_node_ids == {a}
        store.deselect_node(a)
        assert store.selected_node_ids == set()
        store.select_node("nope")
        assert store.selected_node_ids == set()
        assert store.version == v

    def test_connection_selection(self, store):
        mic = store.add_node("microphone")
        spk = store.add_node("speaker")
        cid = store.add_connection(mic, "audio-out", spk, "audio-in")
        store.select_node(mic)
        store.select_connection(cid)
        assert store.selected_connection_ids == {cid}
        assert store.selected_node_ids == set()

    def test_listeners_notified(self, store):
        seen = []
        store.on_change(seen.append)
        nid = store.add_node("speaker")
        store.select_node(nid)
        assert seen == ["add_node", "selection"]

    def test_rect(self, store):
        a = store.add_node("speaker", (0, 0))
        store.add_node("speaker", (500, 500))
        v = store.version
        assert store.select_nodes_in_rect(QRectF(-10, -10, 50, 50)) == [a]
        assert store.selected_node_ids == {a}
        assert store.select_nodes_in_rect(QRectF(40, 40, -50, -50)) == [a]
        assert store.version == v

    def test_rect_only_current_level(self, store):
        box = store.add_node("container", (1000, 1000))
        amp = store.add_node("amplifier", (0, 0), parent_id=box)
        assert store.select_nodes_in_rect(QRectF(0, 0, 10, 10)) == []
        assert store.select_nodes_in_rect(QRectF(0, 0, 10, 10), parent_id=box) == [amp]

    def test_removed_nodes_leave_selection(self, store):
        a = store.add_node("speaker")
        store.select_node(a)
        store.remove_node(a)
        assert store.selected_node_ids == set()


class TestBulk:
    """delete_selected, clear_graph, load_graph."""

    def test_delete_selected_is_one_step(self, store):
        mic = store.add_node("microphone")
        spk = store.add_node("speaker")
        amp = store.add_node("amplifier")
        store.add_connection(mic, "audio-out", spk, "audio-in")
        store.select_nodes([mic, spk])
        assert store.delete_selected()
        assert list(store.get_nodes()) == [amp]
        store.undo()
        assert len(store.get_nodes()) == 3
        assert len(store.get_connections()) == 1

    def test_delete_selected_skips_protected(self, store):
        flashed = []
        store.on_flash(flashed.append)
        box = store.add_node("container")
        panel = child_of_type(store, box, "input-panel")
        store.select_nodes([panel.node_id])
        v = store.version
        assert not store.delete_selected()
        assert flashed == [panel.node_id]
        assert store.version == v

    def test_container_takes_selected_boundary_with_it(self, store):
        flashed = []
        store.on_flash(flashed.append)
        box = store.add_node("container")
        store.select_nodes([box] + store.get_node(box).special_nodes)
        assert store.delete_selected()
        assert flashed == []
        assert store.get_nodes() == {}

    def test_delete_selected_connections(self, store):
        mic = store.add_node("microphone")
        spk = store.add_node("speaker")
        cid = store.add_connection(mic, "audio-out", spk, "audio-in")
        store.select_connection(cid)
        assert store.delete_selected()
        assert store.get_connections() == {}
        assert len(store.get_nodes()) == 2

    def test_clear_graph(self, store):
        store.add_node("keyboard")
        v = store.version
        store.clear_graph()
        assert store.get_nodes() == {}
        assert store.root_node_ids == []
        assert store.version == v + 1
        store.undo()
        assert len(store.get_root_nodes()) == 1

    def test_load_graph_repairs(self, store, settings):
        other = GraphStore(settings)
        mic = other.add_node("microphone")
        spk = other.add_node("speaker")
        box = other.add_node("container")
        amp = other.add_node("amplifier", parent_id=box)
        other.add_connection(mic, "audio-out", spk, "audio-in")
        other.add_connection(mic, "audio-out", amp, "audio-in")

        nodes = {k: v for k, v in other.get_nodes().items() if k != box}
        store.load_graph(nodes, other.get_connections())
        assert store.get_node(amp).parent_id is None
        assert set(store.root_node_ids) == {mic, spk, amp} | {
            c for c in other.get_node(box).child_ids if c != amp}
        assert len(store.get_connections()) == 2


class TestQueries:
    """Read surface; unknown ids never raise."""

    def test_level_queries(self, store):
        mic, box, amp, in_panel, inner, outer = build_container_with_amp(store)
        assert [c.id for c in store.get_connections_at_level(None)] == [outer]
        assert [c.id for c in store.get_connections_at_level(box)] == [inner]
        assert store.get_connections_at_level("ghost") == []

    def test_descendants(self, store):
        mic, box, amp, in_panel, inner, outer = build_container_with_amp(store)
        assert set(store.get_descendant_ids(box)) == set(store.get_node(box).child_ids)
        assert store.get_descendant_ids(mic) == []
        assert store.get_descendant_ids("ghost") == []

    def test_by_type_and_node(self, store):
        mic, box, amp, in_panel, inner, outer = build_container_with_amp(store)
        assert [n.node_id for n in store.get_nodes_by_type("amplifier")] == [amp]
        assert [c.id for c in store.get_connections_for_node(mic)] == [outer]
        assert store.get_node("ghost") is None
        assert store.get_node_children("ghost") == []
        assert store.get_bundle_size("ghost") == 0
        assert store.get_bundle_size(outer) == 1
