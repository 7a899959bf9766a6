"""
test_memory_visualizer.py

Tests for the result stabilizer, recompute() and the command-line tool.
"""

import json
import random

import pytest
from memory_model import (
    AnalysisError,
    AnalysisResult,
    GraphConfig,
    HeapBlock,
    HeapBlockState,
    NodeKind,
    StackPointer,
    StackVariable,
    Theme,
)
from memory_visualizer import (
    LayerCoordinates,
    ResultStabilizer,
    StabilizerAction,
    Viewport,
    VisualizerState,
    main,
    recompute,
)


SOURCE = "int main() { int x = 12; int* p = &x; }"


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def valid_result():
    return AnalysisResult(
        stack=[
            StackVariable("x", 4, "12", "Integer"),
            StackPointer("p", 8, "x"),
            StackPointer("h", 8, None),
        ],
        heap=[HeapBlock(size=4, state=HeapBlockState.ALLOCATED, current_pointer_id="h")],
    )


@pytest.fixture
def error_result():
    return AnalysisResult(error=AnalysisError("Parser Error: expected ';'", 1, 20))


@pytest.fixture
def state():
    return VisualizerState.initial(Viewport(width=1280, height=800, panel_split=50))


@pytest.fixture
def raw_updates():
    """An editing session: valid, typo, fixed, editor cleared."""
    valid = {
        "stack": [
            {"Variable": {"vtype": "Integer", "name": "x", "value": "12", "size": 4}},
            {"Pointer": {"name": "p", "pointer_size": 8,
                         "value": {"Variable": {"name": "x"}}}},
        ],
        "heap": [],
    }
    grown = {
        "stack": valid["stack"] + [
            {"Variable": {"vtype": "Bool", "name": "b", "value": "true", "size": 1}},
        ],
        "heap": [],
    }
    return [
        {"source_code": "int x = 12; int* p = &x;", "analysis": valid},
        {"source_code": "int x = 12; int* p = &x; bo",
         "analysis": {"error": {"message": "Parser Error", "line_number": 1,
                                "column_number": 26}}},
        {"source_code": "int x = 12; int* p = &x; bool b = true;", "analysis": grown},
        {"source_code": "", "analysis": None},
    ]


# ============================================================
# LayerCoordinates Tests
# ============================================================

class TestLayerCoordinates:
    """Tests for LayerCoordinates."""

    def test_from_viewport(self):
        coords = LayerCoordinates.from_viewport(Viewport(1280, 800, 50), GraphConfig())
        assert coords.stack_x == 50
        assert coords.heap_x == 640 - 250 - 50

    def test_panel_split(self):
        coords = LayerCoordinates.from_viewport(Viewport(1000, 800, 70), GraphConfig())
        assert coords.heap_x == 700 - 250 - 50


# ============================================================
# ResultStabilizer Tests
# ============================================================

class TestResultStabilizer:
    """Tests for ResultStabilizer.decide."""

    def test_empty_source_nothing_retained(self, valid_result):
        decision = ResultStabilizer().decide("  \n", valid_result, None)
        assert decision.action is StabilizerAction.PLACEHOLDER
        assert decision.effective_result is None
        assert decision.last_valid_result is None

    def test_valid_result_retained(self, valid_result):
        decision = ResultStabilizer().decide(SOURCE, valid_result, None)
        assert decision.action is StabilizerAction.RENDER
        assert decision.effective_result is valid_result
        assert decision.last_valid_result is valid_result
        assert decision.full_rebuild

    def test_same_result_no_rebuild(self, valid_result):
        decision = ResultStabilizer().decide(SOURCE, valid_result, valid_result)
        assert decision.action is StabilizerAction.RENDER
        assert not decision.full_rebuild

    def test_equal_content_new_object_rebuilds(self, valid_result):
        copy = AnalysisResult(stack=list(valid_result.stack), heap=list(valid_result.heap))
        decision = ResultStabilizer().decide(SOURCE, copy, valid_result)
        assert decision.full_rebuild

    def test_freeze_on_error(self, valid_result, error_result):
        decision = ResultStabilizer().decide(SOURCE, error_result, valid_result)
        assert decision.action is StabilizerAction.FREEZE
        assert decision.effective_result is valid_result
        assert not decision.full_rebuild

    def test_freeze_on_empty_result(self, valid_result):
        decision = ResultStabilizer().decide(SOURCE, AnalysisResult(), valid_result)
        assert decision.action is StabilizerAction.FREEZE

    def test_freeze_when_no_result_yet(self, valid_result):
        decision = ResultStabilizer().decide(SOURCE, None, valid_result)
        assert decision.action is StabilizerAction.FREEZE

    def test_error_without_history_clears(self, error_result):
        decision = ResultStabilizer().decide(SOURCE, error_result, None)
        assert decision.action is StabilizerAction.CLEAR
        assert decision.effective_result is None

    def test_empty_source_with_history_clears(self, valid_result, error_result):
        decision = ResultStabilizer().decide("", error_result, valid_result)
        assert decision.action is StabilizerAction.CLEAR
        assert decision.last_valid_result is valid_result

    def test_empty_source_valid_result_renders(self, valid_result):
        newer = AnalysisResult(stack=[StackVariable("y", 4, "1", "Integer")])
        decision = ResultStabilizer().decide("", newer, valid_result)
        assert decision.action is StabilizerAction.RENDER
        assert decision.effective_result is newer


# ============================================================
# recompute Tests
# ============================================================

class TestRecompute:
    """Tests for recompute."""

    def test_initial_state_shows_placeholder(self, state):
        assert state.show_placeholder
        assert state.graph.is_empty

    def test_placeholder_for_empty_editor(self, state):
        new_state = recompute(state, "", None)
        assert new_state.show_placeholder
        assert new_state.graph.is_empty

    def test_builds_graph(self, state, valid_result):
        new_state = recompute(state, SOURCE, valid_result)
        graph = new_state.graph
        assert not new_state.show_placeholder
        assert new_state.last_valid_result is valid_result
        assert len(graph.nodes_of(NodeKind.STACK)) == 3
        assert [n.id for n in graph.nodes_of(NodeKind.HEAP)] == ["0"]
        assert {e.id for e in graph.edges} == {"ep-x", "eh-0"}
        assert graph.get_node("x").position.x == 50
        assert graph.get_node("0", NodeKind.HEAP).position.x == 340

    def test_previous_state_untouched(self, state, valid_result):
        recompute(state, SOURCE, valid_result)
        assert state.graph.is_empty
        assert state.last_valid_result is None

    def test_identical_input_is_idempotent(self, state, valid_result):
        first = recompute(state, SOURCE, valid_result)
        second = recompute(first, SOURCE, valid_result)
        assert not second.decision.full_rebuild
        assert second.graph is first.graph
        assert [n.address for n in second.graph.nodes] == [n.address for n in first.graph.nodes]
        assert [n.position for n in second.graph.nodes] == [n.position for n in first.graph.nodes]

    def test_freeze_on_error_keeps_graph(self, state, valid_result, error_result):
        good = recompute(state, SOURCE, valid_result)
        frozen = recompute(good, SOURCE + " oops", error_result)
        assert frozen.is_frozen
        assert frozen.graph is good.graph
        assert frozen.graph.to_dict() == good.graph.to_dict()
        assert frozen.error is error_result.error
        assert frozen.last_valid_result is valid_result

    def test_error_without_history(self, state, error_result):
        new_state = recompute(state, SOURCE, error_result)
        assert new_state.graph.is_empty
        assert new_state.show_placeholder
        assert new_state.error.line_number == 1

    def test_new_result_rebuilds(self, state, valid_result):
        first = recompute(state, SOURCE, valid_result)
        newer = AnalysisResult(stack=[StackVariable("y", 4, "5", "Integer")])
        second = recompute(first, SOURCE, newer)
        assert second.decision.full_rebuild
        assert second.graph.get_node("y") is not None
        assert second.graph.get_node("x") is None

    def test_clearing_editor_clears_graph(self, state, valid_result):
        good = recompute(state, SOURCE, valid_result)
        cleared = recompute(good, "", None)
        assert cleared.decision.action is StabilizerAction.CLEAR
        assert cleared.graph.is_empty
        assert cleared.last_valid_result is valid_result

    def test_clearing_editor_shows_placeholder(self, state, valid_result):
        good = recompute(state, SOURCE, valid_result)
        cleared = recompute(good, "", AnalysisResult())
        assert cleared.decision.action is StabilizerAction.CLEAR
        assert cleared.graph.is_empty
        assert cleared.show_placeholder

    def test_heap_only_result_shows_placeholder(self, state):
        heap_only = AnalysisResult(heap=[HeapBlock(size=4, state=HeapBlockState.ALLOCATED)])
        new_state = recompute(state, SOURCE, heap_only)
        assert new_state.decision.action is StabilizerAction.RENDER
        assert new_state.show_placeholder

    def test_frozen_graph_hides_placeholder(self, state, valid_result, error_result):
        good = recompute(state, SOURCE, valid_result)
        frozen = recompute(good, SOURCE + " oops", error_result)
        assert not frozen.show_placeholder

    def test_height_change_relayouts(self, state, valid_result):
        first = recompute(state, SOURCE, valid_result)
        taller = recompute(first, SOURCE, valid_result, viewport=Viewport(1280, 1000, 50))
        assert taller.graph is not first.graph
        assert taller.coordinates is first.coordinates
        dy = taller.graph.get_node("x").position.y - first.graph.get_node("x").position.y
        assert dy == 200

    def test_width_change_moves_heap(self, state, valid_result):
        first = recompute(state, SOURCE, valid_result)
        wider = recompute(first, SOURCE, valid_result, viewport=Viewport(1600, 800, 50))
        assert wider.coordinates.heap_x == 800 - 250 - 50
        assert wider.graph.get_node("0", NodeKind.HEAP).position.x == 500

    def test_theme_change_recolors(self, state, valid_result):
        first = recompute(state, SOURCE, valid_result, rng=random.Random(1))
        dark = recompute(first, SOURCE, valid_result, theme=Theme.DARK, rng=random.Random(1))
        assert dark.theme is Theme.DARK
        assert dark.graph is not first.graph

    def test_config_applies(self, valid_result):
        config = GraphConfig(max_memory=4)
        state = VisualizerState.initial(Viewport(1280, 800, 50), config=config)
        new_state = recompute(state, SOURCE, valid_result)
        assert new_state.graph.stack_full
        assert new_state.graph.heap_full


# ============================================================
# Command-line Tests
# ============================================================

class TestMain:
    """Tests for the memory-visualizer command."""

    def test_single_result(self, tmp_path, capsys, raw_updates):
        path = tmp_path / "result.json"
        path.write_text(json.dumps(raw_updates[0]["analysis"]), encoding="utf-8")
        assert main([str(path), "--seed", "1"]) == 0
        out = capsys.readouterr().out
        assert "Update 0: render" in out
        assert "0xBFFFFFFF" in out

    def test_json_output(self, tmp_path, capsys, raw_updates):
        path = tmp_path / "result.json"
        path.write_text(json.dumps(raw_updates[0]["analysis"]), encoding="utf-8")
        assert main([str(path), "--json", "--theme", "dark"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert [e["id"] for e in data["edges"]] == ["ep-x"]
        p = next(n for n in data["nodes"] if n["id"] == "p")
        assert p["displayValue"] == "&x"

    def test_session_replay(self, tmp_path, capsys, raw_updates):
        path = tmp_path / "session.json"
        path.write_text(json.dumps(raw_updates), encoding="utf-8")
        assert main([str(path), "--json"]) == 0
        graphs = json.loads(capsys.readouterr().out)
        assert len(graphs) == 4
        assert graphs[1] == graphs[0]
        assert any(n["id"] == "b" for n in graphs[2]["nodes"])
        assert graphs[3]["nodes"] == []

    def test_session_diff(self, tmp_path, capsys, raw_updates):
        path = tmp_path / "session.json"
        path.write_text(json.dumps(raw_updates), encoding="utf-8")
        assert main([str(path), "--diff"]) == 0
        out = capsys.readouterr().out
        assert "Update 1: freeze" in out
        assert "Analysis error: Parser Error (line 1, column 26)" in out
        assert "(no changes)" in out
        assert "+ Added stack node 'b'" in out
        assert "Update 3: clear" in out

    def test_config_file(self, tmp_path, capsys, raw_updates):
        path = tmp_path / "result.json"
        path.write_text(json.dumps(raw_updates[0]["analysis"]), encoding="utf-8")
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"stack_base_address": 4096}), encoding="utf-8")
        assert main([str(path), "--config", str(config)]) == 0
        assert "0x1000" in capsys.readouterr().out

    def test_bad_config_key(self, tmp_path, capsys, raw_updates):
        path = tmp_path / "result.json"
        path.write_text(json.dumps(raw_updates[0]["analysis"]), encoding="utf-8")
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"colour": "red"}), encoding="utf-8")
        assert main([str(path), "--config", str(config)]) == 1
        assert "Unknown configuration key" in capsys.readouterr().err

    def test_missing_file(self, tmp_path, capsys):
        assert main([str(tmp_path / "missing.json")]) == 1
        assert "memory-visualizer:" in capsys.readouterr().err

    def test_invalid_json(self, tmp_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        assert main([str(path)]) == 1
        assert "invalid JSON" in capsys.readouterr().err

    def test_wrong_shape(self, tmp_path, capsys):
        path = tmp_path / "number.json"
        path.write_text("42", encoding="utf-8")
        assert main([str(path)]) == 1
        assert "expected an object" in capsys.readouterr().err

    def test_layer_not_a_list(self, tmp_path, capsys):
        path = tmp_path / "result.json"
        path.write_text(json.dumps({"stack": 5, "heap": []}), encoding="utf-8")
        assert main([str(path)]) == 1
        assert "stack must be a list" in capsys.readouterr().err

    def test_bad_config_value(self, tmp_path, capsys, raw_updates):
        path = tmp_path / "result.json"
        path.write_text(json.dumps(raw_updates[0]["analysis"]), encoding="utf-8")
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"unit_height": "tall"}), encoding="utf-8")
        assert main([str(path), "--config", str(config)]) == 1
        assert "Invalid value" in capsys.readouterr().err
