"""Tests for the explicit execution graph."""

from app.schemas.flow_definition import parse_definition
from app.services.flow_graph import END, EdgeKind, FlowGraph, join_node


def _graph(steps: list[dict], **extra) -> FlowGraph:
    return FlowGraph(parse_definition({"steps": steps, **extra}))


def test_linear_flow_ends_at_end_node():
    graph = _graph([{"id": "a"}, {"id": "b"}])

    assert graph.continuation("a").target == "b"
    assert graph.continuation("b").target == END
    assert graph.continuation("b").kind == EdgeKind.NEXT
    assert [n.step_id for n in graph.main_nodes] == ["a", "b"]


def test_branch_paths_join_before_continuing():
    graph = _graph(
        [
            {
                "id": "fan",
                "type": "PARALLEL_BRANCH",
                "paths": [
                    {"pathId": "a", "steps": [{"id": "a1"}, {"id": "a2"}]},
                    {"pathId": "empty", "steps": []},
                ],
            },
            {"id": "after"},
        ]
    )

    # A branch has no NEXT edge of its own
    assert graph.continuation("fan") is None
    assert {(e.label, e.target) for e in graph.path_edges("fan")} == {
        ("a", "a1"),
        ("empty", join_node("fan")),
    }
    assert graph.continuation("a1").target == "a2"
    leave = graph.continuation("a2")
    assert leave.kind == EdgeKind.JOIN
    assert leave.target == "fan:join"
    assert leave.label == "a"
    assert graph.continuation(join_node("fan")).target == "after"


def test_nested_nodes_know_their_scope_and_top_index():
    graph = _graph(
        [
            {"id": "intro"},
            {
                "id": "route",
                "type": "SINGLE_CHOICE_BRANCH",
                "paths": [{"pathId": "x", "steps": [{"id": "x1"}, {"id": "x2"}]}],
            },
        ]
    )
    x2 = graph.node("x2")
    assert x2.scope == "route/x"
    assert x2.position == 1
    assert x2.top_index == 1
    assert x2.parent_step_id == "route"
    assert [n.step_id for n in graph.descendants("route")] == ["x1", "x2"]


def test_goto_and_terminate_edges():
    graph = _graph(
        [
            {"id": "start"},
            {"id": "loop", "type": "GOTO", "targetStepId": "start"},
            {"id": "stop", "type": "TERMINATE"},
            {"id": "unreachable"},
        ]
    )
    assert graph.goto_edge("loop").target == "start"
    # Goto still has a NEXT edge, used once its jump limit is reached
    assert graph.continuation("loop").target == "stop"
    kinds = {e.kind for e in graph.outgoing("stop")}
    assert kinds == {EdgeKind.TERMINATE}
    assert graph.continuation("stop") is None


def test_milestone_map_assigns_phases():
    graph = _graph(
        [
            {"id": "a"},
            {"id": "b"},
            {
                "id": "c",
                "type": "PARALLEL_BRANCH",
                "paths": [{"pathId": "p", "steps": [{"id": "c1"}]}],
            },
        ],
        milestones=[
            {"name": "Intake"},
            {"name": "Delivery", "afterStepId": "a"},
        ],
    )
    phases = graph.milestone_map()
    assert phases == {"a": "Intake", "b": "Delivery", "c": "Delivery", "c1": "Delivery"}
