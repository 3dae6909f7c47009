from conftest import make_node
from plangraph.dependency_analyzer import DependencyAnalyzer


def test_parallel_groups_follow_dependencies():
    nodes = [
        make_node("fetchA"),
        make_node("fetchB"),
        make_node("merge", deps=["fetchA", "fetchB"]),
        make_node("final", deps=["merge"]),
    ]

    assert DependencyAnalyzer.find_parallel_groups(nodes) == [["fetchA", "fetchB"], ["merge"], ["final"]]


def test_graph_marks_missing_dependencies():
    graph = DependencyAnalyzer.build_dependency_graph([make_node("a", deps=["ghost"])])

    assert graph.nodes["ghost"]["missing"]
    assert not graph.nodes["a"]["missing"]
    assert list(graph.edges) == [("ghost", "a")]


def test_cycles_are_left_out_of_parallel_groups():
    nodes = [
        make_node("ok"),
        make_node("dangling", deps=["ghost"]),
        make_node("x", deps=["y"]),
        make_node("y", deps=["x"]),
    ]

    assert DependencyAnalyzer.find_parallel_groups(nodes) == [["ok"]]
    assert [sorted(cycle) for cycle in DependencyAnalyzer.find_cycles(nodes)] == [["x", "y"]]
