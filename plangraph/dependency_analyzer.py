from typing import List

import networkx as nx

from plangraph.entities import GraphNode


class DependencyAnalyzer:
    """Analyzes dependencies between the compiled nodes of a plan."""

    @staticmethod
    def build_dependency_graph(nodes: list[GraphNode]) -> nx.DiGraph:
        """
        Builds a directed graph representing dependencies between nodes.

        :param nodes: The compiled graph nodes

        :returns: A directed graph where edges point from a dependency to its dependent.
            Dependencies on unknown node IDs are added as nodes flagged ``missing=True``.
        """
        G = nx.DiGraph()

        for node in nodes:
            G.add_node(node.id, missing=False, step_id=node.metadata.original_step_id)

        for node in nodes:
            for dependency in node.deps:
                if dependency not in G:
                    G.add_node(dependency, missing=True)
                G.add_edge(dependency, node.id)

        return G

    @staticmethod
    def find_parallel_groups(nodes: list[GraphNode]) -> List[List[str]]:
        """
        Identifies the wavefronts the scheduler will run, in order.

        Each wavefront holds the nodes whose dependencies all belong to earlier wavefronts.
        Nodes that can never become ready (dangling dependency or cycle) are left out.

        :param nodes: The compiled graph nodes

        :returns: A list of lists, where each inner list contains node IDs that run in the same wavefront
        """
        G = DependencyAnalyzer.build_dependency_graph(nodes)
        order = {node.id: idx for idx, node in enumerate(nodes)}

        parallel_groups = []
        remaining_nodes = set(order)

        while remaining_nodes:
            current_group = {
                node for node in remaining_nodes if all(pred not in remaining_nodes for pred in G.predecessors(node))
            }
            current_group = {
                node for node in current_group if not any(G.nodes[pred]["missing"] for pred in G.predecessors(node))
            }

            if not current_group:
                break

            parallel_groups.append(sorted(current_group, key=order.get))
            remaining_nodes -= current_group

        return parallel_groups

    @staticmethod
    def find_cycles(nodes: list[GraphNode]) -> list[list[str]]:
        """Returns the dependency cycles among the given nodes; used to explain a deadlock."""
        return list(nx.simple_cycles(DependencyAnalyzer.build_dependency_graph(nodes)))
