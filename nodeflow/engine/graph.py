"""
Graph View for Workflow Engine.

Nodes link to each other directly through their successor tables. A Graph is
a read-only snapshot of that structure as seen from a flow's start node: an
arena of nodes addressed by ``node_id`` plus the action-labelled edges
between them. It is used for validation before a run and for inspection
(dicts and Mermaid diagrams); it never drives execution.
"""

from typing import Any, Dict, List, Optional, Set
from dataclasses import dataclass

from nodeflow.engine.node import BaseNode


@dataclass(frozen=True)
class Edge:
    """An action-labelled edge between two nodes (by node_id)."""
    source: str
    target: str
    action: str

    def to_dict(self) -> Dict[str, str]:
        return {"source": self.source, "target": self.target, "action": self.action}


def is_async_node(node: BaseNode) -> bool:
    return hasattr(node, "_run_async")


class Graph:
    """
    Nodes reachable from a start node, keyed by node_id.

    Attributes:
        name: Name of the flow the view was taken from
        entry_point: node_id of the start node (None for an empty flow)
        nodes: Dict of node_id -> node, in discovery order
        edges: List of edges
    """

    def __init__(self, start: Optional[BaseNode], name: str = "Unnamed Flow"):
        self.name = name
        self.entry_point = start.node_id if start is not None else None
        self.nodes: Dict[str, BaseNode] = {}
        self.edges: List[Edge] = []
        if start is not None:
            self._collect(start)

    @classmethod
    def from_flow(cls, flow) -> "Graph":
        return cls(flow.start_node, name=flow.name)

    def _collect(self, start: BaseNode) -> None:
        to_visit = [start]
        while to_visit:
            node = to_visit.pop(0)
            if node.node_id in self.nodes:
                continue
            self.nodes[node.node_id] = node
            for action, target in node.successors.items():
                self.edges.append(Edge(node.node_id, target.node_id, action))
                to_visit.append(target)

    def successors_of(self, node_id: str) -> Dict[str, str]:
        """Get the action -> target node_id table of a node."""
        return {edge.action: edge.target for edge in self.edges if edge.source == node_id}

    def terminal_nodes(self) -> List[str]:
        """Names of nodes with an empty successor table."""
        return [node.name for node in self.nodes.values() if not node.successors]

    def has_cycles(self) -> bool:
        """Check whether any node can reach itself."""
        visiting: Set[str] = set()
        done: Set[str] = set()

        def visit(node_id: str) -> bool:
            if node_id in visiting:
                return True
            if node_id in done:
                return False
            visiting.add(node_id)
            found = any(visit(target) for target in self.successors_of(node_id).values())
            visiting.discard(node_id)
            done.add(node_id)
            return found

        return any(visit(node_id) for node_id in self.nodes)

    def validate(self, allow_async: bool = False) -> List[str]:
        """
        Validate the graph structure.

        Args:
            allow_async: Whether async nodes may appear (only inside async flows)

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.entry_point is None:
            errors.append("Flow has no start node")
            return errors

        if not allow_async:
            for node in self.nodes.values():
                if is_async_node(node):
                    errors.append(
                        f"Async node '{node.name}' cannot run inside a synchronous flow; "
                        f"use an AsyncFlow"
                    )

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the graph to a dictionary."""
        return {
            "name": self.name,
            "entry_point": self.entry_point,
            "nodes": {
                node_id: {
                    "name": node.name,
                    "type": type(node).__name__,
                    "params": dict(node.config),
                }
                for node_id, node in self.nodes.items()
            },
            "edges": [edge.to_dict() for edge in self.edges],
        }

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram of the graph."""
        aliases = {node_id: f"n{index}" for index, node_id in enumerate(self.nodes)}
        lines = ["graph TD"]

        for node_id, node in self.nodes.items():
            if node_id == self.entry_point:
                lines.append(f'    {aliases[node_id]}["{node.name} (start)"]')
            else:
                lines.append(f'    {aliases[node_id]}["{node.name}"]')

        for edge in self.edges:
            lines.append(f"    {aliases[edge.source]} -->|{edge.action}| {aliases[edge.target]}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        names = [node.name for node in self.nodes.values()]
        return f"Graph(name='{self.name}', nodes={names})"
