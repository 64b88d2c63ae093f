"""Readiness evaluation: is a node runnable, and what state does it see?"""

from typing import Any, Dict, List, Tuple

from ..models.core import ExecutionEdgeView, ExecutionNodeView
from .graph_store import GraphStore


class ReadinessEvaluator:
    """Computes a node's readiness and merged predecessor state. Read-only."""

    def __init__(self, store: GraphStore):
        self.store = store

    def predecessors(self, node: ExecutionNodeView) -> List[Tuple[ExecutionEdgeView, ExecutionNodeView]]:
        """(incoming edge, source node) pairs in edge enumeration order."""
        return [
            (edge, self.store.get_node(edge.source_node_id))
            for edge in self.store.find_incoming_edges(node.id)
        ]

    def evaluate(self, node: ExecutionNodeView) -> Tuple[Dict[str, Any], bool]:
        """
        Evaluate a node against its predecessors.

        The merged state is a left-to-right fold of each executed predecessor's
        state in edge enumeration order, so later predecessors overwrite earlier
        ones on key conflicts.

        Args:
            node: Node to evaluate

        Returns:
            (merged_state, is_ready); is_ready is True iff every predecessor has
            executed, and vacuously True for a node without incoming edges
        """
        merged_state: Dict[str, Any] = {}
        is_ready = True

        for _, source in self.predecessors(node):
            if not source.executed:
                is_ready = False
                continue
            merged_state.update(source.state or {})

        return merged_state, is_ready

    def is_activated(self, node: ExecutionNodeView, start_node_id: str) -> bool:
        """Whether an executed predecessor forwarded execution along an edge into ``node``."""
        if node.id == start_node_id:
            return True

        for edge, source in self.predecessors(node):
            if not source.executed:
                continue
            if source.chosen_branch is None or edge.source_handle == source.chosen_branch:
                return True

        return False
