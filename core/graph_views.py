"""
TROUBLESHOOT GRAPH VIEWS - Derived Read Views over a Category

Views are rebuilt from GraphStore on a cache miss and never written back:
- Flattened tree: nodes reachable from the category root, breadth-first,
  each listed once with its depth and answers
- Editor graph: every node of the category and every connection leaving it
- Adjacency: node_id -> ordered navigation options (used by sessions)

Reachability:
  The walk starts at the category root and follows active connections to
  active targets. It does not expand past the category boundary: a target in
  another category (a shared sub-tree) is a leaf here and belongs to its own
  category's views. Conclusions are never expanded.

Architecture (Hybrid):
  Python Layer: the BFS over GraphStore adjacency lookups (one query per node)
  Rust Layer (rustworkx.PyDiGraph): depth and descendant queries on the
  reachable snapshot
"""
from collections import deque
from typing import Dict, Iterator, List, Optional, Tuple

import rustworkx as rx

from core.graph_db import GraphStore, NotFoundError
from core.schemas import (
    Node, Connection, NavigationOption, IssueGraph, FlattenedTree, TreeEntry, TreeAnswer,
)


Edge = Tuple[Connection, Node]


# =============================================================================
# TRAVERSAL
# =============================================================================

def walk_reachable(
    store: GraphStore,
    root: Node,
    category: str,
    draft: bool = False,
) -> Iterator[Tuple[Node, List[Edge]]]:
    """
    Breadth-first walk from root, each node yielded once with its usable edges.

    Args:
        store: Graph to read
        root: Start of the walk
        category: Category whose boundary stops expansion
        draft: Treat the category's own nodes as active (pre-publish check)

    Yields:
        (node, edges) where edges are the active connections to usable
        targets, in display order. Boundary nodes and conclusions yield [].
    """
    def usable(target: Node) -> bool:
        return target.is_active or (draft and target.category == category)

    queue = deque([root])
    visited = {root.id}
    while queue:
        node = queue.popleft()
        if node.category != category or node.is_conclusion:
            yield node, []
            continue

        edges = [
            (conn, target)
            for conn, target in store.list_outgoing_with_targets(node.id, active_only=False)
            if conn.is_active and usable(target)
        ]
        yield node, edges
        for _, target in edges:
            if target.id not in visited:
                visited.add(target.id)
                queue.append(target)


class ReachableGraph:
    """
    rustworkx snapshot of the part of a category reachable from its root.

    Node payloads are Node records; edge payloads are (position, Connection)
    so display order survives the round trip through rustworkx.
    """

    def __init__(self, category: str, root: Node):
        self.category = category
        self.root = root
        self.graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=True)
        self._node_map: Dict[str, int] = {}   # node id -> rustworkx index
        self.order: List[str] = []            # BFS discovery order

    @classmethod
    def load(cls, store: GraphStore, category: str, root: Node, draft: bool = False) -> "ReachableGraph":
        view = cls(category, root)
        for node, edges in walk_reachable(store, root, category, draft=draft):
            src = view._ensure_node(node)
            view.order.append(node.id)
            for position, (conn, target) in enumerate(edges):
                view.graph.add_edge(src, view._ensure_node(target), (position, conn))
        return view

    def _ensure_node(self, node: Node) -> int:
        idx = self._node_map.get(node.id)
        if idx is None:
            idx = self.graph.add_node(node)
            self._node_map[node.id] = idx
        return idx

    def node(self, node_id: str) -> Node:
        return self.graph[self._node_map[node_id]]

    def out_edges(self, node_id: str) -> List[Connection]:
        """Outgoing connections of a node in display order."""
        edges = self.graph.out_edges(self._node_map[node_id])
        return [conn for _, conn in sorted(payload for _, _, payload in edges)]

    def depths(self) -> Dict[str, int]:
        """Shortest answer-count from the root to every reachable node."""
        root_idx = self._node_map[self.root.id]
        lengths = rx.digraph_dijkstra_shortest_path_lengths(
            self.graph, root_idx, edge_cost_fn=lambda _: 1.0
        )
        depths = {self.root.id: 0}
        for idx, length in lengths.items():
            depths[self.graph[idx].id] = int(length)
        return depths

    def question_count(self) -> int:
        """Question nodes of this category reachable from the root (root included)."""
        root_idx = self._node_map[self.root.id]
        reachable = set(rx.descendants(self.graph, root_idx)) | {root_idx}
        return sum(
            1 for idx in reachable
            if self.graph[idx].is_question and self.graph[idx].category == self.category
        )

    def __len__(self) -> int:
        return self.graph.num_nodes()


def resolve_root(store: GraphStore, category: str) -> Tuple[Node, bool]:
    """
    Root of a category for view building.

    Returns:
        (root, draft) where draft is True when only an inactive root exists

    Raises:
        NotFoundError: If the category has no resolvable root
    """
    root = store.resolve_category_root(category, active_only=True)
    if root is not None:
        return root, False
    root = store.resolve_category_root(category, active_only=False)
    if root is None:
        raise NotFoundError("category", category, f"No root node for category '{category}'")
    return root, not root.is_active


# =============================================================================
# VIEW BUILDERS
# =============================================================================

def build_flattened_tree(store: GraphStore, category: str) -> FlattenedTree:
    """
    Raises:
        NotFoundError: If the category has no resolvable root
    """
    root, draft = resolve_root(store, category)
    view = ReachableGraph.load(store, category, root, draft=draft)
    depths = view.depths()

    entries = []
    for node_id in view.order:
        entries.append(TreeEntry(
            node=view.node(node_id),
            depth=depths.get(node_id, 0),
            answers=[
                TreeAnswer(
                    connection_id=conn.id,
                    label=conn.label,
                    order_index=conn.order_index,
                    to_node_id=conn.to_node_id,
                )
                for conn in view.out_edges(node_id)
            ],
        ))
    return FlattenedTree(
        category=category,
        root_node_id=root.id,
        entries=entries,
        question_count=view.question_count(),
    )


def build_editor_graph(store: GraphStore, category: str) -> IssueGraph:
    """
    Every node of the category (active or draft) and every connection leaving it.

    Raises:
        NotFoundError: If the category has no nodes
    """
    nodes = store.list_nodes_by_category(category)
    if not nodes:
        raise NotFoundError("category", category)
    return IssueGraph(
        category=category,
        nodes=nodes,
        connections=store.list_connections_from_category(category),
    )


def options_for_node(store: GraphStore, node_id: str) -> List[NavigationOption]:
    """Active answers of one node, read directly from the store."""
    return [
        NavigationOption(
            connection_id=conn.id,
            label=conn.label,
            order_index=conn.order_index,
            target_node_id=target.id,
            target_category=target.category,
            display_category=target.display_category,
        )
        for conn, target in store.list_outgoing_with_targets(node_id, active_only=True)
    ]


def build_adjacency(store: GraphStore, category: str) -> Dict[str, List[NavigationOption]]:
    """node_id -> navigation options for every active node of a category."""
    return {
        node.id: options_for_node(store, node.id)
        for node in store.list_nodes_by_category(category, active_only=True)
    }


def count_reachable_questions(store: GraphStore, category: str, root: Optional[Node] = None) -> int:
    if root is None:
        root, draft = resolve_root(store, category)
    else:
        draft = not root.is_active
    return ReachableGraph.load(store, category, root, draft=draft).question_count()
