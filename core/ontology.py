"""
TROUBLESHOOT ONTOLOGY - The Vocabulary of the Decision Graph

If schemas.py is the Grammar (how records are shaped),
ontology.py is the Dictionary (the words records may use).

This module defines:
- NodeType: the two kinds of step in a decision tree
- SessionState: the lifecycle of one user's walk through a tree
- ViewKind: the derived read views the cache layer holds
- Reserved semantic ids: the global entry point and the per-category root marker

Key Principle: the entry point is DATA, not a branch in traversal code.
The global selector is simply the node whose semantic_id is START_SEMANTIC_ID,
and a category root is the node whose semantic_id ends in ROOT_SUFFIX.
"""
from enum import Enum


# =============================================================================
# ENUMS (The Vocabulary)
# =============================================================================

class NodeType(str, Enum):
    """Kinds of node in a decision tree."""
    QUESTION = "question"        # Presents answers (outgoing connections)
    CONCLUSION = "conclusion"    # Terminal diagnosis

    @classmethod
    def parse(cls, value: str) -> "NodeType":
        """
        Accept either casing ("Question", "question").

        Raises:
            ValueError: If value names no node type
        """
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid node_type: '{value}'. Must be 'question' or 'conclusion'"
            ) from None


class SessionState(str, Enum):
    """
    Session lifecycle.

    ACTIVE -> COMPLETED  (a Conclusion node was reached)
    ACTIVE -> ABANDONED  (external timeout policy)

    COMPLETED and ABANDONED are terminal.
    """
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionState.ACTIVE


class ViewKind(str, Enum):
    """Derived read views cached per category."""
    FLATTENED_TREE = "flattened_tree"   # Reachable nodes in BFS order with depth
    EDITOR_GRAPH = "editor_graph"       # Nodes + connections payload for the editor
    ADJACENCY = "adjacency"             # node_id -> navigation options (sessions)


class ImportMode(str, Enum):
    """Collision policy when an imported category already exists."""
    REJECT = "reject"
    REPLACE = "replace"
    RENAME = "rename"


# =============================================================================
# RESERVED SEMANTIC IDS
# =============================================================================

START_SEMANTIC_ID = "start"
ROOT_SUFFIX = "_start"

# Category holding the global selector node; never exported as an issue.
START_CATEGORY = "root"


def root_semantic_id(category: str, suffix: str = ROOT_SUFFIX) -> str:
    """The semantic id that marks a category's root question."""
    return f"{category}{suffix}"
