"""
TROUBLESHOOT SCHEMAS - The Grammar of the System

If ontology.py is the Dictionary (defining the words we can use),
schemas.py is the Grammar (defining how we structure records).

This module defines the data structures that flow between components:
- Node / Connection: persisted graph rows
- NodeSpec / NodePatch / ConnectionSpec / ConnectionPatch: mutation inputs
- Session / SessionStep / SessionView / NavigationOption: traversal state
- Issue / ValidationReport: category-level derived records
- IssueGraph / FlattenedTree: cached read views
- IssueDocument and friends: the portable import/export format

Design Principles:
1. STRICT TYPING: msgspec.Struct with no silent type coercion
2. KW_ONLY: Enforce keyword arguments to prevent positional mix-ups
3. IMMUTABLE IDS: Node/connection ids are set once and never change
4. PATCHES USE UNSET: a field left UNSET is untouched, a field set to None is cleared
"""
import msgspec
from typing import Optional, List, Union
from datetime import datetime, timezone
import uuid

from core.ontology import NodeType, SessionState


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def now_utc() -> str:
    """Fast UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    """Generate a new UUID hex string for node/connection/session ids."""
    return uuid.uuid4().hex


# =============================================================================
# GRAPH ROWS
# =============================================================================

class Node(msgspec.Struct, kw_only=True):
    """
    One step in a decision tree.

    `category` names the tree the node belongs to. `display_category` is a
    free-text UI grouping label and has no bearing on traversal, nor do the
    editor coordinates.
    """
    id: str
    category: str
    node_type: NodeType
    text: str
    semantic_id: Optional[str] = None
    display_category: Optional[str] = None
    position_x: Optional[float] = None
    position_y: Optional[float] = None
    is_active: bool = True
    created_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)

    @property
    def is_question(self) -> bool:
        return self.node_type == NodeType.QUESTION

    @property
    def is_conclusion(self) -> bool:
        return self.node_type == NodeType.CONCLUSION


class Connection(msgspec.Struct, kw_only=True):
    """A directed, labeled edge: one answer choice leading to the next node."""
    id: str
    from_node_id: str
    to_node_id: str
    label: str
    order_index: int = 0
    is_active: bool = True
    created_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)


# =============================================================================
# MUTATION INPUTS
# =============================================================================

class NodeSpec(msgspec.Struct, kw_only=True):
    category: str
    node_type: NodeType
    text: str
    semantic_id: Optional[str] = None
    display_category: Optional[str] = None
    position_x: Optional[float] = None
    position_y: Optional[float] = None
    is_active: bool = True


class NodePatch(msgspec.Struct, kw_only=True, omit_defaults=True):
    """Partial node update. Fields left UNSET are not written."""
    text: Union[str, msgspec.UnsetType] = msgspec.UNSET
    node_type: Union[NodeType, msgspec.UnsetType] = msgspec.UNSET
    semantic_id: Union[Optional[str], msgspec.UnsetType] = msgspec.UNSET
    display_category: Union[Optional[str], msgspec.UnsetType] = msgspec.UNSET
    position_x: Union[Optional[float], msgspec.UnsetType] = msgspec.UNSET
    position_y: Union[Optional[float], msgspec.UnsetType] = msgspec.UNSET
    is_active: Union[bool, msgspec.UnsetType] = msgspec.UNSET


class ConnectionSpec(msgspec.Struct, kw_only=True):
    from_node_id: str
    to_node_id: str
    label: str
    order_index: Optional[int] = None   # None = append after existing siblings
    is_active: bool = True


class ConnectionPatch(msgspec.Struct, kw_only=True, omit_defaults=True):
    to_node_id: Union[str, msgspec.UnsetType] = msgspec.UNSET
    label: Union[str, msgspec.UnsetType] = msgspec.UNSET
    order_index: Union[int, msgspec.UnsetType] = msgspec.UNSET
    is_active: Union[bool, msgspec.UnsetType] = msgspec.UNSET


def patch_fields(patch: msgspec.Struct) -> dict:
    """The fields a patch actually sets, as a plain dict (UNSET dropped)."""
    return {
        name: getattr(patch, name)
        for name in patch.__struct_fields__
        if getattr(patch, name) is not msgspec.UNSET
    }


class ConnectionWithTarget(msgspec.Struct, kw_only=True):
    id: str
    label: str
    order_index: int
    target_node: Node


class NodeWithConnections(msgspec.Struct, kw_only=True):
    node: Node
    connections: List[ConnectionWithTarget] = msgspec.field(default_factory=list)


# =============================================================================
# SESSIONS
# =============================================================================

class NavigationOption(msgspec.Struct, kw_only=True):
    """One answer the user may pick from the current node."""
    connection_id: str
    label: str
    order_index: int
    target_node_id: str
    target_category: str
    display_category: Optional[str] = None


class SessionStep(msgspec.Struct, kw_only=True):
    """One answered question, in the order the user answered."""
    node_id: str
    node_text: str
    connection_id: str
    label: str
    timestamp: str = msgspec.field(default_factory=now_utc)


class Session(msgspec.Struct, kw_only=True):
    """
    One user's traversal instance.

    Invariant: completed_at is set iff final_conclusion is set, and both
    only in the COMPLETED state.
    """
    session_id: str
    state: SessionState
    current_node_id: str
    category: Optional[str] = None
    started_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)
    completed_at: Optional[str] = None
    final_conclusion: Optional[str] = None
    steps: List[SessionStep] = msgspec.field(default_factory=list)
    tech_identifier: Optional[str] = None
    client_site: Optional[str] = None
    ip_hash: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def abandoned(self) -> bool:
        return self.state == SessionState.ABANDONED

    @property
    def completed(self) -> bool:
        return self.state == SessionState.COMPLETED


class SessionView(msgspec.Struct, kw_only=True):
    """What a client renders: where the session is and what it may answer."""
    session_id: str
    state: SessionState
    node: Node
    options: List[NavigationOption] = msgspec.field(default_factory=list)
    is_conclusion: bool = False
    conclusion_text: Optional[str] = None


# =============================================================================
# ISSUES (CATEGORY-LEVEL)
# =============================================================================

class Issue(msgspec.Struct, kw_only=True):
    """A category viewed as one independent decision tree."""
    id: str
    name: str
    category: str
    root_node_id: str
    is_active: bool
    question_count: int
    display_category: Optional[str] = None
    created_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)


class ValidationReport(msgspec.Struct, kw_only=True):
    """Outcome of a publish-safety check over one category."""
    category: str
    ok: bool
    incomplete_nodes: List[str] = msgspec.field(default_factory=list)      # texts
    incomplete_node_ids: List[str] = msgspec.field(default_factory=list)
    visited: int = 0


# =============================================================================
# CACHED VIEWS
# =============================================================================

class IssueGraph(msgspec.Struct, kw_only=True):
    """Editor payload: every node of a category (drafts included) and the connections leaving it."""
    category: str
    nodes: List[Node] = msgspec.field(default_factory=list)
    connections: List[Connection] = msgspec.field(default_factory=list)


class TreeAnswer(msgspec.Struct, kw_only=True):
    connection_id: str
    label: str
    order_index: int
    to_node_id: str


class TreeEntry(msgspec.Struct, kw_only=True):
    node: Node
    depth: int
    answers: List[TreeAnswer] = msgspec.field(default_factory=list)


class FlattenedTree(msgspec.Struct, kw_only=True):
    """Nodes reachable from a category root, breadth-first, each listed once."""
    category: str
    root_node_id: str
    entries: List[TreeEntry] = msgspec.field(default_factory=list)
    question_count: int = 0


# =============================================================================
# IMPORT / EXPORT DOCUMENT
# =============================================================================

DOCUMENT_FORMAT_VERSION = 1


class ExportedIssue(msgspec.Struct, kw_only=True):
    name: str
    category: str
    root_question_text: str
    display_category: Optional[str] = None
    root_ref: Optional[str] = None             # ref of the root node; absent in older documents


class ExportedNode(msgspec.Struct, kw_only=True):
    ref: str                                   # document-local key, not a store id
    node_type: str
    text: str
    semantic_id: Optional[str] = None
    display_category: Optional[str] = None
    position_x: Optional[float] = None
    position_y: Optional[float] = None


class ExportedConnection(msgspec.Struct, kw_only=True):
    from_ref: str
    to_ref: str
    label: str
    order_index: int = 0


class IssueDocument(msgspec.Struct, kw_only=True):
    """A whole category graph, portable across stores."""
    issue: ExportedIssue
    nodes: List[ExportedNode] = msgspec.field(default_factory=list)
    connections: List[ExportedConnection] = msgspec.field(default_factory=list)
    format_version: int = DOCUMENT_FORMAT_VERSION


class ImportSuccess(msgspec.Struct, kw_only=True):
    category: str
    name: str
    nodes_count: int
    connections_count: int


class ImportItemError(msgspec.Struct, kw_only=True):
    """One item that failed to import; the rest of the document still lands."""
    category: str
    item_kind: str                             # "issue" | "node" | "connection"
    error: str
    error_type: str = "GraphError"
    ref: Optional[str] = None


class ImportResult(msgspec.Struct, kw_only=True):
    success: List[ImportSuccess] = msgspec.field(default_factory=list)
    errors: List[ImportItemError] = msgspec.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def extend(self, other: "ImportResult") -> None:
        self.success.extend(other.success)
        self.errors.extend(other.errors)


# =============================================================================
# OBSERVABILITY
# =============================================================================

class CacheStats(msgspec.Struct, kw_only=True):
    view_kind: str
    entries: int
    hits: int
    misses: int
    hit_rate: float
    evictions: int
    max_size: int
    ttl_seconds: float
