"""
TROUBLESHOOT GRAPH STORE - The Source of Truth

Owns persisted Nodes and Connections. It is the only component with direct
persistence access; every other component reads through it (or through the
view cache in front of it).

Invariants enforced at write time:
- No dangling endpoints: a connection's from/to nodes must exist
- No self-loops: an answer must advance the conversation
- semantic_id is unique across the whole store
- Deleting a node deletes every connection touching it, atomically

Persistence:
  One sqlite3 connection, serialized by a re-entrant lock. Each mutation is
  one transaction (BEGIN IMMEDIATE ... COMMIT); nested mutations use
  savepoints so multi-step operations (issue creation, category delete,
  import) stay atomic.

Invalidation:
  Every mutation produces a GraphEvent naming the categories whose derived
  views it affects. Events are published on the EventBus only after the
  outermost transaction commits; a rollback discards them.
"""
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple

from core.ontology import NodeType, root_semantic_id, START_SEMANTIC_ID, ROOT_SUFFIX
from core.schemas import (
    Node, Connection, NodeSpec, NodePatch, ConnectionSpec, ConnectionPatch,
    NodeWithConnections, ConnectionWithTarget, generate_id, now_utc, patch_fields,
)
from infrastructure.event_bus import EventBus, EventType, GraphEvent, get_event_bus


logger = logging.getLogger("troubleshoot.graph_db")


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class GraphError(Exception):
    """Base exception for graph and session operations."""
    pass


class NotFoundError(GraphError):
    """Raised when a node, connection, session or category does not exist."""
    def __init__(self, kind: str, key: str, message: Optional[str] = None):
        self.kind = kind
        self.key = key
        super().__init__(message or f"{kind.capitalize()} not found: {key}")


class ValidationError(GraphError):
    """
    Raised when input is not acceptable in the current graph state.

    Attributes:
        fields: (field, message) pairs
        incomplete_nodes: texts of incomplete nodes when activation is blocked
    """
    def __init__(
        self,
        message: str,
        fields: Optional[List[Tuple[str, str]]] = None,
        incomplete_nodes: Optional[List[str]] = None,
    ):
        self.fields = list(fields or [])
        self.incomplete_nodes = list(incomplete_nodes or [])
        super().__init__(message)


class GraphIntegrityError(GraphError):
    """Raised when a reference would dangle (unknown endpoint, unknown import key)."""
    pass


class SelfLoopError(GraphIntegrityError, ValidationError):
    """Raised when a connection would point a node at itself."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        ValidationError.__init__(
            self,
            f"Cannot connect node {node_id} to itself",
            fields=[("to_node_id", "An answer must lead to a different node")],
        )


class ConflictError(ValidationError):
    """Raised when a unique key (semantic_id, category) is already taken."""
    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(
            f"{field} already in use: {value}",
            fields=[(field, f"'{value}' already exists")],
        )


# =============================================================================
# SCHEMA
# =============================================================================

_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    id TEXT PRIMARY KEY,
    category TEXT NOT NULL,
    node_type TEXT NOT NULL CHECK(node_type IN ('question', 'conclusion')),
    text TEXT NOT NULL,
    semantic_id TEXT UNIQUE,
    display_category TEXT,
    position_x REAL,
    position_y REAL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS connections (
    id TEXT PRIMARY KEY,
    from_node_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
    to_node_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
    label TEXT NOT NULL,
    order_index INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (from_node_id <> to_node_id)
);

CREATE INDEX IF NOT EXISTS idx_nodes_category ON nodes(category);
CREATE INDEX IF NOT EXISTS idx_conn_from ON connections(from_node_id, order_index);
CREATE INDEX IF NOT EXISTS idx_conn_to ON connections(to_node_id);
"""

_NODE_COLUMNS = (
    "id, category, node_type, text, semantic_id, display_category, "
    "position_x, position_y, is_active, created_at, updated_at"
)
_CONN_COLUMNS = (
    "id, from_node_id, to_node_id, label, order_index, is_active, created_at, updated_at"
)


def _row_to_node(row, prefix: str = "") -> Node:
    return Node(
        id=row[f"{prefix}id"],
        category=row[f"{prefix}category"],
        node_type=NodeType(row[f"{prefix}node_type"]),
        text=row[f"{prefix}text"],
        semantic_id=row[f"{prefix}semantic_id"],
        display_category=row[f"{prefix}display_category"],
        position_x=row[f"{prefix}position_x"],
        position_y=row[f"{prefix}position_y"],
        is_active=bool(row[f"{prefix}is_active"]),
        created_at=row[f"{prefix}created_at"],
        updated_at=row[f"{prefix}updated_at"],
    )


def _row_to_connection(row) -> Connection:
    return Connection(
        id=row["id"],
        from_node_id=row["from_node_id"],
        to_node_id=row["to_node_id"],
        label=row["label"],
        order_index=row["order_index"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# =============================================================================
# GRAPH STORE
# =============================================================================

class GraphStore:
    """
    sqlite3-backed store of decision-graph nodes and connections.

    Usage:
        store = GraphStore(db_path=":memory:")
        q = store.create_node(NodeSpec(category="brush", node_type=NodeType.QUESTION,
                                       text="What's the issue?"))
        c = store.create_node(NodeSpec(category="brush", node_type=NodeType.CONCLUSION,
                                       text="Replace the belt"))
        store.create_connection(ConnectionSpec(from_node_id=q.id, to_node_id=c.id,
                                               label="Belt snapped"))

    Thread Safety:
        Safe for concurrent use. All statements run on one connection under a
        re-entrant lock; each public mutation is its own transaction.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        event_bus: Optional[EventBus] = None,
        start_semantic_id: str = START_SEMANTIC_ID,
        root_suffix: str = ROOT_SUFFIX,
    ):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.start_semantic_id = start_semantic_id
        self.root_suffix = root_suffix
        self._event_bus = event_bus if event_bus is not None else get_event_bus()

        self._lock = threading.RLock()
        self._tx_depth = 0
        self._pending_events: List[GraphEvent] = []

        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._lock:
            self._conn.executescript(_SCHEMA)

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # =========================================================================
    # TRANSACTIONS & EVENTS
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        The outermost block is a sqlite transaction; nested blocks are
        savepoints. Events emitted inside are published only after the
        outermost block commits.
        """
        with self._lock:
            depth = self._tx_depth
            savepoint = f"sp_{depth}"
            events_mark = len(self._pending_events)
            if depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
            else:
                self._conn.execute(f"SAVEPOINT {savepoint}")
            self._tx_depth += 1
            try:
                yield self._conn
            except BaseException:
                self._tx_depth -= 1
                if depth == 0:
                    self._conn.execute("ROLLBACK")
                    self._pending_events.clear()
                else:
                    self._conn.execute(f"ROLLBACK TO {savepoint}")
                    self._conn.execute(f"RELEASE {savepoint}")
                    del self._pending_events[events_mark:]
                raise
            self._tx_depth -= 1
            if depth > 0:
                self._conn.execute(f"RELEASE {savepoint}")
                return
            self._conn.execute("COMMIT")
            events, self._pending_events = self._pending_events, []

        for event in events:
            self._event_bus.publish(event)

    def _emit(self, event_type: EventType, categories: Set[str], **payload) -> GraphEvent:
        event = GraphEvent(
            type=event_type,
            categories=sorted(c for c in categories if c),
            payload=payload,
            timestamp=time.time(),
            source="graph_db",
        )
        self._pending_events.append(event)
        return event

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    # =========================================================================
    # NODE OPERATIONS
    # =========================================================================

    def create_node(self, spec: NodeSpec) -> Node:
        """
        Create a node with a freshly generated id.

        Raises:
            ValidationError: If category or text is blank
            ConflictError: If semantic_id is already in use
        """
        if not spec.category or not spec.category.strip():
            raise ValidationError("Node category is required", fields=[("category", "required")])
        if not spec.text or not spec.text.strip():
            raise ValidationError("Node text is required", fields=[("text", "required")])

        now = now_utc()
        node = Node(
            id=generate_id(),
            category=spec.category,
            node_type=NodeType(spec.node_type),
            text=spec.text,
            semantic_id=spec.semantic_id or None,
            display_category=spec.display_category,
            position_x=spec.position_x,
            position_y=spec.position_y,
            is_active=spec.is_active,
            created_at=now,
            updated_at=now,
        )

        with self.transaction() as conn:
            if node.semantic_id is not None:
                self._check_semantic_id_free(node.semantic_id)
            try:
                conn.execute(
                    f"INSERT INTO nodes ({_NODE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        node.id, node.category, node.node_type.value, node.text,
                        node.semantic_id, node.display_category, node.position_x,
                        node.position_y, int(node.is_active), node.created_at, node.updated_at,
                    ),
                )
            except sqlite3.IntegrityError:
                raise ConflictError("semantic_id", node.semantic_id or "")
            self._emit(EventType.NODE_CREATED, {node.category}, node_id=node.id)

        logger.info(f"Created {node.node_type.value} node {node.id} in '{node.category}'")
        return node

    def _check_semantic_id_free(self, semantic_id: str, exclude_id: Optional[str] = None) -> None:
        row = self._query_one("SELECT id FROM nodes WHERE semantic_id = ?", (semantic_id,))
        if row is not None and row["id"] != exclude_id:
            raise ConflictError("semantic_id", semantic_id)

    def get_node(self, node_id: str) -> Node:
        """
        Raises:
            NotFoundError: If node doesn't exist
        """
        row = self._query_one(f"SELECT {_NODE_COLUMNS} FROM nodes WHERE id = ?", (node_id,))
        if row is None:
            raise NotFoundError("node", node_id)
        return _row_to_node(row)

    def has_node(self, node_id: str) -> bool:
        return self._query_one("SELECT 1 FROM nodes WHERE id = ?", (node_id,)) is not None

    def find_node_by_semantic_id(self, semantic_id: str, active_only: bool = False) -> Optional[Node]:
        sql = f"SELECT {_NODE_COLUMNS} FROM nodes WHERE semantic_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        row = self._query_one(sql, (semantic_id,))
        return _row_to_node(row) if row is not None else None

    def update_node(self, node_id: str, patch: NodePatch) -> Node:
        """
        Apply a partial update.

        Raises:
            NotFoundError: If node doesn't exist
            ValidationError: If text would become blank
            ConflictError: If the new semantic_id belongs to another node
        """
        changes = patch_fields(patch)
        if "text" in changes and not (changes["text"] or "").strip():
            raise ValidationError("Node text is required", fields=[("text", "required")])
        if "semantic_id" in changes and not changes["semantic_id"]:
            changes["semantic_id"] = None

        with self.transaction() as conn:
            current = self.get_node(node_id)
            if not changes:
                return current
            if changes.get("semantic_id") is not None:
                self._check_semantic_id_free(changes["semantic_id"], exclude_id=node_id)

            changes["updated_at"] = now_utc()
            columns = ", ".join(f"{name} = ?" for name in changes)
            values = [
                value.value if isinstance(value, NodeType)
                else int(value) if isinstance(value, bool)
                else value
                for value in changes.values()
            ]
            try:
                conn.execute(f"UPDATE nodes SET {columns} WHERE id = ?", (*values, node_id))
            except sqlite3.IntegrityError:
                raise ConflictError("semantic_id", changes.get("semantic_id") or "")

            categories = {current.category} | self._incoming_categories(node_id)
            self._emit(EventType.NODE_UPDATED, categories, node_id=node_id,
                       fields=sorted(changes))
            updated = self.get_node(node_id)

        logger.info(f"Updated node {node_id} ({', '.join(sorted(changes))})")
        return updated

    def delete_node(self, node_id: str) -> Node:
        """
        Delete a node and every connection whose endpoint is this node.

        Both go in one transaction: either the node and all of its
        connections disappear, or nothing does.

        Returns:
            The removed Node

        Raises:
            NotFoundError: If node doesn't exist
        """
        with self.transaction() as conn:
            node = self.get_node(node_id)
            categories = {node.category} | self._incoming_categories(node_id)
            removed = conn.execute(
                "DELETE FROM connections WHERE from_node_id = ? OR to_node_id = ?",
                (node_id, node_id),
            ).rowcount
            conn.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
            self._emit(EventType.NODE_DELETED, categories, node_id=node_id,
                       connections_removed=removed)

        logger.info(f"Deleted node {node_id} and {removed} connection(s)")
        return node

    def list_nodes_by_category(self, category: str, active_only: bool = False) -> List[Node]:
        """Nodes of one category in creation order."""
        sql = f"SELECT {_NODE_COLUMNS} FROM nodes WHERE category = ?"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY rowid ASC"
        return [_row_to_node(row) for row in self._query(sql, (category,))]

    def list_categories(self) -> List[str]:
        return [row["category"] for row in self._query(
            "SELECT DISTINCT category FROM nodes ORDER BY category ASC"
        )]

    def count_nodes(self, category: Optional[str] = None) -> int:
        if category is None:
            row = self._query_one("SELECT COUNT(*) AS n FROM nodes")
        else:
            row = self._query_one("SELECT COUNT(*) AS n FROM nodes WHERE category = ?", (category,))
        return row["n"]

    def _incoming_categories(self, node_id: str) -> Set[str]:
        """Categories of nodes with a connection into node_id."""
        rows = self._query(
            """
            SELECT DISTINCT n.category FROM connections c
            JOIN nodes n ON n.id = c.from_node_id
            WHERE c.to_node_id = ?
            """,
            (node_id,),
        )
        return {row["category"] for row in rows}

    # =========================================================================
    # CONNECTION OPERATIONS
    # =========================================================================

    def create_connection(self, spec: ConnectionSpec) -> Connection:
        """
        Create an answer edge between two existing nodes.

        Cross-category targets are allowed (shared sub-trees).

        Raises:
            NotFoundError: If either endpoint doesn't exist
            SelfLoopError: If from_node_id == to_node_id
            ValidationError: If label is blank
        """
        if spec.from_node_id == spec.to_node_id:
            raise SelfLoopError(spec.from_node_id)
        if not spec.label or not spec.label.strip():
            raise ValidationError("Connection label is required", fields=[("label", "required")])

        with self.transaction() as conn:
            source = self.get_node(spec.from_node_id)
            self.get_node(spec.to_node_id)

            order_index = spec.order_index
            if order_index is None:
                order_index = self.count_outgoing(spec.from_node_id)

            now = now_utc()
            connection = Connection(
                id=generate_id(),
                from_node_id=spec.from_node_id,
                to_node_id=spec.to_node_id,
                label=spec.label,
                order_index=order_index,
                is_active=spec.is_active,
                created_at=now,
                updated_at=now,
            )
            conn.execute(
                f"INSERT INTO connections ({_CONN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    connection.id, connection.from_node_id, connection.to_node_id,
                    connection.label, connection.order_index, int(connection.is_active),
                    connection.created_at, connection.updated_at,
                ),
            )
            self._emit(EventType.CONNECTION_CREATED, {source.category},
                       connection_id=connection.id)

        logger.info(
            f"Created connection {connection.id}: {connection.from_node_id} -> "
            f"{connection.to_node_id} '{connection.label}'"
        )
        return connection

    def get_connection(self, connection_id: str) -> Connection:
        row = self._query_one(
            f"SELECT {_CONN_COLUMNS} FROM connections WHERE id = ?", (connection_id,)
        )
        if row is None:
            raise NotFoundError("connection", connection_id)
        return _row_to_connection(row)

    def update_connection(self, connection_id: str, patch: ConnectionPatch) -> Connection:
        """
        Apply a partial update; may retarget the connection.

        Raises:
            NotFoundError: If the connection or the new target doesn't exist
            SelfLoopError: If the new target is the source node
            ValidationError: If label would become blank
        """
        changes = patch_fields(patch)
        if "label" in changes and not (changes["label"] or "").strip():
            raise ValidationError("Connection label is required", fields=[("label", "required")])

        with self.transaction() as conn:
            current = self.get_connection(connection_id)
            if not changes:
                return current
            if "to_node_id" in changes:
                if changes["to_node_id"] == current.from_node_id:
                    raise SelfLoopError(current.from_node_id)
                self.get_node(changes["to_node_id"])

            changes["updated_at"] = now_utc()
            columns = ", ".join(f"{name} = ?" for name in changes)
            values = [int(v) if isinstance(v, bool) else v for v in changes.values()]
            conn.execute(
                f"UPDATE connections SET {columns} WHERE id = ?", (*values, connection_id)
            )
            source = self.get_node(current.from_node_id)
            self._emit(EventType.CONNECTION_UPDATED, {source.category},
                       connection_id=connection_id, fields=sorted(changes))
            updated = self.get_connection(connection_id)

        logger.info(f"Updated connection {connection_id} ({', '.join(sorted(changes))})")
        return updated

    def delete_connection(self, connection_id: str) -> Connection:
        """
        Raises:
            NotFoundError: If the connection doesn't exist
        """
        with self.transaction() as conn:
            connection = self.get_connection(connection_id)
            source = self.get_node(connection.from_node_id)
            conn.execute("DELETE FROM connections WHERE id = ?", (connection_id,))
            self._emit(EventType.CONNECTION_DELETED, {source.category},
                       connection_id=connection_id)

        logger.info(f"Deleted connection {connection_id}")
        return connection

    def count_outgoing(self, node_id: str) -> int:
        row = self._query_one(
            "SELECT COUNT(*) AS n FROM connections WHERE from_node_id = ?", (node_id,)
        )
        return row["n"]

    def list_outgoing_connections(self, node_id: str, active_only: bool = True) -> List[Connection]:
        """
        Answers leaving a node, by order_index ascending, ties in creation order.

        With active_only, a connection counts only if it and its target node
        are both active.
        """
        return [c for c, _ in self.list_outgoing_with_targets(node_id, active_only)]

    def list_outgoing_with_targets(
        self, node_id: str, active_only: bool = True
    ) -> List[Tuple[Connection, Node]]:
        """Outgoing connections paired with their target nodes, in display order."""
        target_cols = ", ".join(f"n.{col.strip()} AS t_{col.strip()}" for col in _NODE_COLUMNS.split(","))
        conn_cols = ", ".join(f"c.{col.strip()}" for col in _CONN_COLUMNS.split(","))
        sql = (
            f"SELECT {conn_cols}, {target_cols} FROM connections c "
            "JOIN nodes n ON n.id = c.to_node_id WHERE c.from_node_id = ?"
        )
        if active_only:
            sql += " AND c.is_active = 1 AND n.is_active = 1"
        sql += " ORDER BY c.order_index ASC, c.rowid ASC"
        return [
            (_row_to_connection(row), _row_to_node(row, prefix="t_"))
            for row in self._query(sql, (node_id,))
        ]

    def list_incoming_connections(self, node_id: str, active_only: bool = False) -> List[Connection]:
        sql = f"SELECT {_CONN_COLUMNS} FROM connections WHERE to_node_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY order_index ASC, rowid ASC"
        return [_row_to_connection(row) for row in self._query(sql, (node_id,))]

    def list_connections_from_category(
        self, category: str, active_only: bool = False
    ) -> List[Connection]:
        """Connections whose source node belongs to category."""
        conn_cols = ", ".join(f"c.{col.strip()}" for col in _CONN_COLUMNS.split(","))
        sql = (
            f"SELECT {conn_cols} FROM connections c "
            "JOIN nodes n ON n.id = c.from_node_id WHERE n.category = ?"
        )
        if active_only:
            sql += " AND c.is_active = 1"
        sql += " ORDER BY c.order_index ASC, c.rowid ASC"
        return [_row_to_connection(row) for row in self._query(sql, (category,))]

    def get_node_with_connections(self, node_id: str) -> NodeWithConnections:
        """A node plus its active answers and where each one leads."""
        node = self.get_node(node_id)
        return NodeWithConnections(
            node=node,
            connections=[
                ConnectionWithTarget(
                    id=c.id, label=c.label, order_index=c.order_index, target_node=target
                )
                for c, target in self.list_outgoing_with_targets(node_id, active_only=True)
            ],
        )

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def get_start_node(self, active_only: bool = True) -> Optional[Node]:
        """The global selector node (semantic_id == start_semantic_id)."""
        return self.find_node_by_semantic_id(self.start_semantic_id, active_only=active_only)

    def resolve_category_root(self, category: str, active_only: bool = True) -> Optional[Node]:
        """
        Find the root question of a category.

        Resolution order:
        1. The node whose semantic_id is the category's root marker
        2. The category node the global start node links to
        3. The earliest-created question node of the category

        The root is identified regardless of activation; with active_only
        an inactive (draft) root resolves to None rather than to some other
        active node of the category.
        """
        root = self._find_category_root(category)
        if root is not None and active_only and not root.is_active:
            return None
        return root

    def _find_category_root(self, category: str) -> Optional[Node]:
        row = self._query_one(
            f"SELECT {_NODE_COLUMNS} FROM nodes WHERE semantic_id = ? AND category = ?",
            (root_semantic_id(category, self.root_suffix), category),
        )
        if row is not None:
            return _row_to_node(row)

        node_cols = ", ".join(f"n.{col.strip()}" for col in _NODE_COLUMNS.split(","))
        row = self._query_one(
            f"""
            SELECT {node_cols} FROM connections c
            JOIN nodes n ON n.id = c.to_node_id
            JOIN nodes s ON s.id = c.from_node_id
            WHERE s.semantic_id = ? AND n.category = ?
            ORDER BY c.order_index ASC, c.rowid ASC
            LIMIT 1
            """,
            (self.start_semantic_id, category),
        )
        if row is not None:
            return _row_to_node(row)

        row = self._query_one(
            f"""
            SELECT {_NODE_COLUMNS} FROM nodes
            WHERE category = ? AND node_type = 'question'
            ORDER BY rowid ASC LIMIT 1
            """,
            (category,),
        )
        return _row_to_node(row) if row is not None else None

    # =========================================================================
    # CATEGORY-WIDE OPERATIONS
    # =========================================================================

    def set_category_active(self, category: str, is_active: bool, root_id: Optional[str] = None) -> int:
        """
        Flip is_active on every node of a category, and on every connection
        pointing at its root so the global selector shows or hides it.

        Returns:
            Number of nodes updated
        """
        now = now_utc()
        with self.transaction() as conn:
            updated = conn.execute(
                "UPDATE nodes SET is_active = ?, updated_at = ? WHERE category = ?",
                (int(is_active), now, category),
            ).rowcount
            categories = {category}
            if root_id is not None:
                categories |= self._incoming_categories(root_id)
                conn.execute(
                    "UPDATE connections SET is_active = ?, updated_at = ? WHERE to_node_id = ?",
                    (int(is_active), now, root_id),
                )
            self._emit(EventType.CATEGORY_UPDATED, categories, category=category,
                       is_active=is_active)

        logger.info(f"Set {updated} node(s) in '{category}' is_active={is_active}")
        return updated

    def update_category_display(self, category: str, display_category: Optional[str]) -> int:
        with self.transaction() as conn:
            updated = conn.execute(
                "UPDATE nodes SET display_category = ?, updated_at = ? WHERE category = ?",
                (display_category, now_utc(), category),
            ).rowcount
            categories = {category}
            for node in self.list_nodes_by_category(category):
                categories |= self._incoming_categories(node.id)
            self._emit(EventType.CATEGORY_UPDATED, categories, category=category,
                       display_category=display_category)
        return updated

    def delete_category(self, category: str) -> int:
        """
        Delete every node of a category and every connection touching them.

        Returns:
            Number of nodes deleted

        Raises:
            NotFoundError: If the category has no nodes
        """
        with self.transaction() as conn:
            nodes = self.list_nodes_by_category(category)
            if not nodes:
                raise NotFoundError("category", category)
            categories = {category}
            for node in nodes:
                categories |= self._incoming_categories(node.id)
            conn.execute(
                """
                DELETE FROM connections
                WHERE from_node_id IN (SELECT id FROM nodes WHERE category = ?)
                   OR to_node_id IN (SELECT id FROM nodes WHERE category = ?)
                """,
                (category, category),
            )
            deleted = conn.execute("DELETE FROM nodes WHERE category = ?", (category,)).rowcount
            self._emit(EventType.CATEGORY_DELETED, categories, category=category,
                       nodes_deleted=deleted)

        logger.info(f"Deleted category '{category}' ({deleted} node(s))")
        return deleted

    # =========================================================================
    # UTILITIES
    # =========================================================================

    def dangling_connection_count(self) -> int:
        """Connections whose endpoint row is missing; always 0 unless the file was edited externally."""
        row = self._query_one(
            """
            SELECT COUNT(*) AS n FROM connections c
            LEFT JOIN nodes f ON f.id = c.from_node_id
            LEFT JOIN nodes t ON t.id = c.to_node_id
            WHERE f.id IS NULL OR t.id IS NULL
            """
        )
        return row["n"]

    def __len__(self) -> int:
        return self.count_nodes()

    def __contains__(self, node_id: str) -> bool:
        return self.has_node(node_id)

    def __repr__(self) -> str:
        return f"GraphStore(db_path={self.db_path!r}, nodes={self.count_nodes()})"
