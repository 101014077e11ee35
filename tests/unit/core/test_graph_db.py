"""
Unit tests for core/graph_db.py - GraphStore

Tests the persistence layer including:
- Node creation, update, deletion and retrieval
- Connection creation, ordering and retargeting
- Cascading deletes and transaction atomicity
- Mutation events and the categories they name
- Root resolution and category-wide operations
- Error handling
"""
import pytest

from core.graph_db import (
    GraphStore,
    NotFoundError,
    ValidationError,
    GraphIntegrityError,
    SelfLoopError,
    ConflictError,
)
from core.ontology import NodeType
from core.schemas import NodeSpec, NodePatch, ConnectionSpec, ConnectionPatch
from infrastructure.event_bus import EventType


# =============================================================================
# NODE OPERATIONS TESTS
# =============================================================================

def test_create_node_assigns_id_and_persists(fresh_store):
    """
    Validate that create_node stores a retrievable node.

    Verifies:
    - A fresh id is generated
    - The node can be read back with the same fields
    - Node count increases by 1
    """
    node = fresh_store.create_node(NodeSpec(
        category="brush",
        node_type=NodeType.QUESTION,
        text="What's the issue?",
        semantic_id="brush_check",
        position_x=10.0,
        position_y=20.5,
    ))

    assert node.id
    assert len(fresh_store) == 1
    retrieved = fresh_store.get_node(node.id)
    assert retrieved.text == "What's the issue?"
    assert retrieved.semantic_id == "brush_check"
    assert retrieved.node_type == NodeType.QUESTION
    assert retrieved.position_y == 20.5
    assert retrieved.is_active is True


def test_create_node_duplicate_semantic_id_fails(builder):
    """
    Validate that semantic_id is unique across the whole store.

    Verifies:
    - Reusing a semantic_id in another category raises ConflictError
    - ConflictError is also a ValidationError
    - Only the first node exists
    """
    builder.question("brush", "First", semantic_id="shared")

    with pytest.raises(ConflictError) as exc_info:
        builder.question("chemical", "Second", semantic_id="shared")

    assert isinstance(exc_info.value, ValidationError)
    assert exc_info.value.field == "semantic_id"
    assert builder.store.count_nodes() == 1


def test_create_node_allows_many_without_semantic_id(builder):
    builder.conclusion("brush", "Done")
    builder.conclusion("brush", "Also done")

    assert builder.store.count_nodes("brush") == 2


def test_create_node_blank_text_fails(fresh_store):
    with pytest.raises(ValidationError):
        fresh_store.create_node(NodeSpec(category="brush", node_type=NodeType.QUESTION, text="   "))


def test_get_node_unknown_raises(fresh_store):
    with pytest.raises(NotFoundError) as exc_info:
        fresh_store.get_node("missing")

    assert exc_info.value.kind == "node"
    assert exc_info.value.key == "missing"


def test_update_node_applies_only_set_fields(builder):
    """
    Validate partial updates.

    Verifies:
    - Fields in the patch change
    - Fields left UNSET are untouched
    - A field set to None is cleared
    """
    node = builder.question("brush", "Old text", semantic_id="brush_q")
    builder.store.update_node(node.id, NodePatch(display_category="Equipment"))

    updated = builder.store.update_node(node.id, NodePatch(text="New text", semantic_id=None))

    assert updated.text == "New text"
    assert updated.semantic_id is None
    assert updated.display_category == "Equipment"
    assert updated.node_type == NodeType.QUESTION


def test_update_node_unknown_raises(fresh_store):
    with pytest.raises(NotFoundError):
        fresh_store.update_node("missing", NodePatch(text="x"))


def test_update_node_semantic_id_conflict(builder):
    builder.question("brush", "A", semantic_id="a")
    b = builder.question("brush", "B", semantic_id="b")

    with pytest.raises(ConflictError):
        builder.store.update_node(b.id, NodePatch(semantic_id="a"))

    # Keeping its own semantic_id is not a conflict
    assert builder.store.update_node(b.id, NodePatch(semantic_id="b")).semantic_id == "b"


def test_update_node_can_change_type(builder):
    node = builder.question("brush", "Maybe final")

    updated = builder.store.update_node(node.id, NodePatch(node_type=NodeType.CONCLUSION))

    assert updated.is_conclusion


def test_soft_delete_via_patch(builder):
    node = builder.question("brush", "Hidden")

    builder.store.update_node(node.id, NodePatch(is_active=False))

    assert builder.store.get_node(node.id).is_active is False
    assert builder.store.list_nodes_by_category("brush", active_only=True) == []


# =============================================================================
# CASCADE & ATOMICITY TESTS
# =============================================================================

def test_delete_node_removes_every_touching_connection(builder):
    """
    Validate that deleting a node leaves no dangling connection.

    Verifies:
    - Incoming and outgoing connections of the node are gone
    - Unrelated connections survive
    - No connection references a missing node
    """
    store = builder.store
    q1 = builder.question("brush", "Q1")
    q2 = builder.question("brush", "Q2")
    q3 = builder.question("brush", "Q3")
    c12 = builder.connect(q1, q2, "to two")
    c23 = builder.connect(q2, q3, "to three")
    c31 = builder.connect(q3, q1, "loop back")

    removed = store.delete_node(q2.id)

    assert removed.id == q2.id
    assert q2.id not in store
    for conn_id in (c12.id, c23.id):
        with pytest.raises(NotFoundError):
            store.get_connection(conn_id)
    assert store.get_connection(c31.id).to_node_id == q1.id
    assert store.list_outgoing_connections(q1.id, active_only=False) == []
    assert store.dangling_connection_count() == 0


def test_delete_node_rolls_back_with_enclosing_transaction(builder):
    """
    Validate that a node delete is all-or-nothing.

    Verifies:
    - If the enclosing transaction fails, the node and its connections remain
    - No event is published for the rolled-back delete
    """
    store = builder.store
    q1 = builder.question("brush", "Q1")
    q2 = builder.question("brush", "Q2")
    conn = builder.connect(q1, q2, "next")
    events = []
    store.event_bus.subscribe(EventType.NODE_DELETED, events.append)

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.delete_node(q2.id)
            raise RuntimeError("boom")

    assert q2.id in store
    assert store.get_connection(conn.id).to_node_id == q2.id
    assert events == []


def test_delete_node_unknown_raises(fresh_store):
    with pytest.raises(NotFoundError):
        fresh_store.delete_node("missing")


# =============================================================================
# CONNECTION OPERATIONS TESTS
# =============================================================================

def test_create_connection_missing_endpoint_fails(builder):
    q = builder.question("brush", "Q")

    with pytest.raises(NotFoundError):
        builder.store.create_connection(ConnectionSpec(from_node_id=q.id, to_node_id="nope", label="x"))
    with pytest.raises(NotFoundError):
        builder.store.create_connection(ConnectionSpec(from_node_id="nope", to_node_id=q.id, label="x"))


def test_create_connection_self_loop_fails(builder):
    """
    Validate that an answer must advance the conversation.

    Verifies:
    - from == to raises SelfLoopError
    - SelfLoopError is catchable as ValidationError and GraphIntegrityError
    """
    q = builder.question("brush", "Q")

    with pytest.raises(SelfLoopError) as exc_info:
        builder.connect(q, q, "again")

    assert isinstance(exc_info.value, ValidationError)
    assert isinstance(exc_info.value, GraphIntegrityError)


def test_outgoing_order_by_index_then_creation(builder):
    """
    Validate display ordering of answers.

    Verifies:
    - Lower order_index first
    - Equal order_index keeps creation order
    """
    q = builder.question("brush", "Q")
    targets = [builder.conclusion("brush", f"C{i}") for i in range(3)]
    late = builder.connect(q, targets[0], "late", order_index=1)
    first = builder.connect(q, targets[1], "first", order_index=0)
    later = builder.connect(q, targets[2], "later", order_index=1)

    ordered = builder.store.list_outgoing_connections(q.id)

    assert [c.id for c in ordered] == [first.id, late.id, later.id]


def test_default_order_index_appends(builder):
    q = builder.question("brush", "Q")
    a = builder.connect(q, builder.conclusion("brush", "A"), "a")
    b = builder.connect(q, builder.conclusion("brush", "B"), "b")

    assert (a.order_index, b.order_index) == (0, 1)


def test_active_only_filters_connection_and_target(builder):
    store = builder.store
    q = builder.question("brush", "Q")
    live = builder.connect(q, builder.conclusion("brush", "Live"), "live")
    builder.connect(q, builder.conclusion("brush", "Off"), "off", is_active=False)
    hidden_target = builder.conclusion("brush", "Hidden", is_active=False)
    builder.connect(q, hidden_target, "to hidden")

    assert [c.id for c in store.list_outgoing_connections(q.id, active_only=True)] == [live.id]
    assert len(store.list_outgoing_connections(q.id, active_only=False)) == 3


def test_cross_category_connection_allowed(builder):
    q = builder.question("brush", "Is there power?")
    shared = builder.question("electrical", "Is the breaker tripped?")

    conn = builder.connect(q, shared, "No power")

    assert builder.store.get_connection(conn.id).to_node_id == shared.id


def test_update_connection_retarget(builder):
    """
    Validate retargeting through update_connection.

    Verifies:
    - A valid new target is applied
    - Retargeting onto the source raises SelfLoopError
    - Retargeting onto a missing node raises NotFoundError
    """
    store = builder.store
    q = builder.question("brush", "Q")
    a = builder.conclusion("brush", "A")
    b = builder.conclusion("brush", "B")
    conn = builder.connect(q, a, "go")

    updated = store.update_connection(conn.id, ConnectionPatch(to_node_id=b.id, label="go to b"))
    assert updated.to_node_id == b.id
    assert updated.label == "go to b"

    with pytest.raises(SelfLoopError):
        store.update_connection(conn.id, ConnectionPatch(to_node_id=q.id))
    with pytest.raises(NotFoundError):
        store.update_connection(conn.id, ConnectionPatch(to_node_id="missing"))
    assert store.get_connection(conn.id).to_node_id == b.id


def test_delete_connection(builder):
    q = builder.question("brush", "Q")
    conn = builder.connect(q, builder.conclusion("brush", "A"), "a")

    builder.store.delete_connection(conn.id)

    assert builder.store.list_outgoing_connections(q.id, active_only=False) == []
    with pytest.raises(NotFoundError):
        builder.store.delete_connection(conn.id)


def test_get_node_with_connections(builder):
    q = builder.question("brush", "Q")
    target = builder.conclusion("brush", "A")
    builder.connect(q, target, "a")

    result = builder.store.get_node_with_connections(q.id)

    assert result.node.id == q.id
    assert [c.target_node.id for c in result.connections] == [target.id]


# =============================================================================
# MUTATION EVENT TESTS
# =============================================================================

def test_mutations_publish_category_events(builder, recorded_events):
    """
    Validate that every mutation names the categories it affects.

    Verifies:
    - Node create names the node's category
    - Connection create names the source node's category
    - Updating a shared node also names categories that link into it
    """
    brush = builder.question("brush", "Power?")
    shared = builder.question("electrical", "Breaker?")
    builder.connect(brush, shared, "No power")
    builder.store.update_node(shared.id, NodePatch(text="Is the breaker tripped?"))

    types = [e.type for e in recorded_events]
    assert types == [
        EventType.NODE_CREATED,
        EventType.NODE_CREATED,
        EventType.CONNECTION_CREATED,
        EventType.NODE_UPDATED,
    ]
    assert recorded_events[0].categories == ["brush"]
    assert recorded_events[2].categories == ["brush"]
    assert recorded_events[3].categories == ["brush", "electrical"]


def test_failed_mutation_publishes_nothing(builder, recorded_events):
    q = builder.question("brush", "Q")
    recorded_events.clear()

    with pytest.raises(SelfLoopError):
        builder.connect(q, q, "loop")

    assert recorded_events == []


# =============================================================================
# ROOT RESOLUTION & CATEGORY OPERATIONS
# =============================================================================

def test_resolve_root_prefers_marker(builder):
    builder.question("brush", "Earlier question")
    root = builder.question("brush", "Marked root", semantic_id="brush_start")

    assert builder.store.resolve_category_root("brush").id == root.id


def test_resolve_root_uses_start_link(builder, start_node):
    builder.question("brush", "Earlier question")
    linked = builder.question("brush", "Linked root", semantic_id="brush_check")
    builder.connect(start_node, linked, "Brush")

    assert builder.store.resolve_category_root("brush").id == linked.id


def test_resolve_root_falls_back_to_earliest_question(builder):
    builder.conclusion("brush", "Conclusion first")
    first_q = builder.question("brush", "First question")
    builder.question("brush", "Second question")

    assert builder.store.resolve_category_root("brush").id == first_q.id
    assert builder.store.resolve_category_root("unknown") is None


def test_inactive_root_is_not_replaced_by_active_node(builder, start_node):
    root = builder.question("pump", "Draft root", semantic_id="pump_start", is_active=False)
    child = builder.question("pump", "Active child")
    builder.connect(root, child, "next")

    assert builder.store.resolve_category_root("pump") is None
    assert builder.store.resolve_category_root("pump", active_only=False).id == root.id


def test_inactive_selector_link_still_names_root(builder, start_node):
    builder.question("brush", "Earlier question")
    linked = builder.question("brush", "Linked root", is_active=False)
    builder.connect(start_node, linked, "Brush", is_active=False)

    assert builder.store.resolve_category_root("brush", active_only=False).id == linked.id
    assert builder.store.resolve_category_root("brush") is None


def test_set_category_active_flips_nodes_and_selector_link(builder, start_node):
    store = builder.store
    root = builder.question("brush", "Root", semantic_id="brush_start")
    link = builder.connect(start_node, root, "Brush")

    updated = store.set_category_active("brush", False, root_id=root.id)

    assert updated == 1
    assert store.get_node(root.id).is_active is False
    assert store.get_connection(link.id).is_active is False
    assert store.list_outgoing_connections(start_node.id) == []


def test_delete_category(builder, start_node):
    store = builder.store
    root = builder.question("brush", "Root", semantic_id="brush_start")
    builder.connect(start_node, root, "Brush")
    builder.connect(root, builder.conclusion("brush", "Done"), "done")

    assert store.delete_category("brush") == 2
    assert store.list_nodes_by_category("brush") == []
    assert store.list_outgoing_connections(start_node.id, active_only=False) == []
    with pytest.raises(NotFoundError):
        store.delete_category("brush")


def test_list_categories_sorted(builder):
    builder.question("chemical", "C")
    builder.question("brush", "B")

    assert builder.store.list_categories() == ["brush", "chemical"]


def test_store_reopens_existing_file(db_path, event_bus):
    store = GraphStore(db_path, event_bus=event_bus)
    node = store.create_node(NodeSpec(category="brush", node_type=NodeType.QUESTION, text="Q"))
    store.close()

    reopened = GraphStore(db_path, event_bus=event_bus)
    try:
        assert reopened.get_node(node.id).text == "Q"
    finally:
        reopened.close()
