"""
Unit tests for core/validation.py - ValidationEngine

Tests:
- Breadth-first completeness check (reachable questions need an answer)
- Cycle tolerance and unreachable dead code
- Activation gating with and without force
- Issue lifecycle (create, list, update, delete)
"""
import pytest

from core.graph_db import NotFoundError, ValidationError, ConflictError
from core.validation import ValidationEngine


@pytest.fixture
def validation(fresh_store):
    return ValidationEngine(fresh_store)


# =============================================================================
# VALIDATE CATEGORY
# =============================================================================

def test_complete_category_is_ok(builder, validation):
    """
    Validate that a category whose reachable questions all have answers passes.

    Verifies:
    - ok is True
    - No incomplete nodes are reported
    - Every reachable node was visited once
    """
    root = builder.question("brush", "Root", semantic_id="brush_start")
    middle = builder.question("brush", "Middle")
    builder.connect(root, middle, "next")
    builder.connect(middle, builder.conclusion("brush", "Fixed"), "done")

    report = validation.validate_category("brush")

    assert report.ok is True
    assert report.incomplete_nodes == []
    assert report.visited == 3


def test_reports_reachable_dead_ends(demo_store):
    """
    Validate the demo tree's two unfinished questions are found.

    Verifies:
    - Exactly the reachable questions without answers are reported
    - The shared electrical sub-tree is not reported against brush
    """
    store, nodes = demo_store
    report = ValidationEngine(store).validate_category("brush")

    assert report.ok is False
    assert set(report.incomplete_nodes) == {
        nodes["timing_pressure"].text,
        nodes["vfd_check"].text,
    }
    assert nodes["breaker_check"].id not in report.incomplete_node_ids


def test_unreachable_incomplete_node_is_tolerated(builder, validation):
    root = builder.question("brush", "Root", semantic_id="brush_start")
    builder.connect(root, builder.conclusion("brush", "Fixed"), "done")
    builder.question("brush", "Orphan with no answers")

    assert validation.validate_category("brush").ok is True


def test_cycles_terminate(builder, validation):
    root = builder.question("brush", "Root", semantic_id="brush_start")
    loop = builder.question("brush", "Try again?")
    builder.connect(root, loop, "retry")
    builder.connect(loop, root, "start over")

    report = validation.validate_category("brush")

    assert report.ok is True
    assert report.visited == 2


def test_inactive_answers_do_not_count(builder, validation):
    root = builder.question("brush", "Root", semantic_id="brush_start")
    builder.connect(root, builder.conclusion("brush", "Fixed"), "done", is_active=False)

    report = validation.validate_category("brush")

    assert report.incomplete_nodes == ["Root"]


def test_unknown_category_raises(validation):
    with pytest.raises(NotFoundError):
        validation.validate_category("nothing")


# =============================================================================
# ACTIVATION
# =============================================================================

def test_activation_blocked_lists_incomplete_texts(fresh_store, validation, start_node):
    """
    Validate that activating an incomplete draft fails with node texts.

    Verifies:
    - ValidationError carries the exact incomplete node texts
    - The message names each node with its semantic id or 'no ID'
    - The category stays inactive
    """
    issue = validation.create_issue("Brush", "brush", "What's the issue?")
    root = fresh_store.get_node(issue.root_node_id)

    with pytest.raises(ValidationError) as exc_info:
        validation.toggle_activation("brush")

    assert exc_info.value.incomplete_nodes == ["What's the issue?"]
    assert "What's the issue? (brush_start)" in str(exc_info.value)
    assert fresh_store.get_node(root.id).is_active is False


def test_force_activation_succeeds(validation, start_node):
    validation.create_issue("Brush", "brush", "What's the issue?")

    issue = validation.toggle_activation("brush", force_activate=True)

    assert issue.is_active is True


def test_activation_of_complete_draft(fresh_store, builder, validation, start_node):
    """
    Validate that a draft is checked as if published.

    Verifies:
    - Draft nodes count as active during validation
    - Activation flips every node and the selector link
    - Deactivation needs no validation and hides the category again
    """
    issue = validation.create_issue("Brush", "brush", "What's the issue?")
    root = fresh_store.get_node(issue.root_node_id)
    done = builder.conclusion("brush", "Fixed", is_active=False)
    builder.connect(root, done, "done")

    activated = validation.toggle_activation("brush")

    assert activated.is_active is True
    assert fresh_store.get_node(done.id).is_active is True
    assert [c.to_node_id for c in fresh_store.list_outgoing_connections(start_node.id)] == [root.id]

    deactivated = validation.toggle_activation("brush")

    assert deactivated.is_active is False
    assert fresh_store.list_outgoing_connections(start_node.id) == []


def test_draft_root_with_active_child_stays_draft(fresh_store, builder, validation, start_node):
    """
    Validate that an active child does not stand in for a draft root.

    Verifies:
    - The issue still reports the draft root and is_active False
    - Activation validates and is blocked by the unfinished child
    - Nothing is published by the failed activation
    """
    issue = validation.create_issue("Pump", "pump", "What is the pump doing?")
    child = builder.question("pump", "Is the pump humming?")
    builder.connect(fresh_store.get_node(issue.root_node_id), child, "Noise")

    current = validation.get_issue("pump")
    assert current.root_node_id == issue.root_node_id
    assert current.is_active is False

    with pytest.raises(ValidationError) as exc_info:
        validation.set_activation("pump", True)

    assert exc_info.value.incomplete_nodes == ["Is the pump humming?"]
    assert fresh_store.get_node(issue.root_node_id).is_active is False
    assert fresh_store.list_outgoing_connections(start_node.id) == []


def test_toggle_draft_with_active_child_activates(fresh_store, builder, validation, start_node):
    issue = validation.create_issue("Pump", "pump", "What is the pump doing?")
    child = builder.question("pump", "Is the pump humming?")
    builder.connect(fresh_store.get_node(issue.root_node_id), child, "Noise")
    builder.connect(child, builder.conclusion("pump", "Replace the capacitor"), "Yes")

    assert validation.toggle_activation("pump").is_active is True


# =============================================================================
# ISSUE LIFECYCLE
# =============================================================================

def test_create_issue_links_from_start(fresh_store, validation, start_node):
    issue = validation.create_issue("Brush", "brush", "What's the issue?", display_category="Equipment")

    assert issue.name == "Brush"
    assert issue.category == "brush"
    assert issue.is_active is False
    assert issue.question_count == 1
    assert issue.display_category == "Equipment"
    root = fresh_store.get_node(issue.root_node_id)
    assert root.semantic_id == "brush_start"
    links = fresh_store.list_outgoing_connections(start_node.id, active_only=False)
    assert [(c.label, c.order_index) for c in links] == [("Brush", 0)]


def test_create_issue_existing_category_conflicts(builder, validation, start_node):
    builder.question("brush", "Already here")

    with pytest.raises(ConflictError):
        validation.create_issue("Brush", "brush", "What's the issue?")


def test_create_issue_requires_fields(validation):
    with pytest.raises(ValidationError) as exc_info:
        validation.create_issue("", "brush", " ")

    assert [f for f, _ in exc_info.value.fields] == ["name", "root_question_text"]


def test_list_issues_skips_selector_category(demo_store):
    store, nodes = demo_store
    issues = {i.category: i for i in ValidationEngine(store).list_issues()}

    assert set(issues) == {"brush", "electrical"}
    assert issues["brush"].name == "Brush"
    assert issues["brush"].root_node_id == nodes["brush_check"].id
    assert issues["brush"].question_count == 8
    assert issues["electrical"].name == "electrical"


def test_update_issue_renames_and_regroups(fresh_store, validation, start_node):
    validation.create_issue("Brush", "brush", "What's the issue?")

    issue = validation.update_issue("brush", name="Brushes", display_category="Wash")

    assert issue.name == "Brushes"
    assert all(n.display_category == "Wash" for n in fresh_store.list_nodes_by_category("brush"))


def test_question_count_ignores_unreachable(builder, validation):
    root = builder.question("brush", "Root", semantic_id="brush_start")
    builder.connect(root, builder.conclusion("brush", "Fixed"), "done")
    builder.question("brush", "Orphan")

    assert validation.get_issue("brush").question_count == 1


def test_delete_issue(fresh_store, validation, start_node):
    validation.create_issue("Brush", "brush", "What's the issue?")

    assert validation.delete_issue("brush") == 1
    with pytest.raises(NotFoundError):
        validation.get_issue("brush")
    assert fresh_store.list_outgoing_connections(start_node.id, active_only=False) == []
