"""
TROUBLESHOOT VALIDATION - Publish Safety and Issue Lifecycle

A category (an "issue") is safe to publish when every Question reachable
from its root offers at least one active answer. Unreachable nodes are dead
code and are tolerated; only reachable defects block activation.

The issue lifecycle lives here because activation is the one mutation that
is gated by validation:
- list / get / create / update / delete an issue
- toggle activation, with an administrator force override
"""
import logging
from typing import List, Optional, Tuple

from core.graph_db import (
    GraphStore, NotFoundError, ValidationError, ConflictError,
)
from core.graph_views import resolve_root, walk_reachable, count_reachable_questions
from core.ontology import NodeType, START_CATEGORY, root_semantic_id
from core.schemas import (
    Issue, Node, NodeSpec, ConnectionSpec, ConnectionPatch, ValidationReport,
)


logger = logging.getLogger("troubleshoot.validation")


def describe_incomplete(nodes: List[Node]) -> str:
    details = ", ".join(f"{n.text} ({n.semantic_id or 'no ID'})" for n in nodes)
    return (
        f"This issue has {len(nodes)} end node(s) with no conclusion: {details}. "
        "These nodes need outgoing connections or should be changed to Conclusion type."
    )


class ValidationEngine:
    """
    Breadth-first completeness check over a category, plus issue lifecycle.

    Usage:
        engine = ValidationEngine(store)
        report = engine.validate_category("brush")
        if not report.ok:
            print(report.incomplete_nodes)
        engine.toggle_activation("brush", force_activate=False)
    """

    def __init__(self, store: GraphStore, start_category: str = START_CATEGORY):
        self.store = store
        self.start_category = start_category

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_category(self, category: str) -> ValidationReport:
        """
        Report reachable Question nodes with no active answer.

        A draft (inactive) category is checked as it would be published: its
        own nodes count as active.

        Raises:
            NotFoundError: If the category has no resolvable root
        """
        root, draft = resolve_root(self.store, category)
        incomplete, visited = self._incomplete_nodes(category, root, draft)
        return ValidationReport(
            category=category,
            ok=not incomplete,
            incomplete_nodes=[n.text for n in incomplete],
            incomplete_node_ids=[n.id for n in incomplete],
            visited=visited,
        )

    def _incomplete_nodes(self, category: str, root: Node, draft: bool) -> Tuple[List[Node], int]:
        incomplete = []
        visited = 0
        for node, edges in walk_reachable(self.store, root, category, draft=draft):
            visited += 1
            if node.category == category and node.is_question and not edges:
                incomplete.append(node)
        return incomplete, visited

    # =========================================================================
    # ACTIVATION
    # =========================================================================

    def toggle_activation(self, category: str, force_activate: bool = False) -> Issue:
        """
        Flip a category between published and draft.

        Raises:
            NotFoundError: If the category has no root
            ValidationError: If activating an incomplete category without force
        """
        root, _ = resolve_root(self.store, category)
        return self.set_activation(category, not root.is_active, force_activate=force_activate)

    def set_activation(self, category: str, active: bool, force_activate: bool = False) -> Issue:
        """
        Publish or unpublish a category. Deactivation never validates.

        Raises:
            NotFoundError: If the category has no root
            ValidationError: If activating an incomplete category without force;
                incomplete_nodes carries the offending node texts
        """
        root, _ = resolve_root(self.store, category)

        if active and not root.is_active:
            report = self.validate_category(category)
            if not report.ok:
                if not force_activate:
                    nodes = [self.store.get_node(node_id) for node_id in report.incomplete_node_ids]
                    logger.warning(
                        f"Activation of '{category}' blocked: "
                        f"{len(nodes)} incomplete node(s)"
                    )
                    raise ValidationError(
                        describe_incomplete(nodes),
                        fields=[("incomplete_nodes", describe_incomplete(nodes))],
                        incomplete_nodes=report.incomplete_nodes,
                    )
                logger.warning(
                    f"Forced activation of '{category}' with "
                    f"{len(report.incomplete_nodes)} incomplete node(s)"
                )

        self.store.set_category_active(category, active, root_id=root.id)
        logger.info(f"Category '{category}' is_active={active}")
        return self.get_issue(category)

    # =========================================================================
    # ISSUE LIFECYCLE
    # =========================================================================

    def issue_name(self, category: str, root: Node) -> str:
        """Label of the global selector's answer into the root, else the category key."""
        start = self.store.get_start_node(active_only=False)
        if start is not None:
            for conn in self.store.list_incoming_connections(root.id):
                if conn.from_node_id == start.id:
                    return conn.label
        return category

    def get_issue(self, category: str) -> Issue:
        """
        Raises:
            NotFoundError: If the category has no resolvable root
        """
        root, _ = resolve_root(self.store, category)
        return Issue(
            id=root.id,
            name=self.issue_name(category, root),
            category=category,
            root_node_id=root.id,
            is_active=root.is_active,
            question_count=count_reachable_questions(self.store, category, root),
            display_category=root.display_category,
            created_at=root.created_at,
            updated_at=root.updated_at,
        )

    def list_issues(self) -> List[Issue]:
        """One Issue per category with a root; the global selector's category is skipped."""
        issues = []
        for category in self.store.list_categories():
            if category == self.start_category:
                continue
            try:
                issues.append(self.get_issue(category))
            except NotFoundError:
                logger.debug(f"Category '{category}' has no root question; not listed")
        return issues

    def create_issue(
        self,
        name: str,
        category: str,
        root_question_text: str,
        display_category: Optional[str] = None,
    ) -> Issue:
        """
        Create a draft category with its root question, linked from the selector.

        Raises:
            ValidationError: If name, category or root text is blank
            ConflictError: If any node already uses the category
        """
        missing = [
            (field, "required")
            for field, value in (("name", name), ("category", category),
                                 ("root_question_text", root_question_text))
            if not value or not value.strip()
        ]
        if missing:
            raise ValidationError("Issue name, category and root question are required",
                                  fields=missing)

        with self.store.transaction():
            if self.store.count_nodes(category) > 0:
                raise ConflictError("category", category)

            root = self.store.create_node(NodeSpec(
                category=category,
                node_type=NodeType.QUESTION,
                text=root_question_text,
                semantic_id=root_semantic_id(category, self.store.root_suffix),
                display_category=display_category,
                is_active=False,
            ))
            start = self.store.get_start_node(active_only=False)
            if start is not None:
                self.store.create_connection(ConnectionSpec(
                    from_node_id=start.id,
                    to_node_id=root.id,
                    label=name,
                ))

        logger.info(f"Created issue '{name}' ({category})")
        return self.get_issue(category)

    def update_issue(
        self,
        category: str,
        name: Optional[str] = None,
        display_category: Optional[str] = None,
    ) -> Issue:
        """
        Rename the selector answer and/or regroup every node of the category.

        Raises:
            NotFoundError: If the category has no resolvable root
            ValidationError: If name is given but blank
        """
        if name is not None and not name.strip():
            raise ValidationError("Issue name cannot be blank", fields=[("name", "required")])

        root, _ = resolve_root(self.store, category)
        with self.store.transaction():
            if name is not None:
                start = self.store.get_start_node(active_only=False)
                if start is not None:
                    for conn in self.store.list_incoming_connections(root.id):
                        if conn.from_node_id == start.id:
                            self.store.update_connection(conn.id, ConnectionPatch(label=name))
            if display_category is not None:
                self.store.update_category_display(category, display_category)

        return self.get_issue(category)

    def delete_issue(self, category: str) -> int:
        """
        Returns:
            Number of nodes deleted

        Raises:
            NotFoundError: If the category has no nodes
        """
        return self.store.delete_category(category)
