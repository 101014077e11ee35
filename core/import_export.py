"""
TROUBLESHOOT IMPORT/EXPORT - Portable Issue Documents

An IssueDocument carries one category's graph without store ids: nodes get
document-local reference keys ("n0", "n1", ... in creation order) and
connections name their endpoints by those keys.

Import is partial by design. Each node and connection is written in its own
savepoint inside one outer transaction; an item that fails is recorded in
ImportResult.errors and the rest of the document still lands.

Collision policy when the target category already has nodes (ImportMode):
- REJECT: one error for the category, nothing written
- REPLACE: the existing category is deleted first
- RENAME: import under "<category>_imported", "<category>_imported_2", ...
"""
import logging
from typing import Dict, Iterable, List, Optional, Union

import msgspec

from core.graph_db import (
    GraphStore, GraphError, NotFoundError, ValidationError, GraphIntegrityError, ConflictError,
)
from core.graph_views import resolve_root
from core.ontology import ImportMode, NodeType, START_CATEGORY, root_semantic_id
from core.schemas import (
    ConnectionSpec, NodeSpec, IssueDocument, ExportedIssue, ExportedNode, ExportedConnection,
    ImportResult, ImportSuccess, ImportItemError, DOCUMENT_FORMAT_VERSION,
)
from core.validation import ValidationEngine


logger = logging.getLogger("troubleshoot.import_export")


# =============================================================================
# JSON CODEC
# =============================================================================

def encode_document(doc: Union[IssueDocument, List[IssueDocument]]) -> bytes:
    return msgspec.json.encode(doc)


def decode_document(data: Union[bytes, str]) -> IssueDocument:
    """
    Raises:
        ValidationError: If data is not a well-formed issue document
    """
    try:
        return msgspec.json.decode(data, type=IssueDocument)
    except msgspec.DecodeError as e:
        raise ValidationError(f"Invalid issue document: {e}", fields=[("document", str(e))])


def decode_documents(data: Union[bytes, str]) -> List[IssueDocument]:
    """Decode either a single document or a JSON array of documents."""
    try:
        raw = msgspec.json.decode(data)
        if isinstance(raw, list):
            return msgspec.convert(raw, type=List[IssueDocument])
        return [msgspec.convert(raw, type=IssueDocument)]
    except msgspec.DecodeError as e:
        raise ValidationError(f"Invalid issue document: {e}", fields=[("document", str(e))])


# =============================================================================
# ENGINE
# =============================================================================

class ImportExportEngine:
    """
    Export categories as IssueDocuments and import them into a store.

    Usage:
        engine = ImportExportEngine(store, validation)
        doc = engine.export_category("brush")
        result = engine.import_document(doc, mode=ImportMode.RENAME)
        for error in result.errors:
            print(error.item_kind, error.error)
    """

    def __init__(
        self,
        store: GraphStore,
        validation: ValidationEngine,
        start_category: str = START_CATEGORY,
    ):
        self.store = store
        self.validation = validation
        self.start_category = start_category

    # =========================================================================
    # EXPORT
    # =========================================================================

    def export_category(self, category: str) -> IssueDocument:
        """
        Active nodes of the category and active connections between them.

        Raises:
            NotFoundError: If the category has no active nodes
        """
        nodes = self.store.list_nodes_by_category(category, active_only=True)
        if not nodes:
            raise NotFoundError("category", category, f"Issue category not found: {category}")

        refs: Dict[str, str] = {node.id: f"n{i}" for i, node in enumerate(nodes)}
        position = {node.id: i for i, node in enumerate(nodes)}
        connections = [
            c for c in self.store.list_connections_from_category(category, active_only=True)
            if c.to_node_id in refs
        ]
        connections.sort(key=lambda c: position[c.from_node_id])

        root, _ = resolve_root(self.store, category)
        doc = IssueDocument(
            issue=ExportedIssue(
                name=self.validation.issue_name(category, root),
                category=category,
                root_question_text=root.text,
                display_category=root.display_category,
                root_ref=refs.get(root.id),
            ),
            nodes=[
                ExportedNode(
                    ref=refs[node.id],
                    node_type=node.node_type.value,
                    text=node.text,
                    semantic_id=node.semantic_id,
                    display_category=node.display_category,
                    position_x=node.position_x,
                    position_y=node.position_y,
                )
                for node in nodes
            ],
            connections=[
                ExportedConnection(
                    from_ref=refs[c.from_node_id],
                    to_ref=refs[c.to_node_id],
                    label=c.label,
                    order_index=c.order_index,
                )
                for c in connections
            ],
        )
        logger.info(
            f"Exported issue {category} ({len(doc.nodes)} nodes, {len(doc.connections)} connections)"
        )
        return doc

    def export_all(self) -> List[IssueDocument]:
        """Every category except the global selector's."""
        documents = []
        for category in self.store.list_categories():
            if category == self.start_category:
                continue
            try:
                documents.append(self.export_category(category))
            except NotFoundError as e:
                logger.warning(f"Skipping export of '{category}': {e}")
        logger.info(f"Exported {len(documents)} issue(s)")
        return documents

    # =========================================================================
    # IMPORT
    # =========================================================================

    def _free_category(self, category: str) -> str:
        candidate = f"{category}_imported"
        suffix = 2
        while self.store.count_nodes(candidate) > 0:
            candidate = f"{category}_imported_{suffix}"
            suffix += 1
        return candidate

    def import_document(self, doc: IssueDocument, mode: ImportMode = ImportMode.REJECT) -> ImportResult:
        """
        Recreate a document's graph with fresh store ids.

        Per-item failures are collected in the result; only unexpected
        persistence errors propagate (and roll the whole document back).
        """
        mode = ImportMode(mode)
        result = ImportResult()
        source_category = doc.issue.category

        def fail(kind: str, error: Exception, ref: Optional[str] = None, category: str = source_category):
            result.errors.append(ImportItemError(
                category=category,
                item_kind=kind,
                error=str(error),
                error_type=type(error).__name__,
                ref=ref,
            ))
            logger.warning(f"Import of '{category}' {kind} {ref or ''}: {error}")

        if not source_category or not source_category.strip():
            fail("issue", ValidationError("Issue category is required"))
            return result
        if doc.format_version > DOCUMENT_FORMAT_VERSION:
            fail("issue", ValidationError(f"Unsupported document format_version {doc.format_version}"))
            return result
        if not doc.nodes:
            fail("issue", ValidationError("Issue must have at least one node"))
            return result
        root_ref = doc.issue.root_ref
        if root_ref is not None and all(item.ref != root_ref for item in doc.nodes):
            fail("issue", GraphIntegrityError(f"Root reference '{root_ref}' is not a node of the document"))
            root_ref = None

        with self.store.transaction():
            category = source_category
            if self.store.count_nodes(category) > 0:
                if mode is ImportMode.REJECT:
                    fail("issue", ConflictError("category", category))
                    return result
                if mode is ImportMode.REPLACE:
                    self.store.delete_category(category)
                    logger.info(f"Replacing existing category '{category}'")
                else:
                    category = self._free_category(source_category)
                    logger.info(f"Importing '{source_category}' as '{category}'")

            ref_map = self._import_nodes(doc, root_ref, source_category, category, fail)
            connections_created = self._import_connections(doc, ref_map, category, fail)
            if ref_map:
                self._link_from_start(category, doc.issue.name, ref_map.get(root_ref))

        if ref_map:
            result.success.append(ImportSuccess(
                category=category,
                name=doc.issue.name,
                nodes_count=len(ref_map),
                connections_count=connections_created,
            ))
            logger.info(
                f"Imported issue: {category} ({len(ref_map)} nodes, {connections_created} connections)"
            )
        return result

    def _import_nodes(
        self,
        doc: IssueDocument,
        root_ref: Optional[str],
        source_category: str,
        category: str,
        fail,
    ) -> Dict[str, str]:
        """
        Create the document's nodes, root first.

        The root becomes the earliest node of the new category, so root
        resolution finds it even where no selector link or marker names it.
        """
        ref_map: Dict[str, str] = {}
        old_marker = root_semantic_id(source_category, self.store.root_suffix)
        new_marker = root_semantic_id(category, self.store.root_suffix)
        items = sorted(doc.nodes, key=lambda item: item.ref != root_ref)

        for item in items:
            if item.ref in ref_map:
                fail("node", ValidationError(f"Duplicate node reference key '{item.ref}'"), item.ref, category)
                continue
            try:
                node_type = NodeType.parse(item.node_type)
            except ValueError as e:
                fail("node", ValidationError(str(e)), item.ref, category)
                continue

            semantic_id = item.semantic_id or None
            if semantic_id == old_marker:
                semantic_id = new_marker
            if semantic_id is not None and self.store.find_node_by_semantic_id(semantic_id) is not None:
                fail("node", ConflictError("semantic_id", semantic_id), item.ref, category)
                semantic_id = None

            try:
                node = self.store.create_node(NodeSpec(
                    category=category,
                    node_type=node_type,
                    text=item.text,
                    semantic_id=semantic_id,
                    display_category=item.display_category or doc.issue.display_category,
                    position_x=item.position_x,
                    position_y=item.position_y,
                    is_active=True,
                ))
            except GraphError as e:
                fail("node", e, item.ref, category)
                continue
            ref_map[item.ref] = node.id
        return ref_map

    def _import_connections(self, doc: IssueDocument, ref_map: Dict[str, str], category: str, fail) -> int:
        created = 0
        for item in doc.connections:
            missing = [ref for ref in (item.from_ref, item.to_ref) if ref not in ref_map]
            if missing:
                fail(
                    "connection",
                    GraphIntegrityError(
                        f"Connection '{item.label}' references unknown node key(s): {', '.join(missing)}"
                    ),
                    f"{item.from_ref}->{item.to_ref}",
                    category,
                )
                continue
            try:
                self.store.create_connection(ConnectionSpec(
                    from_node_id=ref_map[item.from_ref],
                    to_node_id=ref_map[item.to_ref],
                    label=item.label,
                    order_index=item.order_index,
                ))
            except GraphError as e:
                fail("connection", e, f"{item.from_ref}->{item.to_ref}", category)
                continue
            created += 1
        return created

    def _link_from_start(self, category: str, name: str, root_id: Optional[str] = None) -> None:
        """Give an imported category an answer on the global selector if it has none."""
        start = self.store.get_start_node(active_only=False)
        if root_id is not None:
            root = self.store.get_node(root_id)
        else:
            root = self.store.resolve_category_root(category, active_only=False)
        if start is None or root is None:
            return
        if any(c.from_node_id == start.id for c in self.store.list_incoming_connections(root.id)):
            return
        self.store.create_connection(ConnectionSpec(
            from_node_id=start.id,
            to_node_id=root.id,
            label=name or category,
        ))

    def import_many(self, docs: Iterable[IssueDocument], mode: ImportMode = ImportMode.REJECT) -> ImportResult:
        result = ImportResult()
        for doc in docs:
            result.extend(self.import_document(doc, mode=mode))
        logger.info(f"Imported {len(result.success)} issue(s), {len(result.errors)} error(s)")
        return result
