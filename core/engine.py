"""
TROUBLESHOOT ENGINE - The Supervisor

Wires the components together and exposes the whole operation surface:

    GraphStore --GraphEvent--> EventBus --> ViewCache.on_graph_event
        |                                        ^
        +--> ValidationEngine / ImportExport     |
        +--> SessionEngine ---- adjacency view --+

The cache never learns about persistence and GraphStore never learns about
the cache; this module is the only place the two meet.

Usage:
    engine = TroubleshootEngine.from_config(get_config())
    view = engine.start_session("brush")
    view = engine.submit_answer(view.session_id, view.options[0].connection_id)
"""
import logging
from typing import Dict, Iterable, List, Optional

from core.graph_db import GraphStore
from core.graph_views import build_editor_graph, build_flattened_tree
from core.import_export import ImportExportEngine
from core.ontology import ImportMode, ViewKind
from core.schemas import (
    CacheStats, Connection, ConnectionPatch, ConnectionSpec, FlattenedTree, ImportResult,
    Issue, IssueDocument, IssueGraph, Node, NodePatch, NodeSpec, NodeWithConnections,
    Session, SessionStep, SessionView, ValidationReport,
)
from core.sessions import SessionEngine, SessionStore
from core.validation import ValidationEngine
from infrastructure.bootstrap import ensure_start_node, seed_demo_tree
from infrastructure.config import AppConfig, GraphConfig
from infrastructure.event_bus import EventBus
from infrastructure.view_cache import CacheUnavailableError, ViewCache


logger = logging.getLogger("troubleshoot.engine")


class TroubleshootEngine:
    """
    One store, one session store, one bus, one cache.

    All collaborators can be injected for testing; from_config() builds the
    production wiring.
    """

    def __init__(
        self,
        store: GraphStore,
        sessions: SessionStore,
        cache: Optional[ViewCache] = None,
        event_bus: Optional[EventBus] = None,
        graph_config: Optional[GraphConfig] = None,
    ):
        self.graph_config = graph_config or GraphConfig()
        self.store = store
        self.event_bus = event_bus if event_bus is not None else store.event_bus
        self.cache = cache if cache is not None else ViewCache()
        self.event_bus.subscribe_mutations(self.cache.on_graph_event)

        self.validation = ValidationEngine(store, start_category=self.graph_config.start_category)
        self.sessions = SessionEngine(store, sessions, cache=self.cache, event_bus=self.event_bus)
        self.import_export = ImportExportEngine(
            store, self.validation, start_category=self.graph_config.start_category
        )

    @classmethod
    def from_config(cls, config: AppConfig, seed_demo: bool = False) -> "TroubleshootEngine":
        bus = EventBus()
        store = GraphStore(
            config.storage.db_path,
            event_bus=bus,
            start_semantic_id=config.graph.start_semantic_id,
            root_suffix=config.graph.root_suffix,
        )
        engine = cls(
            store,
            SessionStore(config.storage.db_path),
            cache=ViewCache(config.cache),
            event_bus=bus,
            graph_config=config.graph,
        )
        engine.bootstrap(seed_demo=seed_demo)
        return engine

    def bootstrap(self, seed_demo: bool = False) -> Node:
        """Ensure the global start node exists; optionally load the demo tree."""
        if seed_demo and self.store.find_node_by_semantic_id("brush_check") is None:
            return seed_demo_tree(self.store, self.graph_config)["start"]
        return ensure_start_node(self.store, self.graph_config)

    def close(self) -> None:
        self.event_bus.unsubscribe_mutations(self.cache.on_graph_event)
        self.cache.close()
        self.sessions.sessions.close()
        self.store.close()

    # =========================================================================
    # CACHED VIEWS
    # =========================================================================

    def _cached(self, kind: ViewKind, category: str, loader):
        try:
            return self.cache.get(kind, category, loader)
        except CacheUnavailableError:
            logger.warning(f"View cache unavailable; building {kind.value} for '{category}' directly")
            return loader()

    def get_editor_graph(self, category: str) -> IssueGraph:
        return self._cached(
            ViewKind.EDITOR_GRAPH, category, lambda: build_editor_graph(self.store, category)
        )

    def get_flattened_tree(self, category: str) -> FlattenedTree:
        return self._cached(
            ViewKind.FLATTENED_TREE, category, lambda: build_flattened_tree(self.store, category)
        )

    def cache_stats(self) -> List[CacheStats]:
        return self.cache.stats()

    def invalidate_category(self, category: str) -> int:
        return self.cache.invalidate_category(category)

    # =========================================================================
    # GRAPH EDITING
    # =========================================================================

    def create_node(self, spec: NodeSpec) -> Node:
        return self.store.create_node(spec)

    def update_node(self, node_id: str, patch: NodePatch) -> Node:
        return self.store.update_node(node_id, patch)

    def delete_node(self, node_id: str) -> Node:
        return self.store.delete_node(node_id)

    def get_node(self, node_id: str) -> Node:
        return self.store.get_node(node_id)

    def get_node_with_connections(self, node_id: str) -> NodeWithConnections:
        return self.store.get_node_with_connections(node_id)

    def list_nodes(self, category: str, active_only: bool = False) -> List[Node]:
        return self.store.list_nodes_by_category(category, active_only=active_only)

    def list_categories(self) -> List[str]:
        return self.store.list_categories()

    def create_connection(self, spec: ConnectionSpec) -> Connection:
        return self.store.create_connection(spec)

    def update_connection(self, connection_id: str, patch: ConnectionPatch) -> Connection:
        return self.store.update_connection(connection_id, patch)

    def delete_connection(self, connection_id: str) -> Connection:
        return self.store.delete_connection(connection_id)

    def list_outgoing_connections(self, node_id: str, active_only: bool = True) -> List[Connection]:
        return self.store.list_outgoing_connections(node_id, active_only=active_only)

    # =========================================================================
    # ISSUES & VALIDATION
    # =========================================================================

    def validate_category(self, category: str) -> ValidationReport:
        return self.validation.validate_category(category)

    def toggle_activation(self, category: str, force_activate: bool = False) -> Issue:
        return self.validation.toggle_activation(category, force_activate=force_activate)

    def set_activation(self, category: str, active: bool, force_activate: bool = False) -> Issue:
        return self.validation.set_activation(category, active, force_activate=force_activate)

    def list_issues(self) -> List[Issue]:
        return self.validation.list_issues()

    def get_issue(self, category: str) -> Issue:
        return self.validation.get_issue(category)

    def create_issue(
        self,
        name: str,
        category: str,
        root_question_text: str,
        display_category: Optional[str] = None,
    ) -> Issue:
        return self.validation.create_issue(name, category, root_question_text, display_category)

    def update_issue(
        self,
        category: str,
        name: Optional[str] = None,
        display_category: Optional[str] = None,
    ) -> Issue:
        return self.validation.update_issue(category, name=name, display_category=display_category)

    def delete_issue(self, category: str, delete_sessions: bool = False) -> Dict[str, int]:
        """
        Delete a category; optionally drop the sessions that started in it.

        Raises:
            NotFoundError: If the category has no nodes
        """
        nodes_deleted = self.validation.delete_issue(category)
        sessions_deleted = 0
        if delete_sessions:
            sessions_deleted = self.sessions.sessions.delete_by_category(category)
        logger.info(
            f"Deleted issue '{category}': {nodes_deleted} node(s), {sessions_deleted} session(s)"
        )
        return {"nodes_deleted": nodes_deleted, "sessions_deleted": sessions_deleted}

    # =========================================================================
    # SESSIONS
    # =========================================================================

    def start_session(
        self,
        category: Optional[str] = None,
        tech_identifier: Optional[str] = None,
        client_site: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionView:
        return self.sessions.start_session(
            category,
            tech_identifier=tech_identifier,
            client_site=client_site,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def submit_answer(self, session_id: str, connection_id: str) -> SessionView:
        return self.sessions.submit_answer(session_id, connection_id)

    def get_session(self, session_id: str) -> SessionView:
        return self.sessions.get_session(session_id)

    def get_history(self, session_id: str) -> List[SessionStep]:
        return self.sessions.get_history(session_id)

    def mark_abandoned(self, session_id: str) -> Session:
        return self.sessions.mark_abandoned(session_id)

    def list_stale_sessions(self, older_than_seconds: float) -> List[Session]:
        return self.sessions.list_stale_sessions(older_than_seconds)

    # =========================================================================
    # IMPORT / EXPORT
    # =========================================================================

    def export_category(self, category: str) -> IssueDocument:
        return self.import_export.export_category(category)

    def export_all(self) -> List[IssueDocument]:
        return self.import_export.export_all()

    def import_document(self, doc: IssueDocument, mode: ImportMode = ImportMode.REJECT) -> ImportResult:
        return self.import_export.import_document(doc, mode=mode)

    def import_many(self, docs: Iterable[IssueDocument], mode: ImportMode = ImportMode.REJECT) -> ImportResult:
        return self.import_export.import_many(docs, mode=mode)
