"""
TROUBLESHOOT SESSIONS - The Traversal State Machine

One Session is one user's walk through a decision tree:

    ACTIVE --(answer leads to a Conclusion)--> COMPLETED
    ACTIVE --(MarkAbandoned, external sweep)--> ABANDONED

COMPLETED and ABANDONED are terminal. Steps are stored with the session row
as a msgspec-encoded JSON list; a session is always read and written whole.

Answer submission is an optimistic state transition:
    UPDATE sessions SET ... WHERE session_id = ? AND state = 'active'
                              AND current_node_id = ?
If another writer moved the session first, nothing is written and the caller
gets a ValidationError; the stored session is unchanged.

Option lists come from the adjacency view in the cache when one is attached,
with a direct GraphStore read whenever the cache is unavailable. Whether an
answer is valid is always decided against GraphStore itself.
"""
import hashlib
import logging
import sqlite3
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import msgspec

from core.graph_db import GraphStore, NotFoundError, ValidationError
from core.graph_views import build_adjacency, options_for_node
from core.ontology import SessionState, ViewKind
from core.schemas import (
    Node, NavigationOption, Session, SessionStep, SessionView, generate_id, now_utc,
)
from infrastructure.event_bus import EventBus, EventType, GraphEvent, get_event_bus
from infrastructure.view_cache import ViewCache, CacheUnavailableError


logger = logging.getLogger("troubleshoot.sessions")


class SessionStateError(NotFoundError):
    """Raised when a session exists but is no longer active."""
    def __init__(self, session_id: str, state: SessionState):
        self.state = state
        super().__init__(
            "session", session_id, f"Session {session_id} is {state.value}, not active"
        )


def hash_ip(ip_address: Optional[str]) -> Optional[str]:
    """MD5 hex of the first address in a forwarded-for style list; raw IPs are never stored."""
    if not ip_address:
        return None
    first = ip_address.split(",")[0].strip()
    if not first:
        return None
    return hashlib.md5(first.encode("utf-8")).hexdigest()


# =============================================================================
# SESSION STORE
# =============================================================================

_SESSION_COLUMNS = (
    "session_id, state, current_node_id, category, started_at, updated_at, "
    "completed_at, final_conclusion, steps_json, tech_identifier, client_site, "
    "ip_hash, user_agent"
)

_steps_encoder = msgspec.json.Encoder()
_steps_decoder = msgspec.json.Decoder(List[SessionStep])


class SessionStore:
    """
    SQLite-backed session persistence.

    Each call opens its own connection, so operations on different sessions
    never share a Python-level lock. ":memory:" is served by a named
    shared-cache database kept alive for the store's lifetime.
    """

    def __init__(self, db_path: Path | str = ":memory:"):
        self._keepalive: Optional[sqlite3.Connection] = None
        if str(db_path) == ":memory:":
            self._target = f"file:sessions_{uuid.uuid4().hex}?mode=memory&cache=shared"
            self._uri = True
            self._keepalive = sqlite3.connect(self._target, uri=True, check_same_thread=False)
        else:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._target = str(path)
            self._uri = False
        self.db_path = str(db_path)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._target, uri=self._uri, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL CHECK(state IN ('active', 'completed', 'abandoned')),
                    current_node_id TEXT NOT NULL,
                    category TEXT,
                    started_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    final_conclusion TEXT,
                    steps_json TEXT NOT NULL DEFAULT '[]',
                    tech_identifier TEXT,
                    client_site TEXT,
                    ip_hash TEXT,
                    user_agent TEXT,
                    CHECK ((completed_at IS NULL) = (final_conclusion IS NULL))
                );

                CREATE INDEX IF NOT EXISTS idx_sessions_state ON sessions(state, updated_at);
                CREATE INDEX IF NOT EXISTS idx_sessions_category ON sessions(category);
                """
            )
        conn.close()

    @staticmethod
    def _row_to_session(row) -> Session:
        return Session(
            session_id=row["session_id"],
            state=SessionState(row["state"]),
            current_node_id=row["current_node_id"],
            category=row["category"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            final_conclusion=row["final_conclusion"],
            steps=_steps_decoder.decode(row["steps_json"]),
            tech_identifier=row["tech_identifier"],
            client_site=row["client_site"],
            ip_hash=row["ip_hash"],
            user_agent=row["user_agent"],
        )

    # === Write Methods ===

    def insert(self, session: Session) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"INSERT INTO sessions ({_SESSION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        session.session_id, session.state.value, session.current_node_id,
                        session.category, session.started_at, session.updated_at,
                        session.completed_at, session.final_conclusion,
                        _steps_encoder.encode(session.steps).decode("utf-8"),
                        session.tech_identifier, session.client_site, session.ip_hash,
                        session.user_agent,
                    ),
                )
        finally:
            conn.close()

    def advance(
        self,
        session_id: str,
        expected_node_id: str,
        new_node_id: str,
        steps: List[SessionStep],
        state: SessionState,
        completed_at: Optional[str] = None,
        final_conclusion: Optional[str] = None,
    ) -> bool:
        """
        Move an active session off expected_node_id.

        Returns:
            False if the session is no longer active or no longer on
            expected_node_id (nothing is written)
        """
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(
                    """
                    UPDATE sessions
                    SET current_node_id = ?, steps_json = ?, state = ?, updated_at = ?,
                        completed_at = ?, final_conclusion = ?
                    WHERE session_id = ? AND state = 'active' AND current_node_id = ?
                    """,
                    (
                        new_node_id, _steps_encoder.encode(steps).decode("utf-8"),
                        state.value, now_utc(), completed_at, final_conclusion,
                        session_id, expected_node_id,
                    ),
                )
                return cursor.rowcount == 1
        finally:
            conn.close()

    def mark_abandoned(self, session_id: str) -> bool:
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(
                    "UPDATE sessions SET state = 'abandoned', updated_at = ? "
                    "WHERE session_id = ? AND state = 'active'",
                    (now_utc(), session_id),
                )
                return cursor.rowcount == 1
        finally:
            conn.close()

    def delete_by_category(self, category: str) -> int:
        conn = self._connect()
        try:
            with conn:
                return conn.execute(
                    "DELETE FROM sessions WHERE category = ?", (category,)
                ).rowcount
        finally:
            conn.close()

    # === Read Methods ===

    def get(self, session_id: str) -> Session:
        """
        Raises:
            NotFoundError: If session doesn't exist
        """
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("session", session_id)
        return self._row_to_session(row)

    def list_active_before(self, cutoff: str) -> List[Session]:
        """Active sessions whose last update is older than cutoff (ISO8601 UTC)."""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions "
                "WHERE state = 'active' AND updated_at < ? ORDER BY updated_at ASC",
                (cutoff,),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_session(row) for row in rows]

    def count(self, state: Optional[SessionState] = None) -> int:
        conn = self._connect()
        try:
            if state is None:
                row = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM sessions WHERE state = ?", (SessionState(state).value,)
                ).fetchone()
        finally:
            conn.close()
        return row[0]

    def close(self) -> None:
        if self._keepalive is not None:
            self._keepalive.close()
            self._keepalive = None


# =============================================================================
# SESSION ENGINE
# =============================================================================

class SessionEngine:
    """
    Runs the per-session state machine over a GraphStore.

    Usage:
        engine = SessionEngine(store, SessionStore(":memory:"), cache=cache)
        view = engine.start_session("brush")
        view = engine.submit_answer(view.session_id, view.options[0].connection_id)
        if view.is_conclusion:
            print(view.conclusion_text)
    """

    def __init__(
        self,
        store: GraphStore,
        sessions: SessionStore,
        cache: Optional[ViewCache] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.sessions = sessions
        self.cache = cache
        self._event_bus = event_bus if event_bus is not None else get_event_bus()

    # =========================================================================
    # OPTIONS
    # =========================================================================

    def options_for(self, node: Node) -> List[NavigationOption]:
        """Answers a user may pick at node, in order_index order."""
        if node.is_conclusion:
            return []
        if self.cache is not None:
            try:
                adjacency = self.cache.get(
                    ViewKind.ADJACENCY, node.category,
                    lambda: build_adjacency(self.store, node.category),
                )
                options = adjacency.get(node.id)
                if options is not None:
                    return list(options)
            except CacheUnavailableError:
                logger.warning(f"View cache unavailable; reading options for {node.id} directly")
        return options_for_node(self.store, node.id)

    def _view(self, session: Session, node: Node) -> SessionView:
        terminal = session.state.is_terminal
        return SessionView(
            session_id=session.session_id,
            state=session.state,
            node=node,
            options=[] if terminal else self.options_for(node),
            is_conclusion=node.is_conclusion,
            conclusion_text=node.text if node.is_conclusion else None,
        )

    def _publish(self, event_type: EventType, session: Session) -> None:
        self._event_bus.publish(GraphEvent(
            type=event_type,
            categories=[],
            payload={"session_id": session.session_id, "category": session.category},
            timestamp=time.time(),
            source="sessions",
        ))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start_session(
        self,
        category: Optional[str] = None,
        tech_identifier: Optional[str] = None,
        client_site: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionView:
        """
        Start at the global selector, or directly at a category's root.

        Raises:
            NotFoundError: If the start node (or the category root) is missing
        """
        if category is None:
            node = self.store.get_start_node(active_only=True)
            if node is None:
                raise NotFoundError("node", self.store.start_semantic_id, "Global start node not found")
        else:
            node = self.store.resolve_category_root(category, active_only=True)
            if node is None:
                raise NotFoundError("category", category, f"No active root for category '{category}'")

        now = now_utc()
        session = Session(
            session_id=generate_id(),
            state=SessionState.ACTIVE,
            current_node_id=node.id,
            category=category,
            started_at=now,
            updated_at=now,
            tech_identifier=tech_identifier,
            client_site=client_site,
            ip_hash=hash_ip(ip_address),
            user_agent=user_agent,
        )
        if node.is_conclusion:
            session.state = SessionState.COMPLETED
            session.completed_at = now
            session.final_conclusion = node.text

        self.sessions.insert(session)
        self._publish(EventType.SESSION_STARTED, session)
        logger.info(f"Started session {session.session_id} at '{node.text}' ({category or 'selector'})")
        return self._view(session, node)

    def submit_answer(self, session_id: str, connection_id: str) -> SessionView:
        """
        Follow one answer from the session's current node.

        Raises:
            NotFoundError: If the session doesn't exist
            SessionStateError: If the session is completed or abandoned
            ValidationError: If connection_id is not an active answer of the
                current node, or the session moved concurrently; the stored
                session is unchanged either way
        """
        session = self.sessions.get(session_id)
        if session.state.is_terminal:
            raise SessionStateError(session_id, session.state)

        node = self.store.get_node(session.current_node_id)
        valid = {
            conn.id: (conn, target)
            for conn, target in self.store.list_outgoing_with_targets(node.id, active_only=True)
        }
        if connection_id not in valid:
            raise ValidationError(
                "Invalid answer for the current question",
                fields=[("connection_id", f"{connection_id} is not an answer of node {node.id}")],
            )
        conn, target = valid[connection_id]

        steps = session.steps + [SessionStep(
            node_id=node.id,
            node_text=node.text,
            connection_id=conn.id,
            label=conn.label,
        )]
        state = SessionState.COMPLETED if target.is_conclusion else SessionState.ACTIVE
        completed_at = now_utc() if target.is_conclusion else None
        final_conclusion = target.text if target.is_conclusion else None

        if not self.sessions.advance(
            session_id, node.id, target.id, steps, state,
            completed_at=completed_at, final_conclusion=final_conclusion,
        ):
            raise ValidationError(
                "Session was updated concurrently; reload and retry",
                fields=[("session_id", "stale session state")],
            )

        session = self.sessions.get(session_id)
        if session.completed:
            self._publish(EventType.SESSION_COMPLETED, session)
            logger.info(f"Session {session_id} completed: {final_conclusion}")
        return self._view(session, target)

    def get_session(self, session_id: str) -> SessionView:
        """Current node and options; terminal sessions return no options."""
        session = self.sessions.get(session_id)
        return self._view(session, self.store.get_node(session.current_node_id))

    def get_session_record(self, session_id: str) -> Session:
        return self.sessions.get(session_id)

    def get_history(self, session_id: str) -> List[SessionStep]:
        return list(self.sessions.get(session_id).steps)

    def mark_abandoned(self, session_id: str) -> Session:
        """
        Raises:
            NotFoundError: If the session doesn't exist
            SessionStateError: If the session is already terminal
        """
        session = self.sessions.get(session_id)
        if session.state.is_terminal or not self.sessions.mark_abandoned(session_id):
            raise SessionStateError(session_id, self.sessions.get(session_id).state)
        session = self.sessions.get(session_id)
        self._publish(EventType.SESSION_ABANDONED, session)
        logger.info(f"Session {session_id} abandoned")
        return session

    def list_stale_sessions(self, older_than_seconds: float) -> List[Session]:
        """Active sessions idle longer than the cutoff (input to an external sweep)."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat()
        return self.sessions.list_active_before(cutoff)
