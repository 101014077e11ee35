"""
Pytest configuration and shared fixtures for the troubleshooting engine test suite.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset process-wide singletons before each test to ensure isolation."""
    from infrastructure.event_bus import reset_event_bus
    from infrastructure.config import reset_config

    reset_event_bus()
    reset_config()

    yield

    reset_event_bus()
    reset_config()


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def event_bus():
    """A private EventBus (never the process-wide one)."""
    from infrastructure.event_bus import EventBus
    return EventBus()


@pytest.fixture
def recorded_events(event_bus):
    """Every mutation event published on event_bus, in order."""
    events = []
    event_bus.subscribe_mutations(events.append)
    return events


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "troubleshoot.db"


@pytest.fixture
def fresh_store(db_path, event_bus):
    """Provide a fresh file-backed GraphStore."""
    from core.graph_db import GraphStore

    store = GraphStore(db_path, event_bus=event_bus)
    yield store
    store.close()


@pytest.fixture
def start_node(fresh_store):
    """The global selector node."""
    from infrastructure.bootstrap import ensure_start_node
    return ensure_start_node(fresh_store)


@pytest.fixture
def demo_store(fresh_store):
    """
    A store seeded with the demo brush tree.

    Returns:
        (store, nodes) where nodes maps seed keys ("brush_check", "forced_off", ...) to Nodes
    """
    from infrastructure.bootstrap import seed_demo_tree

    nodes = seed_demo_tree(fresh_store)
    return fresh_store, nodes


@pytest.fixture
def session_store(tmp_path):
    from core.sessions import SessionStore

    store = SessionStore(tmp_path / "sessions.db")
    yield store
    store.close()


@pytest.fixture
def view_cache(clock):
    from infrastructure.view_cache import ViewCache
    return ViewCache(clock=clock)


@pytest.fixture
def engine(db_path, event_bus, clock):
    """A fully wired TroubleshootEngine over a seeded demo store."""
    from core.engine import TroubleshootEngine
    from core.graph_db import GraphStore
    from core.sessions import SessionStore
    from infrastructure.view_cache import ViewCache

    store = GraphStore(db_path, event_bus=event_bus)
    eng = TroubleshootEngine(
        store,
        SessionStore(db_path),
        cache=ViewCache(clock=clock),
        event_bus=event_bus,
    )
    eng.bootstrap(seed_demo=True)
    yield eng
    eng.close()


class GraphBuilder:
    """Terse node/connection construction for tests."""

    def __init__(self, store):
        self.store = store

    def question(self, category, text, semantic_id=None, is_active=True):
        from core.ontology import NodeType
        from core.schemas import NodeSpec

        return self.store.create_node(NodeSpec(
            category=category,
            node_type=NodeType.QUESTION,
            text=text,
            semantic_id=semantic_id,
            is_active=is_active,
        ))

    def conclusion(self, category, text, is_active=True):
        from core.ontology import NodeType
        from core.schemas import NodeSpec

        return self.store.create_node(NodeSpec(
            category=category,
            node_type=NodeType.CONCLUSION,
            text=text,
            is_active=is_active,
        ))

    def connect(self, source, target, label, order_index=None, is_active=True):
        from core.schemas import ConnectionSpec

        return self.store.create_connection(ConnectionSpec(
            from_node_id=source.id,
            to_node_id=target.id,
            label=label,
            order_index=order_index,
            is_active=is_active,
        ))


@pytest.fixture
def builder(fresh_store):
    return GraphBuilder(fresh_store)
