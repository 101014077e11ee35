"""
Bootstrap seeding for a fresh store.

The global selector is data, not code: it is the node whose semantic_id is
graph.start_semantic_id. ensure_start_node() creates it once; every later
lookup is a plain semantic-id query.

seed_demo_tree() loads a small car-wash brush tree (with a shared
"electrical" sub-tree) used by the demo and the test suite. Like a
hand-written seed file it is loaded active without validation, so it still
contains two unfinished questions (timing_pressure, vfd_check).
"""
import logging
from typing import Dict, List, Optional, Tuple

from core.graph_db import GraphStore
from core.ontology import NodeType
from core.schemas import Node, NodeSpec, ConnectionSpec
from infrastructure.config import GraphConfig


logger = logging.getLogger("troubleshoot.bootstrap")


MAINTENANCE_CONCLUSION = (
    "Maintenance has the brush forced off pending repair. Verify that a "
    "request/work order exists on MaintainX app https://app.getmaintainx.com"
)

# (key, category, node_type, text, semantic_id)
DEMO_NODES: List[Tuple[str, str, NodeType, str, Optional[str]]] = [
    ("brush_check", "brush", NodeType.QUESTION, "What's the issue?", "brush_check"),
    ("not_spinning1", "brush", NodeType.QUESTION,
     "Check controller - Verify brush isn't forced off through controller", "not_spinning1"),
    ("not_deploying", "brush", NodeType.QUESTION,
     "Check controller - Verify brush air isn't forced off through controller", "not_deploying"),
    ("timing_pressure", "brush", NodeType.QUESTION, "Timing/Pressure Issues", "timing_pressure"),
    ("forced_off", "brush", NodeType.QUESTION,
     "Verify with Maintenance that the brush isn't forced off for a reason", "forced_off"),
    ("set_auto", "brush", NodeType.QUESTION,
     "Set brush to AUTO - does brush function now that it's set to AUTO?", "set_auto"),
    ("on_auto", "brush", NodeType.QUESTION, "Check MCC - Is there power the VFD?", "on_auto"),
    ("vfd_check", "brush", NodeType.QUESTION,
     "Does the VFD display show an error, or normal operation?", "vfd_check"),
    ("maintenance_hold", "brush", NodeType.CONCLUSION, MAINTENANCE_CONCLUSION, None),
    ("fixed", "brush", NodeType.CONCLUSION, "Congrats!! You fixed it!", None),
    ("breaker_check", "electrical", NodeType.QUESTION, "Is the circuit breaker tripped?", "breaker_check"),
    ("breaker_reset", "electrical", NodeType.CONCLUSION,
     "Reset circuit breaker. If it trips again immediately, there may be a short circuit - "
     "create MaintainX request and contact maintenance/regional manager.", None),
    ("power_loss", "electrical", NodeType.CONCLUSION,
     "Likely loss of power to breaker, underlying electrical issue. Create MaintainX "
     "request and contact maintenance/regional manager.", None),
]

# (from key, to key, label); order_index follows list order per source
DEMO_CONNECTIONS: List[Tuple[str, str, str]] = [
    ("start", "brush_check", "Brush"),
    ("brush_check", "not_spinning1", "Not Spinning"),
    ("brush_check", "not_deploying", "Not Deploying"),
    ("brush_check", "timing_pressure", "Timing/Pressure Issues"),
    ("not_spinning1", "forced_off", "Brush is forced OFF"),
    ("not_spinning1", "on_auto", "Brush is On AUTO"),
    ("not_deploying", "forced_off", "Brush air is forced OFF"),
    ("not_deploying", "on_auto", "Brush air is On AUTO"),
    ("forced_off", "set_auto", "Brush NOT forced off by maintenance team"),
    ("forced_off", "maintenance_hold", "Forced off by maintenance"),
    ("set_auto", "fixed", "Yes, brush works now"),
    ("set_auto", "on_auto", "Brush still not turning on for vehicles when set to AUTO"),
    ("on_auto", "vfd_check", "VFD has power (LED screen display ON, indicator lights illuminated)"),
    ("on_auto", "breaker_check", "VFD does not have power (LED screen display OFF/no lights on VFD)"),
    ("breaker_check", "breaker_reset", "Yes"),
    ("breaker_check", "power_loss", "No"),
]


def ensure_start_node(store: GraphStore, config: Optional[GraphConfig] = None) -> Node:
    """Create the global selector node unless it already exists."""
    config = config or GraphConfig()
    existing = store.find_node_by_semantic_id(config.start_semantic_id)
    if existing is not None:
        return existing
    node = store.create_node(NodeSpec(
        category=config.start_category,
        node_type=NodeType.QUESTION,
        text=config.start_text,
        semantic_id=config.start_semantic_id,
    ))
    logger.info(f"Created global start node {node.id}")
    return node


def seed_demo_tree(store: GraphStore, config: Optional[GraphConfig] = None) -> Dict[str, Node]:
    """
    Load the demo tree in one transaction.

    Returns:
        key -> created Node (including "start")
    """
    with store.transaction():
        nodes: Dict[str, Node] = {"start": ensure_start_node(store, config)}
        for key, category, node_type, text, semantic_id in DEMO_NODES:
            nodes[key] = store.create_node(NodeSpec(
                category=category,
                node_type=node_type,
                text=text,
                semantic_id=semantic_id,
            ))
        for source, target, label in DEMO_CONNECTIONS:
            store.create_connection(ConnectionSpec(
                from_node_id=nodes[source].id,
                to_node_id=nodes[target].id,
                label=label,
            ))
    logger.info(f"Seeded demo tree ({len(DEMO_NODES)} nodes, {len(DEMO_CONNECTIONS)} connections)")
    return nodes
