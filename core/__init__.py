"""
TROUBLESHOOT CORE - Central exports for the decision engine.

This module provides access to:
- GraphStore and the error taxonomy (NotFoundError, ValidationError, ...)
- ValidationEngine (publish safety, issue lifecycle)
- ImportExportEngine (portable issue documents)

SessionEngine (core.sessions) and TroubleshootEngine (core.engine) depend on
the infrastructure cache and are imported from their modules directly.
"""

from core.graph_db import (
    GraphStore,
    GraphError,
    NotFoundError,
    ValidationError,
    GraphIntegrityError,
    SelfLoopError,
    ConflictError,
)
from core.ontology import NodeType, SessionState, ViewKind, ImportMode
from core.validation import ValidationEngine
from core.import_export import ImportExportEngine, encode_document, decode_document

__all__ = [
    # Store & errors
    "GraphStore",
    "GraphError",
    "NotFoundError",
    "ValidationError",
    "GraphIntegrityError",
    "SelfLoopError",
    "ConflictError",
    # Vocabulary
    "NodeType",
    "SessionState",
    "ViewKind",
    "ImportMode",
    # Engines
    "ValidationEngine",
    "ImportExportEngine",
    "encode_document",
    "decode_document",
]
