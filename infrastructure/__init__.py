"""
TROUBLESHOOT INFRASTRUCTURE - System-Level Modules

This package contains infrastructure components:
- config: TOML configuration loaded into msgspec sections, logging setup
- event_bus: publish/subscribe for graph mutation events
- view_cache: TTL + LRU read-through cache of derived views
- bootstrap: seeding of the global start node and the demo tree
"""

from infrastructure.config import AppConfig, get_config, configure_logging
from infrastructure.event_bus import EventBus, EventType, GraphEvent, get_event_bus
from infrastructure.view_cache import ViewCache, CacheUnavailableError

__all__ = [
    "AppConfig",
    "get_config",
    "configure_logging",
    "EventBus",
    "EventType",
    "GraphEvent",
    "get_event_bus",
    "ViewCache",
    "CacheUnavailableError",
]
