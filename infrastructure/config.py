"""
Configuration for the troubleshooting engine.

Configuration is loaded once from config/troubleshoot.toml (or the file named
by TROUBLESHOOT_CONFIG) and converted into typed msgspec sections. Every
section has defaults, so a missing file degrades to a warning, never a crash.

Usage:
    from infrastructure.config import get_config, configure_logging

    config = get_config()
    configure_logging(config)
    ttl = config.cache.for_kind(ViewKind.EDITOR_GRAPH).ttl_seconds
"""
import logging
import os
import tomllib
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import msgspec

from core.ontology import ViewKind, START_SEMANTIC_ID, START_CATEGORY, ROOT_SUFFIX


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "troubleshoot.toml"
CONFIG_ENV_VAR = "TROUBLESHOOT_CONFIG"
DB_PATH_ENV_VAR = "TROUBLESHOOT_DB_PATH"


# =============================================================================
# CONFIG SECTIONS
# =============================================================================

class StorageConfig(msgspec.Struct, kw_only=True):
    db_path: str = "data/troubleshoot.db"


class GraphConfig(msgspec.Struct, kw_only=True):
    start_semantic_id: str = START_SEMANTIC_ID
    start_category: str = START_CATEGORY
    root_suffix: str = ROOT_SUFFIX
    start_text: str = "What are you having trouble with?"


class ViewCacheConfig(msgspec.Struct, kw_only=True):
    ttl_seconds: float = 600.0
    max_entries: int = 50


class CacheConfig(msgspec.Struct, kw_only=True):
    flattened_tree: ViewCacheConfig = msgspec.field(default_factory=ViewCacheConfig)
    editor_graph: ViewCacheConfig = msgspec.field(default_factory=ViewCacheConfig)
    adjacency: ViewCacheConfig = msgspec.field(
        default_factory=lambda: ViewCacheConfig(ttl_seconds=300.0, max_entries=200)
    )

    def for_kind(self, kind: ViewKind) -> ViewCacheConfig:
        return getattr(self, ViewKind(kind).value)


class LoggingConfig(msgspec.Struct, kw_only=True):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class AppConfig(msgspec.Struct, kw_only=True):
    storage: StorageConfig = msgspec.field(default_factory=StorageConfig)
    graph: GraphConfig = msgspec.field(default_factory=GraphConfig)
    cache: CacheConfig = msgspec.field(default_factory=CacheConfig)
    logging: LoggingConfig = msgspec.field(default_factory=LoggingConfig)


# =============================================================================
# LOADING
# =============================================================================

def load_toml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load the raw TOML configuration.

    Returns:
        Dict with all configuration sections ({} if the file is unreadable)
    """
    if path is None:
        path = Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH))
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        warnings.warn(f"Failed to load config from {path}: {e}")
        return {}


def build_config(config_dict: Optional[Dict[str, Any]] = None) -> AppConfig:
    """
    Build a typed AppConfig.

    Args:
        config_dict: Optional pre-loaded config. If None, loads from TOML.

    Raises:
        msgspec.ValidationError: If a section has the wrong shape
    """
    if config_dict is None:
        config_dict = load_toml_config()
    config = msgspec.convert(config_dict, type=AppConfig)

    db_override = os.environ.get(DB_PATH_ENV_VAR)
    if db_override:
        config.storage.db_path = db_override
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Process-wide configuration, loaded on first use."""
    global _config
    if _config is None:
        _config = build_config()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (tests)."""
    global _config
    _config = None


# =============================================================================
# LOGGING SETUP
# =============================================================================

_HANDLER_NAME = "troubleshoot-stream"


def configure_logging(config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Apply level and format to the `troubleshoot` logger tree.

    Idempotent: calling twice does not stack handlers.
    """
    config = config or get_config()
    root = logging.getLogger("troubleshoot")
    root.setLevel(config.logging.level.upper())

    if not any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(config.logging.format))
        root.addHandler(handler)
    return root
