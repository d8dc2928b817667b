"""Unified configuration schema for contentsync.

Defines Pydantic models for the YAML config structure with dedicated
sections for the local network, its nodes, peer connections, transfer
limits, caches and logging.  Includes an adapter producing the flat
``Config`` dataclass used at runtime.

Usage:
    from contentsync.config_schema import (
        UnifiedConfig, build_config, to_legacy_config,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_legacy_config(unified, cli_overrides={"network_url": "https://..."})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class NetworkConfig(BaseModel):
    """Identity of the local network.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    url: str | None = Field(default=None, description="Network base URL")
    node_id: int = Field(default=1, ge=1, description="Default node id")
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    state_dir: str = Field(
        default=".contentsync/state",
        description="Directory for distribution state and retry queue",
    )
    api_users: dict[str, str] = Field(
        default_factory=dict,
        description="Credentials accepted from peers (login -> secret)",
    )

    model_config = {"frozen": True}


class NodeSiteConfig(BaseModel):
    """One node (site) of the local network."""

    node_id: int = Field(ge=1)
    site_url: str
    upload_url: str | None = None
    upload_dir: str = "uploads"
    theme: str = ""
    language: str = "en"
    name: str = ""

    model_config = {"frozen": True}


class ConnectionConfig(BaseModel):
    """A peer network this one is connected to."""

    site_url: str
    username: str
    password: str
    name: str = ""
    api_root: str = "wp-json"

    model_config = {"frozen": True}


class TransferConfig(BaseModel):
    """Timeouts and batching for remote transfers."""

    control_timeout: int = Field(
        default=30, ge=1, le=600, description="Timeout for control calls (s)"
    )
    transfer_timeout: int = Field(
        default=3600,
        ge=1,
        le=3600,
        description="Timeout for content transfers (s)",
    )
    chunk_size: int = Field(
        default=10, ge=1, le=500, description="Posts per distribution item"
    )
    max_parallel_requests: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum concurrent destinations (1-100)",
    )
    retry_max_attempts: int = Field(default=5, ge=1, le=100)

    model_config = {"frozen": True}


class CacheConfig(BaseModel):
    """Lifetimes of the cross-request remote caches."""

    post_ttl: int = Field(default=600, ge=0, description="Single remote post (s)")
    listing_ttl: int = Field(
        default=3600, ge=0, description="Remote post listings (s)"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: "text" or "json".
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", description="text or json")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    nodes: list[NodeSiteConfig] = Field(default_factory=list)
    connections: list[ConnectionConfig] = Field(default_factory=list)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


def yaml_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten a ``UnifiedConfig`` into the fallback dict ``load_config``
    expects.  ``None`` values are dropped so they never mask defaults.
    """
    flat: dict[str, Any] = {
        "network_url": unified.network.url,
        "node_id": unified.network.node_id,
        "insecure": unified.network.insecure,
        "debug": unified.network.debug,
        "state_dir": unified.network.state_dir,
        "api_users": dict(unified.network.api_users),
        "nodes": [n.model_dump() for n in unified.nodes],
        "connections": [c.model_dump() for c in unified.connections],
        "post_cache_ttl": unified.cache.post_ttl,
        "listing_cache_ttl": unified.cache.listing_ttl,
        **unified.transfer.model_dump(),
    }
    return {k: v for k, v in flat.items() if v is not None}


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------


def to_legacy_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Convert a ``UnifiedConfig`` into the runtime ``Config`` dataclass,
    applying CLI overrides on top.

    The precedence applied here is:
        CLI override > unified config value > default

    CLI overrides dict keys: network_url, node_id, insecure, debug,
    state_dir.

    Args:
        unified: The unified config produced by ``build_config()``.
        cli_overrides: Optional dict of CLI argument values.

    Returns:
        ``Config`` dataclass instance (NOT validated -- caller should run
        ``validate_config()`` separately if needed).
    """
    # Import here to avoid circular imports (config.py imports config_schema)
    from .config import Config, Connection, NodeSite

    overrides = cli_overrides or {}

    return Config(
        network_url=overrides.get("network_url") or unified.network.url or "",
        node_id=int(overrides.get("node_id") or unified.network.node_id),
        nodes=[NodeSite(**n.model_dump()) for n in unified.nodes],
        connections=[Connection(**c.model_dump()) for c in unified.connections],
        api_users=dict(unified.network.api_users),
        insecure=overrides.get("insecure", False) or unified.network.insecure,
        debug=overrides.get("debug", False) or unified.network.debug,
        state_dir=overrides.get("state_dir") or unified.network.state_dir,
        control_timeout=unified.transfer.control_timeout,
        transfer_timeout=unified.transfer.transfer_timeout,
        chunk_size=unified.transfer.chunk_size,
        max_parallel_requests=unified.transfer.max_parallel_requests,
        retry_max_attempts=unified.transfer.retry_max_attempts,
        post_cache_ttl=unified.cache.post_ttl,
        listing_cache_ttl=unified.cache.listing_ttl,
    )
