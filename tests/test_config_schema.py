"""Tests for the unified config schema and adapter functions.

Covers the Pydantic section models in config_schema.py, the
build_config() factory, yaml_fallbacks() and the to_legacy_config()
adapter.
"""

import pytest
from pydantic import ValidationError

from contentsync.config import load_config
from contentsync.config_schema import (
    LoggingConfig,
    NetworkConfig,
    TransferConfig,
    UnifiedConfig,
    build_config,
    to_legacy_config,
    yaml_fallbacks,
)

RAW = {
    "network": {
        "url": "https://net-a.example",
        "node_id": 2,
        "api_users": {"net-b": "secret"},
    },
    "nodes": [
        {"node_id": 1, "site_url": "https://net-a.example"},
        {"node_id": 2, "site_url": "https://net-a.example/de", "language": "de"},
    ],
    "connections": [
        {"site_url": "https://net-b.example", "username": "net-a", "password": "pw"}
    ],
    "transfer": {"chunk_size": 3, "max_parallel_requests": 2},
    "cache": {"post_ttl": 5},
    "logging": {"level": "DEBUG", "format": "json"},
}


class TestUnifiedConfig:
    """Tests for the top-level UnifiedConfig model."""

    def test_zero_config_defaults(self):
        config = UnifiedConfig()
        assert config.network.url is None
        assert config.network.node_id == 1
        assert config.nodes == []
        assert config.transfer.transfer_timeout == 3600
        assert config.cache.listing_ttl == 3600
        assert config.logging.level == "INFO"

    def test_frozen(self):
        config = UnifiedConfig()
        with pytest.raises(ValidationError):
            config.network = NetworkConfig(url="https://x.example")

    def test_transfer_bounds(self):
        with pytest.raises(ValidationError):
            TransferConfig(max_parallel_requests=0)
        with pytest.raises(ValidationError):
            TransferConfig(transfer_timeout=7200)

    def test_node_id_must_be_positive(self):
        with pytest.raises(ValidationError):
            NetworkConfig(node_id=0)

    def test_logging_defaults(self):
        assert LoggingConfig().format == "text"
        assert LoggingConfig().file is None


class TestBuildConfig:
    """Tests for build_config()."""

    def test_empty(self):
        assert build_config({}) == UnifiedConfig()

    def test_full(self):
        config = build_config(RAW)
        assert config.nodes[1].language == "de"
        assert config.connections[0].api_root == "wp-json"
        assert config.transfer.chunk_size == 3
        assert config.logging.format == "json"

    def test_invalid_section(self):
        with pytest.raises(ValidationError):
            build_config({"nodes": [{"site_url": "https://x.example"}]})


class TestYamlFallbacks:
    """Tests for yaml_fallbacks() feeding load_config()."""

    def test_flattened_keys(self):
        flat = yaml_fallbacks(build_config(RAW))
        assert flat["network_url"] == "https://net-a.example"
        assert flat["chunk_size"] == 3
        assert flat["post_cache_ttl"] == 5
        assert flat["api_users"] == {"net-b": "secret"}

    def test_none_dropped(self):
        flat = yaml_fallbacks(UnifiedConfig())
        assert "network_url" not in flat

    def test_load_config_with_fallbacks(self, monkeypatch):
        for key in ("CONTENTSYNC_NETWORK_URL", "CONTENTSYNC_NODE_ID", "CONTENTSYNC_CHUNK_SIZE"):
            monkeypatch.delenv(key, raising=False)
        config = load_config(yaml_fallbacks=yaml_fallbacks(build_config(RAW)))
        assert config.node_id == 2
        assert config.nodes[1].site_url == "https://net-a.example/de"
        assert config.max_parallel_requests == 2
        assert config.post_cache_ttl == 5


class TestToLegacyConfig:
    """Tests for the UnifiedConfig -> Config adapter."""

    def test_values_carried(self):
        config = to_legacy_config(build_config(RAW))
        assert config.network_url == "https://net-a.example"
        assert config.node_id == 2
        assert config.connections[0].username == "net-a"
        assert config.chunk_size == 3
        assert config.post_cache_ttl == 5

    def test_cli_overrides_win(self):
        config = to_legacy_config(
            build_config(RAW),
            cli_overrides={"network_url": "https://cli.example", "node_id": 1, "debug": True},
        )
        assert config.network_url == "https://cli.example"
        assert config.node_id == 1
        assert config.debug is True

    def test_empty_url(self):
        assert to_legacy_config(UnifiedConfig()).network_url == ""
