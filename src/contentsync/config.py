"""Runtime configuration for contentsync.

Reads the network identity and transfer settings from CLI args, environment
variables, .env files, and YAML config file fallbacks.  Nodes, peer
connections and accepted API users come from the YAML file only.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    CONTENTSYNC_NETWORK_URL: Base URL of this network (required)
    CONTENTSYNC_NODE_ID: Default node id (optional, default: 1)
    CONTENTSYNC_INSECURE: Skip SSL verification (optional, default: false)
    CONTENTSYNC_DEBUG: Enable debug logging (optional, default: false)
    CONTENTSYNC_STATE_DIR: Directory for distribution state
    CONTENTSYNC_CONTROL_TIMEOUT: Timeout for control calls in seconds (default: 30)
    CONTENTSYNC_TRANSFER_TIMEOUT: Timeout for transfers in seconds (default: 3600)
    CONTENTSYNC_CHUNK_SIZE: Posts per distribution item (default: 10)
    CONTENTSYNC_MAX_PARALLEL_REQUESTS: Concurrent destinations (default: 5)
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from .sync.gid import canonicalize_address

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """A peer network and the credential we present to it.

    The password is an opaque application secret; it is sent as-is in the
    Basic auth header and never interpreted.
    """

    site_url: str
    username: str
    password: str
    name: str = ""
    api_root: str = "wp-json"

    @property
    def address(self) -> str:
        return canonicalize_address(self.site_url)

    @property
    def endpoint(self) -> str:
        return f"{self.site_url.rstrip('/')}/{self.api_root.strip('/')}/contentsync/v1"


@dataclass
class NodeSite:
    node_id: int
    site_url: str
    upload_url: str | None = None
    upload_dir: str = "uploads"
    theme: str = ""
    language: str = "en"
    name: str = ""


@dataclass
class Config:
    network_url: str
    node_id: int = 1
    nodes: list[NodeSite] = field(default_factory=list)
    connections: list[Connection] = field(default_factory=list)
    api_users: dict[str, str] = field(default_factory=dict)
    insecure: bool = False
    debug: bool = False
    state_dir: str = ".contentsync/state"
    control_timeout: int = 30
    transfer_timeout: int = 3600
    chunk_size: int = 10
    max_parallel_requests: int = 5
    retry_max_attempts: int = 5
    post_cache_ttl: int = 600
    listing_cache_ttl: int = 3600

    @property
    def network_address(self) -> str:
        return canonicalize_address(self.network_url)

    def connection_for(self, address: str) -> Connection | None:
        """Return the connection whose canonical address matches *address*."""
        wanted = canonicalize_address(address)
        for connection in self.connections:
            if connection.address == wanted:
                return connection
        return None


def _validate_url(value: str, label: str) -> str:
    value = value.strip()
    if not value.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid {label} '{value}': must start with http:// or https://"
        )
    if not urlparse(value).hostname:
        raise ValueError(f"Invalid {label} '{value}': URL must include a hostname")
    return value.removesuffix("/")


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If a URL is malformed, a node id repeats, or a
            connection lacks credentials.
    """
    config.network_url = _validate_url(config.network_url, "network URL")

    seen: set[int] = set()
    for node in config.nodes:
        node.site_url = _validate_url(node.site_url, f"site URL of node {node.node_id}")
        if node.node_id in seen:
            raise ValueError(f"Node id {node.node_id} is configured twice")
        seen.add(node.node_id)

    if config.nodes and config.node_id not in seen:
        raise ValueError(
            f"Default node {config.node_id} is not among the configured nodes"
        )

    for connection in config.connections:
        connection.site_url = _validate_url(connection.site_url, "connection URL")
        if not connection.username.strip() or not connection.password.strip():
            raise ValueError(
                f"Connection '{connection.site_url}' needs a username and password"
            )
        if connection.address == config.network_address:
            raise ValueError("A network cannot be connected to itself")

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _int_setting(
    env_key: str, fallbacks: dict, key: str, default: int, low: int, high: int
) -> int:
    raw = os.getenv(env_key)
    if raw is not None:
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(
                f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
            ) from None
        if not (low <= value <= high):
            raise ValueError(
                f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
            )
        return value
    if key in fallbacks:
        return int(fallbacks[key])
    return default


def load_config(
    network_url: str | None = None,
    node_id: int | None = None,
    insecure: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        network_url: Override network URL.
        node_id: Override the default node id.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict produced by
            ``config_schema.yaml_fallbacks()``.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the network URL is missing after checking all
            sources, or any value is invalid.
    """
    fb = yaml_fallbacks or {}

    final_url = network_url or os.getenv("CONTENTSYNC_NETWORK_URL") or fb.get("network_url")
    if not final_url:
        raise ValueError(
            "Network URL not found. Set CONTENTSYNC_NETWORK_URL environment variable, "
            "pass --network-url, or add 'network.url' to config.yml."
        )

    if node_id is not None:
        final_node_id = int(node_id)
    else:
        final_node_id = _int_setting(
            "CONTENTSYNC_NODE_ID", fb, "node_id", 1, 1, 10**9
        )

    if insecure:
        final_insecure = True
    else:
        env_insecure = get_bool_env("CONTENTSYNC_INSECURE")
        final_insecure = (
            env_insecure if env_insecure is not None else bool(fb.get("insecure", False))
        )

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("CONTENTSYNC_DEBUG")
        final_debug = env_debug if env_debug is not None else bool(fb.get("debug", False))

    config = Config(
        network_url=final_url.strip(),
        node_id=final_node_id,
        nodes=[NodeSite(**n) for n in fb.get("nodes", [])],
        connections=[Connection(**c) for c in fb.get("connections", [])],
        api_users=dict(fb.get("api_users", {})),
        insecure=final_insecure,
        debug=final_debug,
        state_dir=os.getenv("CONTENTSYNC_STATE_DIR")
        or fb.get("state_dir", ".contentsync/state"),
        control_timeout=_int_setting(
            "CONTENTSYNC_CONTROL_TIMEOUT", fb, "control_timeout", 30, 1, 600
        ),
        transfer_timeout=_int_setting(
            "CONTENTSYNC_TRANSFER_TIMEOUT", fb, "transfer_timeout", 3600, 1, 3600
        ),
        chunk_size=_int_setting("CONTENTSYNC_CHUNK_SIZE", fb, "chunk_size", 10, 1, 500),
        max_parallel_requests=_int_setting(
            "CONTENTSYNC_MAX_PARALLEL_REQUESTS", fb, "max_parallel_requests", 5, 1, 100
        ),
        retry_max_attempts=int(fb.get("retry_max_attempts", 5)),
        post_cache_ttl=int(fb.get("post_cache_ttl", 600)),
        listing_cache_ttl=int(fb.get("listing_cache_ttl", 3600)),
    )

    validate_config(config)

    return config
