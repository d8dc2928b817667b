"""Node context and per-root locking.

A *cluster* is the set of nodes that share one network address and one
connection map authority.  Code that works on a particular node receives
its ``NodeContext`` explicitly; code that has to *enter* another node
(local distribution, connection map updates on the origin) uses
``Cluster.switch()``, which keeps a per-thread stack and always restores
the previous node, including when an exception escapes.

``GidLocks`` hands out one re-entrant lock per canonical root GID so two
imports never write the same root's copies or connection map at once.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Iterator

from ..errors import NotFoundError
from ..sync import gid as gid_codec

if TYPE_CHECKING:
    from ..config import Config, NodeSite
    from ..sync.store import PostStore

logger = logging.getLogger(__name__)


@dataclass
class NodeContext:
    """Everything the sync engine needs to know about one node.

    Attributes:
        node_id: Numeric id of the node inside its cluster.
        store: Storage adapter of the node.
        site_url: Public base url (``https://example.com/de``).
        upload_url: Base url of the asset store.
        upload_dir: Filesystem root of the asset store.
        theme: Active theme name, exported as ``{{theme}}``.
        language: Default language code of the node.
        name: Human-readable site name.
        network_url: Canonical address of the cluster the node belongs to.
    """

    node_id: int
    store: PostStore
    site_url: str
    upload_url: str = ""
    upload_dir: Path = Path("uploads")
    theme: str = ""
    language: str = "en"
    name: str = ""
    network_url: str = ""

    @property
    def display_url(self) -> str:
        return gid_codec.canonicalize_address(self.site_url)


class Cluster:
    """The local nodes of one network.

    Args:
        network_url: Address of the network; stored canonicalized.
        nodes: Initial nodes.
    """

    def __init__(self, network_url: str, nodes: Iterable[NodeContext] = ()) -> None:
        self.network_url = gid_codec.canonicalize_address(network_url)
        self._nodes: dict[int, NodeContext] = {}
        self._local = threading.local()
        for node in nodes:
            self.add_node(node)

    @classmethod
    def from_config(
        cls, config: Config, store_factory: Callable[[NodeSite], PostStore]
    ) -> Cluster:
        """Build a cluster with one ``NodeContext`` per configured node."""
        cluster = cls(config.network_url)
        for site in config.nodes:
            cluster.add_node(
                NodeContext(
                    node_id=site.node_id,
                    store=store_factory(site),
                    site_url=site.site_url,
                    upload_url=site.upload_url
                    or f"{site.site_url.rstrip('/')}/wp-content/uploads",
                    upload_dir=Path(site.upload_dir),
                    theme=site.theme,
                    language=site.language,
                    name=site.name,
                )
            )
        return cluster

    def add_node(self, node: NodeContext) -> None:
        node.network_url = self.network_url
        self._nodes[node.node_id] = node

    def node(self, node_id) -> NodeContext | None:
        try:
            return self._nodes.get(int(node_id))
        except (TypeError, ValueError):
            return None

    def node_ids(self) -> list[int]:
        return sorted(self._nodes)

    def __iter__(self) -> Iterator[NodeContext]:
        return iter(self._nodes[node_id] for node_id in self.node_ids())

    def __contains__(self, node_id) -> bool:
        return self.node(node_id) is not None

    # ------------------------------------------------------------------
    # Context switching
    # ------------------------------------------------------------------

    def _stack(self) -> list[NodeContext]:
        if not hasattr(self._local, "stack"):
            self._local.stack = []
        return self._local.stack

    @property
    def current(self) -> NodeContext | None:
        """Node entered most recently on this thread, if any."""
        stack = self._stack()
        return stack[-1] if stack else None

    @contextmanager
    def switch(self, node_id: int) -> Iterator[NodeContext]:
        """Enter *node_id* for the duration of the ``with`` block.

        Raises:
            NotFoundError: If the node is not part of this cluster.
        """
        node = self.node(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} is not part of this network")

        stack = self._stack()
        stack.append(node)
        logger.debug("Switched to node %d (depth %d)", node.node_id, len(stack))
        try:
            yield node
        finally:
            stack.pop()
            logger.debug("Restored node context (depth %d)", len(stack))


class GidLocks:
    """One re-entrant lock per canonical GID."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    @staticmethod
    def _key(gid: str) -> str:
        node_id, content_id, address = gid_codec.decode(gid)
        if node_id is None:
            return str(gid)
        return gid_codec.encode(node_id, content_id, address)

    @contextmanager
    def hold(self, gid: str) -> Iterator[None]:
        key = self._key(gid)
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
        with lock:
            yield
