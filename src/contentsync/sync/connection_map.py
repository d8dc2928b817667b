"""Connection map: where the linked copies of a root live.

The map is stored as meta ``contentsync_connection_map`` on the root::

    {
        "2": {"post_id": 50, "edit_url": ..., "site_url": ..., "display_url": ...},
        "remote.example": {
            "3": {"post_id": 12, ...},
        },
    }

Numeric keys are nodes of the root's own network; any other key is the
canonical address of a peer network holding copies on its own nodes.

Mutations always happen on the node that holds the root.  For a local
root that means switching to the origin node under the root's GID lock;
for a remote root the origin network is called through the
``RemoteClient`` (outside any lock).  Remote calls that fail are parked
in the ``RetryQueue`` and replayed by ``flush_retry_queue()``.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from ..errors import RemoteRequestError
from . import gid as gid_codec
from . import meta as sync_meta
from .models import META_CONNECTION_MAP, META_GID, LinkRecord

if TYPE_CHECKING:
    from ..config import Config
    from ..core.client import RemoteClient
    from ..core.context import Cluster, GidLocks, NodeContext
    from .state import RetryQueue

logger = logging.getLogger(__name__)


def to_destination_ids(connection_map: dict[str, Any]) -> list[str]:
    """Flatten a map into destination keys like ``"2"`` and ``"3|remote.example"``."""
    destinations = []
    for key, value in (connection_map or {}).items():
        if str(key).isdigit():
            destinations.append(str(key))
            continue
        if isinstance(value, dict):
            destinations.extend(f"{node_id}|{key}" for node_id in value)
    return destinations


def link_record(ctx: NodeContext, post_id: int) -> LinkRecord:
    """Describe the copy *post_id* on node *ctx*."""
    return LinkRecord(
        post_id=post_id,
        edit_url=ctx.store.edit_url(post_id),
        site_url=ctx.site_url,
        display_url=ctx.display_url,
    )


class ConnectionMap:
    """Read, mutate and repair connection maps of one cluster.

    Args:
        cluster: Local nodes.
        locks: Per-root locks shared with the importer.
        config: Configuration; needed for remote roots.
        client: Client for remote roots and reconciliation.
        retry_queue: Where failed remote mutations are parked.
    """

    def __init__(
        self,
        cluster: Cluster,
        locks: GidLocks,
        config: Config | None = None,
        client: RemoteClient | None = None,
        retry_queue: RetryQueue | None = None,
    ) -> None:
        self.cluster = cluster
        self.locks = locks
        self.config = config
        self.client = client
        self.retry_queue = retry_queue

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @staticmethod
    def get(ctx: NodeContext, post_id: int) -> dict[str, Any]:
        value = ctx.store.get_meta_value(post_id, META_CONNECTION_MAP)
        return value if isinstance(value, dict) else {}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(
        self,
        gid: str,
        node_id: int,
        post_id: int,
        network_address: str | None = None,
        site_url: str = "",
        edit_url: str = "",
    ) -> bool:
        """Register copy *post_id* on node *node_id* in the map of root *gid*.

        Args:
            gid: GID of the root.
            node_id: Node holding the copy.
            post_id: Id of the copy on that node.
            network_address: Network of the copy; None for this network.
            site_url: Site url of a remote copy.
            edit_url: Edit link of a remote copy.

        Returns:
            True if the map was updated.  False if the root is unknown or
            the remote origin could not be reached (the call is queued).
        """
        return self._mutate("add", gid, node_id, post_id, network_address, site_url, edit_url)

    def remove(
        self,
        gid: str,
        node_id: int,
        post_id: int,
        network_address: str | None = None,
    ) -> bool:
        """Drop copy *post_id* on node *node_id* from the map of root *gid*."""
        return self._mutate("remove", gid, node_id, post_id, network_address)

    def _mutate(
        self,
        operation: str,
        gid: str,
        node_id: int,
        post_id: int,
        network_address: str | None,
        site_url: str = "",
        edit_url: str = "",
    ) -> bool:
        origin_node, _content_id, origin_network = gid_codec.decode(gid)
        if origin_node is None:
            logger.warning("Cannot %s connection for malformed GID %r", operation, gid)
            return False

        if origin_network is not None and self.config is not None:
            if origin_network == self.config.network_address:
                origin_network = None
                gid = gid_codec.localize(gid, self.config.network_address)

        if origin_network is not None:
            return self._mutate_remote(operation, gid, node_id, post_id)

        if origin_node not in self.cluster:
            logger.warning(
                "Cannot %s connection for %s: node %d is not part of this network",
                operation,
                gid,
                origin_node,
            )
            return False

        address = gid_codec.canonicalize_address(network_address) or None
        if self.config is not None and address == self.config.network_address:
            address = None

        with self.locks.hold(gid), self.cluster.switch(origin_node) as origin:
            root = sync_meta.get_root_post(origin.store, gid)
            if root is None:
                logger.info("Root %s not found on node %d", gid, origin_node)
                return False

            connection_map = self.get(origin, root.ID)
            if operation == "add":
                if address is None:
                    target = self.cluster.node(node_id)
                    record = (
                        link_record(target, post_id)
                        if target is not None
                        else LinkRecord(post_id=post_id)
                    )
                    connection_map[str(node_id)] = record.model_dump()
                else:
                    record = LinkRecord(
                        post_id=post_id,
                        edit_url=edit_url,
                        site_url=site_url,
                        display_url=gid_codec.canonicalize_address(site_url),
                    )
                    connection_map.setdefault(address, {})[str(node_id)] = record.model_dump()
            else:
                connection_map = self._without(connection_map, address, node_id, post_id)

            origin.store.update_meta(root.ID, META_CONNECTION_MAP, connection_map)

        logger.info(
            "Connection %s: root %s <-> node %s%s post %d",
            operation,
            gid,
            node_id,
            f"|{address}" if address else "",
            post_id,
        )
        return True

    @staticmethod
    def _without(
        connection_map: dict[str, Any], address: str | None, node_id: int, post_id: int
    ) -> dict[str, Any]:
        key = str(node_id)
        if address is None:
            entry = connection_map.get(key)
            if isinstance(entry, dict) and int(entry.get("post_id", 0)) == int(post_id):
                del connection_map[key]
            return connection_map

        network = connection_map.get(address)
        if not isinstance(network, dict):
            return connection_map
        entry = network.get(key)
        if isinstance(entry, dict) and int(entry.get("post_id", 0)) == int(post_id):
            del network[key]
        if not network:
            del connection_map[address]
        return connection_map

    def _mutate_remote(self, operation: str, gid: str, node_id: int, post_id: int) -> bool:
        try:
            self._call_remote(operation, gid, node_id, post_id)
        except RemoteRequestError as e:
            logger.warning(
                "Could not %s connection on the origin of %s: %s", operation, gid, e
            )
            if self.retry_queue is not None:
                self.retry_queue.enqueue(
                    operation, gid=gid, node_id=node_id, post_id=post_id
                )
            return False
        return True

    def _call_remote(self, operation: str, gid: str, node_id: int, post_id: int) -> None:
        address = gid_codec.decode(gid)[2]
        connection = self.config.connection_for(address) if self.config else None
        if connection is None or self.client is None:
            raise RemoteRequestError(
                f"Network {address} is not connected", code="rest_not_connected", status=403
            )

        if operation == "add":
            node = self.cluster.node(node_id)
            self.client.add_connection(
                connection,
                gid,
                node_id,
                post_id,
                site_url=node.site_url if node else "",
                edit_url=node.store.edit_url(post_id) if node else "",
            )
        else:
            self.client.remove_connection(connection, gid, node_id, post_id)

    def flush_retry_queue(self) -> int:
        """Replay queued remote mutations.  Returns the number delivered."""
        if self.retry_queue is None:
            return 0
        delivered = 0
        for entry in self.retry_queue.pending():
            payload = entry["payload"]
            try:
                self._call_remote(
                    entry["operation"],
                    payload["gid"],
                    int(payload["node_id"]),
                    int(payload["post_id"]),
                )
            except RemoteRequestError as e:
                self.retry_queue.mark_failed(entry["id"], str(e))
                continue
            self.retry_queue.mark_done(entry["id"])
            delivered += 1
        if delivered:
            logger.info("Delivered %d queued connection updates", delivered)
        return delivered

    # ------------------------------------------------------------------
    # Linked copies
    # ------------------------------------------------------------------

    def unlink_linked(self, ctx: NodeContext, post_id: int) -> bool:
        """Turn a linked copy into an ordinary post and drop it from the root's map."""
        gid = sync_meta.get_gid(ctx.store, post_id)
        if not gid or sync_meta.is_root(ctx.store, post_id):
            return False
        self.remove(gid, ctx.node_id, post_id)
        sync_meta.delete_synced_meta(ctx.store, post_id)
        logger.info("Unlinked copy %d on node %d from %s", post_id, ctx.node_id, gid)
        return True

    def local_copies(self, gid: str, exclude_node: int | None = None) -> dict[str, dict]:
        """Scan every node of the cluster for posts carrying *gid*."""
        copies: dict[str, dict] = {}
        for node in self.cluster:
            if node.node_id == exclude_node:
                continue
            matches = node.store.find_by_meta(META_GID, gid)
            for post in matches:
                if sync_meta.is_root(node.store, post.ID):
                    continue
                copies[str(node.node_id)] = link_record(node, post.ID).model_dump()
                break
        return copies

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def check(self, ctx: NodeContext, post_id: int) -> dict[str, str]:
        """Rebuild the map of root *post_id* from what actually exists.

        Peers are queried outside the root's lock; connections added or
        removed while they answer are carried into the rebuilt map.

        Returns:
            ``{"status": ..., "text": ...}`` with status ``not_root_post``,
            ``ok`` or ``connections_repaired``.
        """
        if not sync_meta.is_root(ctx.store, post_id):
            return {
                "status": "not_root_post",
                "text": f"Post {post_id} is not a root post.",
            }

        gid = sync_meta.get_gid(ctx.store, post_id) or gid_codec.encode(ctx.node_id, post_id)
        current = self.get(ctx, post_id)
        rebuilt: dict[str, Any] = self.local_copies(gid, exclude_node=ctx.node_id)
        messages: list[str] = []

        remote_keys = [k for k in current if not str(k).isdigit()]
        connections = list(self.config.connections) if self.config else []
        checked: set[str] = set()

        for connection in connections:
            address = connection.address
            checked.add(address)
            if self.client is None:
                if address in current:
                    rebuilt[address] = current[address]
                continue
            qualified = gid_codec.qualify(gid, self.config.network_address)
            try:
                found = self.client.connected_posts(connection, qualified)
            except RemoteRequestError as e:
                if address in current:
                    rebuilt[address] = current[address]
                    messages.append(
                        f"Connections on {address} could not be checked: {e.message}"
                    )
                continue
            if found:
                rebuilt[address] = {
                    str(node_id): LinkRecord.model_validate(record).model_dump()
                    for node_id, record in found.items()
                }

        for address in remote_keys:
            if address not in checked:
                rebuilt[address] = current[address]
                messages.append(
                    f"Network {address} is not connected; its connections were kept."
                )

        with self.locks.hold(gid):
            latest = self.get(ctx, post_id)
            rebuilt = self._merge_changes(rebuilt, current, latest)
            if rebuilt == latest:
                messages.insert(0, "Connections are up to date.")
                status = "ok"
            else:
                ctx.store.update_meta(post_id, META_CONNECTION_MAP, rebuilt)
                messages.insert(0, "Connections were repaired.")
                status = "connections_repaired"
                logger.info(
                    "Repaired connection map of %s: %s -> %s",
                    gid,
                    to_destination_ids(latest),
                    to_destination_ids(rebuilt),
                )

        return {"status": status, "text": " ".join(messages)}

    @staticmethod
    def _merge_changes(
        rebuilt: dict[str, Any], before: dict[str, Any], after: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply the map changes made between *before* and *after* to *rebuilt*."""
        merged = copy.deepcopy(rebuilt)
        for key in set(before) | set(after):
            if before.get(key) == after.get(key):
                continue
            if key not in after:
                merged.pop(key, None)
            elif str(key).isdigit():
                merged[key] = after[key]
            else:
                old = before.get(key) or {}
                network = merged.setdefault(key, {})
                for node_id in set(old) | set(after[key]):
                    if node_id not in after[key]:
                        network.pop(node_id, None)
                    elif old.get(node_id) != after[key][node_id]:
                        network[node_id] = after[key][node_id]
                if not network:
                    merged.pop(key)
        return merged
