"""Distributor: fan a root's prepared set out to its destinations.

Destination keys name where copies go:

* ``"2"`` -- node 2 of this network, reached by switching into it;
* ``"3|remote.example"`` -- node 3 of a peer network, reached through the
  ``RemoteClient``.

``distribute()`` exports the root once, flags the set for distribution
(``prepare_posts``), splits it into chunks and creates one
``DistributionItem`` per destination and chunk.  Local items finish
synchronously.  Remote items stay ``started`` until the peer calls back
through ``distribution/update-item``.

On the receiving side ``accept_remote_item()`` stores the item and
schedules ``process_item()``; the endpoint answers right away.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable

from ..core import async_utils
from ..errors import RemoteRequestError, ValidationError
from . import gid as gid_codec
from . import meta as sync_meta
from .connection_map import to_destination_ids
from .exporter import ExportEngine
from .importer import ImportEngine
from .models import (
    META_CONNECTION_MAP,
    META_GID,
    ConflictAction,
    DestinationState,
    DistributionItem,
    DistributionStatus,
    ExportOptions,
    PreparedPost,
    SyncStatus,
    utc_now,
)
from .translations import TranslationRegistry

if TYPE_CHECKING:
    from ..config import Config
    from ..core.client import RemoteClient
    from ..core.context import Cluster, GidLocks, NodeContext
    from .connection_map import ConnectionMap
    from .state import DistributionStore

logger = logging.getLogger(__name__)

Scheduler = Callable[..., Any]


# ---------------------------------------------------------------------------
# Destinations
# ---------------------------------------------------------------------------


@dataclass
class Destination:
    """A node of this network plus the import options for it."""

    node_id: int
    import_options: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return str(self.node_id)


@dataclass
class RemoteDestination:
    """The nodes of one peer network that receive copies."""

    network_address: str
    destinations: dict[int, Destination] = field(default_factory=dict)

    def keys(self) -> list[str]:
        return [f"{node_id}|{self.network_address}" for node_id in self.destinations]


def parse_destination_ids(
    destination_ids: Iterable[str],
    current_node_id: int | None = None,
    own_network: str = "",
    import_options: dict[str, dict[str, Any]] | None = None,
) -> tuple[dict[int, Destination], dict[str, RemoteDestination]]:
    """Split destination keys into local and remote destinations.

    The current node is never a destination.  Keys naming our own
    network are treated as local.  Malformed keys are logged and dropped.
    """
    import_options = import_options or {}
    own_network = gid_codec.canonicalize_address(own_network)
    local: dict[int, Destination] = {}
    remote: dict[str, RemoteDestination] = {}

    for raw in destination_ids:
        key = str(raw).strip()
        node_part, _, address = key.partition("|")
        try:
            node_id = int(node_part)
        except ValueError:
            logger.warning("Ignoring malformed destination %r", raw)
            continue
        address = gid_codec.canonicalize_address(address)
        options = dict(import_options.get(key) or {})

        if not address or address == own_network:
            if node_id == current_node_id:
                continue
            local[node_id] = Destination(node_id, options)
        else:
            remote.setdefault(address, RemoteDestination(address)).destinations[
                node_id
            ] = Destination(node_id, options)
    return local, remote


def _chunks(posts: dict[int, PreparedPost], size: int) -> list[dict[int, PreparedPost]]:
    """Split *posts* into chunks; the root goes into the last one."""
    ordered = sorted(posts.items(), key=lambda kv: kv[1].is_contentsync_root_post)
    size = max(1, size)
    return [dict(ordered[i : i + size]) for i in range(0, len(ordered), size)]


def _default_scheduler() -> Scheduler:
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="contentsync")
    return executor.submit


# ---------------------------------------------------------------------------
# Distributor
# ---------------------------------------------------------------------------


class Distributor:
    """Create, deliver and track distribution items.

    Args:
        cluster: Local nodes.
        config: Configuration (network address, chunk size, parallelism).
        items: Persistence of distribution items.
        locks: Per-root locks.
        client: Client for remote destinations.
        connection_map: Where imported copies are registered.
        translations: Registry used by exports and imports.
        scheduler: ``scheduler(func, *args)`` runs received items in the
            background; by default one worker thread, so received chunks
            are imported in arrival order.
    """

    def __init__(
        self,
        cluster: Cluster,
        config: Config,
        items: DistributionStore,
        locks: GidLocks,
        client: RemoteClient | None = None,
        connection_map: ConnectionMap | None = None,
        translations: TranslationRegistry | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.cluster = cluster
        self.config = config
        self.items = items
        self.locks = locks
        self.client = client
        self.connection_map = connection_map
        self.translations = translations or TranslationRegistry()
        self._scheduler = scheduler

    @property
    def scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = _default_scheduler()
        return self._scheduler

    def _importer(self, ctx: NodeContext) -> ImportEngine:
        return ImportEngine(
            ctx,
            cluster=self.cluster,
            translations=self.translations,
            connection_map=self.connection_map,
            client=self.client,
            locks=self.locks,
        )

    # ------------------------------------------------------------------
    # Origin side
    # ------------------------------------------------------------------

    def prepare_posts(
        self, ctx: NodeContext, posts: dict[int, PreparedPost], root_id: int
    ) -> dict[int, PreparedPost]:
        """Give every unit a GID, ask for ``replace`` and flag the root.

        Units without a GID become roots of their own on *ctx*.
        """
        for post_id, post in posts.items():
            if not post.gid:
                gid = sync_meta.get_gid(ctx.store, post_id)
                if not gid:
                    gid = gid_codec.encode(ctx.node_id, post_id)
                    sync_meta.set_synced(
                        ctx.store,
                        post_id,
                        gid,
                        SyncStatus.ROOT,
                        options=post.export_arguments,
                        canonical_url=ctx.store.permalink(post_id),
                    )
                    logger.debug("  - minted %s for nested post %d", gid, post_id)
                post.set_gid(gid)
            post.conflict_action = ConflictAction.REPLACE
            post.is_contentsync_root_post = post_id == root_id
        return posts

    def build_items(
        self,
        ctx: NodeContext,
        root_id: int,
        destination_ids: Iterable[str] | None = None,
        options: ExportOptions | None = None,
        import_options: dict[str, dict[str, Any]] | None = None,
    ) -> list[DistributionItem]:
        """Export *root_id* and create the items for every destination."""
        if not sync_meta.is_root(ctx.store, root_id):
            raise ValidationError(f"Post {root_id} on node {ctx.node_id} is not a root post")

        gid = sync_meta.get_gid(ctx.store, root_id)
        if destination_ids is None:
            destination_ids = to_destination_ids(
                ctx.store.get_meta_value(root_id, META_CONNECTION_MAP) or {}
            )
        local, remote = parse_destination_ids(
            destination_ids, ctx.node_id, self.config.network_address, import_options
        )
        if not local and not remote:
            logger.info("Root %s has no destinations", gid)
            return []

        options = options or sync_meta.get_export_options(ctx.store, root_id)
        posts = ExportEngine(ctx, self.translations).export(root_id, options)
        posts = self.prepare_posts(ctx, posts, root_id)
        chunks = _chunks(posts, self.config.chunk_size)

        items = []
        targets: list[dict[str, DestinationState]] = [
            {dest.key: DestinationState(options=dest.import_options)}
            for dest in local.values()
        ]
        for network in remote.values():
            targets.append(
                {
                    f"{dest.node_id}|{network.network_address}": DestinationState(
                        options=dest.import_options
                    )
                    for dest in network.destinations.values()
                }
            )
        for destinations in targets:
            for chunk in chunks:
                item = DistributionItem(
                    id=uuid.uuid4().hex,
                    root_gid=gid,
                    posts=chunk,
                    destinations={k: v.model_copy() for k, v in destinations.items()},
                )
                self.items.save(item)
                items.append(item)
        logger.info(
            "Created %d distribution items for %s (%d posts)", len(items), gid, len(posts)
        )
        return items

    def distribute(
        self,
        ctx: NodeContext,
        root_id: int,
        destination_ids: Iterable[str] | None = None,
        options: ExportOptions | None = None,
        import_options: dict[str, dict[str, Any]] | None = None,
    ) -> bool:
        """Distribute root *root_id* of *ctx*.

        Args:
            ctx: Origin node.
            root_id: Id of the root on *ctx*.
            destination_ids: Keys like ``"2"`` or ``"3|remote.example"``;
                the root's connection map when omitted.
            options: Export options; the root's stored options when omitted.
            import_options: Per destination key, e.g.
                ``{"2": {"conflict_actions": {"12": "skip"}}}``.

        Returns:
            True if no destination failed.
        """
        items = self.build_items(ctx, root_id, destination_ids, options, import_options)
        results = [self.distribute_item(item) for item in items]
        return all(item.status is not DistributionStatus.FAILED for item in results)

    async def distribute_async(
        self,
        ctx: NodeContext,
        root_id: int,
        destination_ids: Iterable[str] | None = None,
        options: ExportOptions | None = None,
        import_options: dict[str, dict[str, Any]] | None = None,
    ) -> bool:
        """``distribute()`` with destinations delivered in parallel threads.

        The chunks of one destination stay in order in a single worker, so
        the root chunk is imported after the chunks it references.
        """
        items = self.build_items(ctx, root_id, destination_ids, options, import_options)
        by_destination: dict[tuple[str, ...], list[DistributionItem]] = {}
        for item in items:
            by_destination.setdefault(tuple(item.destinations), []).append(item)

        async_utils.init_semaphore(self.config.max_parallel_requests)
        results = await async_utils.gather_limited(
            [
                async_utils.run_sync_limited(self._distribute_in_order, chunk_items)
                for chunk_items in by_destination.values()
            ]
        )
        return all(
            item.status is not DistributionStatus.FAILED
            for delivered in results
            for item in delivered
        )

    def _distribute_in_order(self, items: list[DistributionItem]) -> list[DistributionItem]:
        return [self.distribute_item(item) for item in items]

    def distribute_item(self, item: DistributionItem) -> DistributionItem:
        """Deliver *item* to each of its destinations.  Never raises."""
        local_keys = [k for k in item.destinations if "|" not in k]
        remote_keys: dict[str, list[str]] = {}
        for key in item.destinations:
            if "|" in key:
                remote_keys.setdefault(key.split("|", 1)[1], []).append(key)

        for key in local_keys:
            self._deliver_local(item, key)
        for address, keys in remote_keys.items():
            self._deliver_remote(item, address, keys)

        self._persist(item)
        logger.info("Distribution item %s is %s", item.id, item.status.value)
        return item

    def _set_state(
        self,
        item: DistributionItem,
        key: str,
        status: DistributionStatus,
        error: str | None = None,
    ) -> None:
        state = item.destinations.get(key) or DestinationState()
        item.destinations[key] = state.model_copy(
            update={"status": status, "error": error, "time": utc_now()}
        )
        if error and not item.error:
            item.error = error

    def _deliver_local(self, item: DistributionItem, key: str) -> None:
        state = item.destinations[key]
        node_id = int(key)
        self._set_state(item, key, DistributionStatus.STARTED)
        try:
            with self.cluster.switch(node_id) as ctx:
                report = self._importer(ctx).import_posts(
                    {k: p.model_copy(deep=True) for k, p in item.posts.items()},
                    conflict_actions=state.options.get("conflict_actions"),
                    allow_local_paths=True,
                )
        except Exception as e:
            logger.exception("Local distribution to node %d failed", node_id)
            self._set_state(item, key, DistributionStatus.FAILED, str(e))
            return
        if report.ok:
            self._set_state(item, key, DistributionStatus.SUCCESS)
        else:
            self._set_state(item, key, DistributionStatus.FAILED, report.first_error)

    def _deliver_remote(self, item: DistributionItem, address: str, keys: list[str]) -> None:
        connection = self.config.connection_for(address)
        if connection is None or self.client is None:
            for key in keys:
                self._set_state(
                    item, key, DistributionStatus.FAILED, f"Network {address} is not connected"
                )
            return

        own = self.config.network_address
        posts = {}
        for post_id, post in item.posts.items():
            data = post.model_dump(mode="json")
            if post.gid:
                data["meta"][META_GID] = [gid_codec.qualify(post.gid, own)]
            posts[str(post_id)] = data

        payload = {
            "id": item.id,
            "origin": own,
            "root_gid": gid_codec.qualify(item.root_gid, own) if item.root_gid else None,
            "posts": posts,
            "destinations": {
                key.split("|", 1)[0]: item.destinations[key].options for key in keys
            },
        }
        try:
            self.client.distribute_item(connection, payload)
        except RemoteRequestError as e:
            logger.warning("Distribution to %s failed: %s", address, e)
            for key in keys:
                self._set_state(item, key, DistributionStatus.FAILED, e.message)
            return
        for key in keys:
            self._set_state(item, key, DistributionStatus.STARTED)

    def _persist(self, item: DistributionItem) -> None:
        if item.finished:
            self.items.delete(item.id)
        else:
            self.items.save(item)

    def update_item(
        self,
        item_id: str,
        status: DistributionStatus | str,
        error: str | None = None,
        destination: str | None = None,
    ) -> DistributionItem | None:
        """Record a status change and report it to the item's origin.

        Args:
            item_id: Id of the item in this node's store.
            status: New status.
            error: Error message for failures.
            destination: Destination key of the item; every unfinished
                destination when omitted.

        Returns:
            The updated item, or None when the item or the destination is
            unknown.
        """
        item = self.items.get(item_id)
        if item is None:
            logger.info("Distribution item %s not found", item_id)
            return None

        if destination and destination not in item.destinations:
            logger.warning(
                "Distribution item %s has no destination %r", item_id, destination
            )
            return None

        status = DistributionStatus(status)
        keys = [destination] if destination else [
            k for k, s in item.destinations.items() if not s.status.terminal
        ]
        for key in keys:
            self._set_state(item, key, status, error)
        self._persist(item)

        if item.origin and item.origin_id:
            self._notify_origin(item, keys, status, error)
        return item

    def _notify_origin(
        self,
        item: DistributionItem,
        keys: list[str],
        status: DistributionStatus,
        error: str | None,
    ) -> None:
        connection = self.config.connection_for(item.origin)
        if connection is None or self.client is None:
            logger.warning("Cannot report item %s: %s is not connected", item.id, item.origin)
            return
        own = self.config.network_address
        for key in keys:
            try:
                self.client.update_item(
                    connection,
                    {
                        "id": item.origin_id,
                        "status": status.value,
                        "error": error,
                        "destination": f"{key}|{own}",
                    },
                )
            except RemoteRequestError as e:
                logger.warning("Could not report item %s to %s: %s", item.id, item.origin, e)

    # ------------------------------------------------------------------
    # Receiving side
    # ------------------------------------------------------------------

    def accept_remote_item(self, payload: dict[str, Any]) -> DistributionItem:
        """Store an item sent by a peer and schedule its processing.

        Raises:
            ValidationError: If ``id``, ``origin``, ``posts`` or
                ``destinations`` is missing.
        """
        for name in ("id", "origin", "posts", "destinations"):
            if not payload.get(name):
                raise ValidationError(f"Distribution item is missing '{name}'")

        origin = gid_codec.canonicalize_address(payload["origin"])
        origin_id = str(payload["id"])
        existing = self.items.find_by_origin(origin, origin_id)
        if existing is not None:
            logger.info("Item %s from %s was already received", origin_id, origin)
            return existing

        try:
            posts = {
                int(k): PreparedPost.model_validate(v) for k, v in payload["posts"].items()
            }
        except (ValueError, TypeError) as e:
            raise ValidationError(f"Distribution item holds invalid posts: {e}") from e

        destinations = {}
        for node_id, options in payload["destinations"].items():
            state = DestinationState(options=options or {})
            if str(node_id) not in {str(n) for n in self.cluster.node_ids()}:
                state = state.model_copy(
                    update={
                        "status": DistributionStatus.FAILED,
                        "error": f"Node {node_id} does not exist",
                        "time": utc_now(),
                    }
                )
            destinations[str(node_id)] = state

        item = DistributionItem(
            id=uuid.uuid4().hex,
            root_gid=payload.get("root_gid"),
            posts=posts,
            destinations=destinations,
            origin=origin,
            origin_id=origin_id,
        )
        self.items.save(item)
        logger.info(
            "Accepted item %s from %s with %d posts", item.id, origin, len(posts)
        )
        self.scheduler(self.process_item, item.id)
        return item

    def process_item(self, item_id: str) -> DistributionItem | None:
        """Import a received item into each of its nodes and report back."""
        item = self.items.get(item_id)
        if item is None:
            logger.info("Distribution item %s not found", item_id)
            return None

        for key, state in list(item.destinations.items()):
            if state.status.terminal:
                if item.origin and item.origin_id:
                    self._notify_origin(item, [key], state.status, state.error)
                continue
            try:
                with self.cluster.switch(int(key)) as ctx:
                    report = self._importer(ctx).import_posts(
                        {k: p.model_copy(deep=True) for k, p in item.posts.items()},
                        conflict_actions=state.options.get("conflict_actions"),
                    )
            except Exception as e:
                logger.exception("Processing item %s on node %s failed", item_id, key)
                item = self.update_item(item_id, DistributionStatus.FAILED, str(e), key) or item
                continue
            if report.ok:
                item = self.update_item(item_id, DistributionStatus.SUCCESS, None, key) or item
            else:
                item = (
                    self.update_item(
                        item_id, DistributionStatus.FAILED, report.first_error, key
                    )
                    or item
                )
        return item
