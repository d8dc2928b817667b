"""Export engine: collect the prepared set of a root.

``ExportEngine.export()`` walks outward from one or more root ids and
prepares every post they reach:

* the featured image (``_thumbnail_id``), always;
* nested references, when ``append_nested`` is set;
* sibling translations, when ``translations`` is set;
* every post of the root's type, when ``whole_posttype`` is set.

Each id gets its slot in the result *before* it is prepared, so reference
cycles end after one visit.  The module also marks posts as globally
synced roots (``make_root``) and releases them again (``unlink_root``).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from ..errors import NotFoundError
from . import gid as gid_codec
from . import meta as sync_meta
from .archive import write_archive
from .models import ROOT_EXPORT_OPTIONS, ExportOptions, PreparedPost, SyncStatus
from .preparer import ContentPreparer
from .translations import TranslationRegistry

if TYPE_CHECKING:
    from ..core.context import Cluster, NodeContext

logger = logging.getLogger(__name__)

# Marks a reserved slot while its post is being prepared.
_RESERVED = None


class ExportEngine:
    """Build prepared sets on one node.

    Args:
        ctx: Node to export from.
        translations: Registry used for languages and sibling lookups.
        preparer: Preparer to use; one is built from *ctx* when omitted.
    """

    def __init__(
        self,
        ctx: NodeContext,
        translations: TranslationRegistry | None = None,
        preparer: ContentPreparer | None = None,
    ) -> None:
        self.ctx = ctx
        self.translations = translations or TranslationRegistry()
        self.preparer = preparer or ContentPreparer(ctx, self.translations)

    def export(
        self, root: int | Iterable[int], options: ExportOptions | None = None
    ) -> dict[int, PreparedPost]:
        """Return the prepared set reachable from *root*, keyed by origin id.

        Ids that do not resolve are logged and left out; an unknown root
        yields an empty result.
        """
        options = options or ExportOptions()
        root_ids = [int(root)] if isinstance(root, int) else [int(r) for r in root]

        if options.whole_posttype and root_ids:
            first = self.ctx.store.get(root_ids[0])
            if first is not None:
                extra = [p.ID for p in self.ctx.store.posts_of_type(first.post_type)]
                logger.info(
                    "Exporting all %d posts of type '%s'", len(extra), first.post_type
                )
                root_ids.extend(i for i in extra if i not in root_ids)

        posts: dict[int, PreparedPost | None] = {}
        for post_id in root_ids:
            self._export_post(post_id, options, posts)

        exported = {k: v for k, v in posts.items() if v is not None}
        logger.info(
            "Export of %s on node %d finished with %d posts",
            root_ids,
            self.ctx.node_id,
            len(exported),
        )
        return exported

    def _export_post(
        self, post_id: int, options: ExportOptions, posts: dict[int, PreparedPost | None]
    ) -> None:
        if not post_id or post_id in posts:
            return
        posts[post_id] = _RESERVED

        prepared = self.preparer.prepare(post_id, options)
        if prepared is None:
            del posts[post_id]
            return
        posts[post_id] = prepared

        thumbnail_id = prepared.thumbnail_id
        if thumbnail_id:
            logger.debug("  - featured image %d of post %d", thumbnail_id, post_id)
            self._export_post(thumbnail_id, options, posts)

        if options.append_nested:
            for nested_id in prepared.nested:
                self._export_post(int(nested_id), options, posts)

        if options.translations:
            for code, sibling_id in prepared.language.translations.items():
                logger.debug("  - translation '%s' (%d) of post %d", code, sibling_id, post_id)
                self._export_post(int(sibling_id), options, posts)

    def export_to_archive(
        self,
        root: int | Iterable[int],
        options: ExportOptions | None,
        target_dir: Path,
    ) -> Path | None:
        """Export *root* into a zip archive below *target_dir*.

        Returns:
            Path of the archive, or None if nothing was exported or the
            archive could not be written.
        """
        posts = self.export(root, options)
        if not posts:
            return None
        root_ids = [int(root)] if isinstance(root, int) else [int(r) for r in root]
        return write_archive(
            posts, target_dir, site_name=self.ctx.name, root_ids=root_ids
        )


# ---------------------------------------------------------------------------
# Root bookkeeping
# ---------------------------------------------------------------------------


def make_root(
    ctx: NodeContext,
    post_id: int,
    options: ExportOptions | None = None,
    translations: TranslationRegistry | None = None,
) -> str:
    """Mark *post_id* and its nested closure as globally synced roots.

    Posts of the closure that already carry a GID are left alone.  An
    existing connection map is kept.

    Returns:
        The GID of *post_id*.

    Raises:
        NotFoundError: If the post does not exist on *ctx*.
    """
    store = ctx.store
    post = store.get(post_id)
    if post is None:
        raise NotFoundError(f"Post {post_id} not found on node {ctx.node_id}")

    options = options or ROOT_EXPORT_OPTIONS
    existing = sync_meta.get_gid(store, post_id)
    gid = existing if existing and sync_meta.is_root(store, post_id) else None
    gid = gid or gid_codec.encode(ctx.node_id, post_id)

    sync_meta.set_synced(
        store,
        post_id,
        gid,
        SyncStatus.ROOT,
        options=options,
        canonical_url=store.permalink(post_id),
    )
    logger.info("Post %d on node %d is now root %s", post_id, ctx.node_id, gid)

    nested = ExportEngine(ctx, translations).export(
        post_id, options.model_copy(update={"translations": False})
    )
    for nested_id in nested:
        if nested_id == post_id or sync_meta.get_gid(store, nested_id):
            continue
        nested_gid = gid_codec.encode(ctx.node_id, nested_id)
        sync_meta.set_synced(
            store,
            nested_id,
            nested_gid,
            SyncStatus.ROOT,
            options=options,
            canonical_url=store.permalink(nested_id),
        )
        logger.debug("  - nested post %d is now root %s", nested_id, nested_gid)
    return gid


def unlink_root(cluster: Cluster, gid: str) -> bool:
    """Stop syncing a local root: clear synced meta of the root and its local copies.

    Copies on other networks are not touched.

    Returns:
        False when the GID is malformed, remote, or its root is unknown.
    """
    node_id, _content_id, address = gid_codec.decode(gid)
    if node_id is None or address is not None or node_id not in cluster:
        logger.info("Cannot unlink %s: not a local root", gid)
        return False

    with cluster.switch(node_id) as origin:
        root = sync_meta.get_root_post(origin.store, gid)
        if root is None:
            logger.info("Cannot unlink %s: root not found on node %d", gid, node_id)
            return False
        sync_meta.delete_synced_meta(origin.store, root.ID)
        logger.info("Unlinked root %d on node %d", root.ID, node_id)

    for node in cluster:
        with cluster.switch(node.node_id) as ctx:
            copy = sync_meta.get_local_post_by_gid(ctx.store, gid)
            while copy is not None:
                sync_meta.delete_synced_meta(ctx.store, copy.ID)
                logger.info("Unlinked copy %d on node %d", copy.ID, ctx.node_id)
                copy = sync_meta.get_local_post_by_gid(ctx.store, gid)
    return True
