"""Bookkeeping meta of synced posts.

A synced post carries up to five meta fields (see ``models.SYNC_META_KEYS``).
These helpers read and write them through a ``PostStore`` so the rest of
the engine never spells out meta keys.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from . import gid as gid_codec
from .models import (
    META_CANONICAL_URL,
    META_EXPORT_OPTIONS,
    META_GID,
    META_STATUS,
    SYNC_META_KEYS,
    ExportOptions,
    PostRecord,
    SyncStatus,
)

if TYPE_CHECKING:
    from .store import PostStore

logger = logging.getLogger(__name__)


def get_gid(store: PostStore, post_id: int) -> str | None:
    value = store.get_meta_value(post_id, META_GID)
    return str(value) if value else None


def get_status(store: PostStore, post_id: int) -> SyncStatus | None:
    value = store.get_meta_value(post_id, META_STATUS)
    try:
        return SyncStatus(value) if value else None
    except ValueError:
        logger.warning("Post %s has unknown sync status %r", post_id, value)
        return None


def is_root(store: PostStore, post_id: int) -> bool:
    return get_status(store, post_id) is SyncStatus.ROOT


def get_export_options(store: PostStore, post_id: int) -> ExportOptions:
    raw = store.get_meta_value(post_id, META_EXPORT_OPTIONS)
    return ExportOptions(**raw) if isinstance(raw, dict) else ExportOptions()


def set_synced(
    store: PostStore,
    post_id: int,
    gid: str,
    status: SyncStatus,
    options: ExportOptions | None = None,
    canonical_url: str | None = None,
) -> None:
    """Write GID and status, plus export options and canonical url when given."""
    store.update_meta(post_id, META_GID, gid)
    store.update_meta(post_id, META_STATUS, status.value)
    if options is not None:
        store.update_meta(post_id, META_EXPORT_OPTIONS, options.model_dump())
    if canonical_url:
        store.update_meta(post_id, META_CANONICAL_URL, canonical_url)


def delete_synced_meta(store: PostStore, post_id: int) -> None:
    for key in SYNC_META_KEYS:
        store.delete_meta(post_id, key)


def get_local_post_by_gid(
    store: PostStore, gid: str, post_type: str | None = None
) -> PostRecord | None:
    """Find the post on *store* that carries *gid*, root or linked copy.

    Returns ``None`` for malformed GIDs and for GIDs nobody carries.
    """
    node_id, content_id, address = gid_codec.decode(gid)
    if node_id is None:
        return None
    canonical = gid_codec.encode(node_id, content_id, address)
    matches = store.find_by_meta(META_GID, canonical, post_type=post_type)
    if len(matches) > 1:
        logger.warning(
            "GID %s is carried by %d posts, using %d",
            canonical,
            len(matches),
            matches[0].ID,
        )
    return matches[0] if matches else None


def get_root_post(store: PostStore, gid: str) -> PostRecord | None:
    """Find the root carrying *gid* on its origin node's *store*."""
    node_id, content_id, address = gid_codec.decode(gid)
    if node_id is None:
        return None
    canonical = gid_codec.encode(node_id, content_id, address)
    post = store.get(content_id)
    if post is not None and is_root(store, post.ID) and get_gid(store, post.ID) == canonical:
        return post
    for candidate in store.find_by_meta(META_GID, canonical):
        if is_root(store, candidate.ID):
            return candidate
    return None
