"""Conflict resolver: match incoming units against local content.

Matching runs in two passes:

1. **GID** -- a unit carrying ``synced_post_id`` is matched against the
   local post with the same GID and type.  The root of a distribution
   replaces its copy; any other unit is skipped (its copy is already in
   place).
2. **Name and type** -- a unit without a GID match collides with a local
   post of the same slug and type.  These are never decided here: the
   caller's action wins, else the unit's own ``conflict_action``, else
   ``keep``.

Two units resolving to the same local post would overwrite each other;
every unit after the first is turned into a ``skip`` onto that post.

The result is advisory.  The importer checks again that each existing id
is still present before it writes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from . import gid as gid_codec
from . import meta as sync_meta
from .models import ConflictAction, ConflictDecision, PostRecord, PreparedPost

if TYPE_CHECKING:
    from ..core.context import NodeContext

logger = logging.getLogger(__name__)


def _action(value: ConflictAction | str | None) -> ConflictAction | None:
    if value is None or isinstance(value, ConflictAction):
        return value
    try:
        return ConflictAction(str(value).lower())
    except ValueError:
        logger.warning("Unknown conflict action %r, falling back", value)
        return None


def _by_origin_id(
    actions: dict[int | str, ConflictAction | str] | None,
) -> dict[int, ConflictAction | str]:
    """Key caller choices by int origin id; JSON payloads carry string keys."""
    keyed: dict[int, ConflictAction | str] = {}
    for key, value in (actions or {}).items():
        try:
            keyed[int(key)] = value
        except (TypeError, ValueError):
            logger.warning("Ignoring conflict action for malformed id %r", key)
    return keyed


class ConflictResolver:
    """Decide how incoming units map onto posts of one node.

    Args:
        ctx: Destination node.
    """

    def __init__(self, ctx: NodeContext) -> None:
        self.ctx = ctx
        self.store = ctx.store

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_gid(self, post: PreparedPost) -> PostRecord | None:
        """Local post carrying the unit's GID, root included."""
        gid = post.gid
        if not gid:
            return None
        local_gid = gid_codec.localize(gid, self.ctx.network_url)
        node_id, content_id, address = gid_codec.decode(local_gid)
        if node_id is None:
            logger.debug("Unit %d carries malformed GID %r", post.ID, gid)
            return None

        found = sync_meta.get_local_post_by_gid(
            self.store, local_gid, post_type=post.post_type
        )
        if found is not None:
            return found

        if address is None and node_id == self.ctx.node_id:
            # The GID names a post of this node that lost its meta
            root = self.store.get(content_id)
            if root is not None and root.post_type == post.post_type:
                return root
        return None

    def find_conflicts(self, posts: dict[int, PreparedPost]) -> dict[int, PostRecord]:
        """Local posts sharing slug and type with an incoming unit.

        Pairs where both sides carry the same GID are not conflicts.
        """
        conflicts: dict[int, PostRecord] = {}
        for post_id, post in posts.items():
            existing = self.store.find_by(post.post_name, post.post_type)
            if existing is None:
                continue
            existing_gid = sync_meta.get_gid(self.store, existing.ID)
            if post.gid and existing_gid and gid_codec.gids_equal(
                gid_codec.localize(post.gid, self.ctx.network_url), existing_gid
            ):
                continue
            conflicts[post_id] = existing
        return conflicts

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def resolve(
        self,
        posts: dict[int, PreparedPost],
        conflict_actions: dict[int | str, ConflictAction | str] | None = None,
    ) -> dict[int, ConflictDecision]:
        """Return ``incoming id -> ConflictDecision`` for every matched unit.

        Args:
            posts: Incoming units keyed by origin id.
            conflict_actions: Caller choices, keyed by origin id (int or
                its string form).
        """
        conflict_actions = _by_origin_id(conflict_actions)
        decisions: dict[int, ConflictDecision] = {}
        unmatched: dict[int, PreparedPost] = {}

        for post_id, post in posts.items():
            existing = self.find_by_gid(post)
            if existing is None:
                unmatched[post_id] = post
                continue
            proposed = (
                ConflictAction.REPLACE
                if post.is_contentsync_root_post
                else ConflictAction.SKIP
            )
            action = _action(conflict_actions.get(post_id)) or proposed
            decisions[post_id] = ConflictDecision(
                existing_post_id=existing.ID, conflict_action=action
            )
            logger.debug(
                "  - unit %d matches synced post %d by GID (%s)",
                post_id,
                existing.ID,
                action.value,
            )

        for post_id, existing in self.find_conflicts(unmatched).items():
            post = unmatched[post_id]
            action = (
                _action(conflict_actions.get(post_id))
                or _action(post.conflict_action)
                or ConflictAction.KEEP
            )
            decisions[post_id] = ConflictDecision(
                existing_post_id=existing.ID, conflict_action=action
            )
            logger.debug(
                "  - unit %d conflicts with post %d '%s' (%s)",
                post_id,
                existing.ID,
                existing.post_name,
                action.value,
            )

        return self._dedupe(posts, decisions)

    @staticmethod
    def _dedupe(
        posts: dict[int, PreparedPost], decisions: dict[int, ConflictDecision]
    ) -> dict[int, ConflictDecision]:
        claimed: dict[int, int] = {}
        for post_id in posts:
            decision = decisions.get(post_id)
            if decision is None or decision.conflict_action is ConflictAction.KEEP:
                continue
            existing_id = decision.existing_post_id
            if existing_id not in claimed:
                claimed[existing_id] = post_id
                continue
            logger.debug(
                "  - unit %d resolves to post %d already claimed by unit %d, skipping",
                post_id,
                existing_id,
                claimed[existing_id],
            )
            decisions[post_id] = ConflictDecision(
                existing_post_id=existing_id, conflict_action=ConflictAction.SKIP
            )
        return decisions
