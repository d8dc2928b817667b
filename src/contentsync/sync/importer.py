"""Import engine: write a prepared set into one node.

``ImportEngine.import_posts()`` runs in two passes.

The first pass decides the fate of each unit and writes its native
fields:

* translation analysis may skip the unit or map it onto an already
  imported sibling;
* ``import_action`` ``trash``/``delete`` act on the existing post and
  stop, ``draft`` lowers the status;
* the conflict decision (``ConflictResolver``) picks ``replace`` (write
  onto the existing id), ``skip`` (map onto the existing id, write
  nothing) or ``keep`` (insert a new post);
* attachments get their file copied into the upload dir.

The second pass runs over every written post once all new ids are known:
placeholders are resolved, then hierarchy, meta, terms, translations,
featured image and synchronization status are restored.

Failures are recorded per unit and the batch continues; nothing is rolled
back.  Remote media files are downloaded before the root's lock is taken,
and connection map registrations of linked copies are made after it is
released.
"""

from __future__ import annotations

import contextlib
import logging
import mimetypes
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from ..core.cache import RequestCache
from ..errors import ContentSyncError, PersistenceError
from . import gid as gid_codec
from . import meta as sync_meta
from .models import (
    META_THUMBNAIL,
    SYNC_META_KEYS,
    ConflictAction,
    ConflictDecision,
    ImportAction,
    ImportReport,
    ImportResult,
    PreparedPost,
    SyncStatus,
    utc_now,
)
from .patterns import (
    MetaTransformRegistry,
    maybe_skip_meta,
    restore_dynamic_strings,
    string_patterns,
)
from .preparer import TAXONOMY_SETTINGS_KEY
from .resolver import ConflictResolver
from .translations import TranslationRegistry

if TYPE_CHECKING:
    from ..core.client import RemoteClient
    from ..core.context import Cluster, GidLocks, NodeContext
    from .connection_map import ConnectionMap

logger = logging.getLogger(__name__)

_NATIVE_FIELDS = (
    "post_name",
    "post_type",
    "post_title",
    "post_content",
    "post_excerpt",
    "post_status",
    "post_date",
    "post_date_gmt",
    "post_modified",
    "post_modified_gmt",
    "post_mime_type",
    "menu_order",
)


class ImportEngine:
    """Import prepared sets into one node.

    Args:
        ctx: Destination node.
        cluster: Cluster of the destination; used to tell unknown origin
            nodes apart from real ones.
        translations: Registry for language decisions and linking.
        connection_map: Where linked copies are registered.
        client: Used to download media when no archive is given.
        locks: Per-root locks shared with the connection map.
        meta_transforms: Blacklist applied when writing meta.
    """

    def __init__(
        self,
        ctx: NodeContext,
        cluster: Cluster | None = None,
        translations: TranslationRegistry | None = None,
        connection_map: ConnectionMap | None = None,
        client: RemoteClient | None = None,
        locks: GidLocks | None = None,
        meta_transforms: MetaTransformRegistry | None = None,
    ) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self.cluster = cluster
        self.translations = translations or TranslationRegistry()
        self.connection_map = connection_map
        self.client = client
        if locks is None and connection_map is not None:
            locks = connection_map.locks
        self.locks = locks
        self.meta_transforms = meta_transforms or MetaTransformRegistry()
        self._lookups = RequestCache()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def import_posts(
        self,
        posts: dict[int, PreparedPost],
        decisions: dict[int, ConflictDecision] | None = None,
        conflict_actions: dict[int | str, ConflictAction | str] | None = None,
        media_dir: Path | None = None,
        allow_local_paths: bool = False,
    ) -> ImportReport:
        """Import *posts* (keyed by origin id) and report per unit.

        Args:
            posts: Ordered prepared set.
            decisions: Conflict decisions; computed with
                ``ConflictResolver`` when omitted.
            conflict_actions: Caller choices passed to the resolver.
            media_dir: Directory holding ``media/<name>`` files of an
                archive.
            allow_local_paths: Read attachment files from their recorded
                path (same host distribution only).
        """
        started_at = utc_now()
        self._lookups.invalidate()
        if decisions is None:
            decisions = ConflictResolver(self.ctx).resolve(posts, conflict_actions)

        root_gid = self._root_gid(posts)
        lock = contextlib.nullcontext()
        if self.locks is not None and root_gid:
            lock = self.locks.hold(root_gid)

        logger.info(
            "Importing %d posts into node %d", len(posts), self.ctx.node_id
        )
        state = _ImportState(
            posts=posts,
            media_dir=Path(media_dir) if media_dir else None,
            allow_local_paths=allow_local_paths,
        )
        self._download_media(decisions, state)
        with lock:
            for post_id, post in posts.items():
                self._first_pass(post_id, post, decisions.get(post_id), state)
            self._map_better_translations(state)
            for post_id, new_id in state.written.items():
                self._second_pass(post_id, posts[post_id], new_id, state)

        for gid, new_id in state.registrations:
            if self.connection_map is None:
                logger.debug("No connection map configured, %s not registered", gid)
                continue
            self.connection_map.add(gid, self.ctx.node_id, new_id)

        report = ImportReport(
            node_id=self.ctx.node_id,
            results=[state.results[i] for i in posts if i in state.results],
            id_map=dict(state.id_map),
            started_at=started_at,
            completed_at=utc_now(),
        )
        logger.info(report.summary())
        return report

    def update_sync_status(self, post_id: int, gid: str | None) -> str | None:
        """Write GID and status of an imported post.

        Returns:
            The localized GID when the post became a linked copy that has
            to be registered in its root's connection map, else None.
        """
        if not gid:
            return None
        local_gid = gid_codec.localize(gid, self.ctx.network_url)
        node_id, content_id, address = gid_codec.decode(local_gid)
        if node_id is None:
            logger.warning("Post %d came with malformed GID %r", post_id, gid)
            sync_meta.delete_synced_meta(self.store, post_id)
            return None

        if address is None and node_id == self.ctx.node_id and content_id == post_id:
            sync_meta.set_synced(self.store, post_id, local_gid, SyncStatus.ROOT)
            logger.debug("  - post %d is its own root %s", post_id, local_gid)
            return None

        if address is None and self.cluster is not None and node_id not in self.cluster:
            logger.info(
                "  - origin node %d of %s is unknown here, synced meta removed",
                node_id,
                local_gid,
            )
            sync_meta.delete_synced_meta(self.store, post_id)
            return None

        sync_meta.set_synced(self.store, post_id, local_gid, SyncStatus.LINKED)
        logger.debug("  - post %d is linked to %s", post_id, local_gid)
        return local_gid

    # ------------------------------------------------------------------
    # First pass
    # ------------------------------------------------------------------

    @staticmethod
    def _root_gid(posts: dict[int, PreparedPost]) -> str | None:
        for post in posts.values():
            if post.is_contentsync_root_post and post.gid:
                return post.gid
        for post in posts.values():
            if post.gid:
                return post.gid
        return None

    def _result(
        self,
        state: _ImportState,
        post_id: int,
        post: PreparedPost,
        action: str,
        new_id: int | None = None,
        error: str | None = None,
    ) -> None:
        state.results[post_id] = ImportResult(
            original_id=post_id,
            post_name=post.post_name,
            post_type=post.post_type,
            action=action,
            new_id=new_id,
            success=error is None,
            error=error,
        )

    def _first_pass(
        self,
        post_id: int,
        post: PreparedPost,
        decision: ConflictDecision | None,
        state: _ImportState,
    ) -> None:
        logger.info("Import post %d '%s' (%s)", post_id, post.post_name, post.post_type)
        try:
            self._import_unit(post_id, post, decision, state)
        except (ContentSyncError, OSError) as e:
            logger.error("  - post %d could not be imported: %s", post_id, e)
            self._result(state, post_id, post, "error", error=str(e))

    def _import_unit(
        self,
        post_id: int,
        post: PreparedPost,
        decision: ConflictDecision | None,
        state: _ImportState,
    ) -> None:
        analysis = self.translations.analyze_import(self.ctx, post.language, state.id_map)
        if not analysis.should_import:
            if analysis.reuse_post_id:
                state.id_map[post_id] = analysis.reuse_post_id
            else:
                state.better_translation.append(post_id)
            logger.info("  - not imported (%s)", analysis.reason)
            self._result(state, post_id, post, "skip", new_id=analysis.reuse_post_id)
            return

        fields = {name: getattr(post, name) for name in _NATIVE_FIELDS}
        fields["post_parent"] = 0

        existing_id = None
        conflict_action = ConflictAction(post.conflict_action or ConflictAction.KEEP)
        if decision is not None:
            conflict_action = decision.conflict_action
            if self.store.get(decision.existing_post_id) is not None:
                existing_id = decision.existing_post_id
            else:
                logger.info(
                    "  - post %d of the conflict decision is gone, inserting",
                    decision.existing_post_id,
                )
                conflict_action = ConflictAction.KEEP

        if post.import_action is ImportAction.DRAFT:
            fields["post_status"] = "draft"
        elif post.import_action in (ImportAction.TRASH, ImportAction.DELETE):
            permanent = post.import_action is ImportAction.DELETE
            if existing_id is None:
                logger.info("  - nothing to %s", post.import_action.value)
            else:
                self.store.delete(existing_id, permanent=permanent)
                logger.info("  - existing post %d %s", existing_id, post.import_action.value)
            self._result(state, post_id, post, post.import_action.value, new_id=existing_id)
            return

        if existing_id is not None and existing_id in state.claimed:
            conflict_action = ConflictAction.SKIP

        if existing_id is not None and conflict_action is ConflictAction.SKIP:
            if post.post_type == "attachment" and not self._has_file(existing_id):
                logger.info("  - file of attachment %d is missing, importing again", existing_id)
                conflict_action = ConflictAction.REPLACE
            else:
                if post.media is not None:
                    self._collect_replace_strings(post, self.store.attached_file(existing_id), state)
                state.id_map[post_id] = existing_id
                state.claimed.add(existing_id)
                logger.info("  - skipped, using existing post %d", existing_id)
                self._result(state, post_id, post, "skip", new_id=existing_id)
                return

        if existing_id is not None and conflict_action is ConflictAction.REPLACE:
            new_id = self.store.update(existing_id, fields)
            action = "replace"
            logger.info("  - replaced existing post %d", existing_id)
        else:
            new_id = self.store.create(fields)
            action = "keep" if existing_id is not None else "insert"
            logger.info("  - inserted as post %d", new_id)

        if post.post_type == "attachment" and post.media is not None:
            self._import_media(post_id, post, new_id, state)

        state.id_map[post_id] = new_id
        state.claimed.add(new_id)
        state.written[post_id] = new_id
        for code in analysis.unsupported:
            sibling = post.language.translations.get(code)
            if sibling and sibling not in state.id_map:
                state.id_map[sibling] = new_id
        self._result(state, post_id, post, action, new_id=new_id)

    def _map_better_translations(self, state: _ImportState) -> None:
        """Map units skipped for a sibling in this node's language onto that sibling."""
        for post_id in state.better_translation:
            sibling = state.posts[post_id].language.translations.get(self.ctx.language)
            if sibling in state.id_map:
                state.id_map[post_id] = state.id_map[sibling]

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def _has_file(self, post_id: int) -> bool:
        relative = self.store.attached_file(post_id)
        return bool(relative) and (Path(self.ctx.upload_dir) / relative.lstrip("/")).is_file()

    @staticmethod
    def _local_media(post: PreparedPost, state: _ImportState) -> Path | None:
        media = post.media
        if state.media_dir is not None:
            candidate = state.media_dir / media.name
            if candidate.is_file():
                return candidate
        if state.allow_local_paths and media.path and Path(media.path).is_file():
            return Path(media.path)
        return None

    def _download_media(
        self, decisions: dict[int, ConflictDecision], state: _ImportState
    ) -> None:
        """Fetch remote attachment files before the root's lock is taken."""
        if self.client is None:
            return
        for post_id, post in state.posts.items():
            if post.post_type != "attachment" or post.media is None or not post.media.url:
                continue
            if post.import_action in (ImportAction.TRASH, ImportAction.DELETE):
                continue
            if self._local_media(post, state) is not None:
                continue
            decision = decisions.get(post_id)
            if (
                decision is not None
                and decision.conflict_action is ConflictAction.SKIP
                and self._has_file(decision.existing_post_id)
            ):
                continue
            try:
                state.downloads[post_id] = self.client.download(post.media.url)
            except ContentSyncError as e:
                logger.warning("  - download of '%s' failed: %s", post.media.url, e)
                state.download_errors[post_id] = str(e)

    def _media_bytes(self, post_id: int, post: PreparedPost, state: _ImportState) -> bytes:
        media = post.media
        local = self._local_media(post, state)
        if local is not None:
            return local.read_bytes()
        if post_id in state.downloads:
            return state.downloads.pop(post_id)
        if post_id in state.download_errors:
            raise PersistenceError(
                f"File '{media.name}' of post {post.ID} could not be downloaded: "
                f"{state.download_errors[post_id]}"
            )
        raise PersistenceError(f"No source for file '{media.name}' of post {post.ID}")

    def _import_media(
        self, post_id: int, post: PreparedPost, new_id: int, state: _ImportState
    ) -> None:
        media = post.media
        date_value = post.post_date_gmt or post.post_date
        try:
            stamp = datetime.fromisoformat(date_value.replace("Z", "+00:00"))
        except ValueError:
            stamp = datetime.now()
        relative = f"{stamp:%Y}/{stamp:%m}/{PurePosixPath(media.name).name}"
        target = Path(self.ctx.upload_dir) / relative

        data = self._media_bytes(post_id, post, state)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as fh:
            fh.write(data)
        self.store.set_attached_file(new_id, relative)
        logger.info("  - file written to '%s'", target)

        if not post.post_mime_type:
            mime_type, _ = mimetypes.guess_type(media.name)
            if mime_type:
                self.store.update(new_id, {"post_mime_type": mime_type})

        self._collect_replace_strings(post, relative, state)

    @staticmethod
    def _collect_replace_strings(
        post: PreparedPost, new_relative: str | None, state: _ImportState
    ) -> None:
        if not new_relative or post.media is None or not post.media.relative_path:
            return
        old_base = str(PurePosixPath(post.media.relative_path).with_suffix(""))
        new_base = str(PurePosixPath("/" + new_relative.lstrip("/")).with_suffix(""))
        if old_base == new_base:
            return
        state.replace_strings[old_base] = new_base
        if "-scaled" in old_base:
            state.replace_strings[old_base.replace("-scaled", "")] = new_base
        logger.debug("  - file path '%s' becomes '%s'", old_base, new_base)

    # ------------------------------------------------------------------
    # Second pass
    # ------------------------------------------------------------------

    def _second_pass(
        self, post_id: int, post: PreparedPost, new_id: int, state: _ImportState
    ) -> None:
        logger.debug("Restore references of post %d (was %d)", new_id, post_id)
        try:
            patterns = string_patterns(self.ctx)
            content = self.replace_nested_posts(post.post_content, post, state.id_map)
            content = self.replace_nested_terms(content, post)
            content = self._replace_strings(content, patterns, state)
            excerpt = self._replace_strings(post.post_excerpt, patterns, state)
            self.store.update(new_id, {"post_content": content, "post_excerpt": excerpt})

            self._set_hierarchy(new_id, post, state.id_map)
            self._set_meta(new_id, post)
            self._set_terms(new_id, post)
            self.translations.link_imported(self.ctx, new_id, post.language, state.id_map)
            self._set_thumbnail(new_id, post, state.id_map)

            gid = self.update_sync_status(new_id, post.gid)
            if gid is not None:
                state.registrations.append((gid, new_id))
        except (ContentSyncError, OSError) as e:
            logger.error("  - references of post %d could not be restored: %s", new_id, e)
            previous = state.results[post_id]
            state.results[post_id] = previous.model_copy(
                update={"success": False, "error": str(e)}
            )

    @staticmethod
    def _replace_strings(subject: str, patterns: dict[str, str], state: _ImportState) -> str:
        subject = restore_dynamic_strings(subject, patterns)
        for old, new in state.replace_strings.items():
            subject = subject.replace(old, new)
        return subject

    def _find_published(self, name: str, post_type: str) -> int | None:
        key = ("post", name, post_type)
        if key not in self._lookups:
            found = self.store.find_by(name, post_type, status="publish")
            if found is None and post_type == "attachment":
                found = self.store.find_by(name, post_type)
            self._lookups.set(key, found.ID if found else None)
        return self._lookups.get(key)

    def replace_nested_posts(
        self, content: str, post: PreparedPost, id_map: dict[int, int]
    ) -> str:
        """Resolve ``{{id}}`` and ``{{id-front-url}}`` placeholders of *post*."""
        if not content:
            return content
        for old_id, ref in post.nested.items():
            old_id = int(old_id)
            placeholder = "{{%d}}" % old_id
            front_placeholder = "{{%d-front-url}}" % old_id

            if old_id in id_map:
                new_value: int | str = id_map[old_id]
            else:
                existing = self._find_published(ref.post_name, ref.post_type)
                if existing is not None:
                    new_value = existing
                elif ref.post_type == "attachment":
                    new_value = ref.front_url
                else:
                    new_value = ref.post_name
            content = content.replace(placeholder, str(new_value))

            if isinstance(new_value, int):
                if ref.post_type == "attachment":
                    front_url = self.store.attachment_url(new_value)
                else:
                    front_url = self.store.permalink(new_value)
            else:
                front_url = ref.front_url
            content = content.replace(front_placeholder, front_url)
            logger.debug("  - nested post %d resolved to %s", old_id, new_value)
        return content

    def replace_nested_terms(self, content: str, post: PreparedPost) -> str:
        """Resolve ``{{t_id}}`` placeholders, creating missing terms."""
        if not content:
            return content
        for old_id, term in post.nested_terms.items():
            old_id = int(old_id)
            new_id = self._ensure_term(term.model_dump())
            value = str(new_id if new_id is not None else old_id)
            marker = "{{t_%d}}" % old_id
            if marker in content:
                content = content.replace(marker, value)
            else:
                content = content.replace("{{%d}}" % old_id, value)
            logger.debug("  - nested term %d resolved to %s", old_id, value)
        return content

    # ------------------------------------------------------------------
    # Hierarchy, meta, terms, thumbnail
    # ------------------------------------------------------------------

    def _set_hierarchy(self, new_id: int, post: PreparedPost, id_map: dict[int, int]) -> None:
        hierarchy = post.post_hierarchy
        if hierarchy is None:
            if post.post_parent and post.post_parent in id_map:
                self.store.update(new_id, {"post_parent": id_map[post.post_parent]})
            return

        parent = hierarchy.parent
        if parent is not None:
            parent_id = id_map.get(parent.id) or self._find_published(parent.name, parent.type)
            if parent_id:
                self.store.update(new_id, {"post_parent": parent_id})
                logger.debug("  - parent set to %d", parent_id)

        for child in hierarchy.children:
            if child.id in id_map:
                self.store.update(id_map[child.id], {"post_parent": new_id})
                continue
            found = self.store.find_by(child.name, child.type, status="publish")
            if found is not None and not found.post_parent:
                self.store.update(found.ID, {"post_parent": new_id})
                logger.debug("  - existing child %d reparented", found.ID)

    def _set_meta(self, new_id: int, post: PreparedPost) -> None:
        for key, values in post.meta.items():
            if key in SYNC_META_KEYS or self.meta_transforms.is_blacklisted(key):
                continue
            written = 0
            for value in values:
                if maybe_skip_meta(key, value):
                    continue
                if written == 0:
                    self.store.update_meta(new_id, key, value)
                else:
                    self.store.add_meta(new_id, key, value)
                written += 1

    def _set_thumbnail(self, new_id: int, post: PreparedPost, id_map: dict[int, int]) -> None:
        thumbnail_id = post.thumbnail_id
        if not thumbnail_id:
            return
        if thumbnail_id in id_map:
            self.store.update_meta(new_id, META_THUMBNAIL, id_map[thumbnail_id])
        else:
            logger.info("  - featured image %d was not imported, removed", thumbnail_id)
            self.store.delete_meta(new_id, META_THUMBNAIL)

    def _set_terms(self, new_id: int, post: PreparedPost) -> None:
        settings = (post.meta.get(TAXONOMY_SETTINGS_KEY) or [None])[0]
        if isinstance(settings, dict) and settings.get("is_taxonomy"):
            for taxonomy, terms in post.terms.items():
                if not self.store.taxonomy_exists(taxonomy):
                    self.store.register_taxonomy(taxonomy)
                    logger.debug("  - taxonomy '%s' registered", taxonomy)
                self._insert_taxonomy_terms(taxonomy, terms)
            return

        for taxonomy, terms in post.terms.items():
            if not self.store.taxonomy_exists(taxonomy):
                logger.info("  - taxonomy '%s' does not exist, terms skipped", taxonomy)
                continue
            term_ids = self._insert_taxonomy_terms(taxonomy, terms)
            self.store.set_object_terms(new_id, taxonomy, term_ids)

    def _theme(self, value: str) -> str:
        return value.replace("{{theme}}", self.ctx.theme) if value else value

    def _insert_taxonomy_terms(self, taxonomy: str, terms: list[dict[str, Any]]) -> list[int]:
        mapping: dict[int, int] = {}
        for term in terms:
            slug = self._theme(str(term.get("slug") or ""))
            name = self._theme(str(term.get("name") or slug))
            if not slug:
                continue
            existing = self.store.find_term(slug, taxonomy)
            if existing is not None:
                term_id = existing.term_id
            else:
                term_id = self.store.insert_term(
                    taxonomy, name, slug, str(term.get("description") or "")
                )
                logger.debug("  - term '%s' inserted into '%s'", slug, taxonomy)
            if term.get("term_id"):
                mapping[int(term["term_id"])] = term_id

        for term in terms:
            old_id = int(term.get("term_id") or 0)
            parent = term.get("parent")
            if old_id not in mapping or not parent:
                continue
            if isinstance(parent, dict):
                parent_id = self._ensure_term(parent)
            else:
                parent_id = mapping.get(int(parent))
            if parent_id:
                self.store.set_term_parent(mapping[old_id], parent_id)

        return list(dict.fromkeys(mapping.values()))

    def _ensure_term(self, term: dict[str, Any]) -> int | None:
        """Find or insert *term* and, recursively, its parent chain."""
        taxonomy = str(term.get("taxonomy") or "")
        slug = self._theme(str(term.get("slug") or ""))
        if not taxonomy or not slug or not self.store.taxonomy_exists(taxonomy):
            return None
        existing = self.store.find_term(slug, taxonomy)
        if existing is not None:
            term_id = existing.term_id
        else:
            term_id = self.store.insert_term(
                taxonomy,
                self._theme(str(term.get("name") or slug)),
                slug,
                str(term.get("description") or ""),
            )
        parent = term.get("parent")
        if isinstance(parent, dict):
            parent_id = self._ensure_term(parent)
            if parent_id:
                self.store.set_term_parent(term_id, parent_id)
        return term_id


class _ImportState:
    """Bookkeeping of one ``import_posts()`` call."""

    def __init__(
        self,
        posts: dict[int, PreparedPost],
        media_dir: Path | None = None,
        allow_local_paths: bool = False,
    ) -> None:
        self.posts = posts
        self.media_dir = media_dir
        self.allow_local_paths = allow_local_paths
        self.id_map: dict[int, int] = {}
        self.written: dict[int, int] = {}
        self.claimed: set[int] = set()
        self.results: dict[int, ImportResult] = {}
        self.replace_strings: dict[str, str] = {}
        self.registrations: list[tuple[str, int]] = []
        self.better_translation: list[int] = []
        self.downloads: dict[int, bytes] = {}
        self.download_errors: dict[int, str] = {}
