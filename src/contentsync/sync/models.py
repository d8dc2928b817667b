"""Pydantic models for content synchronization.

Defines the data contracts shared by the sync modules:

- ``SyncStatus``, ``ConflictAction``, ``ImportAction``,
  ``DistributionStatus``: enums of the string values stored in meta and
  sent over the wire.
- ``PostRecord``, ``TermRecord``: what a post store hands back.
- ``ExportOptions``: per-export configuration.
- ``PreparedPost``: the transfer-ready snapshot of one content object.
- ``ConflictDecision``, ``ImportResult``, ``ImportReport``: import outcome.
- ``LinkRecord``: one connection map entry.
- ``DestinationState``, ``DistributionItem``: fan-out bookkeeping.

Store records, decisions and results are frozen.  ``PreparedPost`` and
``DistributionItem`` are mutable because the preparer, the distributor and
the importer fill them in step by step.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Meta keys
# ---------------------------------------------------------------------------

META_GID = "synced_post_id"
META_STATUS = "synced_post_status"
META_CONNECTION_MAP = "contentsync_connection_map"
META_EXPORT_OPTIONS = "contentsync_export_options"
META_CANONICAL_URL = "contentsync_canonical_url"
META_THUMBNAIL = "_thumbnail_id"

SYNC_META_KEYS = (
    META_STATUS,
    META_GID,
    META_CONNECTION_MAP,
    META_EXPORT_OPTIONS,
    META_CANONICAL_URL,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SyncStatus(str, Enum):
    """Synchronization status stored on a content object."""

    ROOT = "root"
    LINKED = "linked"


class ConflictAction(str, Enum):
    """How to treat an incoming unit that collides with a local object."""

    KEEP = "keep"
    REPLACE = "replace"
    SKIP = "skip"


class ImportAction(str, Enum):
    """What to do with an incoming unit regardless of conflicts."""

    INSERT = "insert"
    DRAFT = "draft"
    TRASH = "trash"
    DELETE = "delete"


class DistributionStatus(str, Enum):
    INIT = "init"
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (DistributionStatus.SUCCESS, DistributionStatus.FAILED)


# ---------------------------------------------------------------------------
# Store records
# ---------------------------------------------------------------------------


class PostRecord(BaseModel):
    """Native fields of one content object as held by a post store."""

    ID: int = 0
    post_name: str = ""
    post_type: str = "post"
    post_title: str = ""
    post_content: str = ""
    post_excerpt: str = ""
    post_status: str = "publish"
    post_date: str = ""
    post_date_gmt: str = ""
    post_modified: str = ""
    post_modified_gmt: str = ""
    post_parent: int = 0
    post_mime_type: str = ""
    menu_order: int = 0

    model_config = {"frozen": True}


class TermRecord(BaseModel):
    term_id: int
    name: str
    slug: str
    taxonomy: str
    description: str = ""
    parent: int = 0

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Export configuration
# ---------------------------------------------------------------------------


class ExportOptions(BaseModel):
    """Options controlling what an export pulls into the prepared set.

    Attributes:
        append_nested: Follow nested references and record hierarchy.
        whole_posttype: Export every post of the root's post type.
        all_terms: Export all terms of every taxonomy the post uses.
        resolve_menus: Turn navigation links into custom links.
        translations: Follow sibling translations.
    """

    append_nested: bool = True
    whole_posttype: bool = False
    all_terms: bool = False
    resolve_menus: bool = True
    translations: bool = False

    model_config = {"frozen": True, "extra": "ignore"}


# Options stored on a root when a post becomes globally synced.
ROOT_EXPORT_OPTIONS = ExportOptions(
    append_nested=True, resolve_menus=True, translations=True
)


# ---------------------------------------------------------------------------
# Prepared unit
# ---------------------------------------------------------------------------


class NestedRef(BaseModel):
    ID: int
    post_name: str
    post_type: str
    front_url: str = ""


class NestedTerm(BaseModel):
    term_id: int
    slug: str
    taxonomy: str
    name: str = ""
    parent: Any = 0


class MediaInfo(BaseModel):
    name: str
    url: str = ""
    path: str = ""
    relative_path: str = ""


class LanguageInfo(BaseModel):
    """Language of a unit.

    Attributes:
        code: Language code, e.g. ``"de"``.
        tool: Name of the translation tool that supplied the data.
        translations: Sibling post ids on the origin node, keyed by code.
        args: Tool-specific extra data.
    """

    code: str | None = None
    tool: str | None = None
    translations: dict[str, int] = {}
    args: dict[str, Any] = {}


class HierarchyRef(BaseModel):
    id: int
    name: str
    type: str


class HierarchyInfo(BaseModel):
    parent: HierarchyRef | None = None
    children: list[HierarchyRef] = []


class PreparedPost(BaseModel):
    """Self-describing snapshot of one content object for transfer."""

    ID: int
    post_name: str = ""
    post_type: str = "post"
    post_title: str = ""
    post_content: str = ""
    post_excerpt: str = ""
    post_status: str = "publish"
    post_date: str = ""
    post_date_gmt: str = ""
    post_modified: str = ""
    post_modified_gmt: str = ""
    post_parent: int = 0
    post_mime_type: str = ""
    menu_order: int = 0

    meta: dict[str, list[Any]] = {}
    terms: dict[str, list[dict[str, Any]]] = {}
    nested: dict[int, NestedRef] = {}
    nested_terms: dict[int, NestedTerm] = {}
    media: MediaInfo | None = None
    language: LanguageInfo = Field(default_factory=LanguageInfo)
    post_hierarchy: HierarchyInfo | None = None
    export_arguments: ExportOptions = Field(default_factory=ExportOptions)

    import_action: ImportAction = ImportAction.INSERT
    conflict_action: ConflictAction | None = None
    is_contentsync_root_post: bool = False

    model_config = {"extra": "ignore", "validate_assignment": True}

    @property
    def gid(self) -> str | None:
        values = self.meta.get(META_GID) or []
        return str(values[0]) if values and values[0] else None

    def set_gid(self, value: str) -> None:
        meta = dict(self.meta)
        meta[META_GID] = [value]
        self.meta = meta

    @property
    def thumbnail_id(self) -> int:
        values = self.meta.get(META_THUMBNAIL) or []
        try:
            return int(values[0]) if values else 0
        except (TypeError, ValueError):
            return 0


# ---------------------------------------------------------------------------
# Import outcome
# ---------------------------------------------------------------------------


class ConflictDecision(BaseModel):
    existing_post_id: int
    conflict_action: ConflictAction

    model_config = {"frozen": True}


class ImportResult(BaseModel):
    """Result of importing one prepared unit.

    Attributes:
        original_id: Id of the unit on the exporting node.
        post_name: Slug of the unit.
        post_type: Post type of the unit.
        action: What happened: insert, replace, keep, skip, trash, delete.
        new_id: Local id after the import (existing id for skips).
        success: Whether the unit was handled without error.
        error: Error message if the unit failed.
    """

    original_id: int
    post_name: str
    post_type: str
    action: str
    new_id: int | None = None
    success: bool = True
    error: str | None = None

    model_config = {"frozen": True}


class ImportReport(BaseModel):
    """Aggregate outcome of importing one prepared set into one node."""

    node_id: int
    results: list[ImportResult] = []
    id_map: dict[int, int] = {}
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    def _with_action(self, action: str) -> list[ImportResult]:
        return [r for r in self.results if r.action == action and r.success]

    @property
    def inserted(self) -> list[ImportResult]:
        return self._with_action("insert") + self._with_action("keep")

    @property
    def replaced(self) -> list[ImportResult]:
        return self._with_action("replace")

    @property
    def skipped(self) -> list[ImportResult]:
        return self._with_action("skip")

    @property
    def removed(self) -> list[ImportResult]:
        return self._with_action("trash") + self._with_action("delete")

    @property
    def errors(self) -> list[ImportResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def first_error(self) -> str | None:
        errors = self.errors
        return errors[0].error if errors else None

    def summary(self) -> str:
        """Format a human-readable summary of the import.

        Returns:
            Multi-line summary string with counts by action.
        """
        lines = [
            f"Import report for node {self.node_id}",
            f"  Inserted: {len(self.inserted)}",
            f"  Replaced: {len(self.replaced)}",
            f"  Skipped:  {len(self.skipped)}",
            f"  Removed:  {len(self.removed)}",
            f"  Errors:   {len(self.errors)}",
            f"  Total:    {len(self.results)}",
        ]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Connection map
# ---------------------------------------------------------------------------


class LinkRecord(BaseModel):
    """Where one linked copy lives.

    Attributes:
        post_id: Id of the copy on its node.
        edit_url: Admin edit link of the copy.
        site_url: Base url of the node holding the copy.
        display_url: Short, scheme-less form of ``site_url``.
    """

    post_id: int
    edit_url: str = ""
    site_url: str = ""
    display_url: str = ""

    model_config = {"frozen": True, "extra": "ignore"}


# ---------------------------------------------------------------------------
# Distribution
# ---------------------------------------------------------------------------


def aggregate_status(
    statuses: list[DistributionStatus],
) -> DistributionStatus:
    """Collapse per-destination states into one.

    Any ``failed`` wins; otherwise any non-terminal state keeps the whole
    item pending (``started`` if anything started, else ``init``);
    otherwise ``success``.
    """
    if not statuses:
        return DistributionStatus.INIT
    if DistributionStatus.FAILED in statuses:
        return DistributionStatus.FAILED
    if DistributionStatus.STARTED in statuses:
        return DistributionStatus.STARTED
    if DistributionStatus.INIT in statuses:
        # Mixed init/success means work has begun somewhere
        if DistributionStatus.SUCCESS in statuses:
            return DistributionStatus.STARTED
        return DistributionStatus.INIT
    return DistributionStatus.SUCCESS


class DestinationState(BaseModel):
    status: DistributionStatus = DistributionStatus.INIT
    error: str | None = None
    time: str | None = None
    options: dict[str, Any] = {}


class DistributionItem(BaseModel):
    """One fan-out job and the delivery state of each destination.

    Attributes:
        id: Unique item id.
        root_gid: GID of the root the item distributes.
        posts: Prepared set being delivered.
        destinations: Destination key -> delivery state.
        error: First error reported by any destination.
        time: ISO timestamp of the last status change.
        origin: Network address of the node that created the item when
            this copy was received from a peer.
        origin_id: Item id on the origin node.
    """

    id: str
    root_gid: str | None = None
    posts: dict[int, PreparedPost] = {}
    destinations: dict[str, DestinationState] = {}
    error: str | None = None
    time: str = Field(default_factory=utc_now)
    origin: str | None = None
    origin_id: str | None = None

    model_config = {"extra": "ignore"}

    @property
    def status(self) -> DistributionStatus:
        return aggregate_status(
            [state.status for state in self.destinations.values()]
        )

    @property
    def finished(self) -> bool:
        return bool(self.destinations) and all(
            state.status.terminal for state in self.destinations.values()
        )
