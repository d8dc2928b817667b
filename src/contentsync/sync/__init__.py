"""Sync engine: identity, preparation, export, import and distribution.

This package is imported by ``config`` and ``core.context`` for the GID
codec, so it only pulls in the leaf modules here.  Import the engines
from their own modules (``contentsync.sync.importer`` and so on).
"""

from . import gid
from .models import (
    ConflictAction,
    DistributionItem,
    DistributionStatus,
    ExportOptions,
    ImportAction,
    ImportReport,
    ImportResult,
    PostRecord,
    PreparedPost,
    SyncStatus,
    TermRecord,
)

__all__ = [
    "ConflictAction",
    "DistributionItem",
    "DistributionStatus",
    "ExportOptions",
    "ImportAction",
    "ImportReport",
    "ImportResult",
    "PostRecord",
    "PreparedPost",
    "SyncStatus",
    "TermRecord",
    "gid",
]
