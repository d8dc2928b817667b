"""Persistence for distribution bookkeeping.

Two stores live under the configured ``state_dir``:

* ``DistributionStore`` -- one JSON file per ``DistributionItem``
  (``distribution/item_{id}.json``), kept until every destination of the
  item has reported a terminal status.
* ``RetryQueue`` -- connection map mutations that could not be delivered
  to a remote origin (``connection_retry.json``), replayed later.

Key design choices:

* **Atomic writes** -- ``atomic_write_json()`` writes to a temp file then
  calls ``os.replace()`` so readers never see partial data.
* **Dict-based queue entries** -- queue entries are plain dicts so callers
  can add fields without a schema migration.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any

from .models import DistributionItem, utc_now

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, data: Any) -> None:
    """Write *data* as pretty JSON to *path* without exposing partial files.

    Creates the parent directory when needed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class DistributionStore:
    """Load, save, and list distribution items.

    Args:
        state_dir: Directory holding the sync state files.
    """

    def __init__(self, state_dir: Path) -> None:
        self._dir = Path(state_dir) / "distribution"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, item: DistributionItem) -> None:
        item.time = utc_now()
        atomic_write_json(self._path(item.id), item.model_dump(mode="json"))

    def get(self, item_id: str) -> DistributionItem | None:
        path = self._path(item_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as fh:
            return DistributionItem.model_validate(json.load(fh))

    def delete(self, item_id: str) -> bool:
        try:
            self._path(item_id).unlink()
        except FileNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all(self) -> list[DistributionItem]:
        if not self._dir.exists():
            return []
        items = []
        for path in sorted(self._dir.glob("item_*.json")):
            with open(path, encoding="utf-8") as fh:
                items.append(DistributionItem.model_validate(json.load(fh)))
        return items

    def pending(self) -> list[DistributionItem]:
        """Items where at least one destination has not finished."""
        return [item for item in self.all() if not item.finished]

    def find_by_origin(self, origin: str, origin_id: str) -> DistributionItem | None:
        for item in self.all():
            if item.origin == origin and item.origin_id == origin_id:
                return item
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _path(self, item_id: str) -> Path:
        safe = "".join(c for c in str(item_id) if c.isalnum() or c in "-_")
        return self._dir / f"item_{safe}.json"


class RetryQueue:
    """Persistent queue of remote connection map mutations.

    Usage::

        queue = RetryQueue(state_dir)
        queue.enqueue("add", gid="4-12-remote.example", node_id=2, post_id=50)

        for entry in queue.pending():
            if deliver(entry):
                queue.mark_done(entry["id"])
            else:
                queue.mark_failed(entry["id"], "timeout")

    Args:
        state_dir: Directory holding the sync state files.
        max_attempts: Entries that failed this many times are no longer
            returned by ``pending()``.
    """

    def __init__(self, state_dir: Path, max_attempts: int = 5) -> None:
        self.path = Path(state_dir) / "connection_retry.json"
        self.max_attempts = max_attempts

    def _load(self) -> list[dict]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as fh:
            return json.load(fh)

    def _save(self, entries: list[dict]) -> None:
        atomic_write_json(self.path, entries)

    def enqueue(self, operation: str, **payload: Any) -> dict:
        """Add a mutation.  An identical pending mutation is not duplicated."""
        entries = self._load()
        for entry in entries:
            if entry["operation"] == operation and entry["payload"] == payload:
                return entry

        entry = {
            "id": uuid.uuid4().hex[:16],
            "operation": operation,
            "payload": payload,
            "attempts": 0,
            "last_error": None,
            "created_at": utc_now(),
        }
        entries.append(entry)
        self._save(entries)
        logger.info("Queued %s for retry: %s", operation, payload)
        return entry

    def pending(self) -> list[dict]:
        return [e for e in self._load() if e["attempts"] < self.max_attempts]

    def mark_done(self, entry_id: str) -> None:
        self._save([e for e in self._load() if e["id"] != entry_id])

    def mark_failed(self, entry_id: str, error: str) -> None:
        entries = self._load()
        for entry in entries:
            if entry["id"] == entry_id:
                entry["attempts"] += 1
                entry["last_error"] = error
        self._save(entries)

    def __len__(self) -> int:
        return len(self._load())
