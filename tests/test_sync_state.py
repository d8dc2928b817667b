"""Tests for distribution bookkeeping persistence.

Covers:
- atomic_write_json creates parents and leaves no temp files
- DistributionStore save/get/delete/all/pending/find_by_origin
- RetryQueue enqueue dedupe, attempts and max_attempts
"""

from __future__ import annotations

import json

from contentsync.sync.models import (
    DestinationState,
    DistributionItem,
    DistributionStatus,
    PreparedPost,
)
from contentsync.sync.state import DistributionStore, RetryQueue, atomic_write_json

# ---------------------------------------------------------------------------
# atomic_write_json
# ---------------------------------------------------------------------------


class TestAtomicWriteJson:
    """Tests for atomic_write_json()."""

    def test_writes_and_creates_parent(self, tmp_path):
        path = tmp_path / "a" / "b" / "data.json"
        atomic_write_json(path, {"x": 1})
        assert json.loads(path.read_text()) == {"x": 1}

    def test_no_temp_files_left(self, tmp_path):
        atomic_write_json(tmp_path / "data.json", [1, 2])
        atomic_write_json(tmp_path / "data.json", [3])
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]
        assert json.loads((tmp_path / "data.json").read_text()) == [3]


# ---------------------------------------------------------------------------
# DistributionStore
# ---------------------------------------------------------------------------


def _item(item_id, *statuses, **kw):
    return DistributionItem(
        id=item_id,
        root_gid="1-10",
        posts={10: PreparedPost(ID=10, post_name="hello-world")},
        destinations={
            str(i + 2): DestinationState(status=s) for i, s in enumerate(statuses)
        },
        **kw,
    )


class TestDistributionStore:
    """Tests for DistributionStore."""

    def test_round_trip(self, tmp_path):
        store = DistributionStore(tmp_path)
        store.save(_item("abc", DistributionStatus.STARTED))

        loaded = store.get("abc")
        assert loaded.root_gid == "1-10"
        assert loaded.posts[10].post_name == "hello-world"
        assert loaded.destinations["2"].status is DistributionStatus.STARTED
        assert (tmp_path / "distribution" / "item_abc.json").exists()

    def test_missing_and_delete(self, tmp_path):
        store = DistributionStore(tmp_path)
        assert store.get("nope") is None
        assert not store.delete("nope")

        store.save(_item("abc"))
        assert store.delete("abc")
        assert store.get("abc") is None

    def test_unsafe_id_sanitized(self, tmp_path):
        store = DistributionStore(tmp_path)
        store.save(_item("../../evil"))
        assert (tmp_path / "distribution" / "item_evil.json").exists()

    def test_pending(self, tmp_path):
        store = DistributionStore(tmp_path)
        store.save(_item("a", DistributionStatus.SUCCESS, DistributionStatus.STARTED))
        store.save(_item("b", DistributionStatus.SUCCESS, DistributionStatus.FAILED))
        assert [i.id for i in store.all()] == ["a", "b"]
        assert [i.id for i in store.pending()] == ["a"]

    def test_empty_dir(self, tmp_path):
        assert DistributionStore(tmp_path / "missing").all() == []

    def test_find_by_origin(self, tmp_path):
        store = DistributionStore(tmp_path)
        store.save(_item("local", origin="net-b.example", origin_id="remote-1"))
        assert store.find_by_origin("net-b.example", "remote-1").id == "local"
        assert store.find_by_origin("net-b.example", "remote-2") is None


# ---------------------------------------------------------------------------
# RetryQueue
# ---------------------------------------------------------------------------


class TestRetryQueue:
    """Tests for RetryQueue."""

    def test_enqueue_dedupes(self, tmp_path):
        queue = RetryQueue(tmp_path)
        first = queue.enqueue("add", gid="3-99-net-b.example", node_id=2, post_id=50)
        second = queue.enqueue("add", gid="3-99-net-b.example", node_id=2, post_id=50)
        queue.enqueue("remove", gid="3-99-net-b.example", node_id=2, post_id=50)

        assert first["id"] == second["id"]
        assert len(queue) == 2
        assert first["attempts"] == 0

    def test_done_and_failed(self, tmp_path):
        queue = RetryQueue(tmp_path, max_attempts=2)
        entry = queue.enqueue("add", gid="g", node_id=2, post_id=50)
        other = queue.enqueue("remove", gid="g", node_id=2, post_id=50)

        queue.mark_failed(entry["id"], "timeout")
        (pending_entry, _) = queue.pending()
        assert pending_entry["attempts"] == 1
        assert pending_entry["last_error"] == "timeout"

        queue.mark_failed(entry["id"], "timeout")
        assert [e["id"] for e in queue.pending()] == [other["id"]]
        assert len(queue) == 2

        queue.mark_done(other["id"])
        assert queue.pending() == []

    def test_persisted(self, tmp_path):
        RetryQueue(tmp_path).enqueue("add", gid="g", node_id=2, post_id=50)
        assert len(RetryQueue(tmp_path)) == 1
        assert (tmp_path / "connection_retry.json").exists()
