"""Tests for connection maps.

Covers:
- to_destination_ids() flattening
- add/remove on a local root (local and remote copies)
- Remote roots: delegated to the origin, queued on failure, replayed
- local_copies() and unlink_linked()
- check() reconciliation statuses, keeping connections added while peers answer
"""

from contentsync.sync import meta as sync_meta
from contentsync.sync.connection_map import ConnectionMap, to_destination_ids
from contentsync.sync.exporter import make_root
from contentsync.sync.models import SyncStatus
from contentsync.sync.state import RetryQueue


def test_to_destination_ids():
    connection_map = {
        "2": {"post_id": 50},
        "net-b.example": {"3": {"post_id": 12}, "4": {"post_id": 13}},
    }
    assert to_destination_ids(connection_map) == ["2", "3|net-b.example", "4|net-b.example"]
    assert to_destination_ids({}) == []


def _copy(node, gid="1-10"):
    post_id = node.store.create({"post_type": "post", "post_name": "hello-world"})
    sync_meta.set_synced(node.store, post_id, gid, SyncStatus.LINKED)
    return post_id


# ---------------------------------------------------------------------------
# Local roots
# ---------------------------------------------------------------------------


class TestLocalRoot:
    """Tests for add()/remove() on a root of this network."""

    def test_add_local_copy(self, cluster, node1, locks, config, origin_content):
        make_root(node1, 10)
        assert ConnectionMap(cluster, locks, config).add("1-10", 2, 55)

        entry = ConnectionMap.get(node1, 10)["2"]
        assert entry["post_id"] == 55
        assert entry["site_url"] == "https://net-a.example/de"
        assert entry["display_url"] == "net-a.example/de"
        assert entry["edit_url"].endswith("post=55&action=edit")

    def test_own_network_address_is_local(self, cluster, node1, locks, config, origin_content):
        make_root(node1, 10)
        cm = ConnectionMap(cluster, locks, config)
        assert cm.add("1-10-net-a.example", 2, 55, network_address="https://net-a.example")
        assert list(ConnectionMap.get(node1, 10)) == ["2"]

    def test_add_remote_copy(self, cluster, node1, locks, config, origin_content):
        make_root(node1, 10)
        cm = ConnectionMap(cluster, locks, config)
        cm.add(
            "1-10",
            3,
            12,
            network_address="net-b.example",
            site_url="https://net-b.example/fr",
            edit_url="https://net-b.example/fr/wp-admin/post.php?post=12&action=edit",
        )
        entry = ConnectionMap.get(node1, 10)["net-b.example"]["3"]
        assert entry["post_id"] == 12
        assert entry["display_url"] == "net-b.example/fr"

    def test_remove_matches_post_id(self, cluster, node1, locks, config, origin_content):
        make_root(node1, 10)
        cm = ConnectionMap(cluster, locks, config)
        cm.add("1-10", 2, 55)

        assert cm.remove("1-10", 2, 99)
        assert "2" in ConnectionMap.get(node1, 10)
        cm.remove("1-10", 2, 55)
        assert ConnectionMap.get(node1, 10) == {}

    def test_remove_drops_empty_network(self, cluster, node1, locks, config, origin_content):
        make_root(node1, 10)
        cm = ConnectionMap(cluster, locks, config)
        cm.add("1-10", 3, 12, network_address="net-b.example")
        cm.remove("1-10", 3, 12, network_address="net-b.example")
        assert ConnectionMap.get(node1, 10) == {}

    def test_unknown_root_or_node(self, cluster, locks, config, origin_content):
        cm = ConnectionMap(cluster, locks, config)
        assert not cm.add("1-10", 2, 55)  # not a root yet
        assert not cm.add("9-10", 2, 55)
        assert not cm.add("garbage", 2, 55)


# ---------------------------------------------------------------------------
# Remote roots
# ---------------------------------------------------------------------------


class TestRemoteRoot:
    """Tests for mutations whose root lives on a peer network."""

    def test_delegated_to_origin(self, cluster, locks, config, fake_client):
        cm = ConnectionMap(cluster, locks, config, fake_client)
        assert cm.add("3-99-net-b.example", 2, 50)
        assert cm.remove("3-99-net-b.example", 2, 50)
        assert [c[0] for c in fake_client.calls] == ["add_connection", "remove_connection"]
        assert fake_client.calls[0][1] == "net-b.example"

    def test_failure_queued_and_replayed(self, cluster, locks, config, fake_client, tmp_path):
        queue = RetryQueue(tmp_path / "state")
        cm = ConnectionMap(cluster, locks, config, fake_client, queue)

        fake_client.fail = True
        assert not cm.add("3-99-net-b.example", 2, 50)
        assert not cm.add("3-99-net-b.example", 2, 50)
        assert len(queue) == 1
        assert queue.pending()[0]["payload"] == {
            "gid": "3-99-net-b.example",
            "node_id": 2,
            "post_id": 50,
        }

        assert cm.flush_retry_queue() == 0
        assert queue.pending()[0]["attempts"] == 1

        fake_client.fail = False
        assert cm.flush_retry_queue() == 1
        assert len(queue) == 0

    def test_not_connected_network(self, cluster, locks, config, fake_client, tmp_path):
        queue = RetryQueue(tmp_path / "state")
        cm = ConnectionMap(cluster, locks, config, fake_client, queue)
        assert not cm.add("3-99-net-c.example", 2, 50)
        assert fake_client.calls == []
        assert len(queue) == 1

    def test_flush_without_queue(self, cluster, locks, config):
        assert ConnectionMap(cluster, locks, config).flush_retry_queue() == 0


# ---------------------------------------------------------------------------
# Linked copies
# ---------------------------------------------------------------------------


class TestLinkedCopies:
    """Tests for local_copies() and unlink_linked()."""

    def test_local_copies_skip_roots(self, cluster, node1, node2, locks, origin_content):
        make_root(node1, 10)
        copy_id = _copy(node2)

        copies = ConnectionMap(cluster, locks).local_copies("1-10")
        assert list(copies) == ["2"]
        assert copies["2"]["post_id"] == copy_id

    def test_unlink_linked(self, cluster, node1, node2, locks, config, origin_content):
        make_root(node1, 10)
        copy_id = _copy(node2)
        cm = ConnectionMap(cluster, locks, config)
        cm.add("1-10", 2, copy_id)

        assert cm.unlink_linked(node2, copy_id)
        assert sync_meta.get_gid(node2.store, copy_id) is None
        assert ConnectionMap.get(node1, 10) == {}

    def test_unlink_root_refused(self, cluster, node1, locks, origin_content):
        make_root(node1, 10)
        assert not ConnectionMap(cluster, locks).unlink_linked(node1, 10)
        assert not ConnectionMap(cluster, locks).unlink_linked(node1, 404)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class TestCheck:
    """Tests for check()."""

    def test_not_root(self, cluster, node1, locks, config, origin_content):
        result = ConnectionMap(cluster, locks, config).check(node1, 10)
        assert result["status"] == "not_root_post"

    def test_repairs_then_ok(self, cluster, node1, node2, locks, config, fake_client, origin_content):
        make_root(node1, 10)
        copy_id = _copy(node2)
        cm = ConnectionMap(cluster, locks, config, fake_client)

        result = cm.check(node1, 10)
        assert result == {"status": "connections_repaired", "text": "Connections were repaired."}
        assert ConnectionMap.get(node1, 10)["2"]["post_id"] == copy_id

        result = cm.check(node1, 10)
        assert result == {"status": "ok", "text": "Connections are up to date."}

    def test_remote_copies_queried(self, cluster, node1, locks, config, fake_client, origin_content):
        make_root(node1, 10)
        fake_client.connected["net-b.example"] = {
            "3": {"post_id": 12, "site_url": "https://net-b.example/fr"}
        }

        ConnectionMap(cluster, locks, config, fake_client).check(node1, 10)
        assert fake_client.calls_to("connected_posts")[0][2] == ("1-10-net-a.example",)
        assert ConnectionMap.get(node1, 10)["net-b.example"]["3"]["post_id"] == 12

    def test_stale_local_entry_removed(self, cluster, node1, locks, config, fake_client, origin_content):
        make_root(node1, 10)
        cm = ConnectionMap(cluster, locks, config, fake_client)
        cm.add("1-10", 2, 55)

        assert cm.check(node1, 10)["status"] == "connections_repaired"
        assert ConnectionMap.get(node1, 10) == {}

    def test_unreachable_peer_kept(self, cluster, node1, locks, config, fake_client, origin_content):
        make_root(node1, 10)
        cm = ConnectionMap(cluster, locks, config, fake_client)
        cm.add("1-10", 3, 12, network_address="net-b.example")

        fake_client.fail = True
        result = cm.check(node1, 10)
        assert result["status"] == "ok"
        assert "could not be checked" in result["text"]
        assert ConnectionMap.get(node1, 10)["net-b.example"]["3"]["post_id"] == 12

    def test_unconfigured_network_kept(self, cluster, node1, locks, config, fake_client, origin_content):
        make_root(node1, 10)
        cm = ConnectionMap(cluster, locks, config, fake_client)
        cm.add("1-10", 5, 30, network_address="net-c.example")

        result = cm.check(node1, 10)
        assert "net-c.example is not connected" in result["text"]
        assert "net-c.example" in ConnectionMap.get(node1, 10)

    def test_connection_added_during_peer_query_kept(
        self, cluster, node1, node2, locks, config, fake_client, origin_content, monkeypatch
    ):
        make_root(node1, 10)
        cm = ConnectionMap(cluster, locks, config, fake_client)
        cm.add("1-10", 2, 99)
        added = []

        def connected_posts(connection, gid):
            copy_id = _copy(node2)
            assert cm.add("1-10", 2, copy_id)
            added.append(copy_id)
            return {}

        monkeypatch.setattr(fake_client, "connected_posts", connected_posts)

        assert cm.check(node1, 10)["status"] == "ok"
        assert ConnectionMap.get(node1, 10)["2"]["post_id"] == added[0]
