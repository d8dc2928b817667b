"""Tests for the peer synchronization endpoints.

Covers:
- Authorization (credential and origin) and routing errors
- Root listing, single root and prepared set with qualified GIDs
- Connection map routes (GET/POST/DELETE)
- connected_posts for foreign roots
- Distribution item intake and status updates, limited to the caller's destinations
- Unexpected errors still produce an envelope
"""

import pytest

from contentsync.api.handlers import Request, SyncEndpoints
from contentsync.sync import meta as sync_meta
from contentsync.sync.connection_map import ConnectionMap
from contentsync.sync.distributor import Distributor
from contentsync.sync.exporter import make_root
from contentsync.sync.models import DistributionStatus, SyncStatus
from contentsync.sync.state import DistributionStore


@pytest.fixture
def endpoints(config, cluster, locks, fake_client):
    connection_map = ConnectionMap(cluster, locks, config, fake_client)
    distributor = Distributor(
        cluster,
        config,
        DistributionStore(config.state_dir),
        locks,
        client=fake_client,
        connection_map=connection_map,
        scheduler=lambda func, *args: None,
    )
    return SyncEndpoints(config, cluster, connection_map, distributor)


def _request(**kw):
    kw.setdefault("auth", ("net-b", "api-secret"))
    kw.setdefault("headers", {"origin": "https://net-b.example"})
    return Request(**kw)


def _data(envelope):
    assert envelope["data"]["status"] == 200, envelope
    return envelope["data"]["responseData"]


# ---------------------------------------------------------------------------
# Authorization and routing
# ---------------------------------------------------------------------------


class TestAuthorization:
    """Tests for credential and origin checks."""

    def test_missing_credentials(self, endpoints):
        result = endpoints.handle("GET", "site_name", Request())
        assert result["code"] == "rest_not_authorized"
        assert result["data"]["status"] == 401

    def test_wrong_password(self, endpoints):
        result = endpoints.handle("GET", "site_name", _request(auth=("net-b", "nope")))
        assert result["code"] == "rest_not_authorized"

    def test_unknown_origin(self, endpoints):
        result = endpoints.handle(
            "GET", "site_name", _request(headers={"Origin": "https://net-c.example"})
        )
        assert result["code"] == "rest_not_connected"
        assert result["data"]["status"] == 403

    def test_unknown_route(self, endpoints):
        result = endpoints.handle("GET", "posts/1-10/nothing", _request())
        assert result["code"] == "rest_no_route"
        assert result["data"]["status"] == 404

    def test_site_name_and_check_auth(self, endpoints):
        result = endpoints.handle("GET", "/site_name/", _request())
        assert result["code"] == "site_name_success"
        assert result["data"]["responseData"] == "main"
        assert _data(endpoints.handle("GET", "check_auth", _request())) is True


# ---------------------------------------------------------------------------
# Roots
# ---------------------------------------------------------------------------


class TestPosts:
    """Tests for posts, posts/<gid> and posts/<gid>/prepare."""

    def test_listing(self, endpoints, node1, origin_content):
        make_root(node1, 10)
        listing = _data(endpoints.handle("GET", "posts", _request()))
        assert sorted(p["gid"] for p in listing) == ["1-10-net-a.example", "1-7-net-a.example"]

        only_posts = _data(
            endpoints.handle("GET", "posts", _request(params={"post_type": "post"}))
        )
        assert [p["ID"] for p in only_posts] == [10]
        assert only_posts[0]["permalink"] == "https://net-a.example/hello-world/"

    def test_single_root(self, endpoints, node1, origin_content):
        make_root(node1, 10)
        post = _data(endpoints.handle("GET", "posts/1-10-net-a.example", _request()))
        assert post["ID"] == 10
        assert post["gid"] == "1-10-net-a.example"
        assert post["connection_map"] == {}
        assert post["export_options"]["translations"] is True

    def test_invalid_gid(self, endpoints):
        result = endpoints.handle("GET", "posts/not-a-gid", _request())
        assert result["code"] == "rest_invalid_gid"
        assert result["data"]["status"] == 400

    def test_foreign_or_missing_root(self, endpoints, origin_content):
        assert endpoints.handle("GET", "posts/1-10-net-b.example", _request())["code"] == "rest_not_found"
        assert endpoints.handle("GET", "posts/1-10", _request())["code"] == "rest_not_found"

    def test_prepare(self, endpoints, node1, origin_content):
        make_root(node1, 10)
        prepared = _data(endpoints.handle("GET", "posts/1-10-net-a.example/prepare", _request()))

        assert set(prepared) == {"10", "7"}
        assert prepared["10"]["meta"]["synced_post_id"] == ["1-10-net-a.example"]
        assert prepared["7"]["meta"]["synced_post_id"] == ["1-7-net-a.example"]
        assert prepared["10"]["is_contentsync_root_post"] is True
        assert prepared["7"]["media"]["name"] == "photo.jpg"


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class TestConnections:
    """Tests for posts/<gid>/connections and connected_posts."""

    def test_add_get_remove(self, endpoints, node1, origin_content):
        make_root(node1, 10)
        body = {"node_id": 3, "post_id": 12, "site_url": "https://net-b.example/fr"}

        assert _data(endpoints.handle("POST", "posts/1-10-net-a.example/connections", _request(body=body)))
        current = _data(endpoints.handle("GET", "posts/1-10-net-a.example/connections", _request()))
        assert current["net-b.example"]["3"]["post_id"] == 12

        assert _data(endpoints.handle("DELETE", "posts/1-10-net-a.example/connections", _request(body=body)))
        assert ConnectionMap.get(node1, 10) == {}

    def test_missing_ids(self, endpoints, node1, origin_content):
        make_root(node1, 10)
        result = endpoints.handle(
            "POST", "posts/1-10-net-a.example/connections", _request(body={"node_id": 3})
        )
        assert result["code"] == "rest_missing_param"

    def test_method_not_allowed(self, endpoints, node1, origin_content):
        make_root(node1, 10)
        result = endpoints.handle(
            "PUT",
            "posts/1-10-net-a.example/connections",
            _request(body={"node_id": 3, "post_id": 12}),
        )
        assert result["code"] == "rest_no_route"

    def test_connected_posts(self, endpoints, node2):
        copy_id = node2.store.create({"post_type": "post", "post_name": "from-peer"})
        sync_meta.set_synced(node2.store, copy_id, "5-10-net-b.example", SyncStatus.LINKED)

        found = _data(
            endpoints.handle(
                "GET", "connected_posts", _request(params={"gid": "5-10-net-b.example"})
            )
        )
        assert found["2"]["post_id"] == copy_id
        assert found["2"]["site_url"] == "https://net-a.example/de"

    def test_connected_posts_requires_gid(self, endpoints):
        result = endpoints.handle("GET", "connected_posts", _request())
        assert result["code"] == "rest_invalid_gid"


# ---------------------------------------------------------------------------
# Distribution
# ---------------------------------------------------------------------------


class TestDistribution:
    """Tests for distribution/distribute-item and distribution/update-item."""

    def test_distribute_item(self, endpoints, node2):
        payload = {
            "id": "origin-item-1",
            "posts": {"10": {"ID": 10, "post_name": "from-peer"}},
            "destinations": {"2": {}},
        }
        result = _data(
            endpoints.handle("POST", "distribution/distribute-item", _request(body=payload))
        )
        assert result["status"] == "init"
        item = endpoints.distributor.items.get(result["id"])
        assert item.origin == "net-b.example"

    def test_distribute_item_invalid(self, endpoints):
        result = endpoints.handle(
            "POST", "distribution/distribute-item", _request(body={"id": "x"})
        )
        assert result["code"] == "rest_missing_param"

    def test_update_item(self, endpoints, node1, origin_content):
        make_root(node1, 10)
        (item,) = endpoints.distributor.build_items(node1, 10, ["3|net-b.example"])

        result = _data(
            endpoints.handle(
                "POST",
                "distribution/update-item",
                _request(body={"id": item.id, "status": "success", "destination": "3|net-b.example"}),
            )
        )
        assert result == {"id": item.id, "status": "success"}

    def test_update_item_errors(self, endpoints):
        missing = endpoints.handle(
            "POST", "distribution/update-item", _request(body={"id": "x", "status": "success"})
        )
        assert missing["code"] == "rest_missing_param"

        unknown = endpoints.handle(
            "POST",
            "distribution/update-item",
            _request(body={"id": "x", "status": "success", "destination": "3|net-b.example"}),
        )
        assert unknown["code"] == "rest_not_found"

        bad_status = endpoints.handle(
            "POST",
            "distribution/update-item",
            _request(body={"id": "x", "status": "bogus", "destination": "3|net-b.example"}),
        )
        assert bad_status["data"]["status"] in (400, 404)

    def test_update_item_of_other_network_refused(self, endpoints, node1, origin_content):
        make_root(node1, 10)
        (item,) = endpoints.distributor.build_items(node1, 10, ["3|net-b.example"])

        for destination in ("9|net-c.example", "2"):
            result = endpoints.handle(
                "POST",
                "distribution/update-item",
                _request(body={"id": item.id, "status": "failed", "destination": destination}),
            )
            assert result["code"] == "rest_not_connected"
        stored = endpoints.distributor.items.get(item.id)
        assert list(stored.destinations) == ["3|net-b.example"]
        assert stored.status is DistributionStatus.INIT

    def test_update_item_unknown_destination(self, endpoints, node1, origin_content):
        make_root(node1, 10)
        (item,) = endpoints.distributor.build_items(node1, 10, ["3|net-b.example"])

        result = endpoints.handle(
            "POST",
            "distribution/update-item",
            _request(body={"id": item.id, "status": "failed", "destination": "4|net-b.example"}),
        )
        assert result["code"] == "rest_not_found"
        stored = endpoints.distributor.items.get(item.id)
        assert list(stored.destinations) == ["3|net-b.example"]

    def test_unexpected_error(self, endpoints, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(endpoints.distributor, "update_item", boom)
        result = endpoints.handle(
            "POST",
            "distribution/update-item",
            _request(body={"id": "x", "status": "success", "destination": "3|net-b.example"}),
        )
        assert result["code"] == "rest_error"
        assert result["data"]["status"] == 500
        assert result["message"] == "disk on fire"
