"""Shared pytest fixtures for contentsync tests."""

from pathlib import Path
from typing import Any

import pytest
from dotenv import load_dotenv

from contentsync.config import Config, Connection, NodeSite
from contentsync.core.context import Cluster, GidLocks, NodeContext
from contentsync.errors import RemoteRequestError
from contentsync.sync.store import InMemoryPostStore

load_dotenv()

NETWORK_URL = "https://net-a.example"
PEER_URL = "https://net-b.example"
PEER_ADDRESS = "net-b.example"

IMAGE_ID = 7
POST_ID = 10

POST_CONTENT = (
    '<!-- wp:image {"id":7,"sizeSlug":"large"} -->\n'
    '<figure class="wp-block-image"><img src="https://net-a.example/wp-content/'
    'uploads/2026/10/photo.jpg" class="wp-image-7"/></figure>\n'
    "<!-- /wp:image -->\n"
    "<p>Hello from the main site.</p>"
)


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live peer network",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live peer network"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRemoteClient:
    """In-memory stand-in for ``RemoteClient``.

    Every call is recorded in ``calls`` as ``(method, address, args)``.
    Set ``fail`` to make every call raise ``RemoteRequestError``; put
    results for ``connected_posts`` into ``connected`` keyed by address.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []
        self.fail = False
        self.connected: dict[str, dict] = {}
        self.files: dict[str, bytes] = {}

    def _record(self, method: str, connection, *args: Any) -> None:
        address = connection.address if connection is not None else ""
        self.calls.append((method, address, args))
        if self.fail:
            raise RemoteRequestError(
                f"Could not reach {address}", code="remote_unreachable", status=503
            )

    def calls_to(self, method: str) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == method]

    def site_name(self, connection) -> str:
        self._record("site_name", connection)
        return "Peer"

    def check_auth(self, connection) -> bool:
        try:
            self._record("check_auth", connection)
        except RemoteRequestError:
            return False
        return True

    def add_connection(self, connection, gid, node_id, post_id, site_url="", edit_url=""):
        self._record("add_connection", connection, gid, node_id, post_id)
        return True

    def remove_connection(self, connection, gid, node_id, post_id):
        self._record("remove_connection", connection, gid, node_id, post_id)
        return True

    def connected_posts(self, connection, gid) -> dict:
        self._record("connected_posts", connection, gid)
        return self.connected.get(connection.address, {})

    def distribute_item(self, connection, payload) -> dict:
        self._record("distribute_item", connection, payload)
        return {"id": "remote-item", "status": "init"}

    def update_item(self, connection, payload) -> dict:
        self._record("update_item", connection, payload)
        return {"id": payload["id"], "status": payload["status"]}

    def download(self, url: str) -> bytes:
        self._record("download", None, url)
        return self.files[url]


class FakeTranslationProvider:
    """Translation tool whose languages are plain dicts.

    Attributes:
        languages: post id -> language code, per node id.
        groups: post id -> sibling ids keyed by code, per node id.
        linked: ``(node_id, post_id, code, siblings)`` of every link call.
    """

    tool = "fake-tool"

    def __init__(self, supported: tuple[str, ...] = ("en", "de")) -> None:
        self.supported = supported
        self.languages: dict[int, dict[int, str]] = {}
        self.groups: dict[int, dict[int, dict[str, int]]] = {}
        self.linked: list[tuple[int, int, str, dict[str, int]]] = []
        self.switched: list[str] = []

    def detect(self, ctx: NodeContext) -> str | None:
        return self.tool

    def get_language_info(self, ctx, post) -> dict[str, Any]:
        code = self.languages.get(ctx.node_id, {}).get(post.ID, ctx.language)
        return {"code": code, "locale": f"{code}_XX"}

    def get_translations(self, ctx, post) -> dict[str, int]:
        return dict(self.groups.get(ctx.node_id, {}).get(post.ID, {}))

    def set_translations(self, ctx, post_id, code, siblings) -> bool:
        self.linked.append((ctx.node_id, post_id, code, dict(siblings)))
        return True

    def switch_language(self, ctx, code) -> bool:
        self.switched.append(code)
        return code in self.supported


# ---------------------------------------------------------------------------
# Config and cluster
# ---------------------------------------------------------------------------


def make_node(
    node_id: int,
    site_url: str,
    upload_dir: Path,
    first_id: int = 1,
    name: str = "",
    language: str = "en",
) -> NodeContext:
    upload_url = f"{site_url}/wp-content/uploads"
    return NodeContext(
        node_id=node_id,
        store=InMemoryPostStore(site_url=site_url, upload_url=upload_url, first_id=first_id),
        site_url=site_url,
        upload_url=upload_url,
        upload_dir=upload_dir,
        theme="twentytwentyfour",
        language=language,
        name=name,
    )


@pytest.fixture
def config(tmp_path):
    """A two-node network connected to one peer network."""
    return Config(
        network_url=NETWORK_URL,
        node_id=1,
        nodes=[
            NodeSite(node_id=1, site_url=NETWORK_URL, name="main"),
            NodeSite(node_id=2, site_url=f"{NETWORK_URL}/de", name="german"),
        ],
        connections=[
            Connection(site_url=PEER_URL, username="net-a", password="peer-secret")
        ],
        api_users={"net-b": "api-secret"},
        state_dir=str(tmp_path / "state"),
    )


@pytest.fixture
def cluster(tmp_path):
    """Node 1 (ids from 1) and node 2 (ids from 50) of the local network."""
    return Cluster(
        NETWORK_URL,
        [
            make_node(1, NETWORK_URL, tmp_path / "uploads-1", first_id=1, name="main"),
            make_node(
                2, f"{NETWORK_URL}/de", tmp_path / "uploads-2", first_id=50, name="german"
            ),
        ],
    )


@pytest.fixture
def node1(cluster):
    return cluster.node(1)


@pytest.fixture
def node2(cluster):
    return cluster.node(2)


@pytest.fixture
def locks():
    return GidLocks()


@pytest.fixture
def fake_client():
    return FakeRemoteClient()


@pytest.fixture
def fake_translations():
    return FakeTranslationProvider()


@pytest.fixture
def origin_content(node1):
    """Post 10 with image 7 (featured and embedded) and one category on node 1."""
    node1.store.load_dict(
        {
            "posts": [
                {
                    "ID": IMAGE_ID,
                    "post_name": "photo",
                    "post_type": "attachment",
                    "post_title": "Photo",
                    "post_status": "inherit",
                    "post_date_gmt": "2026-10-01 10:00:00",
                    "post_mime_type": "image/jpeg",
                },
                {
                    "ID": POST_ID,
                    "post_name": "hello-world",
                    "post_type": "post",
                    "post_title": "Hello world",
                    "post_content": POST_CONTENT,
                    "post_date_gmt": "2026-10-02 09:00:00",
                },
            ],
            "meta": {
                str(POST_ID): {"_thumbnail_id": [IMAGE_ID], "color": ["blue"]},
                str(IMAGE_ID): {},
            },
            "terms": [
                {"term_id": 3, "name": "News", "slug": "news", "taxonomy": "category"},
            ],
            "object_terms": {str(POST_ID): {"category": [3]}},
            "attached": {str(IMAGE_ID): "2026/10/photo.jpg"},
            "next_id": 11,
            "next_term_id": 4,
        }
    )
    image_file = Path(node1.upload_dir) / "2026" / "10" / "photo.jpg"
    image_file.parent.mkdir(parents=True, exist_ok=True)
    image_file.write_bytes(b"JPEGDATA")
    return {"post_id": POST_ID, "image_id": IMAGE_ID, "image_file": image_file}


@pytest.fixture(name="make_node")
def make_node_fixture():
    """Factory for extra ``NodeContext`` objects."""
    return make_node
