"""Framework-agnostic handlers for the peer synchronization endpoints.

A web framework adapter builds a ``Request`` and calls
``SyncEndpoints.handle(method, path, request)``; the result is always an
envelope (see ``envelope.py``).  Routes, relative to the API root::

    GET             site_name
    GET             check_auth
    GET             posts
    GET             posts/<gid>
    GET             posts/<gid>/prepare
    GET|POST|DELETE posts/<gid>/connections
    GET             connected_posts?gid=<gid>
    POST            distribution/distribute-item
    POST            distribution/update-item

Every call is authenticated with HTTP Basic credentials from
``api_users`` and must come from a configured peer (``Origin`` header).
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import unquote

from ..errors import (
    ContentSyncError,
    InvalidGidError,
    NotAuthorizedError,
    NotConnectedError,
    NotFoundError,
    ValidationError,
)
from ..sync import gid as gid_codec
from ..sync import meta as sync_meta
from ..sync.exporter import ExportEngine
from ..sync.models import META_STATUS, SyncStatus
from .envelope import build_error_response, build_response

if TYPE_CHECKING:
    from ..config import Config
    from ..core.context import Cluster, NodeContext
    from ..sync.connection_map import ConnectionMap
    from ..sync.distributor import Distributor
    from ..sync.translations import TranslationRegistry

logger = logging.getLogger(__name__)


@dataclass
class Request:
    """One incoming call, as handed over by the web framework.

    Attributes:
        method: HTTP method.
        params: Query parameters.
        body: Decoded JSON body.
        headers: Request headers; looked up case-insensitively.
        auth: ``(username, password)`` from the Basic auth header.
    """

    method: str = "GET"
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    auth: tuple[str, str] | None = None

    def header(self, name: str) -> str:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return ""


Handler = Callable[[Request, str | None], Any]


class SyncEndpoints:
    """Handlers for everything a peer network may ask of this one.

    Args:
        config: Accepted API users, peer connections, own address.
        cluster: Local nodes.
        connection_map: Connection map of local roots.
        distributor: Receives distribution items.
        translations: Registry used when preparing posts.
    """

    def __init__(
        self,
        config: Config,
        cluster: Cluster,
        connection_map: ConnectionMap,
        distributor: Distributor,
        translations: TranslationRegistry | None = None,
    ) -> None:
        self.config = config
        self.cluster = cluster
        self.connection_map = connection_map
        self.distributor = distributor
        self.translations = translations

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle(self, method: str, path: str, request: Request) -> dict[str, Any]:
        """Authorize, route and run one call.  Never raises."""
        request.method = method.upper()
        parts = [unquote(p) for p in path.strip("/").split("/") if p]
        try:
            self.authorize(request)
            name, handler, gid = self._route(parts)
            data = handler(request, gid)
        except ContentSyncError as e:
            logger.info("%s %s failed: %s (%s)", method, path, e.message, e.code)
            return build_error_response(e)
        except ValueError as e:
            return build_error_response(ValidationError(str(e)))
        except Exception as e:
            logger.exception("Unexpected error in %s %s", method, path)
            return build_error_response(e)
        return build_response(data, name)

    def _route(self, parts: list[str]) -> tuple[str, Handler, str | None]:
        routes: dict[tuple[str, ...], tuple[str, Handler]] = {
            ("site_name",): ("site_name", self.site_name),
            ("check_auth",): ("check_auth", self.check_auth),
            ("posts",): ("posts", self.posts),
            ("connected_posts",): ("connected_posts", self.connected_posts),
            ("distribution", "distribute-item"): ("distribute_item", self.distribute_item),
            ("distribution", "update-item"): ("update_item", self.update_item),
        }
        key = tuple(parts)
        if key in routes:
            name, handler = routes[key]
            return name, handler, None
        if len(parts) >= 2 and parts[0] == "posts":
            gid = parts[1]
            rest = tuple(parts[2:])
            if rest == ():
                return "post", self.post, gid
            if rest == ("prepare",):
                return "prepare", self.prepare, gid
            if rest == ("connections",):
                return "connections", self.connections, gid
        raise NotFoundError(f"No route for '{'/'.join(parts)}'", code="rest_no_route")

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, request: Request) -> str:
        """Check credential and origin.  Returns the canonical origin.

        Raises:
            NotAuthorizedError: Missing or wrong credential.
            NotConnectedError: The origin is not a configured peer.
        """
        if request.auth is None:
            raise NotAuthorizedError("Missing credentials")
        username, password = request.auth
        expected = self.config.api_users.get(username)
        if expected is None or not hmac.compare_digest(
            str(expected).encode(), str(password).encode()
        ):
            raise NotAuthorizedError("Invalid credentials")

        origin = gid_codec.canonicalize_address(request.header("Origin"))
        if not origin or self.config.connection_for(origin) is None:
            raise NotConnectedError(f"Origin '{origin or '-'}' is not a connected network")
        return origin

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _local_gid(self, gid: str | None) -> str:
        if not gid or not gid_codec.is_valid_gid(gid):
            raise InvalidGidError(f"Invalid GID '{gid}'")
        local = gid_codec.localize(gid, self.config.network_address)
        node_id, content_id, address = gid_codec.decode(local)
        if node_id is None:
            raise InvalidGidError(f"Invalid GID '{gid}'")
        return gid_codec.encode(node_id, content_id, address)

    def _root(self, gid: str | None) -> tuple[NodeContext, int, str]:
        local = self._local_gid(gid)
        node_id, _content_id, address = gid_codec.decode(local)
        node = self.cluster.node(node_id)
        if address is not None or node is None:
            raise NotFoundError(f"Root {gid} is not part of this network")
        root = sync_meta.get_root_post(node.store, local)
        if root is None:
            raise NotFoundError(f"Root {gid} not found")
        return node, root.ID, local

    def _post_summary(self, node: NodeContext, post_id: int, gid: str) -> dict[str, Any]:
        post = node.store.get(post_id)
        return {
            **post.model_dump(),
            "gid": gid_codec.qualify(gid, self.config.network_address),
            "node_id": node.node_id,
            "permalink": node.store.permalink(post_id),
            "export_options": sync_meta.get_export_options(node.store, post_id).model_dump(),
            "connection_map": self.connection_map.get(node, post_id),
        }

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def site_name(self, request: Request, gid: str | None = None) -> str:
        node = self.cluster.node(self.config.node_id)
        return node.name if node is not None else ""

    def check_auth(self, request: Request, gid: str | None = None) -> bool:
        return True

    def posts(self, request: Request, gid: str | None = None) -> list[dict[str, Any]]:
        """All roots of this network, optionally filtered by ``post_type``."""
        post_type = request.params.get("post_type")
        listing = []
        for node in self.cluster:
            for post in node.store.find_by_meta(META_STATUS, SyncStatus.ROOT.value, post_type):
                root_gid = sync_meta.get_gid(node.store, post.ID)
                if root_gid:
                    listing.append(self._post_summary(node, post.ID, root_gid))
        return listing

    def post(self, request: Request, gid: str | None = None) -> dict[str, Any]:
        node, post_id, local = self._root(gid)
        return self._post_summary(node, post_id, local)

    def prepare(self, request: Request, gid: str | None = None) -> dict[str, Any]:
        """Prepared set of a root, ready to be imported by the caller."""
        node, post_id, _local = self._root(gid)
        options = sync_meta.get_export_options(node.store, post_id)
        posts = ExportEngine(node, self.translations).export(post_id, options)
        posts = self.distributor.prepare_posts(node, posts, post_id)
        own = self.config.network_address
        prepared = {}
        for prepared_id, post in posts.items():
            if post.gid:
                post.set_gid(gid_codec.qualify(post.gid, own))
            prepared[str(prepared_id)] = post.model_dump(mode="json")
        return prepared

    def connections(self, request: Request, gid: str | None = None) -> Any:
        node, post_id, local = self._root(gid)
        if request.method == "GET":
            return self.connection_map.get(node, post_id)

        body = request.body or {}
        if "node_id" not in body or "post_id" not in body:
            raise ValidationError("'node_id' and 'post_id' are required")
        network = gid_codec.canonicalize_address(
            request.header("Origin") or body.get("network_url")
        )
        if request.method == "POST":
            return self.connection_map.add(
                local,
                int(body["node_id"]),
                int(body["post_id"]),
                network_address=network,
                site_url=str(body.get("site_url") or ""),
                edit_url=str(body.get("edit_url") or ""),
            )
        if request.method == "DELETE":
            return self.connection_map.remove(
                local, int(body["node_id"]), int(body["post_id"]), network_address=network
            )
        raise ValidationError(f"Method {request.method} not allowed", code="rest_no_route")

    def connected_posts(self, request: Request, gid: str | None = None) -> dict[str, Any]:
        """Copies of a (possibly foreign) root held by the nodes of this network."""
        local = self._local_gid(request.params.get("gid"))
        return self.connection_map.local_copies(local)

    def distribute_item(self, request: Request, gid: str | None = None) -> dict[str, Any]:
        payload = dict(request.body or {})
        payload["origin"] = request.header("Origin")
        item = self.distributor.accept_remote_item(payload)
        return {"id": item.id, "status": item.status.value}

    def update_item(self, request: Request, gid: str | None = None) -> dict[str, Any]:
        body = request.body or {}
        if not body.get("id") or not body.get("status") or not body.get("destination"):
            raise ValidationError("'id', 'status' and 'destination' are required")
        destination = str(body["destination"])
        origin = gid_codec.canonicalize_address(request.header("Origin"))
        node, _, address = destination.partition("|")
        if gid_codec.canonicalize_address(address) != origin:
            raise NotConnectedError(
                f"Destination '{destination}' does not belong to {origin or '-'}"
            )
        item = self.distributor.update_item(
            str(body["id"]),
            body["status"],
            error=body.get("error"),
            destination=f"{node}|{origin}",
        )
        if item is None:
            raise NotFoundError(f"Distribution item {body['id']} not found")
        return {"id": item.id, "status": item.status.value}
