"""HTTP client for a peer network's synchronization endpoints.

Every peer answers with the same envelope::

    {"message": str, "code": str, "data": {"status": int, "responseData": any}}

The inner ``status`` is authoritative even when the outer HTTP status is
200.  ``RemoteClient.send()`` unwraps the envelope and returns
``responseData``, or raises ``RemoteRequestError`` for network failures,
undecodable bodies and error envelopes.
"""

import logging
import threading
from typing import Any
from urllib.parse import quote

import requests

from ..config import Config, Connection
from ..errors import RemoteRequestError
from .cache import TTLCache

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10


def parse_envelope(payload: Any, http_status: int = 200) -> Any:
    """Return ``responseData`` of an envelope or raise for error envelopes."""
    if not isinstance(payload, dict) or "data" not in payload:
        if http_status >= 400:
            raise RemoteRequestError(
                f"Peer answered HTTP {http_status}", status=http_status
            )
        # Bare payloads from older peers
        return payload

    data = payload.get("data") or {}
    status = int(data.get("status", http_status) or http_status)
    code = str(payload.get("code") or "")
    message = str(payload.get("message") or "")

    if status >= 400 or (code and not code.endswith("success") and status != 200):
        raise RemoteRequestError(
            message or f"Peer answered with status {status}",
            code=code or None,
            status=status,
        )
    return data.get("responseData")


class RemoteClient:
    """Authenticated calls to connected peer networks.

    Args:
        config: Runtime configuration (own network address, timeouts).
        post_cache: Cache for single remote posts.
        listing_cache: Cache for remote post listings.
    """

    def __init__(
        self,
        config: Config,
        post_cache: TTLCache | None = None,
        listing_cache: TTLCache | None = None,
    ):
        self.config = config
        self._thread_local = threading.local()
        self.post_cache = post_cache or TTLCache(config.post_cache_ttl)
        self.listing_cache = listing_cache or TTLCache(config.listing_cache_ttl)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _get_session(self, connection: Connection | None) -> requests.Session:
        """Get or create a thread-local session for *connection*."""
        if not hasattr(self._thread_local, "sessions"):
            self._thread_local.sessions = {}
        key = connection.address if connection else ""
        sessions = self._thread_local.sessions
        if key not in sessions:
            sessions[key] = self._create_session(connection)
        return sessions[key]

    def _create_session(self, connection: Connection | None) -> requests.Session:
        session = requests.Session()
        if connection is not None:
            session.auth = (connection.username, connection.password)
        session.verify = not self.config.insecure
        session.headers.update(
            {
                "Origin": self.config.network_address,
                "Accept": "application/json",
            }
        )
        return session

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def send(
        self,
        connection: Connection,
        path: str,
        body: Any = None,
        method: str = "GET",
        timeout: int | None = None,
    ) -> Any:
        """
        Call ``path`` on the peer and return the unwrapped ``responseData``.

        Raises:
            RemoteRequestError: On network errors, timeouts, invalid JSON
                or an error envelope.
        """
        url = f"{connection.endpoint}/{path.lstrip('/')}"
        method = method.upper()
        read_timeout = timeout or self.config.control_timeout
        kwargs: dict[str, Any] = {"timeout": (CONNECT_TIMEOUT, read_timeout)}
        if body is not None:
            if method == "GET":
                kwargs["params"] = body
            else:
                kwargs["json"] = body

        logger.debug("%s %s", method, url)
        session = self._get_session(connection)
        try:
            response = session.request(method, url, **kwargs)
        except requests.RequestException as e:
            logger.warning("Request to %s failed: %s", url, e)
            raise RemoteRequestError(
                f"Could not reach {connection.address}: {e}",
                code="remote_unreachable",
                status=503,
            ) from e

        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteRequestError(
                f"Invalid response from {connection.address} "
                f"(HTTP {response.status_code})",
                code="remote_invalid_response",
                status=response.status_code if response.status_code >= 400 else 502,
            ) from e

        return parse_envelope(payload, response.status_code)

    def download(self, url: str) -> bytes:
        """Fetch a file by url, e.g. a media file of a remote post."""
        session = self._get_session(None)
        try:
            response = session.get(
                url, timeout=(CONNECT_TIMEOUT, self.config.transfer_timeout)
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise RemoteRequestError(
                f"Could not download {url}: {e}", code="remote_unreachable", status=503
            ) from e
        return response.content

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    @staticmethod
    def _gid_path(gid: str) -> str:
        return quote(gid, safe="")

    def site_name(self, connection: Connection) -> str:
        return str(self.send(connection, "site_name") or "")

    def check_auth(self, connection: Connection) -> bool:
        """
        Return True if the peer accepts our credential and knows our network.
        """
        try:
            self.send(connection, "check_auth")
        except RemoteRequestError as e:
            logger.info("Auth check against %s failed: %s", connection.address, e)
            return False
        return True

    def get_posts(self, connection: Connection, query: dict | None = None) -> list:
        key = ("posts", connection.address, tuple(sorted((query or {}).items())))
        cached = self.listing_cache.get(key)
        if cached is not None:
            return cached
        posts = self.send(connection, "posts", body=query or None) or []
        self.listing_cache.set(key, posts)
        return posts

    def get_post(self, connection: Connection, gid: str) -> Any:
        key = ("post", connection.address, gid)
        cached = self.post_cache.get(key)
        if cached is not None:
            return cached
        post = self.send(connection, f"posts/{self._gid_path(gid)}")
        if post is not None:
            self.post_cache.set(key, post)
        return post

    def prepare_post(self, connection: Connection, gid: str) -> dict:
        """Fetch the prepared set of a remote root, keyed by post id."""
        return (
            self.send(
                connection,
                f"posts/{self._gid_path(gid)}/prepare",
                timeout=self.config.transfer_timeout,
            )
            or {}
        )

    def get_connections(self, connection: Connection, gid: str) -> dict:
        return self.send(connection, f"posts/{self._gid_path(gid)}/connections") or {}

    def add_connection(
        self,
        connection: Connection,
        gid: str,
        node_id: int,
        post_id: int,
        site_url: str = "",
        edit_url: str = "",
    ) -> bool:
        self.send(
            connection,
            f"posts/{self._gid_path(gid)}/connections",
            body={
                "node_id": node_id,
                "post_id": post_id,
                "site_url": site_url,
                "edit_url": edit_url,
                "network_url": self.config.network_address,
            },
            method="POST",
        )
        self.post_cache.invalidate(("post", connection.address, gid))
        return True

    def remove_connection(
        self, connection: Connection, gid: str, node_id: int, post_id: int
    ) -> bool:
        self.send(
            connection,
            f"posts/{self._gid_path(gid)}/connections",
            body={
                "node_id": node_id,
                "post_id": post_id,
                "network_url": self.config.network_address,
            },
            method="DELETE",
        )
        self.post_cache.invalidate(("post", connection.address, gid))
        return True

    def connected_posts(self, connection: Connection, gid: str) -> dict:
        """Ask a peer which of its nodes hold a copy of *gid*."""
        return self.send(connection, "connected_posts", body={"gid": gid}) or {}

    def distribute_item(self, connection: Connection, payload: dict) -> Any:
        return self.send(
            connection,
            "distribution/distribute-item",
            body=payload,
            method="POST",
            timeout=self.config.transfer_timeout,
        )

    def update_item(self, connection: Connection, payload: dict) -> Any:
        return self.send(
            connection, "distribution/update-item", body=payload, method="POST"
        )
