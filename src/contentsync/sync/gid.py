"""Global identifier codec.

A GID names one synchronized content object across every connected site::

    {origin_node_id}-{content_id}
    {origin_node_id}-{content_id}-{network_address}

The network segment is present only when the origin lives on another
network; it may itself contain ``-``, so decoding splits on the first two
separators only.  Network addresses are compared in canonical form (no
scheme, no leading ``www.``, no trailing slash).

All functions are pure.  Malformed input decodes to ``(None, None, None)``
instead of raising.
"""

from __future__ import annotations

import re

_SCHEME_PATTERN = re.compile(r"^(http|https)://(www\.)?", re.IGNORECASE)
_GID_PATTERN = re.compile(r"^\d+-\d+(-[A-Za-z0-9.\-:_/%~]+)?$")

EMPTY = (None, None, None)


def canonicalize_address(url: str | None) -> str:
    """Return *url* without scheme, leading ``www.`` or trailing slash."""
    if not url:
        return ""
    nice = _SCHEME_PATTERN.sub("", str(url).strip())
    if nice.lower().startswith("www."):
        nice = nice[4:]
    return nice.rstrip("/")


def encode(
    origin_node_id: int, content_id: int, network_address: str | None = None
) -> str:
    """Build a GID string.  The network segment is omitted when empty."""
    gid = f"{int(origin_node_id)}-{int(content_id)}"
    address = canonicalize_address(network_address)
    if address:
        gid = f"{gid}-{address}"
    return gid


def decode(gid) -> tuple[int | None, int | None, str | None]:
    """Split a GID into ``(origin_node_id, content_id, network_address)``.

    ``network_address`` is ``None`` for local GIDs.  Anything that is not a
    well-formed GID returns ``(None, None, None)``.
    """
    if not isinstance(gid, str) or "-" not in gid:
        return EMPTY

    parts = gid.strip().split("-", 2)
    if len(parts) < 2:
        return EMPTY

    try:
        node_id = int(parts[0])
        content_id = int(parts[1])
    except ValueError:
        return EMPTY
    if node_id < 0 or content_id < 0:
        return EMPTY

    address = canonicalize_address(parts[2]) if len(parts) == 3 else ""
    return node_id, content_id, address or None


def is_valid_gid(value) -> bool:
    """Return True if *value* matches the wire format of a GID."""
    return isinstance(value, str) and bool(_GID_PATTERN.match(value))


def gids_equal(a: str | None, b: str | None) -> bool:
    """Compare two GIDs component-wise after canonicalization."""
    decoded_a, decoded_b = decode(a), decode(b)
    if decoded_a == EMPTY or decoded_b == EMPTY:
        return False
    return decoded_a == decoded_b


def is_remote(gid: str) -> bool:
    return decode(gid)[2] is not None


def qualify(gid: str, network_address: str) -> str:
    """Attach *network_address* to a local GID.

    Used before a GID leaves its network so the receiving side knows where
    the root lives.  Already-qualified GIDs are returned canonicalized.
    """
    node_id, content_id, address = decode(gid)
    if node_id is None:
        return gid
    return encode(node_id, content_id, address or network_address)


def localize(gid: str, own_network_address: str) -> str:
    """Drop the network segment when it names our own network."""
    node_id, content_id, address = decode(gid)
    if node_id is None:
        return gid
    if address and address == canonicalize_address(own_network_address):
        address = None
    return encode(node_id, content_id, address)
