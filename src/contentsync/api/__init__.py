"""Peer-to-peer wire surface: envelope builders and endpoint handlers.

Handlers live in ``contentsync.api.handlers``; import them from there.
"""

from .envelope import build_error_response, build_response

__all__ = [
    "build_error_response",
    "build_response",
]
