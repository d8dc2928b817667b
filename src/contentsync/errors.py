"""Exception hierarchy and admin result messages.

Every error carries a machine ``code`` and an HTTP-style ``status`` so the
endpoint layer can turn it into an envelope without a lookup table.

Not-found conditions are normally signalled by returning ``None``;
``NotFoundError`` exists for the few call sites (endpoint handlers) that
have to report them as a structured error.
"""


class ContentSyncError(Exception):
    """Base class for all content sync errors."""

    code = "rest_error"
    status = 500

    def __init__(self, message: str, code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status


class NotFoundError(ContentSyncError):
    code = "rest_not_found"
    status = 404


class ValidationError(ContentSyncError):
    code = "rest_missing_param"
    status = 400


class InvalidGidError(ValidationError):
    code = "rest_invalid_gid"
    status = 400


class NotAuthorizedError(ContentSyncError):
    code = "rest_not_authorized"
    status = 401


class NotConnectedError(ContentSyncError):
    code = "rest_not_connected"
    status = 403


class PersistenceError(ContentSyncError):
    """Raised by a post store when a write cannot be completed."""

    code = "persistence_error"
    status = 500


class ArchiveError(ContentSyncError):
    code = "archive_error"
    status = 500


class RemoteRequestError(ContentSyncError):
    """A peer could not be reached or answered with an error envelope."""

    code = "remote_error"
    status = 502


def admin_message(success: bool, text: str) -> str:
    """Format a result string for admin actions.

    Returns ``success::<text>`` or ``error::<text>``.
    """
    prefix = "success" if success else "error"
    return f"{prefix}::{text}"
