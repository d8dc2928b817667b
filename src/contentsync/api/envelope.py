"""Response envelope shared by every synchronization endpoint.

::

    {"message": str, "code": "<name>_success" | "<error code>",
     "data": {"status": int, "responseData": any}}

The inner ``status`` is authoritative; the outer HTTP status may be 200
even for errors.
"""

from typing import Any

from ..errors import ContentSyncError


def build_response(
    data: Any, name: str = "", message: str = "", status: int = 200
) -> dict[str, Any]:
    """Wrap *data* in a success envelope.

    Args:
        data: JSON-compatible payload (``responseData``).
        name: Endpoint name; the code becomes ``<name>_success``.
        message: Human-readable message.
        status: Inner status.
    """
    return {
        "message": message,
        "code": f"{name}_success" if name else "success",
        "data": {"status": status, "responseData": data},
    }


def build_error_response(error: Exception) -> dict[str, Any]:
    """Wrap an exception in an error envelope.

    ``ContentSyncError`` subclasses carry their code and status; anything
    else is reported as ``rest_error`` with status 500.

    Examples:
        >>> build_error_response(InvalidGidError("bad gid"))["code"]
        'rest_invalid_gid'
    """
    if isinstance(error, ContentSyncError):
        code, status, message = error.code, error.status, error.message
    else:
        code, status, message = "rest_error", 500, str(error)
    return {
        "message": message,
        "code": code,
        "data": {"status": status, "responseData": None},
    }
