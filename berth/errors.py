"""Berth error types.

Error codes are stable strings for programmatic handling. Controllers
classify failures by type: NotFoundError and ValidationError are not
retried, ConflictError is retried immediately, everything else backs off.
"""

from __future__ import annotations

from typing import Any


class BerthError(Exception):
    """Base error for all Berth exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Render as an API error body."""
        body: dict[str, Any] = {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }
        if request_id:
            body["error"]["request_id"] = request_id
        return body


class NotFoundError(BerthError):
    """Object not found (404)."""

    code = "not_found"
    message = "Object not found"
    status_code = 404


class ConflictError(BerthError):
    """Stale resourceVersion or concurrent write (409)."""

    code = "conflict"
    message = "Conflict"
    status_code = 409


class AlreadyExistsError(ConflictError):
    """Create of an object whose name is taken (409)."""

    code = "already_exists"
    message = "Object already exists"


class ValidationError(BerthError):
    """Invalid object content; retrying without a change cannot help (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class ProbeError(BerthError):
    """A node-local probe (disk, engine binary) failed (503)."""

    code = "probe_error"
    message = "Probe failed"
    status_code = 503


class TransientAPIError(BerthError):
    """API server unreachable, timed out or returned a server error (503)."""

    code = "transient_api_error"
    message = "API server request failed"
    status_code = 503
