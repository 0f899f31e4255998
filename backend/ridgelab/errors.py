"""
Error taxonomy for the texture service.

Stage errors (InvalidImage, SynthesisError) abort a run and end up on the
failed run record. Collaborator errors (OracleUnavailable, NotificationFailed)
are neutralized by the runner. StoreUnavailable means the run record could not
be written; the caller still receives the in-memory result.
"""
from __future__ import annotations

from typing import Any, Optional


class RidgeLabError(Exception):
    """Base exception carrying a stable error code."""

    error_code = "RIDGELAB_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class InvalidImage(RidgeLabError):
    """Malformed or undecodable input image."""

    error_code = "INVALID_IMAGE"


class SynthesisError(RidgeLabError):
    """Internal pipeline invariant violated."""

    error_code = "SYNTHESIS_ERROR"


class OracleUnavailable(RidgeLabError):
    error_code = "ORACLE_UNAVAILABLE"


class NotificationFailed(RidgeLabError):
    error_code = "NOTIFICATION_FAILED"


class StoreUnavailable(RidgeLabError):
    error_code = "STORE_UNAVAILABLE"


class BlobStoreError(RidgeLabError):
    """Blob could not be read or written."""

    error_code = "BLOB_STORE_ERROR"


class BlobNotFound(BlobStoreError):
    error_code = "BLOB_NOT_FOUND"


class InvalidTransition(RidgeLabError):
    """Requested status change is not allowed from the current status."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, run_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Run {run_id} cannot move from {current} to {target}",
            details={"run_id": run_id, "current": current, "target": target},
        )


class RunCancelled(RidgeLabError):
    error_code = "RUN_CANCELLED"


_HTTP_STATUS = {
    InvalidImage: 422,
    BlobNotFound: 404,
    InvalidTransition: 409,
    StoreUnavailable: 503,
    OracleUnavailable: 502,
    NotificationFailed: 502,
}


def http_status_for(error: RidgeLabError) -> int:
    """HTTP status for an error, 500 when nothing more specific applies."""
    for error_type in type(error).__mro__:
        if error_type in _HTTP_STATUS:
            return _HTTP_STATUS[error_type]
    return 500
