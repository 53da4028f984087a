"""Error hierarchy for staging operations.

Every error carries the HTTP status the router maps it to, so synchronous
failures can propagate unchanged from the service layer.
"""

from __future__ import annotations

from typing import Optional


class StagingError(RuntimeError):
    """Base class for errors raised by staging operations."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class StagingValidationError(StagingError):
    """Raised when caller input is malformed or references an unknown style."""

    status_code = 400


class OwnershipError(StagingError):
    """Raised when the caller does not own the referenced project."""

    status_code = 403


class RequestNotFoundError(StagingError):
    """Raised when a request is missing or owned by someone else."""

    status_code = 404

    def __init__(self, message: str = "Request not found") -> None:
        super().__init__(message)


class InvalidTransitionError(StagingError):
    status_code = 409

    def __init__(self, current: str, attempted: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Cannot move request from '{current}' to '{attempted}'")
        self.current = current
        self.attempted = attempted


class PreviewNotApprovedError(InvalidTransitionError):
    """Raised when HD generation is requested before the preview was approved."""

    status_code = 403

    def __init__(self, current: str) -> None:
        super().__init__(
            current,
            "hd_generating",
            message=f"Preview must be approved before generating HD (current status: {current})",
        )


class DownloadForbiddenError(StagingError):
    status_code = 403

    def __init__(self, message: str = "HD download not available") -> None:
        super().__init__(message)


class RateLimitError(StagingError):
    status_code = 429

    def __init__(self, retry_after_ms: int, message: Optional[str] = None) -> None:
        super().__init__(message or "Regeneration limit reached for this window")
        self.retry_after_ms = retry_after_ms


class InsufficientCreditsError(StagingError):
    status_code = 402

    def __init__(self, message: str = "Insufficient credits") -> None:
        super().__init__(message)


class ConflictError(StagingError):
    """Raised when a conditional write lost a race against another writer."""

    status_code = 409

    def __init__(self, message: str = "Request was modified concurrently") -> None:
        super().__init__(message)


class UpstreamJobError(StagingError):
    """Raised when the image generation backend rejects a job submission."""

    status_code = 502


class StorageError(StagingError):
    """Raised when the blob store cannot complete an operation."""

    status_code = 502
