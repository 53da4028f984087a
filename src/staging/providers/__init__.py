"""Image generation job backends."""

from src.staging.providers.base import JobBackend, JobBackendError, JobHandle, JobSnapshot
from src.staging.providers.factory import get_job_backend, reset_job_backend_cache
from src.staging.providers.mock_provider import MockJobBackend
from src.staging.providers.replicate_provider import ReplicateJobBackend

__all__ = [
    "JobBackend",
    "JobBackendError",
    "JobHandle",
    "JobSnapshot",
    "MockJobBackend",
    "ReplicateJobBackend",
    "get_job_backend",
    "reset_job_backend_cache",
]
