"""Factory to resolve the active job backend."""

from __future__ import annotations

from functools import lru_cache

from src.core.config import get_settings
from src.staging.providers.base import JobBackend
from src.staging.providers.mock_provider import MockJobBackend
from src.staging.providers.replicate_provider import ReplicateJobBackend


@lru_cache(maxsize=1)
def get_job_backend() -> JobBackend:
    settings = get_settings()
    backend = settings.job_backend.strip().lower()
    if backend == "replicate":
        return ReplicateJobBackend(
            api_token=settings.replicate_api_token,
            model=settings.replicate_model,
            base_url=settings.replicate_api_base_url,
            timeout_seconds=settings.replicate_timeout_seconds,
            preview_quality=settings.preview_output_quality,
            hd_quality=settings.hd_output_quality,
        )
    return MockJobBackend(polls_until_ready=settings.mock_job_polls_until_ready)


def reset_job_backend_cache() -> None:
    get_job_backend.cache_clear()
