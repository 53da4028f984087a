"""Deterministic in-memory job backend for local/dev usage."""

from __future__ import annotations

import hashlib
from threading import Lock
from typing import Dict, Tuple

from src.staging.providers.base import (
    JOB_PROCESSING,
    JOB_STARTING,
    JOB_SUCCEEDED,
    JobBackend,
    JobBackendError,
    JobHandle,
    JobSnapshot,
)


class MockJobBackend(JobBackend):
    """Echoes the input image back as the job output after a fixed number of polls."""

    backend_name = "mock"

    def __init__(self, *, polls_until_ready: int = 1) -> None:
        self._polls_until_ready = max(1, polls_until_ready)
        self._lock = Lock()
        self._sequence = 0
        # job_id -> (output_url, polls_seen)
        self._jobs: Dict[str, Tuple[str, int]] = {}

    def submit(self, *, image_url: str, style: str, tier: str) -> JobHandle:
        with self._lock:
            self._sequence += 1
            seed_source = f"{image_url}:{style}:{tier}:{self._sequence}".encode("utf-8")
            job_id = f"mock-{hashlib.sha1(seed_source).hexdigest()[:20]}"
            self._jobs[job_id] = (image_url, 0)
        return JobHandle(job_id=job_id, status=JOB_STARTING)

    def poll(self, job_id: str) -> JobSnapshot:
        with self._lock:
            if job_id not in self._jobs:
                raise JobBackendError(f"mock_job_not_found job_id={job_id}")
            output_url, polls_seen = self._jobs[job_id]
            polls_seen += 1
            self._jobs[job_id] = (output_url, polls_seen)

        if polls_seen < self._polls_until_ready:
            return JobSnapshot(job_id=job_id, status=JOB_PROCESSING)
        return JobSnapshot(job_id=job_id, status=JOB_SUCCEEDED, output_url=output_url)
