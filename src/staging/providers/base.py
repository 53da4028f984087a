"""Contracts for asynchronous image generation job backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


JOB_STARTING = "starting"
JOB_PROCESSING = "processing"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"

JOB_STATUSES = frozenset({JOB_STARTING, JOB_PROCESSING, JOB_SUCCEEDED, JOB_FAILED})


class JobBackendError(RuntimeError):
    """Raised when a job backend cannot be reached or rejects a call."""


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    status: str


@dataclass(frozen=True)
class JobSnapshot:
    job_id: str
    status: str
    output_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status in {JOB_SUCCEEDED, JOB_FAILED}


class JobBackend(Protocol):
    backend_name: str

    def submit(self, *, image_url: str, style: str, tier: str) -> JobHandle:
        raise NotImplementedError

    def poll(self, job_id: str) -> JobSnapshot:
        raise NotImplementedError


def normalize_job_status(raw_status: str) -> str:
    status = (raw_status or "").strip().lower()
    if status in {"canceled", "cancelled", "aborted"}:
        return JOB_FAILED
    if status in JOB_STATUSES:
        return status
    raise JobBackendError(f"job_status_unknown status={raw_status}")
