"""Background polling of generation jobs and persistence of their results.

Each submitted job gets one ``Reconciler.run`` call on a worker thread. The
loop re-reads the request before every poll and exits quietly once the row
no longer points at its job, so a regeneration or a concurrent failure
supersedes it without any in-process coordination. Every write it makes is
conditioned on the status and job id it was started with.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache
import threading
import time
from typing import Callable, Optional, Protocol

from src.core.config import Settings, get_settings
from src.core.logger import bind_job_context, clear_request_context, get_logger
from src.core.metrics import record_staging_transition
from src.staging import audit
from src.staging.artifacts import ProcessedImage, fetch_image_bytes, make_hd, make_preview
from src.staging.errors import StorageError
from src.staging.notifications import StagingNotifier, get_notifier
from src.staging.providers import JobBackend, JobBackendError, JobSnapshot, get_job_backend
from src.staging.providers.base import JOB_FAILED, JOB_SUCCEEDED
from src.staging.refunds import refund_hd_credit
from src.staging.repository import get_output, get_request, job_column, now_utc, set_project_status, transition_request
from src.staging.states import (
    FAILED,
    PROJECT_COMPLETED,
    PROJECT_FAILED,
    TIER_HD,
    TIER_PREVIEW,
    generating_state_for,
    ready_state_for,
)
from src.storage.blob_store import BlobStore, build_artifact_path, get_blob_store
from src.storage.db import SessionFactory, get_session_factory, session_scope
from src.storage.models import Profile, Project, StagingOutput


logger = get_logger("snapstage.reconciler")


@dataclass(frozen=True)
class ReconciliationJob:
    request_id: str
    job_id: str
    user_id: str
    tier: str

    @property
    def label(self) -> str:
        return "Preview" if self.tier == TIER_PREVIEW else "HD"


class ReconciliationDispatcher(Protocol):
    def dispatch(self, job: ReconciliationJob) -> None:
        """Start reconciling ``job`` without waiting for it."""


class Reconciler:
    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        job_backend: JobBackend,
        blob_store: BlobStore,
        notifier: StagingNotifier,
        settings: Optional[Settings] = None,
        fetch_image: Optional[Callable[[str], bytes]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._job_backend = job_backend
        self._blob_store = blob_store
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._fetch_image = fetch_image or (
            lambda url: fetch_image_bytes(url, timeout_seconds=self._settings.image_fetch_timeout_seconds)
        )
        self._sleep = sleep

    def _max_polls(self, tier: str) -> int:
        if tier == TIER_HD:
            return self._settings.hd_max_polls
        return self._settings.preview_max_polls

    def heartbeat(self, job: ReconciliationJob) -> bool:
        """Touch ``updated_at`` while ``job`` still owns the request.

        Returns False once the row moved on or points at another job. The
        refund sweep only considers rows whose ``updated_at`` is older than
        its cutoff, so a live loop is never swept.
        """

        with session_scope(self._session_factory) as session:
            touched = transition_request(
                session,
                request_id=job.request_id,
                expected_status=generating_state_for(job.tier),
                values={},
                conditions=(job_column(job.tier) == job.job_id,),
            )
            session.commit()
            return touched

    def run(self, job: ReconciliationJob) -> None:
        log = logger.bind(staging_request_id=job.request_id, user_id=job.user_id, job_id=job.job_id, tier=job.tier)
        consecutive_errors = 0
        if not self.heartbeat(job):
            log.info("staging_loop_superseded", attempt=0)
            return

        for attempt in range(1, self._max_polls(job.tier) + 1):
            self._sleep(self._settings.poll_interval_seconds)
            if not self.heartbeat(job):
                log.info("staging_loop_superseded", attempt=attempt)
                return

            try:
                snapshot = self._job_backend.poll(job.job_id)
            except JobBackendError as exc:
                consecutive_errors += 1
                log.warning("staging_poll_failed", attempt=attempt, consecutive_errors=consecutive_errors, error=str(exc))
                if consecutive_errors >= self._settings.max_poll_errors:
                    self.fail(job, f"{job.label} generation failed")
                    return
                continue

            consecutive_errors = 0
            if snapshot.status == JOB_SUCCEEDED:
                self._complete(job, snapshot)
                return
            if snapshot.status == JOB_FAILED:
                log.info("staging_job_failed", attempt=attempt, error=snapshot.error)
                self.fail(job, f"{job.label} generation failed")
                return

        log.warning("staging_loop_timed_out")
        self.fail(job, f"{job.label} generation timed out")

    def _process(self, job: ReconciliationJob, raw: bytes) -> ProcessedImage:
        if job.tier == TIER_PREVIEW:
            return make_preview(
                raw,
                max_dimension=self._settings.preview_max_dimension,
                watermark_text=self._settings.preview_watermark_text,
                brand_text=self._settings.preview_brand_text,
            )
        return make_hd(raw)

    def _discard_blob(self, path: str) -> None:
        try:
            self._blob_store.delete(path)
        except StorageError as exc:
            logger.warning("staging_blob_cleanup_failed", path=path, error=str(exc))

    def _complete(self, job: ReconciliationJob, snapshot: JobSnapshot) -> None:
        if not snapshot.output_url:
            self.fail(job, f"{job.label} generation returned no output")
            return

        try:
            processed = self._process(job, self._fetch_image(snapshot.output_url))
        except Exception as exc:
            logger.warning("staging_postprocess_failed", staging_request_id=job.request_id, error=str(exc))
            self.fail(job, str(exc) or f"{job.label} post-processing failed")
            return

        path = build_artifact_path(
            user_id=job.user_id,
            request_id=job.request_id,
            kind=job.tier,
            job_id=job.job_id,
            extension=processed.extension,
        )
        try:
            self._blob_store.upload(processed.content, path, processed.mime_type)
            signed = (
                self._blob_store.signed_url(path, self._settings.preview_url_ttl_seconds)
                if job.tier == TIER_PREVIEW
                else None
            )
        except StorageError as exc:
            self._discard_blob(path)
            self.fail(job, str(exc))
            return

        replaced_path: Optional[str] = None
        recipient: Optional[tuple[str, Optional[str], str, str]] = None
        with session_scope(self._session_factory) as session:
            moved = transition_request(
                session,
                request_id=job.request_id,
                expected_status=generating_state_for(job.tier),
                values={"status": ready_state_for(job.tier), "error_message": None},
                conditions=(job_column(job.tier) == job.job_id,),
            )
            if not moved:
                session.rollback()
                logger.info("staging_result_superseded", staging_request_id=job.request_id, job_id=job.job_id)
                self._discard_blob(path)
                return

            existing = get_output(session, job.request_id, job.tier)
            if existing is not None:
                if existing.storage_path != path:
                    replaced_path = existing.storage_path
                session.delete(existing)
                session.flush()

            session.add(
                StagingOutput(
                    request_id=job.request_id,
                    output_type=job.tier,
                    storage_path=path,
                    url=signed.url if signed is not None else None,
                    mime_type=processed.mime_type,
                    width=processed.width,
                    height=processed.height,
                    watermarked=job.tier == TIER_PREVIEW,
                    file_size_bytes=processed.size_bytes,
                    expires_at=signed.expires_at if signed is not None else None,
                )
            )

            request = get_request(session, job.request_id)
            if job.tier == TIER_HD and request is not None:
                set_project_status(session, project_id=request.project_id, status=PROJECT_COMPLETED)
                profile = session.get(Profile, request.user_id)
                project = session.get(Project, request.project_id)
                if profile is not None and project is not None:
                    recipient = (profile.email, profile.full_name, project.id, project.name)

            audit.record_audit(
                session,
                event=audit.PREVIEW_READY if job.tier == TIER_PREVIEW else audit.HD_READY,
                user_id=job.user_id,
                resource_id=job.request_id,
                metadata={
                    "job_id": job.job_id,
                    "width": processed.width,
                    "height": processed.height,
                    "completed_at": now_utc().isoformat(),
                },
            )
            session.commit()

        record_staging_transition(tier=job.tier, status="ready")
        logger.info(
            "staging_result_stored",
            staging_request_id=job.request_id,
            tier=job.tier,
            width=processed.width,
            height=processed.height,
        )

        if replaced_path:
            self._discard_blob(replaced_path)
        if recipient is not None:
            self._notify(job, *recipient)

    def _notify(self, job: ReconciliationJob, email: str, name: Optional[str], project_id: str, project_name: str) -> None:
        try:
            self._notifier.staging_completed(
                email=email,
                name=name,
                project_id=project_id,
                project_name=project_name,
            )
        except Exception as exc:
            logger.warning("staging_notification_failed", staging_request_id=job.request_id, error=str(exc))

    def fail(self, job: ReconciliationJob, message: str) -> bool:
        """Record a failure if this job still owns the request; HD failures are refunded."""

        generating = generating_state_for(job.tier)
        owned = (job_column(job.tier) == job.job_id,)
        values = {"status": FAILED, "error_message": message}

        with session_scope(self._session_factory) as session:
            if job.tier == TIER_HD and refund_hd_credit(
                session,
                request_id=job.request_id,
                expected_status=generating,
                values=values,
                conditions=owned,
                project_status=PROJECT_FAILED,
                reason="HD generation failed",
            ):
                failed = True
            else:
                failed = transition_request(
                    session,
                    request_id=job.request_id,
                    expected_status=generating,
                    values=values,
                    conditions=owned,
                )
                if failed:
                    request = get_request(session, job.request_id)
                    if request is not None:
                        set_project_status(session, project_id=request.project_id, status=PROJECT_FAILED)
                    session.commit()
                else:
                    session.rollback()

            if failed:
                audit.record_audit(
                    session,
                    event=audit.STAGING_FAILED,
                    user_id=job.user_id,
                    resource_id=job.request_id,
                    metadata={"tier": job.tier, "job_id": job.job_id, "error": message},
                )
                session.commit()

        if failed:
            record_staging_transition(tier=job.tier, status="failed")
            logger.warning("staging_loop_failed", staging_request_id=job.request_id, tier=job.tier, error=message)
        else:
            logger.info("staging_failure_superseded", staging_request_id=job.request_id, tier=job.tier)
        return failed


class ThreadPoolReconciliationDispatcher:
    """Bounded worker pool; jobs beyond ``max_workers`` wait in the executor queue.

    A queued HD job does not heartbeat, so the backlog is logged when it
    builds up.
    """

    def __init__(self, reconciler: Reconciler, *, max_workers: int = 16) -> None:
        self._reconciler = reconciler
        self._max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="staging_reconciler")
        self._lock = threading.Lock()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def dispatch(self, job: ReconciliationJob) -> None:
        with self._lock:
            self._in_flight += 1
            in_flight = self._in_flight
        if in_flight > self._max_workers:
            logger.warning(
                "staging_reconciler_backlog",
                staging_request_id=job.request_id,
                tier=job.tier,
                in_flight=in_flight,
                max_workers=self._max_workers,
            )
        self._executor.submit(self._run_in_worker, job)

    def _run_in_worker(self, job: ReconciliationJob) -> None:
        bind_job_context(staging_request_id=job.request_id, job_id=job.job_id, tier=job.tier, user_id=job.user_id)
        try:
            run_guarded(self._reconciler, job)
        finally:
            clear_request_context()
            with self._lock:
                self._in_flight -= 1

    def shutdown(self, *, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)


class InlineReconciliationDispatcher:
    """Runs the loop on the calling thread; for scripts and tests."""

    def __init__(self, reconciler: Reconciler) -> None:
        self._reconciler = reconciler

    def dispatch(self, job: ReconciliationJob) -> None:
        run_guarded(self._reconciler, job)


def run_guarded(reconciler: Reconciler, job: ReconciliationJob) -> None:
    try:
        reconciler.run(job)
    except Exception as exc:
        logger.exception("staging_loop_crashed", staging_request_id=job.request_id, tier=job.tier)
        try:
            reconciler.fail(job, f"{job.label} generation failed: {exc}")
        except Exception:
            logger.exception("staging_loop_fail_write_failed", staging_request_id=job.request_id)


@lru_cache(maxsize=1)
def get_dispatcher() -> ThreadPoolReconciliationDispatcher:
    settings = get_settings()
    reconciler = Reconciler(
        session_factory=get_session_factory(),
        job_backend=get_job_backend(),
        blob_store=get_blob_store(),
        notifier=get_notifier(),
        settings=settings,
    )
    return ThreadPoolReconciliationDispatcher(reconciler, max_workers=settings.reconciler_max_workers)


def shutdown_dispatcher() -> None:
    if get_dispatcher.cache_info().currsize:
        get_dispatcher().shutdown(wait=False)
        get_dispatcher.cache_clear()
