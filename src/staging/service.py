"""Client-facing staging operations: preview, regenerate, approve, HD, download.

Each operation re-reads the request, checks ownership, and moves it through
``transition_request`` so that a concurrent writer makes the loser fail
cleanly instead of overwriting. Job submission always happens after the
state change is committed; a rejected submission is compensated.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
import re

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.billing.ledger import LedgerEntry, debit_credits, get_balance
from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.metrics import record_credit_debit, record_rate_limit_block, record_staging_transition
from src.core.rate_limit import RegenRateLimiter
from src.staging import audit
from src.staging.errors import (
    ConflictError,
    DownloadForbiddenError,
    InsufficientCreditsError,
    InvalidTransitionError,
    OwnershipError,
    PreviewNotApprovedError,
    RateLimitError,
    RequestNotFoundError,
    StagingValidationError,
    StorageError,
    UpstreamJobError,
)
from src.staging.providers import JobBackend, JobBackendError
from src.staging.reconciler import ReconciliationDispatcher, ReconciliationJob
from src.staging.refunds import refund_hd_credit
from src.staging.repository import (
    as_utc,
    get_output,
    get_request,
    now_utc,
    set_project_status,
    transition_request,
)
from src.staging.states import (
    APPROVED,
    FAILED,
    HD_GENERATING,
    HD_READY,
    PREVIEW_GENERATING,
    PREVIEW_READY,
    PROJECT_FAILED,
    PROJECT_PROCESSING,
    REGENERABLE_STATES,
    TERMINAL_STATES,
    TIER_HD,
    TIER_PREVIEW,
)
from src.staging.styles import is_known_style, options_fingerprint
from src.storage.blob_store import BlobStore
from src.storage.models import Project, StagingOutput, StagingRequest


logger = get_logger("snapstage.staging")

_IMAGE_URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)

SUBMIT_FAILED_MESSAGE = "AI generation failed"


@dataclass(frozen=True)
class PreviewSubmission:
    request_id: str
    status: str
    created: bool
    message: str


@dataclass(frozen=True)
class PreviewView:
    url: Optional[str]
    width: Optional[int]
    height: Optional[int]
    expires_at: Optional[datetime]


@dataclass(frozen=True)
class HdView:
    ready: bool
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class StatusView:
    request_id: str
    project_id: str
    status: str
    style: str
    approved_at: Optional[datetime]
    error_message: Optional[str]
    regen_count: int
    hd_credit_deducted: bool
    preview: Optional[PreviewView]
    hd: HdView
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RegenerationResult:
    request_id: str
    status: str
    regen_count: int
    regen_remaining: int


@dataclass(frozen=True)
class ApprovalResult:
    request_id: str
    status: str
    approved_at: Optional[datetime]


@dataclass(frozen=True)
class HdSubmission:
    request_id: str
    status: str
    queued: bool
    message: str
    credits_remaining: Optional[int] = None


@dataclass(frozen=True)
class HdDownload:
    request_id: str
    download_url: str
    width: Optional[int]
    height: Optional[int]
    file_size_bytes: Optional[int]
    expires_in: int


def _owned_request(session: Session, *, request_id: str, user_id: str) -> StagingRequest:
    request = get_request(session, request_id)
    # Foreign requests look missing so ids cannot be enumerated.
    if request is None or request.user_id != user_id:
        raise RequestNotFoundError()
    return request


def _validate_preview_input(*, image_url: str, style: str) -> None:
    if not is_known_style(style):
        raise StagingValidationError(f"Unknown style: {style}")
    if not _IMAGE_URL_PATTERN.match((image_url or "").strip()):
        raise StagingValidationError("image_url must be an absolute http(s) URL")


def _find_active_request(session: Session, *, project_id: str, options_hash: str) -> Optional[StagingRequest]:
    return session.scalar(
        select(StagingRequest)
        .where(
            StagingRequest.project_id == project_id,
            StagingRequest.options_hash == options_hash,
            StagingRequest.status.not_in(TERMINAL_STATES),
        )
        .order_by(StagingRequest.created_at.desc())
        .limit(1)
    )


def _existing_submission(existing: StagingRequest) -> PreviewSubmission:
    logger.info("staging_preview_reused", staging_request_id=existing.id, status=existing.status)
    return PreviewSubmission(
        request_id=existing.id,
        status=existing.status,
        created=False,
        message="Existing request returned",
    )


def _fail_submission(session: Session, *, request: StagingRequest, tier: str, error: str) -> None:
    moved = transition_request(
        session,
        request_id=request.id,
        expected_status=PREVIEW_GENERATING,
        values={"status": FAILED, "error_message": SUBMIT_FAILED_MESSAGE},
        conditions=(StagingRequest.preview_job_id.is_(None),),
    )
    if moved:
        set_project_status(session, project_id=request.project_id, status=PROJECT_FAILED)
        audit.record_audit(
            session,
            event=audit.STAGING_FAILED,
            user_id=request.user_id,
            resource_id=request.id,
            metadata={"tier": tier, "error": error},
        )
    session.commit()
    if moved:
        record_staging_transition(tier=tier, status="failed")


def _submit_preview(
    session: Session,
    *,
    request: StagingRequest,
    job_backend: JobBackend,
    dispatcher: ReconciliationDispatcher,
) -> str:
    """Submit the preview job for a committed ``preview_generating`` row and start its loop."""

    try:
        handle = job_backend.submit(image_url=request.original_image_url, style=request.style, tier=TIER_PREVIEW)
    except JobBackendError as exc:
        logger.warning("staging_preview_submit_failed", staging_request_id=request.id, error=str(exc))
        _fail_submission(session, request=request, tier=TIER_PREVIEW, error=str(exc))
        raise UpstreamJobError(SUBMIT_FAILED_MESSAGE) from exc

    attached = transition_request(
        session,
        request_id=request.id,
        expected_status=PREVIEW_GENERATING,
        values={"preview_job_id": handle.job_id},
        conditions=(StagingRequest.preview_job_id.is_(None),),
    )
    if not attached:
        session.rollback()
        raise ConflictError()

    audit.record_audit(
        session,
        event=audit.PREVIEW_QUEUED,
        user_id=request.user_id,
        resource_id=request.id,
        metadata={"job_id": handle.job_id, "style": request.style, "regen_count": request.regen_count},
    )
    session.commit()
    record_staging_transition(tier=TIER_PREVIEW, status="queued")

    dispatcher.dispatch(
        ReconciliationJob(request_id=request.id, job_id=handle.job_id, user_id=request.user_id, tier=TIER_PREVIEW)
    )
    return handle.job_id


def request_preview(
    session: Session,
    *,
    project_id: str,
    image_url: str,
    style: str,
    user_id: str,
    job_backend: JobBackend,
    dispatcher: ReconciliationDispatcher,
) -> PreviewSubmission:
    _validate_preview_input(image_url=image_url, style=style)
    options_hash = options_fingerprint(style)

    existing = _find_active_request(session, project_id=project_id, options_hash=options_hash)
    if existing is not None and existing.user_id == user_id:
        return _existing_submission(existing)

    project = session.get(Project, project_id)
    if project is None or project.user_id != user_id:
        raise OwnershipError("Project not found or not owned by user")

    request = StagingRequest(
        user_id=user_id,
        project_id=project_id,
        style=style,
        original_image_url=image_url.strip(),
        options_hash=options_hash,
        status=PREVIEW_GENERATING,
    )
    session.add(request)
    try:
        session.flush()
    except IntegrityError:
        # A concurrent caller inserted the active row first.
        session.rollback()
        existing = _find_active_request(session, project_id=project_id, options_hash=options_hash)
        if existing is not None and existing.user_id == user_id:
            return _existing_submission(existing)
        raise ConflictError()
    set_project_status(session, project_id=project_id, status=PROJECT_PROCESSING)
    session.commit()

    _submit_preview(session, request=request, job_backend=job_backend, dispatcher=dispatcher)
    logger.info("staging_preview_queued", staging_request_id=request.id, project_id=project_id, style=style)
    return PreviewSubmission(
        request_id=request.id,
        status=PREVIEW_GENERATING,
        created=True,
        message="Preview generation started",
    )


def _refresh_preview_url(session: Session, *, output: StagingOutput, blob_store: BlobStore) -> PreviewView:
    settings = get_settings()
    view = PreviewView(
        url=output.url,
        width=output.width,
        height=output.height,
        expires_at=as_utc(output.expires_at),
    )
    threshold = now_utc() + timedelta(seconds=settings.preview_url_refresh_seconds)
    if view.expires_at is not None and view.expires_at > threshold:
        return view

    try:
        signed = blob_store.signed_url(output.storage_path, settings.preview_url_ttl_seconds)
    except StorageError as exc:
        logger.warning("staging_preview_url_refresh_failed", output_id=output.id, error=str(exc))
        return view

    session.execute(
        update(StagingOutput)
        .where(StagingOutput.id == output.id, StagingOutput.storage_path == output.storage_path)
        .values(url=signed.url, expires_at=signed.expires_at, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return PreviewView(url=signed.url, width=output.width, height=output.height, expires_at=signed.expires_at)


def get_status(session: Session, *, request_id: str, user_id: str, blob_store: BlobStore) -> StatusView:
    request = _owned_request(session, request_id=request_id, user_id=user_id)

    preview: Optional[PreviewView] = None
    preview_output = get_output(session, request.id, TIER_PREVIEW)
    if preview_output is not None:
        preview = _refresh_preview_url(session, output=preview_output, blob_store=blob_store)

    hd_output = get_output(session, request.id, TIER_HD)
    hd = HdView(ready=False)
    if hd_output is not None and request.status == HD_READY:
        hd = HdView(ready=True, width=hd_output.width, height=hd_output.height)

    return StatusView(
        request_id=request.id,
        project_id=request.project_id,
        status=request.status,
        style=request.style,
        approved_at=as_utc(request.approved_at),
        error_message=request.error_message,
        regen_count=request.regen_count,
        hd_credit_deducted=request.hd_credit_deducted,
        preview=preview,
        hd=hd,
        created_at=as_utc(request.created_at),
        updated_at=as_utc(request.updated_at),
    )


def regenerate(
    session: Session,
    *,
    request_id: str,
    user_id: str,
    job_backend: JobBackend,
    dispatcher: ReconciliationDispatcher,
    rate_limiter: RegenRateLimiter,
    blob_store: BlobStore,
) -> RegenerationResult:
    request = _owned_request(session, request_id=request_id, user_id=user_id)
    current = request.status
    if current not in REGENERABLE_STATES or request.approved_at is not None:
        raise InvalidTransitionError(current, PREVIEW_GENERATING)

    decision = rate_limiter.consume(session, user_id=user_id)
    if not decision.allowed:
        session.rollback()
        record_rate_limit_block(kind="regenerate")
        logger.info("staging_regen_rate_limited", staging_request_id=request_id, retry_after_ms=decision.retry_after_ms)
        raise RateLimitError(decision.retry_after_ms)

    try:
        moved = transition_request(
            session,
            request_id=request_id,
            expected_status=current,
            values={
                "status": PREVIEW_GENERATING,
                "regen_count": StagingRequest.regen_count + 1,
                "error_message": None,
                "preview_job_id": None,
            },
            conditions=(StagingRequest.approved_at.is_(None),),
        )
    except IntegrityError:
        # A newer active request for the same project and style exists.
        moved = False
    if not moved:
        session.rollback()
        raise ConflictError()

    stale_path: Optional[str] = None
    previous = get_output(session, request_id, TIER_PREVIEW)
    if previous is not None:
        stale_path = previous.storage_path
        session.delete(previous)
    set_project_status(session, project_id=request.project_id, status=PROJECT_PROCESSING)

    request = get_request(session, request_id)
    audit.record_audit(
        session,
        event=audit.PREVIEW_REGENERATED,
        user_id=user_id,
        resource_id=request_id,
        metadata={"regen_count": request.regen_count, "previous_status": current},
    )
    session.commit()

    if stale_path:
        try:
            blob_store.delete(stale_path)
        except StorageError as exc:
            logger.warning("staging_blob_cleanup_failed", path=stale_path, error=str(exc))

    _submit_preview(session, request=request, job_backend=job_backend, dispatcher=dispatcher)
    logger.info("staging_preview_regenerated", staging_request_id=request_id, regen_count=request.regen_count)
    return RegenerationResult(
        request_id=request_id,
        status=PREVIEW_GENERATING,
        regen_count=request.regen_count,
        regen_remaining=decision.remaining,
    )


def approve(session: Session, *, request_id: str, user_id: str) -> ApprovalResult:
    request = _owned_request(session, request_id=request_id, user_id=user_id)
    if request.status != PREVIEW_READY:
        raise InvalidTransitionError(request.status, APPROVED)

    approved_at = now_utc()
    moved = transition_request(
        session,
        request_id=request_id,
        expected_status=PREVIEW_READY,
        values={"status": APPROVED, "approved_at": approved_at, "approved_by": user_id},
        conditions=(StagingRequest.approved_at.is_(None),),
    )
    if not moved:
        session.rollback()
        raise ConflictError()

    audit.record_audit(session, event=audit.PREVIEW_APPROVED, user_id=user_id, resource_id=request_id)
    session.commit()
    logger.info("staging_preview_approved", staging_request_id=request_id)
    return ApprovalResult(request_id=request_id, status=APPROVED, approved_at=approved_at)


def claim_hd_credit(
    session: Session,
    *,
    request_id: str,
    user_id: str,
    project_id: str,
    amount: int,
) -> Optional[LedgerEntry]:
    """Move ``approved -> hd_generating`` and debit in the caller's transaction.

    Returns None when another caller already claimed the request. On a ledger
    failure the claim is rolled back and the error propagates. The caller
    commits.
    """

    claimed = transition_request(
        session,
        request_id=request_id,
        expected_status=APPROVED,
        values={"status": HD_GENERATING, "hd_credit_deducted": True, "hd_job_id": None},
        conditions=(StagingRequest.hd_credit_deducted.is_(False),),
    )
    if not claimed:
        session.rollback()
        return None

    try:
        return debit_credits(
            session,
            user_id=user_id,
            amount=amount,
            description="HD staging render",
            request_id=request_id,
            project_id=project_id,
        )
    except (ConflictError, InsufficientCreditsError):
        session.rollback()
        raise


def _already_queued(session: Session, request: StagingRequest) -> HdSubmission:
    try:
        balance: Optional[int] = get_balance(session, request.user_id)
    except LookupError:
        balance = None
    return HdSubmission(
        request_id=request.id,
        status=request.status,
        queued=False,
        message="HD already generated" if request.status == HD_READY else "HD already queued",
        credits_remaining=balance,
    )


def generate_hd(
    session: Session,
    *,
    request_id: str,
    user_id: str,
    job_backend: JobBackend,
    dispatcher: ReconciliationDispatcher,
) -> HdSubmission:
    settings = get_settings()
    request = _owned_request(session, request_id=request_id, user_id=user_id)
    if request.hd_credit_deducted and request.approved_at is not None:
        return _already_queued(session, request)
    if request.status != APPROVED:
        raise PreviewNotApprovedError(request.status)

    cost = settings.hd_credit_cost
    try:
        balance = get_balance(session, user_id)
    except LookupError as exc:
        raise InsufficientCreditsError() from exc
    if balance < cost:
        raise InsufficientCreditsError()

    entry = claim_hd_credit(
        session,
        request_id=request_id,
        user_id=user_id,
        project_id=request.project_id,
        amount=cost,
    )
    if entry is None:
        current = get_request(session, request_id)
        if current is not None and current.hd_credit_deducted:
            return _already_queued(session, current)
        raise ConflictError()

    audit.record_audit(
        session,
        event=audit.HD_QUEUED,
        user_id=user_id,
        resource_id=request_id,
        metadata={"credits_charged": cost, "balance_after": entry.balance_after},
    )
    session.commit()
    record_credit_debit(reason="hd_render", amount=cost)

    try:
        handle = job_backend.submit(image_url=request.original_image_url, style=request.style, tier=TIER_HD)
    except JobBackendError as exc:
        logger.warning("staging_hd_submit_failed", staging_request_id=request_id, error=str(exc))
        refund_hd_credit(
            session,
            request_id=request_id,
            expected_status=HD_GENERATING,
            values={"status": APPROVED, "hd_job_id": None},
            reason="HD submission failed",
        )
        raise UpstreamJobError("HD generation could not be started") from exc

    attached = transition_request(
        session,
        request_id=request_id,
        expected_status=HD_GENERATING,
        values={"hd_job_id": handle.job_id},
        conditions=(StagingRequest.hd_job_id.is_(None),),
    )
    if not attached:
        session.rollback()
        raise ConflictError()
    session.commit()
    record_staging_transition(tier=TIER_HD, status="queued")

    dispatcher.dispatch(ReconciliationJob(request_id=request_id, job_id=handle.job_id, user_id=user_id, tier=TIER_HD))
    logger.info(
        "staging_hd_queued",
        staging_request_id=request_id,
        job_id=handle.job_id,
        credits_remaining=entry.balance_after,
    )
    return HdSubmission(
        request_id=request_id,
        status=HD_GENERATING,
        queued=True,
        message="HD generation started",
        credits_remaining=entry.balance_after,
    )


def download_hd(session: Session, *, request_id: str, user_id: str, blob_store: BlobStore) -> HdDownload:
    settings = get_settings()
    request = _owned_request(session, request_id=request_id, user_id=user_id)
    if request.status != HD_READY or not request.hd_credit_deducted:
        raise DownloadForbiddenError("HD download requires a paid, completed HD render")

    output = get_output(session, request_id, TIER_HD)
    if output is None:
        raise DownloadForbiddenError("HD artifact is missing")

    ttl = settings.hd_url_ttl_seconds
    signed = blob_store.signed_url(output.storage_path, ttl)

    audit.record_audit(
        session,
        event=audit.HD_DOWNLOADED,
        user_id=user_id,
        resource_id=request_id,
        metadata={"expires_at": signed.expires_at.isoformat()},
    )
    session.commit()
    return HdDownload(
        request_id=request_id,
        download_url=signed.url,
        width=output.width,
        height=output.height,
        file_size_bytes=output.file_size_bytes,
        expires_in=ttl,
    )
