from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from src.billing.ledger import get_balance, verify_ledger
from src.core.rate_limit import DatabaseRegenRateLimiter
from src.staging import service
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
    UpstreamJobError,
)
from src.staging.repository import get_output, get_request, transition_request
from src.staging.states import (
    ALLOWED_TRANSITIONS,
    APPROVED,
    FAILED,
    HD_GENERATING,
    HD_READY,
    PREVIEW_GENERATING,
    PREVIEW_READY,
    TERMINAL_STATES,
    can_transition,
)
from src.storage.models import AuditLog, CreditTransaction, Project, RateLimitWindow, StagingOutput, StagingRequest
from tests.conftest import seed_account


IMAGE_URL = "https://images.example.com/room.jpg"


def _preview(session, job_backend, dispatcher, *, style: str = "modern", user_id: str = "user-1"):
    return service.request_preview(
        session,
        project_id="project-1",
        image_url=IMAGE_URL,
        style=style,
        user_id=user_id,
        job_backend=job_backend,
        dispatcher=dispatcher,
    )


def _mark_preview_ready(session, request_id: str, *, expires_in: int = 3600, path: str = "user-1/r/preview-job.jpg"):
    assert transition_request(
        session,
        request_id=request_id,
        expected_status=PREVIEW_GENERATING,
        values={"status": PREVIEW_READY},
    )
    session.add(
        StagingOutput(
            request_id=request_id,
            output_type="preview",
            storage_path=path,
            url=f"memory://{path}",
            mime_type="image/jpeg",
            width=1024,
            height=768,
            watermarked=True,
            file_size_bytes=1000,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )
    )
    session.commit()


def _approved_request(session, job_backend, dispatcher) -> str:
    submission = _preview(session, job_backend, dispatcher)
    _mark_preview_ready(session, submission.request_id)
    service.approve(session, request_id=submission.request_id, user_id="user-1")
    return submission.request_id


def _generate_hd(session, request_id, job_backend, dispatcher, user_id: str = "user-1"):
    return service.generate_hd(
        session,
        request_id=request_id,
        user_id=user_id,
        job_backend=job_backend,
        dispatcher=dispatcher,
    )


def test_transition_graph_is_monotonic() -> None:
    assert can_transition(PREVIEW_READY, APPROVED)
    assert can_transition(FAILED, PREVIEW_GENERATING)
    assert not can_transition(APPROVED, PREVIEW_GENERATING)
    assert not can_transition(HD_READY, FAILED)
    assert ALLOWED_TRANSITIONS[HD_READY] == frozenset()
    assert TERMINAL_STATES == frozenset({HD_READY, FAILED})
    for state, targets in ALLOWED_TRANSITIONS.items():
        if state != HD_READY:
            assert FAILED in targets or state == FAILED


def test_request_preview_creates_request_and_dispatches(session, job_backend, dispatcher) -> None:
    seed_account(session)

    submission = _preview(session, job_backend, dispatcher)

    assert submission.created is True
    assert submission.status == PREVIEW_GENERATING
    request = get_request(session, submission.request_id)
    assert request.preview_job_id == "job-1"
    assert request.options_hash
    assert session.scalar(select(Project.status).where(Project.id == "project-1")) == "processing"
    assert job_backend.submissions[0]["tier"] == "preview"
    assert [job.job_id for job in dispatcher.jobs] == ["job-1"]
    assert session.scalar(select(AuditLog.event).where(AuditLog.resource_id == submission.request_id)) == "preview.queued"


def test_request_preview_is_idempotent_per_project_and_style(session, job_backend, dispatcher) -> None:
    seed_account(session)

    first = _preview(session, job_backend, dispatcher)
    second = _preview(session, job_backend, dispatcher)
    other_style = _preview(session, job_backend, dispatcher, style="luxury")

    assert second.created is False
    assert second.request_id == first.request_id
    assert second.message == "Existing request returned"
    assert other_style.request_id != first.request_id
    assert len(job_backend.submissions) == 2
    assert session.scalar(select(func.count()).select_from(StagingRequest)) == 2


def test_request_preview_checks_project_ownership(session, job_backend, dispatcher) -> None:
    seed_account(session)
    seed_account(session, user_id="user-2", project_id=None)

    with pytest.raises(OwnershipError) as not_owner:
        _preview(session, job_backend, dispatcher, user_id="user-2")
    assert not_owner.value.status_code == 403

    with pytest.raises(OwnershipError):
        service.request_preview(
            session,
            project_id="missing-project",
            image_url=IMAGE_URL,
            style="modern",
            user_id="user-1",
            job_backend=job_backend,
            dispatcher=dispatcher,
        )
    assert job_backend.submissions == []


def test_request_preview_validates_style_and_url(session, job_backend, dispatcher) -> None:
    seed_account(session)

    with pytest.raises(StagingValidationError):
        _preview(session, job_backend, dispatcher, style="spaceship")
    with pytest.raises(StagingValidationError):
        service.request_preview(
            session,
            project_id="project-1",
            image_url="ftp://images.example.com/room.jpg",
            style="modern",
            user_id="user-1",
            job_backend=job_backend,
            dispatcher=dispatcher,
        )


def test_preview_submit_failure_marks_request_and_project_failed(session, job_backend, dispatcher) -> None:
    seed_account(session)
    job_backend.submit_error = "replicate_request_failed status=500"

    with pytest.raises(UpstreamJobError) as excinfo:
        _preview(session, job_backend, dispatcher)

    assert excinfo.value.status_code == 502
    request = session.scalar(select(StagingRequest))
    session.refresh(request)
    assert request.status == FAILED
    assert request.error_message == "AI generation failed"
    assert session.scalar(select(Project.status).where(Project.id == "project-1")) == "failed"
    assert dispatcher.jobs == []


def test_foreign_or_missing_requests_look_missing(session, job_backend, dispatcher, blob_store) -> None:
    seed_account(session)
    submission = _preview(session, job_backend, dispatcher)

    with pytest.raises(RequestNotFoundError):
        service.get_status(session, request_id=submission.request_id, user_id="intruder", blob_store=blob_store)
    with pytest.raises(RequestNotFoundError):
        service.approve(session, request_id="no-such-request", user_id="user-1")


def test_approve_only_from_preview_ready(session, job_backend, dispatcher) -> None:
    seed_account(session)
    submission = _preview(session, job_backend, dispatcher)

    with pytest.raises(InvalidTransitionError) as early:
        service.approve(session, request_id=submission.request_id, user_id="user-1")
    assert early.value.current == PREVIEW_GENERATING
    assert early.value.attempted == APPROVED

    _mark_preview_ready(session, submission.request_id)
    result = service.approve(session, request_id=submission.request_id, user_id="user-1")
    assert result.status == APPROVED
    request = get_request(session, submission.request_id)
    assert request.approved_by == "user-1"
    assert request.approved_at is not None

    with pytest.raises(InvalidTransitionError):
        service.approve(session, request_id=submission.request_id, user_id="user-1")


def test_regenerate_replaces_preview_and_counts(session, job_backend, dispatcher, blob_store) -> None:
    seed_account(session)
    submission = _preview(session, job_backend, dispatcher)
    _mark_preview_ready(session, submission.request_id, path="user-1/r/preview-job-1.jpg")
    blob_store.blobs["user-1/r/preview-job-1.jpg"] = b"old"

    result = service.regenerate(
        session,
        request_id=submission.request_id,
        user_id="user-1",
        job_backend=job_backend,
        dispatcher=dispatcher,
        rate_limiter=DatabaseRegenRateLimiter(max_per_window=10, window_seconds=3600),
        blob_store=blob_store,
    )

    assert result.status == PREVIEW_GENERATING
    assert result.regen_count == 1
    assert result.regen_remaining == 9
    request = get_request(session, submission.request_id)
    assert request.preview_job_id == "job-2"
    assert request.error_message is None
    assert get_output(session, submission.request_id, "preview") is None
    assert blob_store.deleted == ["user-1/r/preview-job-1.jpg"]
    assert [job.job_id for job in dispatcher.jobs] == ["job-1", "job-2"]


def test_regenerate_is_closed_after_approval(session, job_backend, dispatcher, blob_store) -> None:
    seed_account(session)
    request_id = _approved_request(session, job_backend, dispatcher)

    with pytest.raises(InvalidTransitionError) as excinfo:
        service.regenerate(
            session,
            request_id=request_id,
            user_id="user-1",
            job_backend=job_backend,
            dispatcher=dispatcher,
            rate_limiter=DatabaseRegenRateLimiter(max_per_window=10, window_seconds=3600),
            blob_store=blob_store,
        )

    assert excinfo.value.status_code == 409
    assert excinfo.value.current == APPROVED
    assert excinfo.value.attempted == PREVIEW_GENERATING


def test_regenerate_rate_limit_leaves_state_untouched(session, job_backend, dispatcher, blob_store) -> None:
    seed_account(session)
    submission = _preview(session, job_backend, dispatcher)
    limiter = DatabaseRegenRateLimiter(max_per_window=10, window_seconds=3600)

    for _ in range(10):
        request = get_request(session, submission.request_id)
        _mark_preview_ready(session, submission.request_id, path=f"user-1/r/preview-{request.preview_job_id}.jpg")
        service.regenerate(
            session,
            request_id=submission.request_id,
            user_id="user-1",
            job_backend=job_backend,
            dispatcher=dispatcher,
            rate_limiter=limiter,
            blob_store=blob_store,
        )

    _mark_preview_ready(session, submission.request_id, path="user-1/r/preview-final.jpg")
    with pytest.raises(RateLimitError) as excinfo:
        service.regenerate(
            session,
            request_id=submission.request_id,
            user_id="user-1",
            job_backend=job_backend,
            dispatcher=dispatcher,
            rate_limiter=limiter,
            blob_store=blob_store,
        )

    assert excinfo.value.retry_after_ms == 3_600_000
    assert excinfo.value.status_code == 429
    request = get_request(session, submission.request_id)
    assert request.status == PREVIEW_READY
    assert request.regen_count == 10
    assert get_output(session, submission.request_id, "preview") is not None


def test_generate_hd_requires_approval(session, job_backend, dispatcher) -> None:
    seed_account(session)
    submission = _preview(session, job_backend, dispatcher)
    _mark_preview_ready(session, submission.request_id)

    with pytest.raises(PreviewNotApprovedError) as excinfo:
        _generate_hd(session, submission.request_id, job_backend, dispatcher)

    assert excinfo.value.status_code == 403
    assert session.scalar(select(func.count()).select_from(CreditTransaction).where(CreditTransaction.amount < 0)) == 0


def test_generate_hd_without_credits_is_rejected_without_ledger_rows(session, job_backend, dispatcher) -> None:
    seed_account(session, credits=0)
    request_id = _approved_request(session, job_backend, dispatcher)

    with pytest.raises(InsufficientCreditsError) as excinfo:
        _generate_hd(session, request_id, job_backend, dispatcher)

    assert excinfo.value.status_code == 402
    assert session.scalar(select(func.count()).select_from(CreditTransaction)) == 0
    assert get_request(session, request_id).status == APPROVED


def test_generate_hd_debits_once_and_is_idempotent(session, job_backend, dispatcher) -> None:
    seed_account(session, credits=3)
    request_id = _approved_request(session, job_backend, dispatcher)

    first = _generate_hd(session, request_id, job_backend, dispatcher)
    second = _generate_hd(session, request_id, job_backend, dispatcher)

    assert first.queued is True
    assert first.status == HD_GENERATING
    assert first.credits_remaining == 2
    assert second.queued is False
    assert second.message == "HD already queued"
    assert second.credits_remaining == 2

    request = get_request(session, request_id)
    assert request.hd_credit_deducted is True
    assert request.hd_job_id == "job-2"
    debits = session.scalars(
        select(CreditTransaction).where(CreditTransaction.request_id == request_id, CreditTransaction.amount < 0)
    ).all()
    assert [row.amount for row in debits] == [-1]
    assert [job.tier for job in dispatcher.jobs] == ["preview", "hd"]
    assert verify_ledger(session, "user-1").consistent


def test_second_claim_loses_and_does_not_debit(session, job_backend, dispatcher) -> None:
    seed_account(session, credits=3)
    request_id = _approved_request(session, job_backend, dispatcher)

    winner = service.claim_hd_credit(session, request_id=request_id, user_id="user-1", project_id="project-1", amount=1)
    session.commit()
    loser = service.claim_hd_credit(session, request_id=request_id, user_id="user-1", project_id="project-1", amount=1)

    assert winner is not None
    assert loser is None
    assert get_balance(session, "user-1") == 2


def test_transition_request_rejects_edges_outside_the_graph(session, job_backend, dispatcher) -> None:
    seed_account(session)
    request_id = _approved_request(session, job_backend, dispatcher)

    with pytest.raises(InvalidTransitionError) as excinfo:
        transition_request(
            session,
            request_id=request_id,
            expected_status=APPROVED,
            values={"status": PREVIEW_GENERATING},
        )

    assert excinfo.value.current == APPROVED
    assert excinfo.value.attempted == PREVIEW_GENERATING
    session.rollback()
    assert get_request(session, request_id).status == APPROVED

    with pytest.raises(InvalidTransitionError):
        transition_request(session, request_id=request_id, expected_status=HD_READY, values={"status": FAILED})


def test_regenerate_failed_request_conflicts_with_newer_active_request(
    session, job_backend, dispatcher, blob_store
) -> None:
    seed_account(session)
    job_backend.submit_error = "replicate_request_failed status=500"
    with pytest.raises(UpstreamJobError):
        _preview(session, job_backend, dispatcher)
    failed_id = session.scalar(select(StagingRequest.id).where(StagingRequest.status == FAILED))

    job_backend.submit_error = None
    newer = _preview(session, job_backend, dispatcher)
    assert newer.created is True

    with pytest.raises(ConflictError):
        service.regenerate(
            session,
            request_id=failed_id,
            user_id="user-1",
            job_backend=job_backend,
            dispatcher=dispatcher,
            rate_limiter=DatabaseRegenRateLimiter(max_per_window=10, window_seconds=3600),
            blob_store=blob_store,
        )

    assert get_request(session, failed_id).status == FAILED
    assert session.scalar(select(func.count()).select_from(RateLimitWindow)) == 0
    assert len(job_backend.submissions) == 1


def test_generate_hd_after_completion_reports_already_generated(session, job_backend, dispatcher) -> None:
    seed_account(session, credits=2)
    request_id = _approved_request(session, job_backend, dispatcher)
    _generate_hd(session, request_id, job_backend, dispatcher)
    assert transition_request(session, request_id=request_id, expected_status=HD_GENERATING, values={"status": HD_READY})
    session.commit()

    again = _generate_hd(session, request_id, job_backend, dispatcher)

    assert again.queued is False
    assert again.status == HD_READY
    assert again.message == "HD already generated"
    assert again.credits_remaining == 1
    assert [job.tier for job in dispatcher.jobs] == ["preview", "hd"]


def test_hd_submit_failure_refunds_and_reverts(session, job_backend, dispatcher) -> None:
    seed_account(session, credits=1)
    request_id = _approved_request(session, job_backend, dispatcher)
    job_backend.submit_error = "replicate_transport_error detail=timeout"

    with pytest.raises(UpstreamJobError):
        _generate_hd(session, request_id, job_backend, dispatcher)

    request = get_request(session, request_id)
    assert request.status == APPROVED
    assert request.hd_credit_deducted is False
    assert request.hd_job_id is None
    assert get_balance(session, "user-1") == 1
    amounts = sorted(
        row.amount for row in session.scalars(select(CreditTransaction).where(CreditTransaction.request_id == request_id))
    )
    assert amounts == [-1, 1]
    assert verify_ledger(session, "user-1").consistent


def test_download_is_gated_on_paid_hd_ready(session, job_backend, dispatcher, blob_store) -> None:
    seed_account(session, credits=1)
    request_id = _approved_request(session, job_backend, dispatcher)

    with pytest.raises(DownloadForbiddenError):
        service.download_hd(session, request_id=request_id, user_id="user-1", blob_store=blob_store)

    _generate_hd(session, request_id, job_backend, dispatcher)
    assert transition_request(session, request_id=request_id, expected_status=HD_GENERATING, values={"status": HD_READY})
    session.add(
        StagingOutput(
            request_id=request_id,
            output_type="hd",
            storage_path="user-1/r/hd-job-2.png",
            url=None,
            mime_type="image/png",
            width=2048,
            height=1536,
            watermarked=False,
            file_size_bytes=123456,
        )
    )
    session.commit()

    download = service.download_hd(session, request_id=request_id, user_id="user-1", blob_store=blob_store)

    assert download.expires_in == 604800
    assert download.download_url.startswith("memory://user-1/r/hd-job-2.png")
    assert (download.width, download.height, download.file_size_bytes) == (2048, 1536, 123456)
    assert blob_store.signed[-1] == ("user-1/r/hd-job-2.png", 604800)


def test_status_refreshes_preview_url_near_expiry(session, job_backend, dispatcher, blob_store) -> None:
    seed_account(session)
    submission = _preview(session, job_backend, dispatcher)
    _mark_preview_ready(session, submission.request_id, expires_in=120)

    view = service.get_status(session, request_id=submission.request_id, user_id="user-1", blob_store=blob_store)

    assert view.status == PREVIEW_READY
    assert view.preview is not None
    assert view.preview.url.startswith("memory://user-1/r/preview-job.jpg?ttl=3600")
    assert view.hd.ready is False
    stored = get_output(session, submission.request_id, "preview")
    assert stored.url == view.preview.url

    again = service.get_status(session, request_id=submission.request_id, user_id="user-1", blob_store=blob_store)
    assert again.preview.url == view.preview.url
    assert len(blob_store.signed) == 1


def test_status_keeps_stale_url_when_refresh_fails(session, job_backend, dispatcher, blob_store) -> None:
    seed_account(session)
    submission = _preview(session, job_backend, dispatcher)
    _mark_preview_ready(session, submission.request_id, expires_in=60)
    blob_store.fail_signing = True

    view = service.get_status(session, request_id=submission.request_id, user_id="user-1", blob_store=blob_store)

    assert view.preview.url == "memory://user-1/r/preview-job.jpg"
