"""Staging API routes: preview, regenerate, approve, HD, download."""

from __future__ import annotations

from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from src.auth.dependencies import ensure_caller_matches, get_optional_auth_context
from src.auth.jwt import AuthContext
from src.core.rate_limit import RegenRateLimiter, get_regen_rate_limiter
from src.schemas.staging import (
    ApproveResponse,
    GenerateHdResponse,
    HdDownloadResponse,
    HdPayload,
    PreviewCreateRequest,
    PreviewCreateResponse,
    PreviewPayload,
    RegenerateResponse,
    StagingStatusResponse,
    UserActionRequest,
)
from src.staging import service
from src.staging.errors import RateLimitError, StagingError
from src.staging.providers import JobBackend, get_job_backend
from src.staging.reconciler import ReconciliationDispatcher, get_dispatcher
from src.storage.blob_store import BlobStore, get_blob_store
from src.storage.db import get_session


router = APIRouter(prefix="/staging/v2", tags=["staging"])


def _raise_http(exc: StagingError) -> NoReturn:
    if isinstance(exc, RateLimitError):
        retry_after_seconds = max(exc.retry_after_ms // 1000, 1)
        raise HTTPException(
            status_code=exc.status_code,
            detail={"message": exc.message, "retry_after_ms": exc.retry_after_ms},
            headers={"Retry-After": str(retry_after_seconds)},
        ) from exc
    raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post("/preview", response_model=PreviewCreateResponse, status_code=status.HTTP_202_ACCEPTED)
def create_preview(
    payload: PreviewCreateRequest,
    response: Response,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    session: Session = Depends(get_session),
    job_backend: JobBackend = Depends(get_job_backend),
    dispatcher: ReconciliationDispatcher = Depends(get_dispatcher),
) -> PreviewCreateResponse:
    ensure_caller_matches(auth, payload.user_id)
    try:
        result = service.request_preview(
            session,
            project_id=payload.project_id,
            image_url=payload.image_url,
            style=payload.style,
            user_id=payload.user_id,
            job_backend=job_backend,
            dispatcher=dispatcher,
        )
    except StagingError as exc:
        _raise_http(exc)

    if not result.created:
        response.status_code = status.HTTP_200_OK
    return PreviewCreateResponse(
        request_id=result.request_id,
        status=result.status,
        message=result.message,
    )


@router.get("/request/{request_id}", response_model=StagingStatusResponse)
def get_request_status(
    request_id: str,
    user_id: str = Query(min_length=1, max_length=64),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    session: Session = Depends(get_session),
    blob_store: BlobStore = Depends(get_blob_store),
) -> StagingStatusResponse:
    ensure_caller_matches(auth, user_id)
    try:
        view = service.get_status(session, request_id=request_id, user_id=user_id, blob_store=blob_store)
    except StagingError as exc:
        _raise_http(exc)

    preview = None
    if view.preview is not None:
        preview = PreviewPayload(
            url=view.preview.url,
            width=view.preview.width,
            height=view.preview.height,
            expires_at=view.preview.expires_at,
        )
    return StagingStatusResponse(
        request_id=view.request_id,
        project_id=view.project_id,
        status=view.status,
        style=view.style,
        approved_at=view.approved_at,
        error_message=view.error_message,
        regen_count=view.regen_count,
        hd_credit_deducted=view.hd_credit_deducted,
        preview=preview,
        hd=HdPayload(ready=view.hd.ready, width=view.hd.width, height=view.hd.height),
        created_at=view.created_at,
        updated_at=view.updated_at,
    )


@router.post("/regenerate/{request_id}", response_model=RegenerateResponse)
def regenerate_preview(
    request_id: str,
    payload: UserActionRequest,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    session: Session = Depends(get_session),
    job_backend: JobBackend = Depends(get_job_backend),
    dispatcher: ReconciliationDispatcher = Depends(get_dispatcher),
    rate_limiter: RegenRateLimiter = Depends(get_regen_rate_limiter),
    blob_store: BlobStore = Depends(get_blob_store),
) -> RegenerateResponse:
    ensure_caller_matches(auth, payload.user_id)
    try:
        result = service.regenerate(
            session,
            request_id=request_id,
            user_id=payload.user_id,
            job_backend=job_backend,
            dispatcher=dispatcher,
            rate_limiter=rate_limiter,
            blob_store=blob_store,
        )
    except StagingError as exc:
        _raise_http(exc)

    return RegenerateResponse(
        request_id=result.request_id,
        status=result.status,
        regen_count=result.regen_count,
        regen_remaining=result.regen_remaining,
    )


@router.post("/approve/{request_id}", response_model=ApproveResponse)
def approve_preview(
    request_id: str,
    payload: UserActionRequest,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    session: Session = Depends(get_session),
) -> ApproveResponse:
    ensure_caller_matches(auth, payload.user_id)
    try:
        result = service.approve(session, request_id=request_id, user_id=payload.user_id)
    except StagingError as exc:
        _raise_http(exc)

    return ApproveResponse(
        request_id=result.request_id,
        status=result.status,
        approved_at=result.approved_at,
    )


@router.post("/generate-hd/{request_id}", response_model=GenerateHdResponse, status_code=status.HTTP_202_ACCEPTED)
def generate_hd(
    request_id: str,
    payload: UserActionRequest,
    response: Response,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    session: Session = Depends(get_session),
    job_backend: JobBackend = Depends(get_job_backend),
    dispatcher: ReconciliationDispatcher = Depends(get_dispatcher),
) -> GenerateHdResponse:
    ensure_caller_matches(auth, payload.user_id)
    try:
        result = service.generate_hd(
            session,
            request_id=request_id,
            user_id=payload.user_id,
            job_backend=job_backend,
            dispatcher=dispatcher,
        )
    except StagingError as exc:
        _raise_http(exc)

    if not result.queued:
        response.status_code = status.HTTP_200_OK
    return GenerateHdResponse(
        request_id=result.request_id,
        status=result.status,
        message=result.message,
        credits_remaining=result.credits_remaining,
    )


@router.get("/request/{request_id}/download-hd", response_model=HdDownloadResponse)
def download_hd(
    request_id: str,
    user_id: str = Query(min_length=1, max_length=64),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    session: Session = Depends(get_session),
    blob_store: BlobStore = Depends(get_blob_store),
) -> HdDownloadResponse:
    ensure_caller_matches(auth, user_id)
    try:
        result = service.download_hd(session, request_id=request_id, user_id=user_id, blob_store=blob_store)
    except StagingError as exc:
        _raise_http(exc)

    return HdDownloadResponse(
        download_url=result.download_url,
        width=result.width,
        height=result.height,
        file_size_bytes=result.file_size_bytes,
        expires_in=result.expires_in,
    )
