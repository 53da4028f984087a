"""Schemas for the preview / approve / HD staging endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class PreviewCreateRequest(BaseModel):
    project_id: str = Field(min_length=1, max_length=64)
    image_url: str = Field(min_length=10, max_length=2048, pattern=r"^https?://\S+$")
    style: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)


class UserActionRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)


class PreviewCreateResponse(BaseModel):
    request_id: str
    status: str
    message: Optional[str] = None


class PreviewPayload(BaseModel):
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    expires_at: Optional[datetime] = None


class HdPayload(BaseModel):
    ready: bool
    width: Optional[int] = None
    height: Optional[int] = None


class StagingStatusResponse(BaseModel):
    request_id: str
    project_id: str
    status: str
    style: str
    approved_at: Optional[datetime] = None
    error_message: Optional[str] = None
    regen_count: int
    hd_credit_deducted: bool
    preview: Optional[PreviewPayload] = None
    hd: HdPayload
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RegenerateResponse(BaseModel):
    request_id: str
    status: str
    regen_count: int
    regen_remaining: int


class ApproveResponse(BaseModel):
    request_id: str
    status: str
    approved_at: Optional[datetime] = None
    message: str = "Preview approved"


class GenerateHdResponse(BaseModel):
    request_id: str
    status: str
    message: str
    credits_remaining: Optional[int] = None


class HdDownloadResponse(BaseModel):
    download_url: str
    width: Optional[int] = None
    height: Optional[int] = None
    file_size_bytes: Optional[int] = None
    expires_in: int
