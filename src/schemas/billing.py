"""Pydantic schemas for billing endpoints."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class StripeWebhookResponse(BaseModel):
    status: str
    duplicate: bool
    event_id: str
    event_type: str
    user_id: Optional[str] = None
    credits_remaining: Optional[int] = None
    message: Optional[str] = None
