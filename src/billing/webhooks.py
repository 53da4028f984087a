"""Stripe webhook endpoint with idempotent processing."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.billing.ledger import get_balance, set_credit_balance
from src.billing.plans import DEFAULT_PLAN, credits_for_plan, is_known_plan
from src.billing.stripe_client import StripeWebhookError, StripeWebhookEvent, construct_event
from src.core.config import get_settings
from src.core.logger import get_logger
from src.schemas.billing import StripeWebhookResponse
from src.storage.db import get_session
from src.storage.models import Profile, StripeEvent


router = APIRouter(prefix="/billing", tags=["billing"])
logger = get_logger("snapstage.billing")


def _metadata_value(data_object: Dict[str, Any], *keys: str) -> Optional[str]:
    metadata = data_object.get("metadata") or {}
    if not isinstance(metadata, dict):
        return None
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _insert_stripe_event(
    session: Session,
    *,
    event: StripeWebhookEvent,
    payload_json: str,
) -> Tuple[Optional[StripeEvent], bool]:
    stripe_event = StripeEvent(
        id=str(uuid.uuid4()),
        event_id=event.event_id,
        event_type=event.event_type,
        status="received",
        payload_json=payload_json,
    )
    session.add(stripe_event)
    try:
        session.commit()
        return stripe_event, False
    except IntegrityError:
        session.rollback()
        return None, True


def _mark_event_failed(session: Session, event_id: str, error_message: str) -> None:
    stripe_event = session.scalar(select(StripeEvent).where(StripeEvent.event_id == event_id))
    if stripe_event is None:
        return
    stripe_event.status = "failed"
    stripe_event.error_message = error_message[:255]
    stripe_event.processed_at = datetime.now(timezone.utc)
    session.commit()


def _reset_allowance(session: Session, profile: Profile, *, plan: str, reason: str) -> None:
    profile.plan = plan
    profile.updated_at = datetime.now(timezone.utc)
    set_credit_balance(
        session,
        user_id=profile.id,
        balance=credits_for_plan(plan),
        description=f"{reason}: {plan} plan allowance",
    )


def _apply_checkout_completed(
    session: Session,
    *,
    stripe_event: StripeEvent,
    event: StripeWebhookEvent,
) -> Tuple[str, str, Optional[Profile]]:
    user_id = _metadata_value(event.data_object, "user_id", "userId")
    plan = _metadata_value(event.data_object, "plan")
    if not user_id or not plan:
        return "ignored", "Checkout session missing user or plan metadata", None
    if not is_known_plan(plan):
        return "ignored", f"Unknown plan: {plan}", None

    profile = session.scalar(select(Profile).where(Profile.id == user_id))
    if profile is None:
        return "ignored", "No profile for checkout user", None

    customer_id = event.data_object.get("customer")
    if isinstance(customer_id, str) and customer_id:
        profile.stripe_customer_id = customer_id

    _reset_allowance(session, profile, plan=plan, reason="Plan purchase")
    stripe_event.user_id = profile.id
    return "processed", "Plan activated", profile


def _apply_subscription_deleted(
    session: Session,
    *,
    stripe_event: StripeEvent,
    event: StripeWebhookEvent,
) -> Tuple[str, str, Optional[Profile]]:
    customer_id = event.data_object.get("customer")
    if not isinstance(customer_id, str) or not customer_id:
        return "ignored", "Subscription payload missing customer", None

    profile = session.scalar(select(Profile).where(Profile.stripe_customer_id == customer_id))
    if profile is None:
        return "ignored", "No profile linked to Stripe customer", None

    _reset_allowance(session, profile, plan=DEFAULT_PLAN, reason="Subscription canceled")
    stripe_event.user_id = profile.id
    return "processed", "Downgraded to free plan", profile


def process_stripe_event(
    session: Session,
    *,
    event: StripeWebhookEvent,
    payload_bytes: bytes,
) -> StripeWebhookResponse:
    stripe_event, duplicate = _insert_stripe_event(
        session,
        event=event,
        payload_json=payload_bytes.decode("utf-8"),
    )
    if duplicate:
        return StripeWebhookResponse(
            status="duplicate",
            duplicate=True,
            event_id=event.event_id,
            event_type=event.event_type,
            message="Event already processed",
        )
    if stripe_event is None:  # pragma: no cover
        raise RuntimeError("Failed to persist Stripe event")

    try:
        profile: Optional[Profile] = None
        if event.event_type == "checkout.session.completed":
            final_status, message, profile = _apply_checkout_completed(
                session,
                stripe_event=stripe_event,
                event=event,
            )
        elif event.event_type == "customer.subscription.deleted":
            final_status, message, profile = _apply_subscription_deleted(
                session,
                stripe_event=stripe_event,
                event=event,
            )
        else:
            final_status, message = "ignored", "Unsupported Stripe event type"

        stripe_event.status = final_status
        stripe_event.error_message = None if final_status != "ignored" else message[:255]
        stripe_event.processed_at = datetime.now(timezone.utc)
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.error("stripe_event_failed", event_id=event.event_id, event_type=event.event_type, error=str(exc))
        _mark_event_failed(session, event.event_id, str(exc))
        return StripeWebhookResponse(
            status="failed",
            duplicate=False,
            event_id=event.event_id,
            event_type=event.event_type,
            message="Processing failed",
        )

    logger.info("stripe_event_processed", event_id=event.event_id, event_type=event.event_type, status=final_status)
    return StripeWebhookResponse(
        status=final_status,
        duplicate=False,
        event_id=event.event_id,
        event_type=event.event_type,
        user_id=profile.id if profile is not None else None,
        credits_remaining=get_balance(session, profile.id) if profile is not None else None,
        message=message,
    )


@router.post("/webhook", response_model=StripeWebhookResponse)
async def stripe_webhook(
    request: Request,
    session: Session = Depends(get_session),
) -> StripeWebhookResponse:
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhook secret is not configured",
        )

    payload_bytes = await request.body()
    try:
        event = construct_event(
            payload=payload_bytes,
            signature_header=request.headers.get("stripe-signature", ""),
            webhook_secret=settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_signature_tolerance_seconds,
        )
    except StripeWebhookError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return process_stripe_event(session, event=event, payload_bytes=payload_bytes)
