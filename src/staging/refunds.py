"""Compensating refunds for HD credits that did not produce an artifact."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import exists, func, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from src.billing.ledger import grant_credits
from src.core.logger import get_logger
from src.core.metrics import record_credit_refund
from src.staging import audit
from src.staging.errors import ConflictError
from src.staging.repository import get_request, now_utc, set_project_status, transition_request
from src.staging.states import FAILED, HD_GENERATING, PROJECT_FAILED
from src.storage.db import SessionFactory, session_scope
from src.storage.models import CreditTransaction, StagingOutput, StagingRequest


logger = get_logger("snapstage.refunds")

_MAX_REFUND_ATTEMPTS = 3


@dataclass(frozen=True)
class RefundSweepSummary:
    examined: int
    refunded: int
    skipped: int


def outstanding_debit(session: Session, request_id: str) -> int:
    """Credits debited for a request and not yet refunded."""

    total = session.scalar(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.request_id == request_id)
    )
    return max(-int(total or 0), 0)


def refund_hd_credit(
    session: Session,
    *,
    request_id: str,
    expected_status: str,
    values: Optional[Dict[str, Any]] = None,
    conditions: Iterable[ColumnElement[bool]] = (),
    project_status: Optional[str] = None,
    reason: str,
) -> bool:
    """Clear ``hd_credit_deducted`` and return the debited credit in one transaction.

    The flag flip is conditional, so concurrent refunders cannot both pay
    out. Commits on success; returns False when the flag was already clear
    or the row moved on.
    """

    extra_conditions = tuple(conditions)
    for attempt in range(1, _MAX_REFUND_ATTEMPTS + 1):
        request = get_request(session, request_id)
        if request is None or not request.hd_credit_deducted:
            return False

        claimed = transition_request(
            session,
            request_id=request_id,
            expected_status=expected_status,
            values={**(values or {}), "hd_credit_deducted": False},
            conditions=(StagingRequest.hd_credit_deducted.is_(True), *extra_conditions),
        )
        if not claimed:
            session.rollback()
            return False

        amount = outstanding_debit(session, request_id)
        try:
            if amount > 0:
                grant_credits(
                    session,
                    user_id=request.user_id,
                    amount=amount,
                    description=f"Refund: {reason}",
                    request_id=request_id,
                    project_id=request.project_id,
                    restore_usage=True,
                )
        except ConflictError:
            session.rollback()
            logger.warning("credit_refund_conflict", request_id=request_id, attempt=attempt)
            continue

        if project_status is not None:
            set_project_status(session, project_id=request.project_id, status=project_status)
        audit.record_audit(
            session,
            event=audit.HD_REFUNDED,
            user_id=request.user_id,
            resource_id=request_id,
            metadata={"amount": amount, "reason": reason},
        )
        session.commit()
        record_credit_refund(reason=reason, amount=amount)
        logger.info("credit_refunded", request_id=request_id, user_id=request.user_id, amount=amount, reason=reason)
        return True

    logger.error("credit_refund_failed", request_id=request_id, reason=reason)
    return False


def find_stale_hd_debits(session: Session, *, cutoff: datetime, limit: int = 100) -> list[tuple[str, str]]:
    has_hd_output = exists().where(
        StagingOutput.request_id == StagingRequest.id,
        StagingOutput.output_type == "hd",
    )
    rows = session.execute(
        select(StagingRequest.id, StagingRequest.status)
        .where(
            StagingRequest.hd_credit_deducted.is_(True),
            StagingRequest.status.in_((HD_GENERATING, FAILED)),
            StagingRequest.updated_at < cutoff,
            ~has_hd_output,
        )
        .order_by(StagingRequest.updated_at.asc())
        .limit(limit)
    ).all()
    return [(str(row[0]), str(row[1])) for row in rows]


def sweep_stale_hd_credits(
    session_factory: SessionFactory,
    *,
    older_than_minutes: int,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> RefundSweepSummary:
    """Refund debited requests that never produced an HD artifact.

    Covers HD loops lost to a process crash: a request still in
    ``hd_generating`` past the cutoff is failed and refunded in the same
    transaction. Safe to run repeatedly.
    """

    cutoff = (now or now_utc()) - timedelta(minutes=older_than_minutes)
    with session_scope(session_factory) as session:
        candidates = find_stale_hd_debits(session, cutoff=cutoff, limit=limit)

    refunded = 0
    for request_id, status in candidates:
        with session_scope(session_factory) as session:
            values: Dict[str, Any] = {}
            if status == HD_GENERATING:
                values = {"status": FAILED, "error_message": "HD generation timed out"}
            ok = refund_hd_credit(
                session,
                request_id=request_id,
                expected_status=status,
                values=values,
                project_status=PROJECT_FAILED if status == HD_GENERATING else None,
                reason="HD generation did not complete",
            )
            if ok:
                refunded += 1

    summary = RefundSweepSummary(
        examined=len(candidates),
        refunded=refunded,
        skipped=len(candidates) - refunded,
    )
    logger.info(
        "refund_sweep_completed",
        examined=summary.examined,
        refunded=summary.refunded,
        skipped=summary.skipped,
    )
    return summary
