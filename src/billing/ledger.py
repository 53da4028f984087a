"""Credit ledger: append-only transactions plus a cached balance on the profile.

Balance changes use an optimistic compare-and-set on
``profiles.credits_remaining`` and always write exactly one
``credit_transactions`` row, so the sum of a user's transactions equals the
cached balance. Functions flush but never commit; the caller owns the
transaction boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from src.staging.errors import ConflictError, InsufficientCreditsError
from src.storage.models import CreditTransaction, Profile


@dataclass(frozen=True)
class LedgerEntry:
    transaction_id: str
    user_id: str
    amount: int
    balance_after: int


@dataclass(frozen=True)
class LedgerCheck:
    user_id: str
    cached_balance: int
    ledger_balance: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_balance


def _read_account(session: Session, user_id: str) -> Optional[tuple[int, int]]:
    row = session.execute(
        select(Profile.credits_remaining, Profile.credits_used).where(Profile.id == user_id)
    ).first()
    if row is None:
        return None
    return int(row[0]), int(row[1])


def _require_account(session: Session, user_id: str) -> tuple[int, int]:
    account = _read_account(session, user_id)
    if account is None:
        raise LookupError("Profile not found")
    return account


def get_balance(session: Session, user_id: str) -> int:
    return _require_account(session, user_id)[0]


def _apply(
    session: Session,
    *,
    user_id: str,
    expected_balance: int,
    credits_used: int,
    amount: int,
    used_delta: int,
    description: str,
    request_id: Optional[str],
    project_id: Optional[str],
) -> LedgerEntry:
    new_balance = expected_balance + amount
    values = {
        "credits_remaining": new_balance,
        "credits_used": max(credits_used + used_delta, 0),
        "updated_at": datetime.now(timezone.utc),
    }

    result = session.execute(
        update(Profile)
        .where(Profile.id == user_id, Profile.credits_remaining == expected_balance)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("Credit balance changed concurrently")

    transaction = CreditTransaction(
        user_id=user_id,
        request_id=request_id,
        project_id=project_id,
        amount=amount,
        description=description,
    )
    session.add(transaction)
    session.flush()
    return LedgerEntry(
        transaction_id=transaction.id,
        user_id=user_id,
        amount=amount,
        balance_after=new_balance,
    )


def debit_credits(
    session: Session,
    *,
    user_id: str,
    amount: int,
    description: str,
    request_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> LedgerEntry:
    if amount <= 0:
        raise ValueError("Debit amount must be positive")

    account = _read_account(session, user_id)
    if account is None or account[0] < amount:
        raise InsufficientCreditsError()

    balance, used = account
    return _apply(
        session,
        user_id=user_id,
        expected_balance=balance,
        credits_used=used,
        amount=-amount,
        used_delta=amount,
        description=description,
        request_id=request_id,
        project_id=project_id,
    )


def grant_credits(
    session: Session,
    *,
    user_id: str,
    amount: int,
    description: str,
    request_id: Optional[str] = None,
    project_id: Optional[str] = None,
    restore_usage: bool = False,
) -> LedgerEntry:
    """Add credits; ``restore_usage`` also walks back ``credits_used`` for refunds."""

    if amount <= 0:
        raise ValueError("Grant amount must be positive")

    balance, used = _require_account(session, user_id)
    return _apply(
        session,
        user_id=user_id,
        expected_balance=balance,
        credits_used=used,
        amount=amount,
        used_delta=-amount if restore_usage else 0,
        description=description,
        request_id=request_id,
        project_id=project_id,
    )


def set_credit_balance(
    session: Session,
    *,
    user_id: str,
    balance: int,
    description: str,
) -> Optional[LedgerEntry]:
    if balance < 0:
        raise ValueError("Balance cannot be negative")

    current, used = _require_account(session, user_id)
    delta = balance - current
    if delta == 0:
        return None
    return _apply(
        session,
        user_id=user_id,
        expected_balance=current,
        credits_used=used,
        amount=delta,
        used_delta=0,
        description=description,
        request_id=None,
        project_id=None,
    )


def open_credit_account(
    session: Session,
    *,
    user_id: str,
    email: str,
    plan: str = "free",
    initial_credits: int = 0,
    full_name: Optional[str] = None,
) -> Profile:
    """Create a profile and record its starting allowance in the ledger."""

    profile = Profile(
        id=user_id,
        email=email,
        full_name=full_name,
        plan=plan,
        credits_remaining=0,
        credits_used=0,
    )
    session.add(profile)
    session.flush()
    if initial_credits > 0:
        grant_credits(
            session,
            user_id=user_id,
            amount=initial_credits,
            description=f"Initial {plan} plan allowance",
        )
        session.refresh(profile)
    return profile


def get_ledger_balance(session: Session, user_id: str) -> int:
    total = session.scalar(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.user_id == user_id)
    )
    return int(total or 0)


def verify_ledger(session: Session, user_id: str) -> LedgerCheck:
    return LedgerCheck(
        user_id=user_id,
        cached_balance=get_balance(session, user_id),
        ledger_balance=get_ledger_balance(session, user_id),
    )
