from __future__ import annotations

import pytest
from sqlalchemy import select, update

from src.billing.ledger import (
    debit_credits,
    get_balance,
    grant_credits,
    set_credit_balance,
    verify_ledger,
)
from src.staging.errors import ConflictError, InsufficientCreditsError
from src.storage.models import CreditTransaction, Profile
from tests.conftest import seed_account


def test_opening_an_account_records_the_allowance(session) -> None:
    seed_account(session, credits=3)

    assert get_balance(session, "user-1") == 3
    rows = session.scalars(select(CreditTransaction).where(CreditTransaction.user_id == "user-1")).all()
    assert [row.amount for row in rows] == [3]
    assert verify_ledger(session, "user-1").consistent


def test_debit_writes_transaction_and_tracks_usage(session) -> None:
    seed_account(session, credits=3)

    entry = debit_credits(session, user_id="user-1", amount=1, description="HD staging render", request_id=None)
    session.commit()

    assert entry.amount == -1
    assert entry.balance_after == 2
    profile = session.get(Profile, "user-1")
    session.refresh(profile)
    assert profile.credits_remaining == 2
    assert profile.credits_used == 1
    assert verify_ledger(session, "user-1").consistent


def test_debit_without_enough_credits_writes_nothing(session) -> None:
    seed_account(session, credits=0)

    with pytest.raises(InsufficientCreditsError):
        debit_credits(session, user_id="user-1", amount=1, description="HD staging render")

    rows = session.scalars(select(CreditTransaction).where(CreditTransaction.user_id == "user-1")).all()
    assert rows == []


def test_debit_for_unknown_profile_is_insufficient(session) -> None:
    with pytest.raises(InsufficientCreditsError):
        debit_credits(session, user_id="ghost", amount=1, description="HD staging render")


def test_stale_balance_loses_compare_and_set(session, monkeypatch) -> None:
    seed_account(session, credits=5)

    import src.billing.ledger as ledger

    real_read = ledger._read_account

    def stale_read(db_session, user_id):
        account = real_read(db_session, user_id)
        # Another writer spends a credit between our read and our write.
        db_session.execute(
            update(Profile).where(Profile.id == user_id).values(credits_remaining=Profile.credits_remaining - 1)
        )
        return account

    monkeypatch.setattr(ledger, "_read_account", stale_read)

    with pytest.raises(ConflictError):
        debit_credits(session, user_id="user-1", amount=1, description="HD staging render")


def test_refund_grant_restores_usage(session) -> None:
    seed_account(session, credits=2)
    debit_credits(session, user_id="user-1", amount=1, description="HD staging render")
    grant_credits(session, user_id="user-1", amount=1, description="Refund: HD generation failed", restore_usage=True)
    session.commit()

    profile = session.get(Profile, "user-1")
    session.refresh(profile)
    assert profile.credits_remaining == 2
    assert profile.credits_used == 0
    amounts = [
        row.amount
        for row in session.scalars(
            select(CreditTransaction).where(CreditTransaction.user_id == "user-1").order_by(CreditTransaction.created_at)
        ).all()
    ]
    assert sorted(amounts) == [-1, 1, 2]
    assert verify_ledger(session, "user-1").consistent


def test_set_balance_writes_the_delta(session) -> None:
    seed_account(session, credits=3)

    entry = set_credit_balance(session, user_id="user-1", balance=50, description="Plan pro allowance")
    assert entry is not None
    assert entry.amount == 47
    assert set_credit_balance(session, user_id="user-1", balance=50, description="noop") is None
    session.commit()

    assert get_balance(session, "user-1") == 50
    assert verify_ledger(session, "user-1").consistent


def test_invalid_amounts_are_rejected(session) -> None:
    seed_account(session, credits=3)

    with pytest.raises(ValueError):
        debit_credits(session, user_id="user-1", amount=0, description="zero")
    with pytest.raises(ValueError):
        grant_credits(session, user_id="user-1", amount=-2, description="negative")
    with pytest.raises(ValueError):
        set_credit_balance(session, user_id="user-1", balance=-1, description="negative")
