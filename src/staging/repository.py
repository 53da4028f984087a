"""Row access and conditional writes for staging requests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from src.staging.errors import InvalidTransitionError
from src.staging.states import can_transition
from src.storage.models import Project, StagingOutput, StagingRequest


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_request(session: Session, request_id: str) -> Optional[StagingRequest]:
    # Refresh identity-map copies; other writers change these rows under us.
    return session.scalar(
        select(StagingRequest)
        .where(StagingRequest.id == request_id)
        .execution_options(populate_existing=True)
    )


def get_output(session: Session, request_id: str, output_type: str) -> Optional[StagingOutput]:
    return session.scalar(
        select(StagingOutput)
        .where(StagingOutput.request_id == request_id, StagingOutput.output_type == output_type)
        .execution_options(populate_existing=True)
    )


def job_column(tier: str) -> Any:
    if tier == "preview":
        return StagingRequest.preview_job_id
    if tier == "hd":
        return StagingRequest.hd_job_id
    raise ValueError(f"Unsupported tier: {tier}")


def transition_request(
    session: Session,
    *,
    request_id: str,
    expected_status: str,
    values: Dict[str, Any],
    conditions: Iterable[ColumnElement[bool]] = (),
) -> bool:
    """Apply ``values`` only if the row is still in ``expected_status``.

    Returns False when another writer moved the row first; nothing is
    written in that case. A status change outside the transition graph
    raises ``InvalidTransitionError`` before touching the row.
    """

    target = values.get("status", expected_status)
    if target != expected_status and not can_transition(expected_status, target):
        raise InvalidTransitionError(expected_status, target)

    result = session.execute(
        update(StagingRequest)
        .where(
            StagingRequest.id == request_id,
            StagingRequest.status == expected_status,
            *conditions,
        )
        .values(**values, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def set_project_status(session: Session, *, project_id: str, status: str) -> None:
    session.execute(
        update(Project)
        .where(Project.id == project_id)
        .values(status=status, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
