"""Audit trail entries for staging milestones."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from src.storage.models import AuditLog


PREVIEW_QUEUED = "preview.queued"
PREVIEW_READY = "preview.ready"
PREVIEW_REGENERATED = "preview.regenerated"
PREVIEW_APPROVED = "preview.approved"
HD_QUEUED = "hd.queued"
HD_READY = "hd.ready"
HD_DOWNLOADED = "hd.downloaded"
HD_REFUNDED = "hd.refunded"
STAGING_FAILED = "staging.failed"


def record_audit(
    session: Session,
    *,
    event: str,
    user_id: Optional[str],
    resource_id: Optional[str],
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=user_id,
        event=event,
        resource_id=resource_id,
        metadata_json=json.dumps(metadata or {}, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str),
    )
    session.add(entry)
    return entry
