"""Staging request lifecycle states and the legal transition graph."""

from __future__ import annotations

from typing import Dict, FrozenSet


PREVIEW_GENERATING = "preview_generating"
PREVIEW_READY = "preview_ready"
APPROVED = "approved"
HD_GENERATING = "hd_generating"
HD_READY = "hd_ready"
FAILED = "failed"

TERMINAL_STATES = frozenset({HD_READY, FAILED})

# Regeneration re-enters preview_generating; approval closes that door.
ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PREVIEW_GENERATING: frozenset({PREVIEW_READY, FAILED}),
    PREVIEW_READY: frozenset({APPROVED, PREVIEW_GENERATING, FAILED}),
    APPROVED: frozenset({HD_GENERATING, FAILED}),
    HD_GENERATING: frozenset({HD_READY, APPROVED, FAILED}),
    HD_READY: frozenset(),
    FAILED: frozenset({PREVIEW_GENERATING}),
}

REGENERABLE_STATES = frozenset({PREVIEW_READY, FAILED})

TIER_PREVIEW = "preview"
TIER_HD = "hd"

PROJECT_PROCESSING = "processing"
PROJECT_COMPLETED = "completed"
PROJECT_FAILED = "failed"


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def generating_state_for(tier: str) -> str:
    if tier == TIER_PREVIEW:
        return PREVIEW_GENERATING
    if tier == TIER_HD:
        return HD_GENERATING
    raise ValueError(f"Unsupported tier: {tier}")


def ready_state_for(tier: str) -> str:
    if tier == TIER_PREVIEW:
        return PREVIEW_READY
    if tier == TIER_HD:
        return HD_READY
    raise ValueError(f"Unsupported tier: {tier}")
