"""Refund HD credits for requests that never produced an HD artifact.

Run periodically (cron or a scheduler); repeated runs are harmless.
"""

from __future__ import annotations

import argparse
from typing import Iterable

from src.core.config import get_settings
from src.staging.refunds import RefundSweepSummary, sweep_stale_hd_credits
from src.storage.db import get_session_factory, load_models


def _format_report(summary: RefundSweepSummary) -> Iterable[str]:
    yield f"examined={summary.examined}"
    yield f"refunded={summary.refunded}"
    yield f"skipped={summary.skipped}"


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Refund stale SnapStage HD credit debits.")
    parser.add_argument("--older-than-minutes", type=int, default=settings.refund_sweep_after_minutes)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    if args.older_than_minutes <= 0:
        raise ValueError("--older-than-minutes must be positive")
    if args.limit <= 0:
        raise ValueError("--limit must be positive")

    load_models()
    summary = sweep_stale_hd_credits(
        get_session_factory(),
        older_than_minutes=args.older_than_minutes,
        limit=args.limit,
    )
    for line in _format_report(summary):
        print(line)


if __name__ == "__main__":
    main()
