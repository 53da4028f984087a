"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_rate_limit_block_total: Dict[str, int] = defaultdict(int)
_staging_transitions_total: Dict[Tuple[str, str], int] = defaultdict(int)
_credit_debits_total: Dict[str, int] = defaultdict(int)
_credit_refunds_total: Dict[str, int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_rate_limit_block(*, kind: str) -> None:
    with _lock:
        _rate_limit_block_total[_normalize_label(kind)] += 1


def record_staging_transition(*, tier: str, status: str) -> None:
    with _lock:
        _staging_transitions_total[(_normalize_label(tier), _normalize_label(status))] += 1


def record_credit_debit(*, reason: str, amount: int = 1) -> None:
    if amount <= 0:
        return
    with _lock:
        _credit_debits_total[_normalize_label(reason)] += int(amount)


def record_credit_refund(*, reason: str, amount: int = 1) -> None:
    if amount <= 0:
        return
    with _lock:
        _credit_refunds_total[_normalize_label(reason)] += int(amount)


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        rate_limit_total = dict(_rate_limit_block_total)
        transitions_total = dict(_staging_transitions_total)
        debits_total = dict(_credit_debits_total)
        refunds_total = dict(_credit_refunds_total)

    lines = [
        "# HELP snapstage_app_info Static application metadata.",
        "# TYPE snapstage_app_info gauge",
        (
            f'snapstage_app_info{{app="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP snapstage_uptime_seconds Process uptime in seconds.",
        "# TYPE snapstage_uptime_seconds gauge",
        f"snapstage_uptime_seconds {uptime:.3f}",
        "# HELP snapstage_http_requests_total Total HTTP requests.",
        "# TYPE snapstage_http_requests_total counter",
    ]
    for (method, path, status), value in sorted(http_total.items()):
        lines.append(
            f'snapstage_http_requests_total{{method="{_escape_label(method)}",'
            f'path="{_escape_label(path)}",status="{status}"}} {value}'
        )

    lines.extend(
        [
            "# HELP snapstage_http_request_duration_seconds HTTP request duration.",
            "# TYPE snapstage_http_request_duration_seconds summary",
        ]
    )
    for (method, path), total in sorted(duration_sum.items()):
        labels = f'method="{_escape_label(method)}",path="{_escape_label(path)}"'
        lines.append(f"snapstage_http_request_duration_seconds_sum{{{labels}}} {total:.6f}")
        lines.append(
            f"snapstage_http_request_duration_seconds_count{{{labels}}} {duration_count.get((method, path), 0)}"
        )

    lines.extend(
        [
            "# HELP snapstage_rate_limit_block_total Requests blocked by rate limiting.",
            "# TYPE snapstage_rate_limit_block_total counter",
        ]
    )
    for kind, value in sorted(rate_limit_total.items()):
        lines.append(f'snapstage_rate_limit_block_total{{kind="{_escape_label(kind)}"}} {value}')

    lines.extend(
        [
            "# HELP snapstage_staging_transitions_total Staging request transitions by tier and status.",
            "# TYPE snapstage_staging_transitions_total counter",
        ]
    )
    for (tier, status), value in sorted(transitions_total.items()):
        lines.append(
            f'snapstage_staging_transitions_total{{tier="{_escape_label(tier)}",'
            f'status="{_escape_label(status)}"}} {value}'
        )

    lines.extend(
        [
            "# HELP snapstage_credit_debits_total Credits debited from user balances.",
            "# TYPE snapstage_credit_debits_total counter",
        ]
    )
    for reason, value in sorted(debits_total.items()):
        lines.append(f'snapstage_credit_debits_total{{reason="{_escape_label(reason)}"}} {value}')

    lines.extend(
        [
            "# HELP snapstage_credit_refunds_total Credits refunded to user balances.",
            "# TYPE snapstage_credit_refunds_total counter",
        ]
    )
    for reason, value in sorted(refunds_total.items()):
        lines.append(f'snapstage_credit_refunds_total{{reason="{_escape_label(reason)}"}} {value}')

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _rate_limit_block_total.clear()
        _staging_transitions_total.clear()
        _credit_debits_total.clear()
        _credit_refunds_total.clear()
