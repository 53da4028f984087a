"""Plan catalogue loading and credit allowance lookup."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict

import yaml

from src.core.config import get_settings


DEFAULT_PLAN = "free"
FALLBACK_CREDITS = 3


@dataclass(frozen=True)
class PlanDefinition:
    name: str
    monthly_credits: int


def _resolve_plan_path() -> Path:
    settings = get_settings()
    configured = Path(settings.plans_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


@lru_cache(maxsize=1)
def load_plans() -> Dict[str, PlanDefinition]:
    plan_path = _resolve_plan_path()
    with plan_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or {}
    if not isinstance(content, dict):
        raise ValueError("Invalid plans file format")

    plans: Dict[str, PlanDefinition] = {}
    for plan_name, plan_values in content.items():
        if not isinstance(plan_name, str) or not isinstance(plan_values, dict):
            continue
        credits = plan_values.get("monthly_credits")
        if not isinstance(credits, int) or credits < 0:
            raise ValueError(f"Plan '{plan_name}' has an invalid monthly_credits value")
        plans[plan_name] = PlanDefinition(name=plan_name, monthly_credits=credits)
    return plans


def is_known_plan(plan: str) -> bool:
    return plan in load_plans()


def credits_for_plan(plan: str) -> int:
    definition = load_plans().get(plan)
    if definition is None:
        return FALLBACK_CREDITS
    return definition.monthly_credits
