"""Plan catalogue: features, quotas and meters per subscription plan.

Loaded from config/plans.yaml at startup, validated by Pydantic.
New plans or limits are a YAML edit, no code changes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class QuotaPeriod(StrEnum):
    """Window over which usage counts against a quota."""

    MONTH = "month"
    LIFETIME = "lifetime"


class QuotaConfig(BaseModel):
    """One quota. ``limit: null`` means unlimited."""

    limit: int | None = Field(default=None, ge=0)
    period: QuotaPeriod = QuotaPeriod.MONTH


class PlanConfig(BaseModel):
    name: str = ""  # populated from dict key during validation
    features: dict[str, bool] = {}
    meters: dict[str, bool] = {}
    quotas: dict[str, QuotaConfig] = {}

    @field_validator("quotas", mode="before")
    @classmethod
    def expand_shorthand(cls, value: Any) -> Any:
        """Accept ``run_count: 100`` as shorthand for ``{limit: 100}``."""
        if not isinstance(value, dict):
            return value
        return {
            name: {"limit": spec} if spec is None or isinstance(spec, int) else spec
            for name, spec in value.items()
        }


class PlanCatalog(BaseModel):
    """All plans plus the fallback for tenants with an unknown plan.

    Validates that:
    - The default plan exists
    - Every quota is backed by a meter that is switched on
    """

    default_plan: str
    plans: dict[str, PlanConfig]

    @model_validator(mode="after")
    def validate_plans(self) -> PlanCatalog:
        for plan_name, plan in self.plans.items():
            plan.name = plan_name

        errors: list[str] = []
        if self.default_plan not in self.plans:
            errors.append(f"Default plan '{self.default_plan}' is not defined")

        for plan_name, plan in self.plans.items():
            for quota_name in plan.quotas:
                if not plan.meters.get(quota_name, False):
                    errors.append(
                        f"Plan '{plan_name}' quota '{quota_name}' "
                        "has no enabled meter"
                    )

        if errors:
            raise ValueError(
                "Plan catalog validation failed:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )
        return self

    def plan_for(self, name: str | None) -> PlanConfig:
        """Plan by name, falling back to the default plan."""
        if name is not None and name in self.plans:
            return self.plans[name]
        return self.plans[self.default_plan]


def period_start(period: QuotaPeriod, now: datetime | None = None) -> datetime:
    """Start of the usage window containing *now*.

    Monthly quotas reset at 00:00 UTC on the first day of the calendar
    month. Lifetime quotas count from the epoch.
    """
    if period == QuotaPeriod.LIFETIME:
        return datetime(1970, 1, 1, tzinfo=UTC)
    now = (now or datetime.now(UTC)).astimezone(UTC)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def load_plan_catalog(config_path: Path) -> PlanCatalog:
    """Load and validate the plan catalogue from YAML.

    Args:
        config_path: Path to plans.yaml. Typically comes from
            Settings.plans_path.

    Raises:
        FileNotFoundError: if YAML file doesn't exist.
        ValueError: if YAML parsing or validation fails.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Plan catalog not found: {config_path}")

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse plan catalog '{config_path}': {e}") from e
    return PlanCatalog.model_validate(raw)
