"""Entitlement decision values.

Decisions are plain data: allowed or not, a machine-readable reason and
enough metadata to explain the outcome to a user. Callers decide what a
refusal means; nothing here raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

#: Reason codes carried by denied decisions.
REASON_INVALID_REQUESTED_UNITS = "invalid_requested_units"
REASON_QUOTA_EXCEEDED = "quota_exceeded"
REASON_FEATURE_NOT_IN_PLAN = "feature_not_in_plan"


@dataclass(frozen=True, slots=True)
class EntitlementDecision:
    """Outcome of a feature-access check."""

    allowed: bool
    reason: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls, meta: dict[str, Any] | None = None) -> EntitlementDecision:
        return cls(allowed=True, meta=meta or {})

    @classmethod
    def deny(
        cls, reason: str, meta: dict[str, Any] | None = None
    ) -> EntitlementDecision:
        return cls(allowed=False, reason=reason, meta=meta or {})

    def explain(self) -> str:
        if self.allowed:
            return "allowed"
        feature = self.meta.get("feature")
        if self.reason == REASON_FEATURE_NOT_IN_PLAN and feature:
            return f"feature not in plan: {feature}"
        return f"denied: {self.reason}"


@dataclass(frozen=True, slots=True)
class QuotaDecision:
    """Outcome of a quota check.

    ``limit`` is ``None`` for unlimited quotas. ``used`` is the usage
    before the requested units are consumed.
    """

    allowed: bool
    limit: int | None = None
    used: int = 0
    requested: int = 1
    reason: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow_unlimited(
        cls,
        used: int = 0,
        requested: int = 1,
        meta: dict[str, Any] | None = None,
    ) -> QuotaDecision:
        return cls(allowed=True, used=used, requested=requested, meta=meta or {})

    @classmethod
    def allow_within_limit(
        cls,
        limit: int,
        used: int,
        requested: int = 1,
        meta: dict[str, Any] | None = None,
    ) -> QuotaDecision:
        """Allow when ``used + requested`` fits in *limit*, deny otherwise."""
        allowed = used + requested <= limit
        return cls(
            allowed=allowed,
            limit=limit,
            used=used,
            requested=requested,
            reason=None if allowed else REASON_QUOTA_EXCEEDED,
            meta=meta or {},
        )

    @classmethod
    def deny(
        cls,
        reason: str,
        *,
        limit: int | None = None,
        used: int = 0,
        requested: int = 1,
        meta: dict[str, Any] | None = None,
    ) -> QuotaDecision:
        return cls(
            allowed=False,
            limit=limit,
            used=used,
            requested=requested,
            reason=reason,
            meta=meta or {},
        )

    @property
    def is_unlimited(self) -> bool:
        return self.limit is None

    def remaining(self) -> int | None:
        """Units left before the limit; ``None`` when unlimited."""
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    def explain(self) -> str:
        """Human-readable summary.

        e.g. ``quota exceeded: 100/100 run_count this period``.
        """
        quota = self.meta.get("quota", "units")
        monthly = self.meta.get("period", "month") == "month"
        scope = "this period" if monthly else "in total"
        if self.allowed:
            if self.limit is None:
                return f"unlimited {quota}"
            return f"{self.used}/{self.limit} {quota} {scope}"
        if self.reason == REASON_QUOTA_EXCEEDED:
            return f"quota exceeded: {self.used}/{self.limit} {quota} {scope}"
        return f"denied: {self.reason}"
