"""
Health Score Engine — Computes a 0-100 tenant health score from task summaries.

Scoring model:
  - Each category turns one task summary into a 0-100 score.
  - Category scores are weighted per HealthWeights.
  - Categories whose task did not run (or failed) are left out and the
    remaining weights are renormalised so they still sum to 1.
"""

from __future__ import annotations

from typing import Callable, Optional

from ..config import HealthWeights
from .models import CategoryScore, HealthScore

# Display names for categories (keys must match HealthWeights fields)
CATEGORY_DISPLAY = {
    "mfa_coverage":        "MFA Coverage",
    "conditional_access":  "Conditional Access Baseline",
    "device_compliance":   "Device Compliance (Intune)",
    "inactive_accounts":   "Inactive Accounts",
    "license_utilization": "License Utilization",
    "guest_hygiene":       "Guest Hygiene",
}

# Category → task summary it is computed from
CATEGORY_SOURCE = {
    "mfa_coverage":        "mfa",
    "conditional_access":  "conditional_access",
    "device_compliance":   "devices",
    "inactive_accounts":   "inactive_users",
    "license_utilization": "licenses",
    "guest_hygiene":       "guests",
}

# Conditional Access baseline points
CA_POINTS = {
    "mfa_enforced": 40,
    "legacy_auth_blocked": 30,
    "compliant_device_required": 30,
}

# Rating thresholds
RATING_THRESHOLDS = [
    (90, "Excellent"),
    (80, "Good"),
    (65, "Moderate"),
    (50, "Concerning"),
    (35, "Poor"),
    ( 0, "Critical"),
]


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def _mfa(summary: dict) -> tuple[float, str]:
    pct = float(summary.get("coverage_pct", 0))
    return pct, f"{summary.get('mfa_registered', 0)}/{summary.get('users', 0)} users registered"


def _conditional_access(summary: dict) -> tuple[float, str]:
    met = [k for k in CA_POINTS if summary.get(k)]
    missing = [k for k in CA_POINTS if k not in met]
    detail = "missing: " + ", ".join(missing) if missing else "all baseline controls present"
    return float(sum(CA_POINTS[k] for k in met)), detail


def _devices(summary: dict) -> tuple[float, str]:
    if not summary.get("total_devices"):
        return 100.0, "no managed devices"
    return (
        float(summary.get("compliance_pct", 0)),
        f"{summary.get('compliant', 0)}/{summary['total_devices']} compliant",
    )


def _inactive(summary: dict) -> tuple[float, str]:
    ratio = float(summary.get("inactive_ratio", 0))
    # Half the directory inactive is already the worst case
    return 100 - ratio * 200, f"{summary.get('inactive_users', 0)} inactive users"


def _licenses(summary: dict) -> tuple[float, str]:
    pct = float(summary.get("average_utilization_pct", 0))
    return pct, f"{summary.get('total_available', 0)} unused licenses"


def _guests(summary: dict) -> tuple[float, str]:
    if not summary.get("total_guests"):
        return 100.0, "no guests"
    ratio = float(summary.get("stale_ratio", 0))
    return 100 - ratio * 100, f"{summary.get('stale_guests', 0)}/{summary['total_guests']} stale guests"


CATEGORY_SCORERS: dict[str, Callable[[dict], tuple[float, str]]] = {
    "mfa_coverage": _mfa,
    "conditional_access": _conditional_access,
    "device_compliance": _devices,
    "inactive_accounts": _inactive,
    "license_utilization": _licenses,
    "guest_hygiene": _guests,
}


def rating_for(score: float) -> str:
    for threshold, rating in RATING_THRESHOLDS:
        if score >= threshold:
            return rating
    return RATING_THRESHOLDS[-1][1]


def compute_health(
    summaries: dict[str, dict],
    weights: Optional[HealthWeights] = None,
) -> HealthScore:
    """
    Compute the tenant health score.

    Args:
        summaries: task name → task summary dict (missing/empty = not measured).
        weights: category weights; defaults to HealthWeights().

    Returns:
        HealthScore with per-category scores and the weighted overall score.
    """
    weights = weights or HealthWeights()
    health = HealthScore()

    present = {}
    for category, weight in weights.as_dict().items():
        summary = summaries.get(CATEGORY_SOURCE[category])
        if not summary or weight <= 0:
            health.missing_categories.append(category)
            continue
        present[category] = (weight, summary)

    total_weight = sum(w for w, _ in present.values())
    for category, (weight, summary) in present.items():
        score, detail = CATEGORY_SCORERS[category](summary)
        cs = CategoryScore(
            category=category,
            display_name=CATEGORY_DISPLAY[category],
            score=_clamp(score),
            weight=weight,
            effective_weight=weight / total_weight,
            detail=detail,
        )
        cs.weighted_score = cs.score * cs.effective_weight
        health.categories[category] = cs

    if health.categories:
        # Banded on the one-decimal score
        health.overall_score = _clamp(
            round(sum(c.weighted_score for c in health.categories.values()), 1)
        )
        health.rating = rating_for(health.overall_score)
    return health
