"""Scoring package — tenant health score calculation."""

from .engine import compute_health, rating_for
from .models import HealthScore, CategoryScore

__all__ = [
    "compute_health",
    "rating_for",
    "HealthScore",
    "CategoryScore",
]
