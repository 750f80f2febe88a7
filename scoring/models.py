"""
Health score data models.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CategoryScore:
    """Score for a single health category."""
    category: str
    display_name: str
    score: float = 100.0
    weight: float = 0.0           # Configured weight
    effective_weight: float = 0.0 # Weight after renormalising over present categories
    weighted_score: float = 0.0
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "display_name": self.display_name,
            "score": round(max(0, min(100, self.score)), 1),
            "weight": self.weight,
            "effective_weight": round(self.effective_weight, 4),
            "weighted_contribution": round(self.weighted_score, 1),
            "detail": self.detail,
        }


@dataclass
class HealthScore:
    """Tenant health score across all measured categories."""
    overall_score: float = 0.0
    rating: str = "Unknown"
    categories: dict[str, CategoryScore] = field(default_factory=dict)
    missing_categories: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "overall_score": round(self.overall_score, 1),
            "rating": self.rating,
            "categories": {k: v.to_dict() for k, v in self.categories.items()},
            "missing_categories": self.missing_categories,
        }
