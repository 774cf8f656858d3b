"""Grade computation for weighted categories.

Everything here is pure: callers hand in category rules and scores and get
results back. Persistence lives in utils.grade_service.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from utils.grading_errors import DataIntegrityError

LETTER_GRADES = ("A", "B", "C", "D", "F")

# Display hint for UIs; not used by any computation
LETTER_GRADE_COLORS = {
    "A": "green",
    "B": "blue",
    "C": "yellow",
    "D": "orange",
    "F": "red",
}


@dataclass(frozen=True)
class CategoryRule:
    category_id: Optional[int]
    name: str
    weight: float
    drop_lowest: int = 0
    late_penalty_per_day: Optional[float] = None
    max_late_penalty: Optional[float] = None
    allow_extra_credit: bool = False
    sort_order: int = 0


@dataclass(frozen=True)
class ScoreInput:
    raw_score_id: Optional[int]
    assignment_id: Optional[int]
    points_earned: float
    points_possible: float
    days_late: float = 0.0


@dataclass
class AssignmentResult:
    raw_score_id: Optional[int]
    assignment_id: Optional[int]
    category_id: Optional[int]
    points_earned: float
    points_possible: float
    raw_percentage: float
    late_penalty: float
    percentage: float
    is_dropped: bool = False


@dataclass
class CategoryResult:
    category_id: Optional[int]
    name: str
    weight: float
    percentage: Optional[float]
    weighted_score: Optional[float]
    points_earned: float = 0.0
    points_possible: float = 0.0
    assignments: list = field(default_factory=list)

    @property
    def has_scores(self) -> bool:
        return self.percentage is not None


@dataclass
class OverallResult:
    percentage: Optional[float]
    base_percentage: Optional[float]
    letter_grade: Optional[str]
    extra_credit: float
    curve: float
    total_weight: float
    points_earned: float = 0.0
    points_possible: float = 0.0


def letter_grade_for(percentage: Optional[float]) -> Optional[str]:
    """Map a percentage to a letter band; the lower bound of each band is inclusive."""
    if percentage is None:
        return None
    if percentage >= 90:
        return "A"
    if percentage >= 80:
        return "B"
    if percentage >= 70:
        return "C"
    if percentage >= 60:
        return "D"
    return "F"


def letter_grade_color(letter: Optional[str]) -> str:
    return LETTER_GRADE_COLORS.get(letter or "", "gray")


def raw_percentage(points_earned: float, points_possible: float) -> float:
    if points_possible is None or points_possible <= 0:
        raise DataIntegrityError(
            f"points_possible must be positive (got {points_possible})"
        )
    return float(points_earned) / float(points_possible) * 100.0


def late_penalty(
    days_late: Optional[float],
    per_day: Optional[float],
    max_penalty: Optional[float] = None,
) -> float:
    """Percentage points deducted for lateness, capped at max_penalty when set."""
    if not per_day or not days_late or days_late <= 0:
        return 0.0
    penalty = float(days_late) * float(per_day)
    if max_penalty is not None:
        penalty = min(penalty, float(max_penalty))
    return max(0.0, penalty)


def effective_drop_count(drop_lowest: int, score_count: int) -> int:
    """How many scores may actually be dropped; at least one always remains."""
    if score_count <= 1:
        return 0
    return max(0, min(int(drop_lowest or 0), score_count - 1))


def clamp_percentage(value: float, allow_above_100: bool = False) -> float:
    value = max(0.0, value)
    if not allow_above_100:
        value = min(100.0, value)
    return round(value, 2)


def curved_percentage(
    base_percentage: Optional[float], curve: float, allow_above_100: bool = False
) -> Optional[float]:
    if base_percentage is None:
        return None
    return clamp_percentage(base_percentage + (curve or 0.0), allow_above_100)


def aggregate_category(
    rule: CategoryRule, scores: Iterable[ScoreInput]
) -> CategoryResult:
    """Reduce one student's scores in a category to a category average.

    Late penalties are applied per score, then the lowest drop_lowest adjusted
    scores are marked dropped (never all of them), then the rest are averaged.
    A category without scores has an undefined (None) average.
    """
    assignments = []
    for score in scores:
        raw = raw_percentage(score.points_earned, score.points_possible)
        penalty = late_penalty(
            score.days_late, rule.late_penalty_per_day, rule.max_late_penalty
        )
        assignments.append(
            AssignmentResult(
                raw_score_id=score.raw_score_id,
                assignment_id=score.assignment_id,
                category_id=rule.category_id,
                points_earned=float(score.points_earned),
                points_possible=float(score.points_possible),
                raw_percentage=raw,
                late_penalty=penalty,
                percentage=max(0.0, raw - penalty),
            )
        )

    if not assignments:
        return CategoryResult(
            category_id=rule.category_id,
            name=rule.name,
            weight=rule.weight,
            percentage=None,
            weighted_score=None,
        )

    # Ties are broken by assignment id so the same input always drops the same rows
    ordered = sorted(
        assignments, key=lambda a: (a.percentage, a.assignment_id or 0)
    )
    for result in ordered[: effective_drop_count(rule.drop_lowest, len(ordered))]:
        result.is_dropped = True

    kept = [a for a in assignments if not a.is_dropped]
    average = sum(a.percentage for a in kept) / len(kept)
    if not rule.allow_extra_credit:
        average = min(average, 100.0)

    return CategoryResult(
        category_id=rule.category_id,
        name=rule.name,
        weight=rule.weight,
        percentage=average,
        weighted_score=average * rule.weight / 100.0,
        points_earned=sum(a.points_earned for a in kept),
        points_possible=sum(a.points_possible for a in kept),
        assignments=sorted(assignments, key=lambda a: a.assignment_id or 0),
    )


def compose_overall(
    categories: Iterable[CategoryResult],
    extra_credit: float = 0.0,
    curve: float = 0.0,
    allow_extra_credit: bool = False,
    extra_credit_ceiling: float = 100.0,
) -> OverallResult:
    """Combine category averages into the overall percentage.

    Weights are renormalized over the categories that have scores, so a
    category with no work yet neither counts as 0% nor dilutes the rest. Flat
    extra credit is added next, then the stored curve. With no weighted data
    at all the overall grade is undefined.

    Only allow_extra_credit (the class-level flag) lets the result exceed 100;
    otherwise extra_credit_ceiling is capped at 100 and a bonus category
    averaging above 100 still yields at most 100 overall.
    """
    extra_credit = float(extra_credit or 0.0)
    curve = float(curve or 0.0)
    active = [c for c in categories if c.has_scores]
    total_weight = sum(c.weight for c in active)
    points_earned = sum(c.points_earned for c in active)
    points_possible = sum(c.points_possible for c in active)

    if total_weight <= 0:
        return OverallResult(
            percentage=None,
            base_percentage=None,
            letter_grade=None,
            extra_credit=extra_credit,
            curve=curve,
            total_weight=0.0,
            points_earned=points_earned,
            points_possible=points_possible,
        )

    weighted = sum(c.percentage * c.weight for c in active) / total_weight
    base = weighted + extra_credit
    if extra_credit > 0 and not allow_extra_credit:
        ceiling = min(float(extra_credit_ceiling), 100.0)
        base = min(base, max(weighted, ceiling))
    base = round(base, 2)

    percentage = curved_percentage(base, curve, allow_extra_credit)
    return OverallResult(
        percentage=percentage,
        base_percentage=base,
        letter_grade=letter_grade_for(percentage),
        extra_credit=extra_credit,
        curve=curve,
        total_weight=total_weight,
        points_earned=points_earned,
        points_possible=points_possible,
    )


def is_finite_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
