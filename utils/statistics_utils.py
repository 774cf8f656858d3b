import numpy as np
from scipy.stats import skew, kurtosis

from models import OverallGrade, StudentClass
from utils.grade_calculation import LETTER_GRADES, letter_grade_color, letter_grade_for


def get_overall_percentages(class_id):
    """Current overall percentages of approved students; undefined grades are left out."""
    rows = (
        OverallGrade.query.join(
            StudentClass,
            (StudentClass.student_id == OverallGrade.student_id)
            & (StudentClass.class_id == OverallGrade.class_id),
        )
        .filter(
            OverallGrade.class_id == class_id,
            OverallGrade.superseded_at.is_(None),
            OverallGrade.percentage.isnot(None),
            StudentClass.status == "approved",
        )
        .order_by(OverallGrade.student_id)
        .all()
    )
    return [row.percentage for row in rows]


def grade_distribution(class_id):
    """Count of current overall grades per letter."""
    scores = get_overall_percentages(class_id)
    grade_counts = {grade: 0 for grade in LETTER_GRADES}
    for score in scores:
        grade_counts[letter_grade_for(score)] += 1

    total = len(scores)
    return {
        "class_id": class_id,
        "total": total,
        "distribution": [
            {
                "letter_grade": grade,
                "count": grade_counts[grade],
                "percentage": round(grade_counts[grade] / total * 100, 1) if total else 0.0,
                "color": letter_grade_color(grade),
            }
            for grade in LETTER_GRADES
        ],
    }


def class_grade_statistics(class_id):
    """Descriptive statistics of current overall grades; None below three grades."""
    scores = get_overall_percentages(class_id)

    if not scores or len(scores) < 3:
        return None

    mean_score = float(np.mean(scores))
    median_score = float(np.median(scores))
    std_dev = float(np.std(scores))

    q1 = float(np.percentile(scores, 25))
    q3 = float(np.percentile(scores, 75))

    # Identical scores have no defined shape
    if std_dev > 0:
        skewness = round(float(skew(scores)), 3)
        kurt = round(float(kurtosis(scores)), 3)
    else:
        skewness = None
        kurt = None

    passing = len([s for s in scores if s >= 60])
    return {
        "class_id": class_id,
        "count": len(scores),
        "mean": round(mean_score, 2),
        "median": round(median_score, 2),
        "std_dev": round(std_dev, 2),
        "min": round(float(np.min(scores)), 2),
        "max": round(float(np.max(scores)), 2),
        "q1": round(q1, 2),
        "q3": round(q3, 2),
        "iqr": round(q3 - q1, 2),
        "skewness": skewness,
        "kurtosis": kurt,
        "pass_rate": round(passing / len(scores) * 100, 1),
    }
