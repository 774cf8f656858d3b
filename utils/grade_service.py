"""Grade engine operations backed by the database.

All functions expect an active Flask app context (they use db.session).
"""

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from models import (
    db,
    GRADE_TYPES,
    Assignment,
    AssignmentGrade,
    CategoryGrade,
    Class,
    Grade,
    GradeCategory,
    GradeCategorySet,
    OverallGrade,
    RawScore,
    Student,
    StudentClass,
)
from utils.grade_calculation import (
    CategoryRule,
    ScoreInput,
    aggregate_category,
    compose_overall,
    curved_percentage,
    is_finite_number,
    letter_grade_for,
)
from utils.grading_errors import (
    ConcurrentModificationError,
    DataIntegrityError,
    NotFoundError,
    ValidationError,
)
from utils.live import emit_grades_published
from utils.structure_utils import normalize_categories

logger = logging.getLogger(__name__)

SENTINEL_CATEGORY_NAME = "Uncategorized"
CURVE_LIMIT = 50.0
HISTORY_LIMIT = 50
WRITE_ATTEMPTS = 3


def _round(value):
    return None if value is None else round(value, 2)


def _get_class(class_id) -> Class:
    klass = db.session.get(Class, class_id)
    if klass is None:
        raise NotFoundError(f"class {class_id} not found")
    return klass


def _get_enrollment(student_id, class_id) -> StudentClass:
    enrollment = StudentClass.query.filter_by(
        student_id=student_id, class_id=class_id
    ).first()
    if enrollment is None:
        raise NotFoundError(f"student {student_id} is not enrolled in class {class_id}")
    return enrollment


def _current(model, student_id, class_id):
    return model.query.filter_by(
        student_id=student_id, class_id=class_id, superseded_at=None
    )


# -----------------------------
# Category rule table
# -----------------------------
def get_active_category_set(class_id) -> Optional[GradeCategorySet]:
    return (
        GradeCategorySet.query.filter_by(class_id=class_id, is_active=True)
        .order_by(GradeCategorySet.version.desc())
        .first()
    )


def get_sentinel_category(class_id) -> GradeCategory:
    """Return the class's "Uncategorized" category, creating it on first use."""
    sentinel = GradeCategory.query.filter_by(class_id=class_id, is_sentinel=True).first()
    if sentinel is None:
        sentinel = GradeCategory(
            class_id=class_id,
            name=SENTINEL_CATEGORY_NAME,
            weight=0.0,
            is_sentinel=True,
        )
        db.session.add(sentinel)
        db.session.flush()
    return sentinel


def _remap_assignments(class_id, category_set: GradeCategorySet) -> int:
    """Point every assignment at the same-named category of the new set.

    Assignments whose category has no counterpart move to the sentinel, so no
    assignment can reference a deleted category. Returns how many moved there.
    """
    by_name = {c.name.casefold(): c for c in category_set.categories}
    orphaned = 0
    for assignment in Assignment.query.filter_by(class_id=class_id).all():
        current = assignment.category
        if current is not None and current.is_sentinel:
            continue
        target = by_name.get(current.name.casefold()) if current is not None else None
        if target is None:
            target = get_sentinel_category(class_id)
            orphaned += 1
            logger.warning(
                f"Assignment {assignment.id} in class {class_id} has no matching category "
                f"in version {category_set.version}; moved to {SENTINEL_CATEGORY_NAME}"
            )
        assignment.category = target
    return orphaned


def save_grade_categories(class_id, categories, created_by=None) -> list:
    """Replace the class's category table with a new version.

    The table is validated first; on failure nothing is written. The previous
    version is deactivated and its categories soft-deleted, assignments are
    re-pointed, and every enrolled student is recalculated.
    """
    rows = normalize_categories(categories)
    _get_class(class_id)
    now = datetime.now()

    try:
        previous = get_active_category_set(class_id)
        latest_version = (
            db.session.query(db.func.max(GradeCategorySet.version))
            .filter(GradeCategorySet.class_id == class_id)
            .scalar()
            or 0
        )
        if previous is not None:
            previous.is_active = False
            for category in previous.categories:
                if category.deleted_at is None:
                    category.deleted_at = now

        category_set = GradeCategorySet(
            class_id=class_id,
            version=latest_version + 1,
            is_active=True,
            created_by=created_by,
        )
        db.session.add(category_set)
        for row in rows:
            category_set.categories.append(GradeCategory(class_id=class_id, **row))
        db.session.flush()

        orphaned = _remap_assignments(class_id, category_set)
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise ConcurrentModificationError(
            f"grade categories for class {class_id} were changed concurrently"
        ) from e
    except Exception:
        db.session.rollback()
        raise

    set_id, version = category_set.id, category_set.version
    logger.info(
        f"Saved grade categories v{version} for class {class_id}: "
        f"{len(rows)} categories, {orphaned} assignments uncategorized"
    )

    summary = recalculate_class_grades(class_id, category_set_id=set_id)
    if summary["failed"]:
        logger.warning(
            f"Recalculation after category save failed for {len(summary['failed'])} "
            f"students in class {class_id}"
        )
    return [c.to_dict() for c in db.session.get(GradeCategorySet, set_id).categories]


# -----------------------------
# Score record store
# -----------------------------
def create_assignment(class_id, title, category=None, total_points=100.0, due_date=None):
    """Create an assignment in a category of the active set (by id or name).

    Without a category the assignment lands in the sentinel and does not count
    until it is moved.
    """
    _get_class(class_id)
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title must be a non-empty string")
    if not is_finite_number(total_points) or total_points <= 0:
        raise ValidationError("total_points must be a positive number")

    if category is None:
        target = get_sentinel_category(class_id)
    else:
        active = get_active_category_set(class_id)
        candidates = active.categories if active is not None else []
        if isinstance(category, int):
            target = next((c for c in candidates if c.id == category), None)
        else:
            key = str(category).strip().casefold()
            target = next((c for c in candidates if c.name.casefold() == key), None)
        if target is None:
            raise ValidationError(
                f"category '{category}' is not in the active category set of class {class_id}"
            )

    assignment = Assignment(
        class_id=class_id,
        title=title.strip(),
        category=target,
        total_points=float(total_points),
        due_date=due_date,
    )
    db.session.add(assignment)
    db.session.commit()
    return assignment


def record_score(
    student_id,
    assignment_id,
    points_earned,
    points_possible=None,
    submitted_at=None,
    is_late=None,
    days_late=None,
    recalculate=True,
):
    """Store (or override) a student's graded score and recalculate their grades."""
    assignment = db.session.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFoundError(f"assignment {assignment_id} not found")
    _get_enrollment(student_id, assignment.class_id)

    if points_possible is None:
        points_possible = assignment.total_points

    errors = []
    for label, value in (
        ("points_earned", points_earned),
        ("points_possible", points_possible),
    ):
        if not is_finite_number(value) or value < 0:
            errors.append(f"{label} must be a non-negative number")
    if is_finite_number(points_possible) and points_possible == 0:
        errors.append("points_possible must be greater than 0")
    if days_late is not None and (not is_finite_number(days_late) or days_late < 0):
        errors.append("days_late must be a non-negative number")
    elif is_late is False and days_late:
        errors.append("days_late cannot be set on a score marked not late")
    if errors:
        raise ValidationError(errors)

    if is_late is None:
        is_late = bool(days_late) or bool(
            assignment.due_date and submitted_at and submitted_at > assignment.due_date
        )

    try:
        raw = RawScore.query.filter_by(
            student_id=student_id, assignment_id=assignment_id
        ).first()
        if raw is None:
            raw = RawScore(student_id=student_id, assignment_id=assignment_id)
            db.session.add(raw)
        raw.points_earned = float(points_earned)
        raw.points_possible = float(points_possible)
        raw.is_late = bool(is_late)
        raw.days_late = None if days_late is None else float(days_late)
        raw.submitted_at = submitted_at
        raw.graded_at = datetime.now()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    result = {"score": raw.to_dict()}
    if recalculate:
        result["grades"] = recalculate_student_grades(student_id, assignment.class_id)
    return result


def set_extra_credit(student_id, class_id, extra_credit):
    """Set the flat extra credit a teacher granted a student, then recalculate."""
    if not is_finite_number(extra_credit) or extra_credit < 0:
        raise ValidationError("extra_credit must be a non-negative number")
    enrollment = _get_enrollment(student_id, class_id)
    enrollment.extra_credit = float(extra_credit)
    db.session.commit()
    return recalculate_student_grades(student_id, class_id)


def _days_late(raw: RawScore, assignment: Assignment) -> float:
    if not raw.is_late:
        return 0.0
    if raw.days_late is not None:
        return max(0.0, float(raw.days_late))
    if assignment.due_date is not None and raw.submitted_at is not None:
        return float(max(1, (raw.submitted_at.date() - assignment.due_date.date()).days))
    return 1.0


# -----------------------------
# Recalculation
# -----------------------------
def _rules_for(category_set: Optional[GradeCategorySet]) -> list:
    if category_set is None:
        return []
    return [
        CategoryRule(
            category_id=c.id,
            name=c.name,
            weight=c.weight,
            drop_lowest=c.drop_lowest or 0,
            late_penalty_per_day=c.late_penalty_per_day,
            max_late_penalty=c.max_late_penalty,
            allow_extra_credit=bool(c.allow_extra_credit),
            sort_order=c.sort_order,
        )
        for c in category_set.categories
    ]


def _collect_scores(student_id, class_id, rules):
    """Group the student's scores by rule; unusable scores are flagged, not counted."""
    rules_by_id = {r.category_id: r for r in rules}
    rules_by_name = {r.name.casefold(): r for r in rules}
    scores = defaultdict(list)
    flags = []

    rows = (
        db.session.query(RawScore, Assignment)
        .join(Assignment, RawScore.assignment_id == Assignment.id)
        .filter(RawScore.student_id == student_id, Assignment.class_id == class_id)
        .order_by(Assignment.id)
        .all()
    )
    for raw, assignment in rows:
        category = assignment.category
        rule = None
        if category is not None and not category.is_sentinel:
            # Name lookup covers assignments already moved to a newer set
            rule = rules_by_id.get(category.id) or rules_by_name.get(
                category.name.casefold()
            )

        problem = None
        if rule is None:
            problem = DataIntegrityError(
                f"assignment {assignment.id} is not in an active grade category",
                raw_score_id=raw.id,
                assignment_id=assignment.id,
            )
        elif raw.points_possible is None or raw.points_possible <= 0:
            problem = DataIntegrityError(
                f"score {raw.id} has no positive points_possible",
                raw_score_id=raw.id,
                assignment_id=assignment.id,
            )
        if problem is not None:
            logger.warning(
                f"Excluding score {raw.id} of student {student_id}: {problem.message}"
            )
            flags.append(problem.to_dict())
            continue

        scores[rule.category_id].append(
            ScoreInput(
                raw_score_id=raw.id,
                assignment_id=assignment.id,
                points_earned=raw.points_earned,
                points_possible=raw.points_possible,
                days_late=_days_late(raw, assignment),
            )
        )
    return scores, flags


def _has_newer_grades(student_id, class_id, category_set) -> bool:
    """True when current grades were computed under a later category version."""
    if category_set is None:
        return False
    newest = (
        db.session.query(db.func.max(GradeCategorySet.version))
        .join(Grade, Grade.category_set_id == GradeCategorySet.id)
        .filter(
            Grade.student_id == student_id,
            Grade.class_id == class_id,
            Grade.superseded_at.is_(None),
        )
        .scalar()
    )
    return newest is not None and newest > category_set.version


def _sync_grade(current, model, values, now):
    """Keep the current row when nothing changed, otherwise supersede it."""
    if current is not None and current.matches(values):
        return current
    grade = model(grade_date=now, **values)
    if current is not None:
        current.superseded_at = now
        grade.teacher_comments = current.teacher_comments
    db.session.add(grade)
    return grade


def _persist_student_grades(student_id, klass, category_set, category_results, overall):
    now = datetime.now()
    common = {
        "student_id": student_id,
        "class_id": klass.id,
        "school_id": klass.school_id,
        "category_set_id": category_set.id if category_set is not None else None,
    }

    existing = {g.raw_score_id: g for g in _current(AssignmentGrade, student_id, klass.id)}
    for category in category_results:
        for result in category.assignments:
            percentage = _round(result.percentage)
            values = dict(
                common,
                category_id=result.category_id,
                raw_score_id=result.raw_score_id,
                assignment_id=result.assignment_id,
                points_earned=result.points_earned,
                points_possible=result.points_possible,
                percentage=percentage,
                letter_grade=letter_grade_for(percentage),
                late_penalty=_round(result.late_penalty),
                is_dropped=result.is_dropped,
            )
            _sync_grade(existing.pop(result.raw_score_id, None), AssignmentGrade, values, now)
    for stale in existing.values():
        stale.superseded_at = now

    existing = {g.category_id: g for g in _current(CategoryGrade, student_id, klass.id)}
    for category in category_results:
        percentage = _round(category.percentage)
        values = dict(
            common,
            category_id=category.category_id,
            category_name=category.name,
            weight=category.weight,
            points_earned=category.points_earned,
            points_possible=category.points_possible,
            percentage=percentage,
            letter_grade=letter_grade_for(percentage),
            weighted_score=_round(category.weighted_score),
        )
        _sync_grade(existing.pop(category.category_id, None), CategoryGrade, values, now)
    for stale in existing.values():
        stale.superseded_at = now

    current_overall = _current(OverallGrade, student_id, klass.id).order_by(OverallGrade.id).all()
    for duplicate in current_overall[1:]:
        duplicate.superseded_at = now
    values = dict(
        common,
        category_id=None,
        points_earned=overall.points_earned,
        points_possible=overall.points_possible,
        percentage=overall.percentage,
        letter_grade=overall.letter_grade,
        base_percentage=overall.base_percentage,
        extra_credit=overall.extra_credit,
        curve=overall.curve,
    )
    _sync_grade(current_overall[0] if current_overall else None, OverallGrade, values, now)


def _student_snapshot(student_id, class_id) -> dict:
    overall = _current(OverallGrade, student_id, class_id).first()
    categories = _current(CategoryGrade, student_id, class_id).order_by(
        CategoryGrade.category_id
    )
    assignments = _current(AssignmentGrade, student_id, class_id).order_by(
        AssignmentGrade.assignment_id
    )
    return {
        "student_id": student_id,
        "class_id": class_id,
        "category_set_id": overall.category_set_id if overall is not None else None,
        "overall": overall.to_dict() if overall is not None else None,
        "categories": [g.to_dict() for g in categories],
        "assignments": [g.to_dict() for g in assignments],
    }


def recalculate_student_grades(student_id, class_id, category_set_id=None, notify=True) -> dict:
    """Recompute and persist one student's assignment, category and overall grades.

    Uses the given category set version (the fan-out snapshot) or the active
    one. Categories are all computed before the overall grade is composed, and
    everything is written in one commit. Returns the current grades plus any
    flagged scores that were left out.
    """
    klass = _get_class(class_id)
    enrollment = _get_enrollment(student_id, class_id)

    if category_set_id is None:
        category_set = get_active_category_set(class_id)
    else:
        category_set = db.session.get(GradeCategorySet, category_set_id)
        if category_set is None or category_set.class_id != klass.id:
            raise NotFoundError(
                f"category set {category_set_id} not found for class {class_id}"
            )

    attempt = 0
    while True:
        attempt += 1
        if _has_newer_grades(student_id, class_id, category_set):
            logger.info(
                f"Skipping recalculation of student {student_id} in class {class_id}: "
                f"grades already computed under a newer category version"
            )
            result = _student_snapshot(student_id, class_id)
            result.update({"flags": [], "skipped": True})
            return result

        rules = _rules_for(category_set)
        scores, flags = _collect_scores(student_id, class_id, rules)

        category_results = [
            aggregate_category(rule, scores.get(rule.category_id, [])) for rule in rules
        ]

        # Locked where supported; the row version catches a curve committed meanwhile
        current_overall = (
            _current(OverallGrade, student_id, class_id).with_for_update().first()
        )
        overall = compose_overall(
            category_results,
            extra_credit=enrollment.extra_credit or 0.0,
            curve=(current_overall.curve or 0.0) if current_overall is not None else 0.0,
            allow_extra_credit=bool(klass.allow_extra_credit),
            extra_credit_ceiling=float(current_app.config.get("EXTRA_CREDIT_CEILING", 100.0)),
        )

        try:
            _persist_student_grades(student_id, klass, category_set, category_results, overall)
            db.session.commit()
            break
        except StaleDataError as e:
            db.session.rollback()
            if attempt >= WRITE_ATTEMPTS:
                raise ConcurrentModificationError(
                    f"grades of student {student_id} in class {class_id} kept changing"
                ) from e
            logger.warning(
                f"Grades of student {student_id} in class {class_id} changed during "
                f"recalculation; retrying (attempt {attempt + 1}/{WRITE_ATTEMPTS})"
            )
        except Exception:
            db.session.rollback()
            raise

    if notify:
        emit_grades_published(class_id, [student_id])

    result = _student_snapshot(student_id, class_id)
    result.update({"flags": flags, "skipped": False})
    return result


def recalculate_class_grades(class_id, category_set_id=None) -> dict:
    """Recalculate every approved student of a class in parallel.

    The category set is resolved once up front and shared by all workers.
    A failure for one student is logged and reported; the others still run.
    """
    _get_class(class_id)
    if category_set_id is None:
        active = get_active_category_set(class_id)
        category_set_id = active.id if active is not None else None

    student_ids = [
        row.student_id
        for row in StudentClass.query.filter_by(class_id=class_id, status="approved")
        .order_by(StudentClass.student_id)
        .all()
    ]
    summary = {
        "class_id": class_id,
        "category_set_id": category_set_id,
        "recalculated": [],
        "skipped": [],
        "failed": [],
    }
    if not student_ids:
        return summary

    app = current_app._get_current_object()
    max_workers = max(1, int(app.config.get("GRADE_RECALC_MAX_WORKERS", 8)))

    def _recalculate(student_id):
        with app.app_context():
            return recalculate_student_grades(
                student_id, class_id, category_set_id=category_set_id, notify=False
            )

    with ThreadPoolExecutor(max_workers=min(max_workers, len(student_ids))) as executor:
        future_to_student = {
            executor.submit(_recalculate, student_id): student_id
            for student_id in student_ids
        }
        for future in as_completed(future_to_student):
            student_id = future_to_student[future]
            try:
                result = future.result()
            except Exception as e:
                logger.error(
                    f"Recalculation failed for student {student_id} in class {class_id}: {str(e)}"
                )
                summary["failed"].append({"student_id": student_id, "error": str(e)})
                continue
            key = "skipped" if result.get("skipped") else "recalculated"
            summary[key].append(student_id)

    # Workers committed through their own sessions
    db.session.expire_all()
    for key in ("recalculated", "skipped"):
        summary[key].sort()
    summary["failed"].sort(key=lambda f: f["student_id"])
    logger.info(
        f"Recalculated class {class_id}: {len(summary['recalculated'])} ok, "
        f"{len(summary['skipped'])} skipped, {len(summary['failed'])} failed"
    )
    emit_grades_published(class_id, summary["recalculated"])
    return summary


# -----------------------------
# Curve
# -----------------------------
def _validate_curve_amount(curve_amount) -> float:
    if not is_finite_number(curve_amount):
        raise ValidationError("curve_amount must be a number")
    if abs(curve_amount) > CURVE_LIMIT:
        raise ValidationError(
            f"curve_amount must be between -{CURVE_LIMIT:g} and {CURVE_LIMIT:g} (got {curve_amount:g})"
        )
    return float(curve_amount)


def _apply_curve_to_grade(grade: OverallGrade, amount: float, allow_above_100: bool, now):
    curve = (grade.curve or 0.0) + amount
    base = grade.base_percentage
    if not is_finite_number(curve) or (base is not None and not is_finite_number(base)):
        raise DataIntegrityError(f"overall grade {grade.id} holds a non-finite value")
    grade.curve = round(curve, 2)
    grade.percentage = curved_percentage(base, grade.curve, allow_above_100)
    grade.letter_grade = letter_grade_for(grade.percentage)
    grade.grade_date = now


def apply_curve(class_id, curve_amount) -> int:
    """Add curve_amount percentage points to the current overall grade of every
    approved student of a class.

    Curves accumulate: applying +5 and then +3 leaves a curve of +8. Either all
    overall grades of the class are updated or, on any failure, none are.
    Returns the number of grades curved.
    """
    amount = _validate_curve_amount(curve_amount)
    klass = _get_class(class_id)
    allow_extra_credit = bool(klass.allow_extra_credit)

    attempt = 0
    while True:
        attempt += 1
        now = datetime.now()
        grades = (
            OverallGrade.query.join(
                StudentClass,
                db.and_(
                    StudentClass.student_id == OverallGrade.student_id,
                    StudentClass.class_id == OverallGrade.class_id,
                ),
            )
            .filter(
                OverallGrade.class_id == class_id,
                OverallGrade.superseded_at.is_(None),
                StudentClass.status == "approved",
            )
            .order_by(OverallGrade.student_id)
            .with_for_update(of=OverallGrade)
            .all()
        )
        try:
            for grade in grades:
                _apply_curve_to_grade(grade, amount, allow_extra_credit, now)
            db.session.commit()
            break
        except StaleDataError as e:
            db.session.rollback()
            if attempt >= WRITE_ATTEMPTS:
                logger.error(f"Curve of {amount:g} for class {class_id} rolled back: {str(e)}")
                raise ConcurrentModificationError(
                    f"grades of class {class_id} kept changing while curving"
                ) from e
            logger.warning(
                f"Grades of class {class_id} changed while curving; "
                f"retrying (attempt {attempt + 1}/{WRITE_ATTEMPTS})"
            )
        except Exception as e:
            db.session.rollback()
            logger.error(f"Curve of {amount:g} for class {class_id} rolled back: {str(e)}")
            raise

    student_ids = [g.student_id for g in grades]
    logger.info(f"Applied curve of {amount:g} to {len(student_ids)} grades in class {class_id}")
    emit_grades_published(class_id, student_ids)
    return len(student_ids)


# -----------------------------
# Queries
# -----------------------------
def get_class_grades(class_id) -> list:
    """Current overall and category grades for every approved student of a class."""
    _get_class(class_id)
    enrollments = (
        StudentClass.query.filter_by(class_id=class_id, status="approved")
        .order_by(StudentClass.student_id)
        .all()
    )
    rows = []
    for enrollment in enrollments:
        snapshot = _student_snapshot(enrollment.student_id, class_id)
        rows.append(
            {
                "student": enrollment.student.to_dict(),
                "overall": snapshot["overall"],
                "categories": snapshot["categories"],
            }
        )
    return rows


def get_student_class_grades(student_id, class_id) -> dict:
    """Current assignment, category and overall grades of one enrolled student."""
    _get_class(class_id)
    _get_enrollment(student_id, class_id)
    return _student_snapshot(student_id, class_id)


def get_student_all_grades(student_id, instructor_id=None) -> list:
    """Current overall grade of a student in each approved class.

    With instructor_id only that instructor's classes are listed.
    """
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError(f"student {student_id} not found")
    query = (
        Class.query.join(StudentClass, StudentClass.class_id == Class.id)
        .filter(StudentClass.student_id == student_id, StudentClass.status == "approved")
    )
    if instructor_id is not None:
        query = query.filter(Class.instructor_id == instructor_id)

    rows = []
    for klass in query.order_by(Class.name, Class.id).all():
        overall = _current(OverallGrade, student_id, klass.id).first()
        rows.append(
            {
                "class_id": klass.id,
                "class_name": klass.name,
                "overall": overall.to_dict() if overall is not None else None,
            }
        )
    return rows


def get_student_grade_history(student_id, class_id=None, grade_type=None, limit=HISTORY_LIMIT) -> list:
    """Most recent grade rows of a student, superseded ones included."""
    if grade_type is not None and grade_type not in GRADE_TYPES:
        raise ValidationError(
            f"grade_type must be one of: {', '.join(GRADE_TYPES)}"
        )
    query = Grade.query.filter(Grade.student_id == student_id)
    if class_id is not None:
        query = query.filter(Grade.class_id == class_id)
    if grade_type is not None:
        query = query.filter(Grade.grade_type == grade_type)
    grades = query.order_by(Grade.grade_date.desc(), Grade.id.desc()).limit(limit).all()
    return [g.to_dict() for g in grades]
