from datetime import datetime, timedelta

import pytest

from models import (
    db,
    Assignment,
    Grade,
    GradeCategory,
    GradeCategorySet,
    OverallGrade,
    RawScore,
    StudentClass,
)
from utils import grade_service
from utils.grade_service import (
    create_assignment,
    get_active_category_set,
    get_class_grades,
    get_student_all_grades,
    get_student_class_grades,
    get_student_grade_history,
    recalculate_class_grades,
    recalculate_student_grades,
    record_score,
    save_grade_categories,
    set_extra_credit,
)
from utils.grading_errors import NotFoundError, ValidationError


def _by_name(result):
    return {c["category_name"]: c for c in result["categories"]}


def test_weighted_overall_with_drop_lowest(gradebook):
    student_id = gradebook["student_ids"][0]
    result = recalculate_student_grades(student_id, gradebook["class_id"])

    categories = _by_name(result)
    assert categories["Tests"]["percentage"] == 95.0
    assert categories["Tests"]["weighted_score"] == 38.0
    assert categories["Homework"]["percentage"] == 85.0
    assert categories["Homework"]["weighted_score"] == 51.0
    assert result["overall"]["percentage"] == 89.0
    assert result["overall"]["letter_grade"] == "B"

    dropped = [a["assignment_id"] for a in result["assignments"] if a["is_dropped"]]
    assert dropped == [gradebook["tests"][1]]
    assert result["flags"] == []


def test_extra_credit_lifts_overall(gradebook):
    student_id = gradebook["student_ids"][0]
    result = set_extra_credit(student_id, gradebook["class_id"], 5)

    assert result["overall"]["percentage"] == 94.0
    assert result["overall"]["letter_grade"] == "A"
    assert result["overall"]["extra_credit"] == 5.0


def test_extra_credit_cannot_pass_ceiling(gradebook, app):
    student_id = gradebook["student_ids"][0]
    app.config["EXTRA_CREDIT_CEILING"] = 92.0
    result = set_extra_credit(student_id, gradebook["class_id"], 5)

    assert result["overall"]["percentage"] == 92.0


def test_recalculation_is_deterministic_and_keeps_rows(gradebook):
    student_id = gradebook["student_ids"][0]
    first = recalculate_student_grades(student_id, gradebook["class_id"])
    row_count = Grade.query.count()

    second = recalculate_student_grades(student_id, gradebook["class_id"])

    assert second["overall"] == first["overall"]
    assert second["categories"] == first["categories"]
    assert second["assignments"] == first["assignments"]
    assert Grade.query.count() == row_count


def test_changed_score_supersedes_previous_rows(gradebook):
    class_id = gradebook["class_id"]
    student_id = gradebook["student_ids"][0]
    before = recalculate_student_grades(student_id, class_id)["overall"]

    after = record_score(student_id, gradebook["homework"][0], 100)["grades"]["overall"]

    assert after["id"] != before["id"]
    assert after["percentage"] == 95.0
    old = db.session.get(OverallGrade, before["id"])
    assert old.superseded_at is not None
    current = OverallGrade.query.filter_by(
        student_id=student_id, class_id=class_id, superseded_at=None
    ).all()
    assert len(current) == 1


def test_categories_without_scores_are_excluded(gradebook):
    class_id = gradebook["class_id"]
    student_id = gradebook["student_ids"][2]
    record_score(student_id, gradebook["tests"][0], 70)

    result = recalculate_student_grades(student_id, class_id)

    assert _by_name(result)["Homework"]["percentage"] is None
    assert result["overall"]["percentage"] == 70.0
    assert result["overall"]["letter_grade"] == "C"


def test_student_without_scores_has_undefined_overall(gradebook):
    result = recalculate_student_grades(gradebook["student_ids"][2], gradebook["class_id"])

    assert result["overall"]["percentage"] is None
    assert result["overall"]["letter_grade"] is None


def test_uncategorized_assignment_is_flagged_not_counted(gradebook):
    class_id = gradebook["class_id"]
    student_id = gradebook["student_ids"][0]
    loose = create_assignment(class_id, "Pop quiz")
    assert loose.category.is_sentinel

    result = record_score(student_id, loose.id, 10)["grades"]

    assert result["overall"]["percentage"] == 89.0
    assert [f["assignment_id"] for f in result["flags"]] == [loose.id]


def test_unknown_category_name_rejected(seed):
    save_grade_categories(seed["class_id"], [{"name": "All", "weight": 100}])
    with pytest.raises(ValidationError):
        create_assignment(seed["class_id"], "Essay", "Projects")


def test_invalid_category_table_writes_nothing(gradebook):
    class_id = gradebook["class_id"]
    active = get_active_category_set(class_id)

    with pytest.raises(ValidationError):
        save_grade_categories(
            class_id, [{"name": "Tests", "weight": 40}, {"name": "Homework", "weight": 50}]
        )

    assert get_active_category_set(class_id).id == active.id
    assert GradeCategorySet.query.filter_by(class_id=class_id).count() == 1


def test_saving_categories_creates_new_version(gradebook):
    class_id = gradebook["class_id"]
    previous = get_active_category_set(class_id)
    previous_id = previous.id

    saved = save_grade_categories(
        class_id,
        [{"name": "TESTS", "weight": 50, "drop_lowest": 1}, {"name": "Homework", "weight": 50}],
    )

    active = get_active_category_set(class_id)
    assert active.version == 2
    assert [c["name"] for c in saved] == ["TESTS", "Homework"]
    old_set = db.session.get(GradeCategorySet, previous_id)
    assert old_set.is_active is False
    assert all(c.deleted_at is not None for c in old_set.categories)

    # Renamed by case only: assignments follow the category
    for assignment_id in gradebook["tests"]:
        assignment = db.session.get(Assignment, assignment_id)
        assert assignment.category.category_set_id == active.id
        assert assignment.category.name == "TESTS"

    result = recalculate_student_grades(gradebook["student_ids"][0], class_id)
    assert result["overall"]["percentage"] == 90.0
    assert result["overall"]["category_set_id"] == active.id


def test_removed_category_orphans_its_assignments(gradebook):
    class_id = gradebook["class_id"]
    save_grade_categories(class_id, [{"name": "Tests", "weight": 100, "drop_lowest": 1}])

    for assignment_id in gradebook["homework"]:
        assignment = db.session.get(Assignment, assignment_id)
        assert assignment.category.is_sentinel

    result = recalculate_student_grades(gradebook["student_ids"][0], class_id)
    assert result["overall"]["percentage"] == 95.0
    assert sorted(f["assignment_id"] for f in result["flags"]) == sorted(gradebook["homework"])
    assert "Homework" not in _by_name(result)


def test_save_recalculates_whole_roster(gradebook):
    class_id = gradebook["class_id"]
    save_grade_categories(
        class_id,
        [{"name": "Tests", "weight": 60, "drop_lowest": 1}, {"name": "Homework", "weight": 40}],
    )
    active = get_active_category_set(class_id)

    rows = get_class_grades(class_id)
    assert len(rows) == 3
    for row in rows:
        assert row["overall"]["category_set_id"] == active.id
    percentages = [row["overall"]["percentage"] for row in rows]
    # 95*0.6 + 85*0.4 and 85*0.6 + 75*0.4
    assert percentages == [91.0, 81.0, None]


def test_stale_snapshot_does_not_overwrite_newer_version(gradebook):
    class_id = gradebook["class_id"]
    student_id = gradebook["student_ids"][0]
    old_set_id = get_active_category_set(class_id).id
    save_grade_categories(
        class_id,
        [{"name": "Tests", "weight": 60, "drop_lowest": 1}, {"name": "Homework", "weight": 40}],
    )
    new_set_id = get_active_category_set(class_id).id

    result = recalculate_student_grades(student_id, class_id, category_set_id=old_set_id)

    assert result["skipped"] is True
    assert result["overall"]["category_set_id"] == new_set_id
    assert result["overall"]["percentage"] == 91.0


def test_failed_student_does_not_abort_class_recalculation(gradebook, monkeypatch):
    class_id = gradebook["class_id"]
    failing = gradebook["student_ids"][1]
    original = grade_service.recalculate_student_grades

    def flaky(student_id, class_id, **kwargs):
        if student_id == failing:
            raise RuntimeError("disk full")
        return original(student_id, class_id, **kwargs)

    monkeypatch.setattr(grade_service, "recalculate_student_grades", flaky)
    summary = recalculate_class_grades(class_id)

    assert summary["failed"] == [{"student_id": failing, "error": "disk full"}]
    assert sorted(summary["recalculated"] + summary["skipped"]) == sorted(
        s for s in gradebook["student_ids"] if s != failing
    )


def test_late_penalty_from_due_date(seed):
    class_id = seed["class_id"]
    student_id = seed["student_ids"][0]
    save_grade_categories(
        class_id,
        [{"name": "Homework", "weight": 100, "latePenaltyPerDay": 10, "maxLatePenalty": 25}],
    )
    due = datetime(2024, 3, 1, 23, 59)
    assignment = create_assignment(class_id, "Essay", "Homework", due_date=due)

    result = record_score(
        student_id, assignment.id, 90, submitted_at=due + timedelta(days=2)
    )

    assert result["score"]["is_late"] is True
    grade = result["grades"]["assignments"][0]
    assert grade["late_penalty"] == 20.0
    assert grade["percentage"] == 70.0
    assert result["grades"]["overall"]["percentage"] == 70.0


def test_record_score_validation(gradebook):
    student_id = gradebook["student_ids"][2]
    assignment_id = gradebook["tests"][0]

    with pytest.raises(ValidationError):
        record_score(student_id, assignment_id, -5)
    with pytest.raises(ValidationError):
        record_score(student_id, assignment_id, 5, points_possible=0)
    with pytest.raises(NotFoundError):
        record_score(student_id, 9999, 5)

    assert RawScore.query.filter_by(student_id=student_id).count() == 0


def test_days_late_rejected_on_score_marked_not_late(gradebook):
    student_id = gradebook["student_ids"][2]

    with pytest.raises(ValidationError) as excinfo:
        record_score(student_id, gradebook["tests"][0], 50, is_late=False, days_late=3)

    assert "days_late cannot be set on a score marked not late" in excinfo.value.details
    assert RawScore.query.filter_by(student_id=student_id).count() == 0


def test_unknown_enrollment_raises_not_found(gradebook):
    with pytest.raises(NotFoundError):
        recalculate_student_grades(9999, gradebook["class_id"])
    with pytest.raises(NotFoundError):
        recalculate_student_grades(gradebook["student_ids"][0], 9999)


def test_grade_history_filters(gradebook):
    class_id = gradebook["class_id"]
    student_id = gradebook["student_ids"][0]

    overall = get_student_grade_history(student_id, class_id=class_id, grade_type="overall")
    assert overall
    assert all(g["grade_type"] == "overall" for g in overall)
    # Every score entry superseded the previous overall grade
    assert sum(1 for g in overall if g["superseded_at"] is None) == 1

    limited = get_student_grade_history(student_id, limit=3)
    assert len(limited) == 3

    with pytest.raises(ValidationError):
        get_student_grade_history(student_id, grade_type="weekly")


def test_sentinel_category_is_reused(seed):
    class_id = seed["class_id"]
    create_assignment(class_id, "One")
    create_assignment(class_id, "Two")

    sentinels = GradeCategory.query.filter_by(class_id=class_id, is_sentinel=True).all()
    assert len(sentinels) == 1
    assert sentinels[0].category_set_id is None
    assert sentinels[0].weight == 0.0


def test_student_reads_follow_enrollment(gradebook):
    class_id = gradebook["class_id"]
    first, _, third = gradebook["student_ids"]

    snapshot = get_student_class_grades(first, class_id)
    assert snapshot["overall"]["percentage"] == 89.0
    assert get_student_class_grades(third, class_id)["overall"]["percentage"] is None
    with pytest.raises(NotFoundError):
        get_student_class_grades(first, 9999)

    assert [row["class_id"] for row in get_student_all_grades(first)] == [class_id]
    assert get_student_all_grades(first, instructor_id=9999) == []
    with pytest.raises(NotFoundError):
        get_student_all_grades(9999)

    StudentClass.query.filter_by(student_id=first, class_id=class_id).one().status = "dropped"
    db.session.commit()
    assert get_student_all_grades(first) == []
