from utils.grade_service import record_score
from utils.statistics_utils import class_grade_statistics, grade_distribution


def _grade_third_student(gradebook):
    student_id = gradebook["student_ids"][2]
    for assignment_id, points in zip(
        gradebook["tests"] + gradebook["homework"], [60, 50, 70, 60, 60]
    ):
        record_score(student_id, assignment_id, points)


def test_distribution_counts_current_overall_grades(gradebook):
    result = grade_distribution(gradebook["class_id"])

    counts = {row["letter_grade"]: row["count"] for row in result["distribution"]}
    assert result["total"] == 2
    assert counts == {"A": 0, "B": 1, "C": 1, "D": 0, "F": 0}
    assert [row["letter_grade"] for row in result["distribution"]] == ["A", "B", "C", "D", "F"]


def test_statistics_need_three_grades(gradebook):
    assert class_grade_statistics(gradebook["class_id"]) is None


def test_statistics_summary(gradebook):
    _grade_third_student(gradebook)

    stats = class_grade_statistics(gradebook["class_id"])

    # 89, 79 and 62 (tests 65, homework 60)
    assert stats["count"] == 3
    assert stats["max"] == 89.0
    assert stats["median"] == 79.0
    assert stats["pass_rate"] == 100.0
    assert stats["skewness"] is not None


def test_statistics_routes(logged_in, gradebook):
    class_id = gradebook["class_id"]

    resp = logged_in.get(f"/api/classes/{class_id}/grades/stats")
    assert resp.status_code == 400

    _grade_third_student(gradebook)
    resp = logged_in.get(f"/api/classes/{class_id}/grades/stats")
    assert resp.status_code == 200
    assert resp.get_json()["count"] == 3

    resp = logged_in.get(f"/api/classes/{class_id}/grades/distribution")
    assert resp.status_code == 200
    assert resp.get_json()["total"] == 3

    resp = logged_in.get("/api/classes/9999/grades/distribution")
    assert resp.status_code == 404
