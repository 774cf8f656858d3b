import os
import sys

import pytest

# Ensure project root is on sys.path so tests can import app.py
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app import create_app
from models import db, Class, Instructor, School, Student, StudentClass


@pytest.fixture
def app(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'grades.db'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {
                "connect_args": {"timeout": 30, "check_same_thread": False}
            },
            "WTF_CSRF_ENABLED": False,
            "GRADE_RECALC_MAX_WORKERS": 4,
        }
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seed(app):
    """One school, one instructor (user 1) owning one class of three students."""
    school = School(name="North High")
    db.session.add(school)
    db.session.flush()

    instructor = Instructor(user_id=1, school_id=school.id, full_name="Dana Reyes")
    db.session.add(instructor)
    db.session.flush()

    klass = Class(school_id=school.id, instructor_id=instructor.id, name="Algebra I")
    db.session.add(klass)
    db.session.flush()

    students = []
    for i, (first, last) in enumerate(
        [("Ada", "Lovelace"), ("Alan", "Turing"), ("Grace", "Hopper")], start=1
    ):
        student = Student(
            user_id=100 + i, school_id=school.id, first_name=first, last_name=last
        )
        db.session.add(student)
        db.session.flush()
        db.session.add(StudentClass(student_id=student.id, class_id=klass.id))
        students.append(student)
    db.session.commit()

    return {
        "school_id": school.id,
        "instructor_id": instructor.id,
        "class_id": klass.id,
        "student_ids": [s.id for s in students],
    }


@pytest.fixture
def gradebook(seed):
    """Tests 40% (drop lowest 1) and Homework 60%; students 1 and 2 fully graded.

    Student 1 ends at 89 (B), student 2 at 79 (C); student 3 has no scores.
    """
    from utils.grade_service import create_assignment, record_score, save_grade_categories

    class_id = seed["class_id"]
    save_grade_categories(
        class_id,
        [
            {"name": "Tests", "weight": 40, "drop_lowest": 1},
            {"name": "Homework", "weight": 60},
        ],
    )
    tests = [create_assignment(class_id, f"Test {i}", "Tests").id for i in (1, 2, 3)]
    homework = [
        create_assignment(class_id, f"Homework {i}", "Homework").id for i in (1, 2)
    ]

    first, second, _ = seed["student_ids"]
    for assignment_id, points in zip(tests + homework, [100, 60, 90, 80, 90]):
        record_score(first, assignment_id, points)
    for assignment_id, points in zip(tests + homework, [80, 70, 90, 70, 80]):
        record_score(second, assignment_id, points)

    return dict(seed, tests=tests, homework=homework)


@pytest.fixture
def logged_in(client):
    with client.session_transaction() as sess:
        sess["user_id"] = 1
    return client
