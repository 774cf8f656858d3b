import logging
from functools import wraps
from typing import Optional

from flask import jsonify, session

from models import db, Class, Instructor, Student

logger = logging.getLogger(__name__)


def login_required(f):
    """Decorator to ensure a valid session exists before accessing an API route."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "authentication_required"}), 401
        return f(*args, **kwargs)

    return decorated_function


def current_instructor_id() -> Optional[int]:
    user_id = session.get("user_id")
    if not user_id:
        return None
    instructor = Instructor.query.filter_by(user_id=user_id).first()
    return instructor.id if instructor else None


def current_student_id() -> Optional[int]:
    user_id = session.get("user_id")
    if not user_id:
        return None
    student = Student.query.filter_by(user_id=user_id).first()
    return student.id if student else None


def instructor_owns_class(class_id: int, instructor_id: Optional[int]) -> bool:
    if not instructor_id:
        return False
    klass = db.session.get(Class, class_id)
    return klass is not None and klass.instructor_id == instructor_id
