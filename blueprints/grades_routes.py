import logging
from datetime import datetime

from flask import Blueprint, jsonify, request, session

from models import db, Assignment, GradeCategorySet
from utils.auth_utils import (
    current_instructor_id,
    current_student_id,
    instructor_owns_class,
    login_required,
)
from utils import grade_service
from utils.grading_errors import (
    ConcurrentModificationError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


grades_bp = Blueprint("grades", __name__)


def _owned_class_or_403(class_id: int):
    """Return None when the signed-in instructor owns the class, else an error response."""
    if not instructor_owns_class(class_id, current_instructor_id()):
        return jsonify({"error": "access_denied"}), 403
    return None


def _parse_datetime(value):
    if value in (None, ""):
        return None
    return datetime.fromisoformat(str(value))


# GET /api/classes/<id>/grade-categories: active category table + version history
@grades_bp.route(
    "/api/classes/<int:class_id>/grade-categories",
    methods=["GET"],
    endpoint="get_grade_categories",
)
@login_required
def get_grade_categories(class_id: int):
    denied = _owned_class_or_403(class_id)
    if denied:
        return denied
    try:
        active = grade_service.get_active_category_set(class_id)
        versions = (
            GradeCategorySet.query.filter_by(class_id=class_id)
            .order_by(GradeCategorySet.version.desc())
            .all()
        )
        return (
            jsonify(
                {
                    "class_id": class_id,
                    "active": active.to_dict() if active else None,
                    "versions": [
                        {
                            "id": v.id,
                            "version": v.version,
                            "is_active": v.is_active,
                            "created_at": v.created_at.isoformat() if v.created_at else None,
                        }
                        for v in versions
                    ],
                }
            ),
            200,
        )
    except Exception as e:
        logger.error(f"Failed to fetch grade categories for class {class_id}: {str(e)}")
        return jsonify({"error": "failed_to_fetch"}), 500


# POST /api/classes/<id>/grade-categories: save a new version (activates it)
@grades_bp.route(
    "/api/classes/<int:class_id>/grade-categories",
    methods=["POST"],
    endpoint="save_grade_categories",
)
@login_required
def save_grade_categories(class_id: int):
    denied = _owned_class_or_403(class_id)
    if denied:
        return denied

    payload = request.get_json(force=True, silent=True) or {}
    # categories may arrive as stringified JSON; the service accepts both
    categories = payload.get("categories")
    try:
        saved = grade_service.save_grade_categories(
            class_id, categories, created_by=current_instructor_id()
        )
        return jsonify({"message": "saved", "categories": saved}), 200
    except ValidationError as e:
        return jsonify({"error": "validation_failed", "details": e.details}), 400
    except ConcurrentModificationError as e:
        logger.warning(f"Concurrent category save for class {class_id}: {str(e)}")
        return jsonify({"error": "concurrent_modification"}), 409
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(f"Failed to save grade categories for class {class_id}: {str(e)}")
        return jsonify({"error": "failed_to_save"}), 500


# POST /api/classes/<id>/assignments: new assignment in a category of the active set
@grades_bp.route(
    "/api/classes/<int:class_id>/assignments",
    methods=["POST"],
    endpoint="create_assignment",
)
@login_required
def create_assignment(class_id: int):
    denied = _owned_class_or_403(class_id)
    if denied:
        return denied

    payload = request.get_json(force=True, silent=True) or {}
    try:
        assignment = grade_service.create_assignment(
            class_id,
            payload.get("title"),
            category=payload.get("category_id") or payload.get("category"),
            total_points=payload.get("total_points", 100.0),
            due_date=_parse_datetime(payload.get("due_date")),
        )
        return jsonify(assignment.to_dict()), 201
    except ValueError:
        return jsonify({"error": "validation_failed", "details": ["due_date must be an ISO date"]}), 400
    except ValidationError as e:
        return jsonify({"error": "validation_failed", "details": e.details}), 400
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(f"Failed to create assignment in class {class_id}: {str(e)}")
        return jsonify({"error": "failed_to_create"}), 500


# PUT /api/assignments/<id>/scores/<student_id>: enter or override a score
@grades_bp.route(
    "/api/assignments/<int:assignment_id>/scores/<int:student_id>",
    methods=["PUT"],
    endpoint="record_score",
)
@login_required
def record_score(assignment_id: int, student_id: int):
    assignment = db.session.get(Assignment, assignment_id)
    if assignment is None:
        return jsonify({"error": "not_found"}), 404
    denied = _owned_class_or_403(assignment.class_id)
    if denied:
        return denied

    payload = request.get_json(force=True, silent=True) or {}
    try:
        result = grade_service.record_score(
            student_id,
            assignment_id,
            payload.get("points_earned"),
            points_possible=payload.get("points_possible"),
            submitted_at=_parse_datetime(payload.get("submitted_at")),
            is_late=payload.get("is_late"),
            days_late=payload.get("days_late"),
        )
        return jsonify(result), 200
    except ValueError:
        return jsonify({"error": "validation_failed", "details": ["submitted_at must be an ISO date"]}), 400
    except ValidationError as e:
        return jsonify({"error": "validation_failed", "details": e.details}), 400
    except ConcurrentModificationError:
        return jsonify({"error": "concurrent_modification"}), 409
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(f"Failed to record score for assignment {assignment_id}: {str(e)}")
        return jsonify({"error": "failed_to_save"}), 500


# PUT /api/classes/<id>/students/<student_id>/extra-credit
@grades_bp.route(
    "/api/classes/<int:class_id>/students/<int:student_id>/extra-credit",
    methods=["PUT"],
    endpoint="set_extra_credit",
)
@login_required
def set_extra_credit(class_id: int, student_id: int):
    denied = _owned_class_or_403(class_id)
    if denied:
        return denied

    payload = request.get_json(force=True, silent=True) or {}
    try:
        result = grade_service.set_extra_credit(
            student_id, class_id, payload.get("extra_credit")
        )
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": "validation_failed", "details": e.details}), 400
    except ConcurrentModificationError:
        return jsonify({"error": "concurrent_modification"}), 409
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(f"Failed to set extra credit for student {student_id}: {str(e)}")
        return jsonify({"error": "failed_to_save"}), 500


# POST /api/classes/<id>/students/<student_id>/recalculate
@grades_bp.route(
    "/api/classes/<int:class_id>/students/<int:student_id>/recalculate",
    methods=["POST"],
    endpoint="recalculate_student",
)
@login_required
def recalculate_student(class_id: int, student_id: int):
    denied = _owned_class_or_403(class_id)
    if denied:
        return denied
    try:
        result = grade_service.recalculate_student_grades(student_id, class_id)
        return jsonify(result), 200
    except ConcurrentModificationError as e:
        logger.warning(f"Concurrent recalculation of student {student_id}: {str(e)}")
        return jsonify({"error": "concurrent_modification"}), 409
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(
            f"Failed to recalculate student {student_id} in class {class_id}: {str(e)}"
        )
        return jsonify({"error": "failed_to_recalculate"}), 500


# POST /api/classes/<id>/recalculate: whole roster
@grades_bp.route(
    "/api/classes/<int:class_id>/recalculate",
    methods=["POST"],
    endpoint="recalculate_class",
)
@login_required
def recalculate_class(class_id: int):
    denied = _owned_class_or_403(class_id)
    if denied:
        return denied
    try:
        summary = grade_service.recalculate_class_grades(class_id)
        return jsonify(summary), 200
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(f"Failed to recalculate class {class_id}: {str(e)}")
        return jsonify({"error": "failed_to_recalculate"}), 500


# POST /api/classes/<id>/curve: {"curve_amount": number}
@grades_bp.route(
    "/api/classes/<int:class_id>/curve",
    methods=["POST"],
    endpoint="apply_curve",
)
@login_required
def apply_curve(class_id: int):
    denied = _owned_class_or_403(class_id)
    if denied:
        return denied

    payload = request.get_json(force=True, silent=True) or {}
    try:
        count = grade_service.apply_curve(class_id, payload.get("curve_amount"))
        return jsonify({"message": "curved", "updated": count}), 200
    except ValidationError as e:
        return jsonify({"error": "validation_failed", "details": e.details}), 400
    except ConcurrentModificationError as e:
        logger.warning(f"Concurrent curve on class {class_id}: {str(e)}")
        return jsonify({"error": "concurrent_modification"}), 409
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(f"Failed to apply curve to class {class_id}: {str(e)}")
        return jsonify({"error": "failed_to_curve"}), 500


# GET /api/classes/<id>/grades: current grades for the roster
@grades_bp.route(
    "/api/classes/<int:class_id>/grades",
    methods=["GET"],
    endpoint="get_class_grades",
)
@login_required
def get_class_grades(class_id: int):
    denied = _owned_class_or_403(class_id)
    if denied:
        return denied
    try:
        return jsonify({"class_id": class_id, "students": grade_service.get_class_grades(class_id)}), 200
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(f"Failed to fetch grades for class {class_id}: {str(e)}")
        return jsonify({"error": "failed_to_fetch"}), 500


# GET /api/students/<id>/classes/<class_id>/grades: one student's grades in one class
@grades_bp.route(
    "/api/students/<int:student_id>/classes/<int:class_id>/grades",
    methods=["GET"],
    endpoint="get_student_class_grades",
)
@login_required
def get_student_class_grades(student_id: int, class_id: int):
    if current_student_id() != student_id:
        denied = _owned_class_or_403(class_id)
        if denied:
            return denied
    try:
        return jsonify(grade_service.get_student_class_grades(student_id, class_id)), 200
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(
            f"Failed to fetch grades of student {student_id} in class {class_id}: {str(e)}"
        )
        return jsonify({"error": "failed_to_fetch"}), 500


# GET /api/students/<id>/grades: current overall grade in every class
@grades_bp.route(
    "/api/students/<int:student_id>/grades",
    methods=["GET"],
    endpoint="get_student_all_grades",
)
@login_required
def get_student_all_grades(student_id: int):
    # Instructors only see the classes they teach
    instructor_id = None
    if current_student_id() != student_id:
        instructor_id = current_instructor_id()
        if not instructor_id:
            return jsonify({"error": "access_denied"}), 403
    try:
        classes = grade_service.get_student_all_grades(student_id, instructor_id=instructor_id)
        if instructor_id is not None and not classes:
            return jsonify({"error": "access_denied"}), 403
        return jsonify({"student_id": student_id, "classes": classes}), 200
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except Exception as e:
        logger.error(f"Failed to fetch grades of student {student_id}: {str(e)}")
        return jsonify({"error": "failed_to_fetch"}), 500


# GET /api/students/<id>/grades/history?class_id=&grade_type=&limit=
@grades_bp.route(
    "/api/students/<int:student_id>/grades/history",
    methods=["GET"],
    endpoint="get_student_grade_history",
)
@login_required
def get_student_grade_history(student_id: int):
    class_id = request.args.get("class_id", type=int)
    grade_type = request.args.get("grade_type") or None
    limit = request.args.get("limit", default=grade_service.HISTORY_LIMIT, type=int)

    # Students may read their own history; instructors only within their class
    is_self = current_student_id() == student_id
    if not is_self:
        if class_id is None or not instructor_owns_class(class_id, current_instructor_id()):
            return jsonify({"error": "access_denied"}), 403

    try:
        history = grade_service.get_student_grade_history(
            student_id,
            class_id=class_id,
            grade_type=grade_type,
            limit=max(1, min(limit, 500)),
        )
        return jsonify({"student_id": student_id, "grades": history}), 200
    except ValidationError as e:
        return jsonify({"error": "validation_failed", "details": e.details}), 400
    except Exception as e:
        logger.error(
            f"Failed to fetch grade history for student {student_id} "
            f"(user {session.get('user_id')}): {str(e)}"
        )
        return jsonify({"error": "failed_to_fetch"}), 500
