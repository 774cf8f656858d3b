import logging
import hashlib
from flask import current_app
from flask_socketio import emit, join_room, leave_room, SocketIO

from models import db, GradeCategorySet, Grade

_logger = logging.getLogger(__name__)


def register_socketio_handlers(socketio: SocketIO):
    """Register Socket.IO event handlers. Call this after SocketIO(app) in app.py."""

    @socketio.on("connect")
    def _on_connect():
        emit("connected", {"message": "connected"})

    @socketio.on("subscribe_grades")
    def _on_subscribe_grades(data):
        try:
            class_id = int((data or {}).get("class_id"))
        except (TypeError, ValueError):
            emit("error", {"message": "invalid class_id"})
            return
        join_room(f"class-{class_id}")
        emit(
            "grades_version",
            {"class_id": class_id, "version": compute_class_grade_version(class_id)},
        )

    @socketio.on("unsubscribe_grades")
    def _on_unsubscribe_grades(data):
        try:
            class_id = int((data or {}).get("class_id"))
        except (TypeError, ValueError):
            return
        leave_room(f"class-{class_id}")


def compute_class_grade_version(class_id: int) -> str:
    """Hash of the active category version and the latest grade change for a class."""
    try:
        active_version = (
            db.session.query(db.func.max(GradeCategorySet.version))
            .filter(
                GradeCategorySet.class_id == class_id,
                GradeCategorySet.is_active.is_(True),
            )
            .scalar()
        )
        grade_count, last_graded = (
            db.session.query(db.func.count(Grade.id), db.func.max(Grade.grade_date))
            .filter(Grade.class_id == class_id, Grade.superseded_at.is_(None))
            .one()
        )
        payload = "|".join([str(active_version), str(grade_count), str(last_graded)])
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
    except Exception as e:
        _logger.error(f"Failed to compute grade version for class {class_id}: {str(e)}")
        return ""


def emit_grades_published(class_id: int, student_ids=None):
    """Tell subscribers of a class that grades were (re)published.

    Delivery problems are logged and never propagate into grading.
    """
    try:
        socketio = current_app.extensions.get("socketio")
        if socketio is None:
            return
        socketio.emit(
            "grades_published",
            {
                "class_id": class_id,
                "student_ids": list(student_ids or []),
                "version": compute_class_grade_version(class_id),
            },
            room=f"class-{class_id}",
        )
    except Exception as e:
        _logger.error(f"Failed to emit grade publication for class {class_id}: {str(e)}")
