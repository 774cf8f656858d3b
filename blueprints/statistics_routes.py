import logging

from flask import Blueprint, jsonify

from models import db, Class
from utils.auth_utils import current_instructor_id, instructor_owns_class, login_required
from utils.statistics_utils import class_grade_statistics, grade_distribution

logger = logging.getLogger(__name__)

statistics_bp = Blueprint("statistics", __name__)


@statistics_bp.route(
    "/api/classes/<int:class_id>/grades/distribution", methods=["GET"]
)
@login_required
def class_grade_distribution(class_id):
    if db.session.get(Class, class_id) is None:
        return jsonify({"error": "Class not found"}), 404
    if not instructor_owns_class(class_id, current_instructor_id()):
        return jsonify({"error": "access_denied"}), 403
    try:
        return jsonify(grade_distribution(class_id))
    except Exception as e:
        logger.error(f"Failed to build grade distribution for class {class_id}: {str(e)}")
        return jsonify({"error": str(e)}), 500


@statistics_bp.route("/api/classes/<int:class_id>/grades/stats", methods=["GET"])
@login_required
def class_grade_stats(class_id):
    if db.session.get(Class, class_id) is None:
        return jsonify({"error": "Class not found"}), 404
    if not instructor_owns_class(class_id, current_instructor_id()):
        return jsonify({"error": "access_denied"}), 403
    try:
        stats = class_grade_statistics(class_id)
        if stats is None:
            return (
                jsonify({"error": "Insufficient data for grade statistics"}),
                400,
            )
        return jsonify(stats)
    except Exception as e:
        logger.error(f"Failed to compute grade statistics for class {class_id}: {str(e)}")
        return jsonify({"error": str(e)}), 500
