import logging
import os
import sys

from flask import Flask, jsonify, request
from flask_socketio import SocketIO
from flask_wtf.csrf import CSRFProtect, generate_csrf

from utils.db_conn import DatabaseConnection, init_database_with_app
from utils.live import register_socketio_handlers

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

csrf = CSRFProtect()


def create_app(test_config=None):
    """Build the Flask app: database, CSRF, Socket.IO and the grade blueprints."""
    app = Flask(__name__)

    app.config["SECRET_KEY"] = os.getenv(
        "SECRET_KEY", "dev-secret-key-change-in-production"
    )
    # Upper bound on parallel per-student recalculations
    app.config["GRADE_RECALC_MAX_WORKERS"] = int(
        os.getenv("GRADE_RECALC_MAX_WORKERS", "8")
    )
    # Highest overall percentage extra credit may reach in a class without extra credit
    app.config["EXTRA_CREDIT_CEILING"] = float(
        os.getenv("EXTRA_CREDIT_CEILING", "100")
    )
    if test_config:
        app.config.update(test_config)

    DatabaseConnection(app)

    # Initialize CSRF protection
    csrf.init_app(app)

    # Initialize SocketIO and register live handlers
    socketio = SocketIO(app, cors_allowed_origins="*")
    register_socketio_handlers(socketio)

    from blueprints.grades_routes import grades_bp
    from blueprints.statistics_routes import statistics_bp

    app.register_blueprint(grades_bp)
    app.register_blueprint(statistics_bp)

    # API: GET "/api/csrf-token"
    # Used by: API clients before any POST/PUT; the token goes in X-CSRFToken
    @app.route("/api/csrf-token", methods=["GET"])
    def csrf_token():
        logger.info(f"Request received: {request.method} {request.path}")
        return jsonify({"csrf_token": generate_csrf()})

    return app


if __name__ == "__main__":
    logger.info("Application startup initiated")
    app = create_app()

    if not init_database_with_app(app):
        logger.error("Startup checks failed. Aborting launch.")
        sys.exit(1)
    logger.info("All systems green. Starting server...")

    # Only start the reloader in development
    use_reloader = os.environ.get("WERKZEUG_RUN_MAIN") != "true"

    socketio = app.extensions["socketio"]
    socketio.run(
        app, host="127.0.0.1", port=5000, debug=True, use_reloader=use_reloader
    )
