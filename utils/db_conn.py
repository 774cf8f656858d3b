import os
import logging
import time
from typing import Optional
from flask import Flask
from dotenv import load_dotenv

from models import db

# Configure logging for database operations
logger = logging.getLogger(__name__)


def _build_database_uri():
    """Build the MySQL URI from ENVIRONMENT and the matching *_DB_* variables."""
    environment = os.getenv("ENVIRONMENT", "local").lower()
    logger.info(f"Database environment: {environment}")

    if environment == "local":
        prefix = "LOCAL"
    elif environment == "production" or environment == "online":
        prefix = "ONLINE"
    else:
        raise ValueError(
            f"Invalid ENVIRONMENT value: {environment}. Must be 'local' or 'production'/'online'"
        )

    db_host = os.getenv(f"{prefix}_DB_HOST", "localhost")
    db_port = os.getenv(f"{prefix}_DB_PORT", "3306")
    db_user = os.getenv(f"{prefix}_DB_USER", "root")
    db_password = os.getenv(f"{prefix}_DB_PASSWORD", "")
    db_name = os.getenv(f"{prefix}_DB_NAME", "grade_engine")

    db_uri = f"mysql+pymysql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"
    masked = db_uri.replace(db_password, "***") if db_password else db_uri
    logger.info(f"Database URI configured for {environment}: {masked}")
    return db_uri


class DatabaseConnection:
    """Handles database connection, initialization, and management."""

    def __init__(self, app: Optional[Flask] = None):
        self.app = app
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask):
        """Initialize database connection with Flask app."""
        self.app = app
        load_dotenv()
        logger.info("Environment variables loaded from .env file")

        # An explicitly configured URI (tests, scripts) wins over the environment
        if not app.config.get("SQLALCHEMY_DATABASE_URI"):
            app.config["SQLALCHEMY_DATABASE_URI"] = _build_database_uri()
        app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

        if app.config["SQLALCHEMY_DATABASE_URI"].startswith("mysql"):
            # Connection pool settings to handle connection timeouts
            app.config.setdefault(
                "SQLALCHEMY_ENGINE_OPTIONS",
                {
                    "pool_size": 10,
                    "max_overflow": 20,
                    "pool_recycle": 3600,
                    "pool_pre_ping": True,
                    "pool_timeout": 30,
                    "connect_args": {
                        "connect_timeout": 30,
                        "read_timeout": 60,
                        "write_timeout": 30,
                    },
                },
            )

        # Check if SQLAlchemy is already registered with this app
        if "sqlalchemy" not in app.extensions:
            db.init_app(app)
            logger.info("Database initialized with Flask app")
        else:
            logger.info(
                "Database already initialized with Flask app - skipping re-initialization"
            )

    def test_connection(self) -> bool:
        """Test database connection with retry mechanism."""
        if self.app is None:
            logger.error("Database connection not initialized with Flask app")
            return False

        max_retries = 3
        retry_delay = 1

        for attempt in range(max_retries):
            try:
                logger.info(
                    f"Testing database connection... (attempt {attempt + 1}/{max_retries})"
                )
                with self.app.app_context():
                    with db.engine.connect() as connection:
                        connection.execute(db.text("SELECT 1"))
                logger.info("Database connection successful")
                return True
            except Exception as e:
                logger.warning(
                    f"Database connection failed (attempt {attempt + 1}): {str(e)}"
                )
                if attempt < max_retries - 1:
                    time.sleep(retry_delay)
                    retry_delay *= 2  # Exponential backoff
        logger.error(f"Database connection failed after {max_retries} attempts")
        return False

    def create_tables(self) -> bool:
        """Create all database tables."""
        if self.app is None:
            logger.error("Database connection not initialized with Flask app")
            return False
        try:
            logger.info("Creating database tables...")
            with self.app.app_context():
                db.create_all()
            logger.info("Database tables created successfully")
            return True
        except Exception as e:
            logger.error(f"Database table creation failed: {str(e)}")
            return False

    def init_database(self) -> bool:
        """Initialize database connection and create tables if they don't exist."""
        logger.info("Starting database initialization...")

        if not self.test_connection():
            return False

        if not self.create_tables():
            return False

        return True

    def ensure_connection(self) -> bool:
        """Ensure database connection is available, attempt to reconnect if needed."""
        try:
            with self.app.app_context():
                with db.engine.connect() as connection:
                    connection.execute(db.text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(
                f"Database connection lost, attempting to reconnect: {str(e)}"
            )
            try:
                with self.app.app_context():
                    db.engine.dispose()
                return self.test_connection()
            except Exception as reconnect_error:
                logger.error(f"Failed to reconnect to database: {str(reconnect_error)}")
                return False


def init_database_with_app(app: Flask) -> bool:
    """Check connectivity for an already configured app and create missing tables."""
    conn = DatabaseConnection()
    conn.app = app
    return conn.init_database()
