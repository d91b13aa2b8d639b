"""Application factory and extension initialization for ExpenseFlow."""
from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from flask import Flask
from flask.logging import default_handler
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Global extension instances -------------------------------------------------

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()


def configure_logging(app: Flask) -> None:
    """Set the package log level and a timestamped format on Flask's handler."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    app.logger.setLevel(level)

    default_handler.setFormatter(logging.Formatter(LOG_FORMAT))


def create_app(config_name: Optional[str] = None) -> Flask:
    """Flask application factory."""
    load_dotenv()

    from expenseflow.config import config_by_name

    app = Flask(__name__, instance_relative_config=True)

    config_name = config_name or os.getenv("FLASK_CONFIG", "development")
    config_class = config_by_name.get(config_name.lower())
    if config_class is None:
        raise ValueError(f"Unknown Flask configuration '{config_name}'")

    app.config.from_object(config_class)
    configure_logging(app)

    # Ensure instance folder exists for SQLite DBs or uploads
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)

    from expenseflow.errors import register_error_handlers
    from expenseflow.utils.helpers import json_response

    register_error_handlers(app)

    # Register blueprints
    from expenseflow.auth import auth_bp
    from expenseflow.admin import admin_bp
    from expenseflow.expenses import expenses_bp
    from expenseflow.reports import reports_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(expenses_bp)
    app.register_blueprint(reports_bp)

    # Import all models to ensure they are registered with SQLAlchemy
    from expenseflow.models import User

    @login_manager.user_loader
    def load_user(user_id: str) -> Optional[User]:
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return json_response({"error": "Authentication required."}, status=401)

    if app.config.get("AUTO_CREATE_TABLES"):
        with app.app_context():
            db.create_all()

    @app.shell_context_processor
    def shell_context():
        return {"db": db, "User": User}

    return app
