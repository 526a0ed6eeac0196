import os
import logging
from datetime import datetime, timezone
from flask import Flask, jsonify, request
from flask_login import current_user
from sqlalchemy import text
from config import Config
from extensions import db, login_manager, init_extensions
from logger import LOG_DIR
from models import User
from triangle.errors import EngineError, ConsistencyViolation
from triangle.atomic import freeze_formation
from triangle.settings import SettingsHelper

# Reachable while MAINTENANCE_MODE is on, so admins can log in and switch it off.
MAINTENANCE_OPEN_PATHS = ("/api/admin", "/api/auth/login", "/api/auth/logout")


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    setup_logging(app)

    # ------------------------------------------------------------------------------------------------------------------------
    # Initialize extensions
    # ------------------------------------------------------------------------------------------------------------------------
    init_extensions(app)

    register_blueprints(app)
    register_error_handlers(app)

    # ------------------------------------------------------------------------------------------------------------------------
    # Flask-Login
    # ------------------------------------------------------------------------------------------------------------------------
    @login_manager.user_loader
    def load_user(user_id):
        user = db.session.get(User, int(user_id))
        if user is None or user.delete_account:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required"}), 401

    # ----------------------
    # Global before_request
    # ----------------------
    @app.before_request
    def maintenance_gate():
        if request.path == "/healthz" or request.path.startswith(MAINTENANCE_OPEN_PATHS):
            return None
        if SettingsHelper.get("MAINTENANCE_MODE", False) and not getattr(current_user, "is_admin", False):
            return jsonify({"error": "The platform is under maintenance, please try again later"}), 503
        return None

    # ----------------------
    # Basic routes
    # ----------------------
    @app.route("/healthz")
    def healthz():
        try:
            db.session.execute(text("SELECT 1"))
            database = "ok"
        except Exception as e:
            app.logger.error(f"Health check database error: {e}")
            database = "unavailable"
        status = 200 if database == "ok" else 503
        return {"status": "ok" if status == 200 else "degraded",
                "database": database,
                "timestamp": datetime.now(timezone.utc).isoformat()}, status

    return app


def setup_logging(app):
    """Rotating file log under LOG_DIR plus console output in debug."""
    from logging.handlers import RotatingFileHandler

    if not os.path.exists(LOG_DIR):
        os.makedirs(LOG_DIR)

    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, "app.log"), maxBytes=1024 * 1024, backupCount=10, encoding="utf-8"
    )
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    ))
    file_handler.setLevel(logging.INFO)

    app.logger.handlers.clear()
    app.logger.addHandler(file_handler)
    app.logger.setLevel(logging.DEBUG if app.debug else logging.INFO)
    app.logger.propagate = False

    if app.debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(console_handler)


def register_blueprints(app):
    from blueprints.auth import bp as auth_bp
    from blueprints.formations import bp as formations_bp
    from blueprints.transactions import bp as transactions_bp
    from blueprints.admin import admin_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(formations_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(admin_bp)


def register_error_handlers(app):

    @app.errorhandler(ConsistencyViolation)
    def handle_consistency_violation(error):
        # Raised outside run_atomically (e.g. a read path); make sure the formation is frozen.
        db.session.rollback()
        if not getattr(error, "alerted", False):
            freeze_formation(error)
        return jsonify({"error": "Internal error, operators have been notified"}), 500

    @app.errorhandler(EngineError)
    def handle_engine_error(error):
        if not error.user_facing:
            app.logger.error(f"{error.code}: {error.message} {error.details}")
            return jsonify({"error": "Internal error", "code": error.code}), error.http_status
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(ValueError)
    def handle_value_error(error):
        return jsonify({"error": str(error)}), 400


# ----------------------
# Create app instance
# ----------------------
app = create_app()

# ----------------------
# Local development
# ----------------------
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    debug_mode = app.config.get("DEBUG", False)
    app.run(debug=debug_mode, host="0.0.0.0", port=port)
