"""
billing/__init__.py

Flask application factory for the Billing Back Office engine.

Requirements:
- One engine, many callers: JSON routes, CLI sweeps and tests all go through the
  service classes in billing.services.
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev and tests.
- UI is never trusted; every engine call passes the AuthorizationGate.

Error contract:
- Every BillingError becomes a JSON body {"error", "message", "details"?} with the
  error's HTTP status.
- Unauthenticated calls get a JSON 401 (no login page redirect).
"""

from __future__ import annotations

import logging
import logging.config

import click
from flask import Flask, jsonify
from flask_wtf.csrf import CSRFError

from .errors import BillingError
from .extensions import csrf, db, login_manager, migrate
from .models import User

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
            },
            "handlers": {
                "console": {"class": "logging.StreamHandler", "formatter": "default"},
            },
            "loggers": {
                "billing": {"handlers": ["console"], "level": level, "propagate": False},
            },
        }
    )


def create_app(config_object: str = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    _configure_logging(str(app.config.get("LOG_LEVEL", "INFO")).upper())

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login. Inactive users are treated as logged out."""
        try:
            user = db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "unauthorized", "message": "Login required."}), 401

    # ----------------------------------------------------------------------
    # Error handlers
    # ----------------------------------------------------------------------
    @app.errorhandler(BillingError)
    def handle_billing_error(exc: BillingError):
        logger.debug("%s -> %s: %s", type(exc).__name__, exc.http_status, exc.message)
        return jsonify(exc.to_dict()), exc.http_status

    @app.errorhandler(CSRFError)
    def handle_csrf_error(exc: CSRFError):
        return jsonify({"error": "csrf_failed", "message": exc.description}), 400

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.discounts import discounts_bp
    from .blueprints.invoices import invoices_bp
    from .blueprints.quotes import quotes_bp
    from .blueprints.subscriptions import subscriptions_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(quotes_bp)
    app.register_blueprint(discounts_bp)
    app.register_blueprint(invoices_bp)
    app.register_blueprint(subscriptions_bp)

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    from . import cli

    cli.register(app)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    return app
