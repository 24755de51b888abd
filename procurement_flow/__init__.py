"""
procurement_flow/__init__.py

Flask application factory for the Procurement Workflow service.

Requirements:
- JSON API only; every workflow failure is rendered as {error, message, details}.
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev.
- Clients are never trusted; authorization is enforced server-side by the
  workflow core, and Viewer-only users are blocked from mutating requests.

Sections:
- /auth        session login / logout / current user / CSRF token
- /api/v1      documents (MTF, STF, OTF, MRF, MDF), backlog, dashboard
"""

from __future__ import annotations

import logging

import click
from flask import Flask, jsonify
from flask_login import current_user

from .errors import register_error_handlers
from .extensions import csrf, db, login_manager, migrate
from .models import User
from .security import viewer_readonly_guard

# Blueprint imports kept inside create_app() where possible to reduce import side effects.


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(level)
    if not logging.getLogger().handlers and not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        package_logger.addHandler(handler)


def create_app(config_object: str = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    _configure_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)

    # No login_view: unauthenticated API calls get a JSON 401.
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login."""
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    register_error_handlers(app)

    # ----------------------------------------------------------------------
    # GLOBAL SECURITY NET: Viewer read-only guard (server-side).
    # ----------------------------------------------------------------------
    @app.before_request
    def _viewer_guard_hook():
        """
        Viewer read-only enforcement (POST/PUT/PATCH/DELETE blocked).

        This is a safety net. The workflow core still enforces its own permissions.
        """
        result = viewer_readonly_guard()
        if result is not None:
            return result
        return None

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.documents import documents_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(documents_bp)

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("seed-roles")
    def seed_roles_command():
        """Seed the role catalogue (approver roles at levels 1..3)."""
        from .seed import seed_roles

        created = seed_roles()
        click.echo(f"Roles seeded ({created} new).")

    @app.cli.command("seed-demo")
    @click.option("--password", default="demo1234", show_default=True, help="Password for all demo users.")
    def seed_demo_command(password: str):
        """Seed a demo project, master data and one user per role."""
        from .seed import seed_demo_data

        users = seed_demo_data(password=password)
        for user in users:
            click.echo(f"  {user.email}")
        click.echo(f"Demo data seeded ({len(users)} users).")

    # ----------------------------------------------------------------------
    # Home
    # ----------------------------------------------------------------------
    @app.route("/")
    def index():
        """Service banner."""
        return jsonify({
            "app": app.config.get("APP_NAME"),
            "authenticated": bool(current_user.is_authenticated),
            "api": "/api/v1",
        })

    app.logger.debug("Application created with %s", config_object)
    return app
