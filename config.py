"""
Application configuration.
This module defines the configuration settings for the Flask application, including database connection, secret key,
logging level and the workflow switches that encode product decisions. It uses environment variables for sensitive
information and defaults for development. In production, set the environment variables and a real secret key.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'procurement_flow.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection (clients send X-CSRFToken, see /auth/csrf-token)
    WTF_CSRF_ENABLED = True

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Lines of Rejected (not yet Closed) child documents still reduce the parent backlog.
    WORKFLOW_COUNT_REJECTED_CHILDREN = _env_flag("WORKFLOW_COUNT_REJECTED_CHILDREN", True)

    # MTF approvers must be members of the MTF's project, like STF/OTF/MRF approvers.
    WORKFLOW_MTF_REQUIRES_PROJECT_MEMBERSHIP = _env_flag("WORKFLOW_MTF_REQUIRES_PROJECT_MEMBERSHIP", True)

    # Zero padding of document numbers (MTF-0001)
    DOCUMENT_NUMBER_WIDTH = int(os.environ.get("DOCUMENT_NUMBER_WIDTH", "4"))

    APP_NAME = "Procurement Workflow"


class TestConfig(Config):
    """In-memory database, no CSRF. Used by the test-suite."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    WTF_CSRF_ENABLED = False
    LOG_LEVEL = "DEBUG"
    WORKFLOW_COUNT_REJECTED_CHILDREN = True
    WORKFLOW_MTF_REQUIRES_PROJECT_MEMBERSHIP = True
