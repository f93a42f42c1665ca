"""
Application configuration.
This module defines the configuration settings for the billing back office, including database connection, secret key,
logging level and the billing policy constants (invoice terms, quote validity, billing cycle). It uses environment
variables for sensitive information and defaults for development. In production, make sure to set the appropriate
environment variables and secure the secret key.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'billing.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection for session-authenticated mutating calls (X-CSRFToken header)
    WTF_CSRF_ENABLED = True

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Billing policy
    INVOICE_DUE_DAYS = int(os.environ.get("INVOICE_DUE_DAYS", "30"))
    QUOTE_VALIDITY_DAYS = int(os.environ.get("QUOTE_VALIDITY_DAYS", "30"))
    BILLING_CYCLE_DAYS = int(os.environ.get("BILLING_CYCLE_DAYS", "30"))

    # Accepting a quote generates its invoice in the same transaction
    AUTO_INVOICE_ON_ACCEPT = True


class TestingConfig(Config):
    """In-memory database, no CSRF."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    LOG_LEVEL = "WARNING"
