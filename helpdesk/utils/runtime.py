"""Runtime environment detection for development vs production."""

import os


def get_environment() -> str:
    """Return the deployment environment from HELPDESK_ENV (default production)."""
    return os.environ.get("HELPDESK_ENV", "production").strip().lower() or "production"


def is_development() -> bool:
    """Return True when running in development mode."""
    return get_environment() == "development"
