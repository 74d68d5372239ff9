"""
CookWire backend package.

This package provides the REST API for the CookWire code playground:
- Environment validation (app_config.py)
- Project storage on SQLite (projects_store.py)
- Project CRUD endpoints (projects.py)
- Owner keys, CSRF protection and rate limiting (security/)
- HTTP middleware: security headers, CORS, access log (middleware.py)
- Health and CSRF token endpoints (system.py)
- Mock AI chat stream (chat.py)
"""

from .app_config import AppSettings, EnvValidationError, validate_env
from .projects_store import ProjectRecord, ProjectsRepository

__all__ = [
    "AppSettings",
    "EnvValidationError",
    "validate_env",
    "ProjectRecord",
    "ProjectsRepository",
]
