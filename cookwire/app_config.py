"""
Environment configuration for the CookWire backend.

The process environment is validated once at startup and turned into an
immutable ``AppSettings``. Variables are evaluated in declaration order, so a
rule may look at values validated before it (most rules depend on
``APP_ENV``). All problems are collected before reporting:

- errors abort startup (``EnvValidationError``)
- warnings are logged and the value is kept
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .shared.logger import get_logger

logger = get_logger(__name__)

APP_ENVIRONMENTS = ("development", "production", "test")
MIN_SECRET_LENGTH = 32
DEFAULT_CORS_ALLOW_ORIGINS = "http://localhost:5173,http://localhost:5177"
DEFAULT_DIST_DIR = Path(__file__).resolve().parent.parent / "dist"


class EnvValidationError(Exception):
    """Raised when one or more environment variables are invalid."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


@dataclass(frozen=True)
class AppSettings:
    """Validated runtime settings."""

    port: int = 3000
    app_env: str = "development"
    cors_allow_origins: str = DEFAULT_CORS_ALLOW_ORIGINS
    data_dir: str = "./data"
    database_path: Optional[str] = None
    trust_proxy: bool = False
    csrf_secret: str = ""
    owner_key_secret: str = ""
    dist_dir: str = str(DEFAULT_DIST_DIR)
    log_level: str = "INFO"
    warnings: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def cors_origins(self) -> List[str]:
        origins = [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]
        if "*" in origins:
            return ["*"]
        return origins

    @property
    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir or "data").resolve()

    @property
    def resolved_database_path(self) -> Path:
        if self.database_path:
            return Path(self.database_path)
        return self.resolved_data_dir / "projects.db"


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------
# A rule returns None when the value is fine, or a ("error" | "warning", msg)
# tuple. ``validated`` holds the values accepted so far.

Rule = Callable[[Any, Dict[str, Any]], Optional[Tuple[str, str]]]


def _no_wildcard_in_production(value: str, validated: Dict[str, Any]):
    if validated.get("APP_ENV") == "production" and value.strip() == "*":
        return (
            "error",
            "Wildcard CORS (*) is not allowed in production. "
            "Set CORS_ALLOW_ORIGINS to specific origins.",
        )
    return None


def _no_parent_segments(name: str) -> Rule:
    def rule(value: str, validated: Dict[str, Any]):
        if value and ".." in value:
            return ("error", f'{name} must not contain ".."')
        return None

    return rule


def _trust_proxy_outside_production(value: bool, validated: Dict[str, Any]):
    if value and validated.get("APP_ENV") != "production":
        return ("warning", "TRUST_PROXY should be false in non-production environments")
    return None


def _secret_rule(name: str) -> Rule:
    def rule(value: str, validated: Dict[str, Any]):
        if validated.get("APP_ENV") == "production" and len(value) < MIN_SECRET_LENGTH:
            return ("error", f"{name} must be set to at least {MIN_SECRET_LENGTH} characters in production")
        if value and len(value) < MIN_SECRET_LENGTH:
            return (
                "warning",
                f"{name} is shorter than {MIN_SECRET_LENGTH} characters; "
                "a random per-process secret will be used instead",
            )
        return None

    return rule


@dataclass(frozen=True)
class EnvVar:
    name: str
    kind: str
    default: Any
    minimum: Optional[int] = None
    maximum: Optional[int] = None
    choices: Tuple[str, ...] = ()
    rule: Optional[Rule] = None


ENV_SCHEMA: Tuple[EnvVar, ...] = (
    EnvVar("PORT", "int", 3000, minimum=1, maximum=65535),
    EnvVar("APP_ENV", "enum", "development", choices=APP_ENVIRONMENTS),
    EnvVar("CORS_ALLOW_ORIGINS", "str", DEFAULT_CORS_ALLOW_ORIGINS, rule=_no_wildcard_in_production),
    EnvVar("DATA_DIR", "str", "./data", rule=_no_parent_segments("DATA_DIR")),
    EnvVar("DATABASE_PATH", "str", "", rule=_no_parent_segments("DATABASE_PATH")),
    EnvVar("TRUST_PROXY", "bool", False, rule=_trust_proxy_outside_production),
    EnvVar("CSRF_SECRET", "str", "", rule=_secret_rule("CSRF_SECRET")),
    EnvVar("OWNER_KEY_SECRET", "str", "", rule=_secret_rule("OWNER_KEY_SECRET")),
    EnvVar("DIST_DIR", "str", str(DEFAULT_DIST_DIR)),
    EnvVar("LOG_LEVEL", "str", "INFO"),
)

_FIELD_NAMES = {
    "PORT": "port",
    "APP_ENV": "app_env",
    "CORS_ALLOW_ORIGINS": "cors_allow_origins",
    "DATA_DIR": "data_dir",
    "DATABASE_PATH": "database_path",
    "TRUST_PROXY": "trust_proxy",
    "CSRF_SECRET": "csrf_secret",
    "OWNER_KEY_SECRET": "owner_key_secret",
    "DIST_DIR": "dist_dir",
    "LOG_LEVEL": "log_level",
}


def _parse(var: EnvVar, raw: str) -> Any:
    """Convert a raw string; raises ValueError for unparseable numbers."""
    if var.kind == "int":
        return int(raw.strip())
    if var.kind == "bool":
        return raw.strip().lower() in ("true", "1")
    return raw


def validate_env(environ: Optional[Mapping[str, str]] = None) -> AppSettings:
    """Validate the environment and build ``AppSettings``.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``).

    Raises:
        EnvValidationError: If any variable is invalid. Every error is reported,
            not just the first.
    """
    if environ is None:
        environ = os.environ

    errors: List[str] = []
    warnings: List[str] = []
    validated: Dict[str, Any] = {}

    for var in ENV_SCHEMA:
        raw = environ.get(var.name)
        if raw is None:
            value = var.default
        else:
            try:
                value = _parse(var, raw)
            except ValueError:
                errors.append(f"{var.name} must be an integer")
                continue

        if var.minimum is not None and value < var.minimum:
            errors.append(f"{var.name} must be >= {var.minimum}")
            continue
        if var.maximum is not None and value > var.maximum:
            errors.append(f"{var.name} must be <= {var.maximum}")
            continue
        if var.choices and value not in var.choices:
            errors.append(f"{var.name} must be one of: {', '.join(var.choices)}")
            continue

        if var.rule is not None:
            outcome = var.rule(value, validated)
            if outcome is not None:
                severity, message = outcome
                if severity == "error":
                    errors.append(message)
                    continue
                warnings.append(message)

        validated[var.name] = value

    for message in warnings:
        logger.warning("Environment warning: %s", message)

    if errors:
        for message in errors:
            logger.error("Environment error: %s", message)
        raise EnvValidationError(errors)

    kwargs = {_FIELD_NAMES[name]: value for name, value in validated.items()}
    # Empty DATABASE_PATH means "derive from DATA_DIR"
    kwargs["database_path"] = kwargs.get("database_path") or None
    return AppSettings(warnings=tuple(warnings), **kwargs)
