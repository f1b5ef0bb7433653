"""
Configuration module for Mindprint.

Centralizes configuration with environment variable support and
validation. Core functions never read the environment themselves: a
Settings object is built once (usually via Settings.from_env) and passed
to the session protocol, issuance and verification.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# ============================================================
# Defaults
# ============================================================

DEFAULT_DEV_SECRET = "mindprint-dev-signing-secret-change-in-production"

DEFAULT_DATABASE_PATH = "data/mindprint.db"
DEFAULT_SESSION_TTL_SECONDS = 90 * 60
DEFAULT_MAX_BATCH_EVENTS = 4000
DEFAULT_ANALYSIS_MODEL = "gemini-1.5-flash"
DEFAULT_ANALYSIS_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models"

ENVIRONMENTS = ("dev", "stage", "prod")


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "")
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def _resolve_secret(env: Mapping[str, str], key: str, environment: str) -> Tuple[str, bool]:
    """
    Resolve a signing secret: specific variable, then the shared
    MINDPRINT_SIGNING_SECRET, then the development secret.

    Returns (secret, used_dev_fallback).
    """
    secret = env.get(key) or env.get("MINDPRINT_SIGNING_SECRET")
    if secret:
        return secret, False
    if environment == "prod":
        raise ConfigurationError(
            f"{key} (or MINDPRINT_SIGNING_SECRET) must be set in production"
        )
    return DEFAULT_DEV_SECRET, True


@dataclass(frozen=True)
class Settings:
    """Deployment settings for one Mindprint process."""

    session_secret: str
    certificate_secret: str
    env: str = "dev"
    database_path: Optional[str] = DEFAULT_DATABASE_PATH
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    max_batch_events: int = DEFAULT_MAX_BATCH_EVENTS

    # Rate limits (requests per minute, per client)
    init_rpm: int = 60
    ingest_rpm: int = 600
    issue_rpm: int = 30
    analyze_rpm: int = 20

    # Advisory analysis
    analysis_api_key: Optional[str] = None
    analysis_model: str = DEFAULT_ANALYSIS_MODEL
    analysis_endpoint: str = DEFAULT_ANALYSIS_ENDPOINT

    # Transparency log mirror
    log_mirror: str = "none"
    s3_bucket: Optional[str] = None
    s3_prefix: str = "mindprint/certificate-log/"
    s3_retention_days: int = 365

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    uses_dev_secret: bool = field(default=False, compare=False)

    def __post_init__(self):
        if self.env not in ENVIRONMENTS:
            raise ConfigurationError(f"Unknown environment {self.env!r}; expected one of {ENVIRONMENTS}")
        if not self.session_secret or not self.certificate_secret:
            raise ConfigurationError("Signing secrets must not be empty")
        if self.env == "prod" and DEFAULT_DEV_SECRET in (self.session_secret, self.certificate_secret):
            raise ConfigurationError("The development signing secret cannot be used in production")
        if self.session_ttl_seconds <= 0:
            raise ConfigurationError("Session TTL must be positive")
        if self.max_batch_events <= 0:
            raise ConfigurationError("Maximum batch size must be positive")

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_seconds * 1000

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env == "prod"

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: If a value is malformed, or secrets are
                missing in production
        """
        env = os.environ if env is None else env
        environment = env.get("MINDPRINT_ENV", "dev")

        session_secret, session_dev = _resolve_secret(env, "MINDPRINT_SESSION_SECRET", environment)
        certificate_secret, cert_dev = _resolve_secret(env, "MINDPRINT_CERTIFICATE_SECRET", environment)
        if session_dev or cert_dev:
            logger.warning(
                "Using the development signing secret; set MINDPRINT_SESSION_SECRET "
                "and MINDPRINT_CERTIFICATE_SECRET before deploying"
            )

        return cls(
            session_secret=session_secret,
            certificate_secret=certificate_secret,
            env=environment,
            database_path=env.get("MINDPRINT_DATABASE_PATH", DEFAULT_DATABASE_PATH) or None,
            session_ttl_seconds=_env_int(env, "MINDPRINT_SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS),
            max_batch_events=_env_int(env, "MINDPRINT_MAX_BATCH_EVENTS", DEFAULT_MAX_BATCH_EVENTS),
            init_rpm=_env_int(env, "INIT_RPM", 60),
            ingest_rpm=_env_int(env, "INGEST_RPM", 600),
            issue_rpm=_env_int(env, "ISSUE_RPM", 30),
            analyze_rpm=_env_int(env, "ANALYZE_RPM", 20),
            analysis_api_key=env.get("GOOGLE_API_KEY") or env.get("GEMINI_API_KEY") or None,
            analysis_model=env.get("MINDPRINT_ANALYSIS_MODEL", DEFAULT_ANALYSIS_MODEL),
            analysis_endpoint=env.get("MINDPRINT_ANALYSIS_ENDPOINT", DEFAULT_ANALYSIS_ENDPOINT),
            log_mirror=env.get("MINDPRINT_LOG_MIRROR", "none"),
            s3_bucket=env.get("S3_BUCKET") or None,
            s3_prefix=env.get("S3_PREFIX", "mindprint/certificate-log/"),
            s3_retention_days=_env_int(env, "S3_RETENTION_DAYS", 365),
            log_level=env.get("MINDPRINT_LOG_LEVEL", "INFO"),
            log_json=_env_bool(env.get("MINDPRINT_LOG_JSON"), True),
            uses_dev_secret=session_dev or cert_dev,
        )
