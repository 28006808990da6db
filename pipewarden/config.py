"""Production configuration — env-driven.

Centralized config using pydantic-settings for environment variable support.
Reads from a .env file and PIPEWARDEN_* environment variables.  Every retry,
backoff, soak, expiry, and timeout window lives here rather than in code so
it can be tuned per installation.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.logging import RichHandler


# Substrings of a failed deploy's error text that mark it as retryable.
DEFAULT_TRANSIENT_ERROR_MARKERS: list[str] = [
    "timeout",
    "timed out",
    "rate limit",
    "ratelimit",
    "too many requests",
    "429",
    "503",
    "temporarily unavailable",
    "registry unavailable",
    "connection reset",
    "connection refused",
]


class ProdConfig(BaseSettings):
    """Production configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export PIPEWARDEN_ENVIRONMENT=production
        export PIPEWARDEN_LOG_LEVEL=DEBUG
        export PIPEWARDEN_STATE_PATH=/data/state.db
        export PIPEWARDEN_DEPLOY_BACKOFF_SECONDS='[15, 45]'

    Or via .env file::

        PIPEWARDEN_ENVIRONMENT=production
        PIPEWARDEN_AUTHORIZED_APPROVERS='["platform-admin-1", "platform-lead"]'
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PIPEWARDEN_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    ledger_path: Path = Path(".pipewarden/ledger.db")
    state_path: Path = Path(".pipewarden/state.db")
    registry_path: Path = Path(".pipewarden/registry.db")

    # Stage execution
    default_stage_timeout_seconds: float = 1800.0
    stage_timeouts: dict[str, float] = {}

    # Deploy retry policy (attempts are total, including the first)
    deploy_max_attempts: int = 3
    deploy_backoff_seconds: list[float] = [30.0, 60.0]
    transient_error_markers: list[str] = DEFAULT_TRANSIENT_ERROR_MARKERS

    # Promotion gate (soak time is per environment, see PipelineConfig)
    approval_expiry_seconds: float = 86400.0
    authorized_approvers: list[str] = []

    # Environment concurrency and history
    queue_expiry_seconds: float = 3600.0
    # Cross-process deployment lease; must outlast the longest Deploy+Verify
    environment_lease_seconds: float = 14400.0
    deployment_history_limit: int = 20

    # Artifacts
    artifact_retention_days: int = 90
    short_sha_min_length: int = 6

    # Identity
    max_credential_ttl_seconds: float = 3600.0

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"

    def timeout_for(self, stage_kind: str) -> float:
        """Return the timeout in seconds for a stage kind."""
        return self.stage_timeouts.get(stage_kind, self.default_stage_timeout_seconds)


def configure_logging(level: str = "INFO") -> None:
    """Install a Rich log handler on the root logger at *level*."""
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )

