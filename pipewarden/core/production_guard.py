"""Production configuration guard — enforces hard constraints in production.

The guard validates that production-critical settings are correctly configured
before the coordinator starts.  It runs once at construction time and fails
hard (raises ``ProductionConfigError``) if any constraint is violated.

This module is the single enforcement point for production invariants.
Other code should not scatter ``if is_production`` checks — the guard
ensures the system is in a known-good state at startup.
"""

from __future__ import annotations

import logging

from pipewarden.config import ProdConfig
from pipewarden.models.config import PipelineConfig

logger = logging.getLogger(__name__)


class ProductionConfigError(RuntimeError):
    """Raised when production configuration constraints are violated.

    This error indicates the system cannot safely start in production mode
    with the current configuration.  It must not be caught and ignored —
    the process should exit.
    """


def enforce_production_constraints(config: ProdConfig, pipeline: PipelineConfig) -> None:
    """Validate all production-critical configuration constraints.

    Constraints enforced
    --------------------
    1. Debug mode must be disabled.
    2. Every environment that requires approval must not auto-deploy.
    3. An approver allowlist must be configured when any environment
       requires approval.

    Parameters
    ----------
    config:
        The active ``ProdConfig`` instance.
    pipeline:
        The project's pipeline configuration.

    Raises
    ------
    ProductionConfigError
        If any production constraint is violated.
    """
    if not config.is_production:
        return  # Guard only applies in production

    violations: list[str] = []

    if config.debug:
        violations.append(
            "debug=True is not allowed in production. Set PIPEWARDEN_DEBUG=false."
        )

    protected = [env for env in pipeline.environments if env.protection.requires_approval]
    for env in protected:
        if env.protection.auto_deploy:
            violations.append(
                f"Environment '{env.name}' requires approval but has auto_deploy=True."
            )

    if protected and not config.authorized_approvers:
        violations.append(
            "No authorized approvers configured for protected environment(s) "
            f"{', '.join(env.name for env in protected)}. "
            "Set PIPEWARDEN_AUTHORIZED_APPROVERS."
        )

    if violations:
        msg = (
            "Production configuration guard failed.\n"
            + "\n".join(f"  - {v}" for v in violations)
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production configuration guard passed.")
