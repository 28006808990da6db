"""Pipewarden: policy-gated CI/CD pipeline orchestration and promotion.

  - Declarative workflow policy rules that veto a run before it builds
  - Immutable artifact tags bound to content digests, with traceable metadata
  - validate -> build -> {test, scan} -> deploy/verify per environment
  - Deploy retries for transient infrastructure failures only
  - Promotion gate: predecessor verification, soak time, clean scans,
    deployment windows, and persisted approvals for protected environments
  - Automatic rollback when post-deployment verification fails
  - One deployment per environment at a time, across runs
  - Append-only, hash-chained run ledger as the audit record
"""

__version__ = "0.1.0"
__description__ = "Policy-gated CI/CD pipeline orchestration and promotion engine"

from pipewarden.core.coordinator import PipelineCoordinator
from pipewarden.monitor.projection import MonitorProjection as RunMonitor
from pipewarden.cli.app import app as cli

__all__ = ["PipelineCoordinator", "RunMonitor", "cli", "__version__"]
