"""Pipewarden run monitor — read-only projection over the Run Ledger.

The monitor NEVER maintains its own state.  Every call re-reads from the
ledger.  It is a projection, not a source of truth.

Modules
-------
projection
    ``MonitorProjection`` replays the ledger into ``MonitorSnapshot``
    Pydantic models, a frozen, point-in-time view of one run.
renderer
    ``MonitorRenderer`` turns snapshots and environment states into Rich
    renderables for terminal display, including ``Rich.Live`` mode.
"""
