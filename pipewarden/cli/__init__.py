"""Pipewarden CLI — Typer-based command-line interface.

Provides the ``pipewarden`` command with subcommands for triggering runs,
promoting and rolling back artifacts, deciding approvals, inspecting run
and environment status, and running the standalone policy and repository
checks.

All output uses Rich for formatted terminal display.  Failures exit with
the code of their error classification.
"""
