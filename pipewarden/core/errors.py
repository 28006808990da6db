"""Error taxonomy for the pipeline engine.

Every failure that can end a stage, a promotion, or a run is expressed as
one of these classes.  The classification string is what the ledger and
the status view record; the exit code is what the CLI returns.
"""

from __future__ import annotations

from enum import Enum


class FailureClass(str, Enum):
    """Stable classification strings recorded on failed stages and runs."""

    VALIDATION_ERROR = "validation_error"
    POLICY_VIOLATION = "policy_violation"
    AUTHENTICATION_ERROR = "authentication_error"
    IMMUTABILITY_VIOLATION = "immutability_violation"
    TRANSIENT_INFRASTRUCTURE = "transient_infrastructure_error"
    TERMINAL_INFRASTRUCTURE = "terminal_infrastructure_error"
    VERIFICATION_FAILURE = "verification_failure"
    PROMOTION_BLOCKED = "promotion_blocked"
    ROLLBACK_FAILURE = "rollback_failure"
    STAGE_FAILURE = "stage_failure"
    CANCELLED = "cancelled"


class PipewardenError(RuntimeError):
    """Base class for all classified engine errors."""

    classification: FailureClass = FailureClass.STAGE_FAILURE
    exit_code: int = 1

    def __init__(self, message: str, *, detail_ref: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail_ref = detail_ref


class ValidationError(PipewardenError):
    """Malformed workflow definition or input — hard fail, no retry."""

    classification = FailureClass.VALIDATION_ERROR
    exit_code = 10


class MissingMetadataError(ValidationError):
    """An artifact is missing required, traceable metadata."""

    def __init__(self, missing: list[str], *, detail_ref: str | None = None) -> None:
        super().__init__(
            "Artifact metadata incomplete: " + ", ".join(missing),
            detail_ref=detail_ref,
        )
        self.missing = missing


class PolicyViolation(PipewardenError):
    """A deny rule matched the workflow definition."""

    classification = FailureClass.POLICY_VIOLATION
    exit_code = 11

    def __init__(
        self, violations: list[tuple[str, str]], *, detail_ref: str | None = None
    ) -> None:
        lines = [f"{name}: {message}" for name, message in violations]
        super().__init__(
            "Policy violation(s): " + "; ".join(lines), detail_ref=detail_ref
        )
        self.violations = violations


class AuthenticationError(PipewardenError):
    """Credential exchange failed or produced an unacceptable credential."""

    classification = FailureClass.AUTHENTICATION_ERROR
    exit_code = 12


class ImmutabilityViolation(PipewardenError):
    """A tag is already bound to a different digest, or is a mutable alias."""

    classification = FailureClass.IMMUTABILITY_VIOLATION
    exit_code = 13


class TransientInfrastructureError(PipewardenError):
    """A temporary infrastructure condition; retryable for deploy stages."""

    classification = FailureClass.TRANSIENT_INFRASTRUCTURE
    exit_code = 14


class TerminalInfrastructureError(PipewardenError):
    """Quota, permission, or configuration failure — hard fail."""

    classification = FailureClass.TERMINAL_INFRASTRUCTURE
    exit_code = 15


class VerificationFailure(PipewardenError):
    """Post-deployment verification failed; triggers rollback."""

    classification = FailureClass.VERIFICATION_FAILURE
    exit_code = 16


class PromotionBlocked(PipewardenError):
    """Eligibility for promotion is unmet; the run halts at this boundary."""

    classification = FailureClass.PROMOTION_BLOCKED
    exit_code = 17

    def __init__(
        self, reason: str, message: str, *, detail_ref: str | None = None
    ) -> None:
        super().__init__(message, detail_ref=detail_ref)
        self.reason = reason


class RollbackFailure(PipewardenError):
    """Rollback could not restore the environment — human escalation needed."""

    classification = FailureClass.ROLLBACK_FAILURE
    exit_code = 18


class StageFailure(PipewardenError):
    """A build, test, or scan stage body failed or timed out."""

    classification = FailureClass.STAGE_FAILURE
    exit_code = 19


class RunCancelled(PipewardenError):
    """The run, or its queued deployment request, was cancelled."""

    classification = FailureClass.CANCELLED
    exit_code = 20


_EXIT_CODES: dict[FailureClass, int] = {
    cls.classification: cls.exit_code
    for cls in (
        ValidationError,
        PolicyViolation,
        AuthenticationError,
        ImmutabilityViolation,
        TransientInfrastructureError,
        TerminalInfrastructureError,
        VerificationFailure,
        PromotionBlocked,
        RollbackFailure,
        StageFailure,
        RunCancelled,
    )
}


def exit_code_for(classification: FailureClass | str | None) -> int:
    """Return the CLI exit code for a failure classification (1 if unknown)."""
    if classification is None:
        return 1
    try:
        return _EXIT_CODES[FailureClass(classification)]
    except ValueError:
        return 1


_SIMPLE_ERRORS: dict[FailureClass, type[PipewardenError]] = {
    cls.classification: cls
    for cls in (
        ValidationError,
        AuthenticationError,
        ImmutabilityViolation,
        TransientInfrastructureError,
        TerminalInfrastructureError,
        VerificationFailure,
        RollbackFailure,
        StageFailure,
        RunCancelled,
    )
}


def error_for(
    classification: FailureClass, message: str, *, detail_ref: str | None = None
) -> PipewardenError:
    """Build the exception matching a classification recorded on a stage."""
    cls = _SIMPLE_ERRORS.get(classification, StageFailure)
    return cls(message, detail_ref=detail_ref)
