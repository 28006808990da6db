"""Failure/retry controller — what to do after a stage attempt ends.

======================  =====================  ==========================
Stage                   On failure             Retry
======================  =====================  ==========================
validate/build/test     hard fail              none
scan                    hard fail              none
deploy                  transient or terminal  transient only, with backoff
verify                  rollback required      none
======================  =====================  ==========================

Whether a deploy failure is transient is decided by a caller-supplied
predicate.  The default one treats timeouts, ``TransientInfrastructureError``
and any error text containing a configured marker ("rate limit", "503",
...) as transient.  Errors raised with their own classification
(``AuthenticationError``, ``ImmutabilityViolation`` ...) bypass the
predicate and are terminal.  Attempt count and backoff come from
``RetryPolicy``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from enum import Enum

from pydantic import BaseModel, ConfigDict

from pipewarden.config import DEFAULT_TRANSIENT_ERROR_MARKERS, ProdConfig
from pipewarden.core.errors import FailureClass
from pipewarden.core.stage_bodies import StageSpec
from pipewarden.core.stage_executor import StageExecutor, StageOutcome
from pipewarden.models.stages import StageAttempt, StageKind, StageStatus

logger = logging.getLogger(__name__)

TransientClassifier = Callable[[StageOutcome], bool]

# Exceptions raised by bodies that carry their own classification.
_CLASSIFIED_ERROR_TYPES: dict[str, FailureClass] = {
    "AuthenticationError": FailureClass.AUTHENTICATION_ERROR,
    "ImmutabilityViolation": FailureClass.IMMUTABILITY_VIOLATION,
    "ValidationError": FailureClass.VALIDATION_ERROR,
    "MissingMetadataError": FailureClass.VALIDATION_ERROR,
    "TerminalInfrastructureError": FailureClass.TERMINAL_INFRASTRUCTURE,
}


class RetryPolicy(BaseModel):
    """Attempts are total, including the first."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = 3
    backoff_seconds: list[float] = [30.0, 60.0]

    @classmethod
    def from_config(cls, config: ProdConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.deploy_max_attempts,
            backoff_seconds=config.deploy_backoff_seconds,
        )

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after failed *attempt* (1-based) before the next one."""
        if not self.backoff_seconds:
            return 0.0
        return self.backoff_seconds[min(attempt, len(self.backoff_seconds)) - 1]


def default_transient_classifier(markers: Iterable[str]) -> TransientClassifier:
    """Build the keyword-marker predicate used when none is supplied."""
    lowered = tuple(marker.lower() for marker in markers)

    def is_transient(outcome: StageOutcome) -> bool:
        if outcome.status == StageStatus.TIMED_OUT:
            return True
        if outcome.error_type == "TransientInfrastructureError":
            return True
        if outcome.error_type in _CLASSIFIED_ERROR_TYPES:
            return False
        text = (outcome.error or "").lower()
        return any(marker in text for marker in lowered)

    return is_transient


class ControlledStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLBACK_REQUIRED = "rollback_required"


class ControlledOutcome(BaseModel):
    """The controller's verdict on a stage, after any retries."""

    model_config = ConfigDict(frozen=True)

    status: ControlledStatus
    classification: FailureClass | None = None
    attempts: list[StageAttempt]
    last: StageOutcome
    message: str | None = None

    @property
    def stage_status(self) -> StageStatus:
        """Status of the final attempt: SUCCESS, FAILED or TIMED_OUT."""
        return self.last.status

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


def _attempt_from(
    number: int, outcome: StageOutcome, classification: FailureClass | None, backoff: float | None
) -> StageAttempt:
    return StageAttempt(
        number=number,
        status=outcome.status,
        started_at=outcome.started_at,
        ended_at=outcome.ended_at,
        duration_seconds=outcome.duration_seconds,
        exit_code=outcome.exit_code,
        error=outcome.error,
        classification=classification.value if classification else None,
        backoff_seconds=backoff,
    )


class FailureController:
    """Runs a stage through the executor and applies the retry table.

    Parameters
    ----------
    executor:
        The stage executor.
    policy:
        Deploy retry policy.
    classifier:
        Predicate deciding whether a failed deploy attempt is transient.
        It is consulted only for outcomes the body did not classify
        itself: a raised ``AuthenticationError``, ``ImmutabilityViolation``,
        ``ValidationError`` or ``TerminalInfrastructureError`` keeps its own
        classification and is never retried, whatever the predicate says.
    sleep:
        Called with the backoff in seconds between deploy attempts.
    """

    def __init__(
        self,
        executor: StageExecutor,
        policy: RetryPolicy | None = None,
        *,
        classifier: TransientClassifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor
        self.policy = policy or RetryPolicy()
        self.classifier = classifier or default_transient_classifier(
            DEFAULT_TRANSIENT_ERROR_MARKERS
        )
        self._sleep = sleep

    def run(
        self,
        spec: StageSpec,
        timeout: float,
        *,
        on_attempt: Callable[[StageAttempt], None] | None = None,
    ) -> ControlledOutcome:
        """Execute *spec* until it succeeds or the table says stop."""
        max_attempts = self.policy.max_attempts if spec.kind == StageKind.DEPLOY else 1
        attempts: list[StageAttempt] = []

        number = 0
        while True:
            number += 1
            outcome = self.executor.run(spec.model_copy(update={"attempt": number}), timeout)

            if outcome.succeeded:
                attempts.append(_attempt_from(number, outcome, None, None))
                self._notify(on_attempt, attempts[-1])
                return ControlledOutcome(
                    status=ControlledStatus.SUCCEEDED, attempts=attempts, last=outcome
                )

            classification = self._classify(spec.kind, outcome)
            retry = (
                classification == FailureClass.TRANSIENT_INFRASTRUCTURE and number < max_attempts
            )
            backoff = self.policy.delay_after(number) if retry else None
            attempts.append(_attempt_from(number, outcome, classification, backoff))
            self._notify(on_attempt, attempts[-1])

            if not retry:
                return self._final(spec, classification, attempts, outcome)

            logger.warning(
                "%s attempt %d/%d failed transiently (%s); retrying in %.0fs",
                spec.stage_id,
                number,
                max_attempts,
                outcome.error,
                backoff,
            )
            self._sleep(backoff)

    def _classify(self, kind: StageKind, outcome: StageOutcome) -> FailureClass:
        if kind == StageKind.VERIFY:
            return FailureClass.VERIFICATION_FAILURE
        if outcome.error_type in _CLASSIFIED_ERROR_TYPES:
            return _CLASSIFIED_ERROR_TYPES[outcome.error_type]
        if kind == StageKind.DEPLOY:
            if self.classifier(outcome):
                return FailureClass.TRANSIENT_INFRASTRUCTURE
            return FailureClass.TERMINAL_INFRASTRUCTURE
        return FailureClass.STAGE_FAILURE

    @staticmethod
    def _final(
        spec: StageSpec,
        classification: FailureClass,
        attempts: list[StageAttempt],
        outcome: StageOutcome,
    ) -> ControlledOutcome:
        status = (
            ControlledStatus.ROLLBACK_REQUIRED
            if spec.kind == StageKind.VERIFY
            else ControlledStatus.FAILED
        )
        message = outcome.error or f"{spec.stage_id} {outcome.status.value}"
        if len(attempts) > 1:
            message = f"{message} (after {len(attempts)} attempts)"
        logger.error("%s %s: %s", spec.stage_id, classification.value, message)
        return ControlledOutcome(
            status=status,
            classification=classification,
            attempts=attempts,
            last=outcome,
            message=message,
        )

    @staticmethod
    def _notify(callback: Callable[[StageAttempt], None] | None, attempt: StageAttempt) -> None:
        if callback is not None:
            callback(attempt)
