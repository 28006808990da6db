"""Stage executor — run one stage body under a timeout.

The executor does not interpret results.  It reports ``success``,
``failed`` or ``timed_out`` together with whatever the body said (exit
code, error type and message, outputs) and leaves classification to the
retry controller.

Each body runs in its own worker thread so the wall-clock limit holds even
when the body blocks.  An overrunning build, test or scan body is abandoned,
not killed.  An overrunning deploy or verify body is waited for: the
attempt is still reported as ``timed_out``, but only once the body has
returned, so no retry and no slot release overlaps a live deployment.
``CommandStageBody`` bounds its subprocess with the same timeout.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict

from pipewarden.core.errors import ValidationError
from pipewarden.core.stage_bodies import (
    BodyResult,
    StageBody,
    StageSpec,
    body_key_candidates,
    resolve_body,
)
from pipewarden.models.stages import StageKind, StageStatus

logger = logging.getLogger(__name__)

# Kinds whose bodies touch an environment and must finish before the caller moves on.
_DRAINED_KINDS = frozenset({StageKind.DEPLOY, StageKind.VERIFY})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StageOutcome(BaseModel):
    """The raw result of one stage attempt."""

    model_config = ConfigDict(frozen=True)

    status: StageStatus  # SUCCESS, FAILED or TIMED_OUT
    exit_code: int | None = None
    error_type: str | None = None
    error: str | None = None
    outputs: dict[str, str] = {}
    detail_ref: str | None = None
    started_at: datetime
    ended_at: datetime
    duration_seconds: float

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCESS


class ExecutionRecord(BaseModel):
    """Structured record emitted after every execution."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    stage_id: str
    kind: StageKind
    environment: str | None = None
    attempt: int
    duration_seconds: float
    outcome: StageStatus


class StageExecutor:
    """Invokes stage bodies with a timeout.

    Parameters
    ----------
    bodies:
        Stage body table keyed by ``"<kind>:<env>"`` or ``"<kind>"``.
    sink:
        Optional callback receiving every ``ExecutionRecord``.
    clock:
        Returns the current UTC time for start/end timestamps.
    """

    def __init__(
        self,
        bodies: Mapping[str, StageBody],
        *,
        sink: Callable[[ExecutionRecord], None] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._bodies = bodies
        self._sink = sink
        self._clock = clock
        self.last_record: ExecutionRecord | None = None

    def has_body(self, kind: StageKind, environment: str | None = None) -> bool:
        return any(key in self._bodies for key in body_key_candidates(kind, environment))

    def run(self, spec: StageSpec, timeout: float) -> StageOutcome:
        """Execute the body for *spec*, waiting at most *timeout* seconds."""
        spec = spec.model_copy(update={"timeout_seconds": timeout})
        started_at = self._clock()
        start = time.monotonic()

        try:
            body = resolve_body(self._bodies, spec.kind, spec.environment)
        except ValidationError as exc:
            outcome = self._outcome(
                StageStatus.FAILED,
                started_at,
                start,
                error_type=type(exc).__name__,
                error=exc.message,
            )
            self._emit(spec, outcome)
            return outcome

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{spec.stage_id}")
        future = pool.submit(body, spec)
        try:
            result: BodyResult = future.result(timeout=timeout)
        except TimeoutError as exc:
            if spec.kind in _DRAINED_KINDS and not future.done():
                self._drain(spec, future)
            outcome = self._outcome(
                StageStatus.TIMED_OUT,
                started_at,
                start,
                error_type="TimeoutError",
                error=str(exc) or f"{spec.stage_id} exceeded {timeout:g}s",
            )
        except Exception as exc:
            outcome = self._outcome(
                StageStatus.FAILED,
                started_at,
                start,
                error_type=type(exc).__name__,
                error=str(exc) or type(exc).__name__,
                detail_ref=getattr(exc, "detail_ref", None),
            )
        else:
            outcome = self._outcome(
                StageStatus.SUCCESS if result.succeeded else StageStatus.FAILED,
                started_at,
                start,
                exit_code=result.exit_code,
                error=result.error,
                outputs=result.outputs,
                detail_ref=result.detail_ref,
            )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        self._emit(spec, outcome)
        return outcome

    @staticmethod
    def _drain(spec: StageSpec, future: Future) -> None:
        logger.warning(
            "%s overran its %gs timeout; waiting for the body to return",
            spec.stage_id,
            spec.timeout_seconds,
        )
        wait([future])

    def _outcome(
        self, status: StageStatus, started_at: datetime, start: float, **fields
    ) -> StageOutcome:
        return StageOutcome(
            status=status,
            started_at=started_at,
            ended_at=self._clock(),
            duration_seconds=round(time.monotonic() - start, 6),
            **fields,
        )

    def _emit(self, spec: StageSpec, outcome: StageOutcome) -> None:
        record = ExecutionRecord(
            run_id=spec.run_id,
            stage_id=spec.stage_id,
            kind=spec.kind,
            environment=spec.environment,
            attempt=spec.attempt,
            duration_seconds=outcome.duration_seconds,
            outcome=outcome.status,
        )
        self.last_record = record
        logger.info(
            "stage=%s env=%s attempt=%d outcome=%s duration=%.3fs",
            record.kind.value,
            record.environment or "-",
            record.attempt,
            record.outcome.value,
            record.duration_seconds,
        )
        if self._sink is not None:
            self._sink(record)
