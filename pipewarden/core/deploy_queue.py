"""Per-environment deployment queue.

At most one Deploy+Verify sequence runs against an environment at a time,
across all runs.  Requests wait in arrival order.  Two rules thin the
queue:

- Outside production, a new request supersedes every older non-FIFO
  request still waiting for the same environment with a different commit.
  Deploying a commit that is about to be replaced is wasted work.
- Any request still waiting after ``expiry_seconds`` is dropped.

Production requests and operator rollbacks are queued with
``production=True``: strictly first-in first-out and never superseded.
A request that holds the slot is never cancelled.

The queue itself lives in one process.  Given a ``StateStore``, the head
of the queue must also win the environment's persisted deployment lease
before it holds the slot, so coordinators in different processes sharing
one state database never deploy to the same environment at once.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from pipewarden.core.errors import RunCancelled
from pipewarden.core.state_store import StateStore

logger = logging.getLogger(__name__)

# Upper bound on a single wait so an injected clock is re-read regularly.
_POLL_SECONDS = 1.0


@dataclass
class QueueTicket:
    environment: str
    run_id: str
    commit_sha: str
    production: bool
    enqueued_at: float
    ticket_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    cancel_reason: str | None = None

    @property
    def holder(self) -> str:
        return f"{self.run_id}/{self.ticket_id}"


class DeploymentQueue:
    """Mutual exclusion per environment with supersede and expiry rules.

    Parameters
    ----------
    expiry_seconds:
        How long a request may wait before it is dropped.
    clock:
        Monotonic clock in seconds. Injectable for tests.
    leases:
        Store holding the cross-process deployment leases.  Without one,
        exclusion only covers this process.
    lease_seconds:
        Lease lifetime.  Must exceed the longest Deploy+Verify sequence;
        an expired lease can be taken over.
    wall_clock:
        Epoch seconds, shared between processes for lease expiry.
    """

    def __init__(
        self,
        *,
        expiry_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        leases: StateStore | None = None,
        lease_seconds: float = 14400.0,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.expiry_seconds = expiry_seconds
        self._clock = clock
        self._leases = leases
        self._lease_seconds = lease_seconds
        self._wall_clock = wall_clock
        self._cond = threading.Condition()
        self._waiting: dict[str, deque[QueueTicket]] = {}
        self._active: dict[str, QueueTicket] = {}

    @contextmanager
    def slot(
        self,
        environment: str,
        *,
        run_id: str,
        commit_sha: str,
        production: bool = False,
    ) -> Iterator[QueueTicket]:
        """Hold *environment* for the duration of the ``with`` block.

        Raises
        ------
        RunCancelled
            The request was superseded, cancelled, or expired while waiting.
        """
        ticket = self._enqueue(environment, run_id, commit_sha, production)
        self._wait_for_turn(ticket)
        try:
            yield ticket
        finally:
            self._release(ticket)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def _enqueue(
        self, environment: str, run_id: str, commit_sha: str, production: bool
    ) -> QueueTicket:
        ticket = QueueTicket(
            environment=environment,
            run_id=run_id,
            commit_sha=commit_sha,
            production=production,
            enqueued_at=self._clock(),
        )
        with self._cond:
            waiting = self._waiting.setdefault(environment, deque())
            if not production:
                for older in waiting:
                    if (
                        not older.production
                        and older.commit_sha != commit_sha
                        and older.cancel_reason is None
                    ):
                        older.cancel_reason = f"superseded by run {run_id} ({commit_sha})"
                        logger.info(
                            "Queued deploy of %s to %s superseded by %s",
                            older.run_id,
                            environment,
                            run_id,
                        )
            waiting.append(ticket)
            self._cond.notify_all()
        return ticket

    def _wait_for_turn(self, ticket: QueueTicket) -> None:
        waiting = self._waiting[ticket.environment]
        with self._cond:
            while True:
                waited = self._clock() - ticket.enqueued_at
                if ticket.cancel_reason is None and waited >= self.expiry_seconds:
                    ticket.cancel_reason = (
                        f"queued deployment expired after {self.expiry_seconds:.0f}s"
                    )
                if ticket.cancel_reason is not None:
                    waiting.remove(ticket)
                    self._cond.notify_all()
                    raise RunCancelled(
                        f"Deployment of run {ticket.run_id} to "
                        f"{ticket.environment} cancelled: {ticket.cancel_reason}"
                    )
                # Cancelled tickets still in the deque never block the ones behind them
                head = next((t for t in waiting if t.cancel_reason is None), None)
                if (
                    ticket.environment not in self._active
                    and head is ticket
                    and self._take_lease(ticket)
                ):
                    waiting.remove(ticket)
                    self._active[ticket.environment] = ticket
                    logger.debug("Run %s holds %s", ticket.run_id, ticket.environment)
                    return
                remaining = self.expiry_seconds - waited
                self._cond.wait(timeout=max(0.0, min(remaining, _POLL_SECONDS)))

    def _take_lease(self, ticket: QueueTicket) -> bool:
        if self._leases is None:
            return True
        return self._leases.acquire_lease(
            ticket.environment,
            ticket.holder,
            now=self._wall_clock(),
            ttl_seconds=self._lease_seconds,
        )

    def _release(self, ticket: QueueTicket) -> None:
        with self._cond:
            if self._active.get(ticket.environment) is ticket:
                del self._active[ticket.environment]
                if self._leases is not None:
                    self._leases.release_lease(ticket.environment, ticket.holder)
                logger.debug("Run %s released %s", ticket.run_id, ticket.environment)
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Inspection and control
    # ------------------------------------------------------------------

    def active(self, environment: str) -> QueueTicket | None:
        with self._cond:
            return self._active.get(environment)

    def waiting(self, environment: str) -> list[QueueTicket]:
        with self._cond:
            return [t for t in self._waiting.get(environment, ()) if t.cancel_reason is None]

    def cancel_run(self, run_id: str) -> bool:
        """Cancel every waiting request of *run_id*. Returns True if any was waiting."""
        cancelled = False
        with self._cond:
            for waiting in self._waiting.values():
                for ticket in waiting:
                    if ticket.run_id == run_id and ticket.cancel_reason is None:
                        ticket.cancel_reason = "cancelled by operator"
                        cancelled = True
            self._cond.notify_all()
        return cancelled

    def expire_stale(self) -> list[QueueTicket]:
        """Mark every request waiting longer than the expiry as cancelled."""
        now = self._clock()
        expired: list[QueueTicket] = []
        with self._cond:
            for waiting in self._waiting.values():
                for ticket in waiting:
                    if ticket.cancel_reason is None and now - ticket.enqueued_at >= self.expiry_seconds:
                        ticket.cancel_reason = (
                            f"queued deployment expired after {self.expiry_seconds:.0f}s"
                        )
                        expired.append(ticket)
            self._cond.notify_all()
        return expired
