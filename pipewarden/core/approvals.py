"""Approval channel — the persisted human gate for protected environments.

An approval request is created when a promotion into a protected
environment passes every automatic check.  It lives in the state store,
so nothing waits on it in memory: the run is suspended and an external
``decide`` call (CLI, webhook) later records approvals or a rejection.

A request is approved once ``required_approvals`` distinct authorized
approvers have approved it.  A single rejection rejects it.  Requests not
decided before ``expires_at`` expire.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from pipewarden.core.errors import AuthenticationError, ValidationError
from pipewarden.core.run_ledger import RunLedger
from pipewarden.core.state_store import StateStore
from pipewarden.models.promotion import ApprovalRequest, ApprovalState, PromotionRecord

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalChannel:
    """Create, decide and expire approval requests.

    Parameters
    ----------
    store:
        Where requests are persisted.
    ledger:
        Every request, decision and refusal is recorded here.
    authorized_approvers:
        Identities allowed to decide. Empty means anyone may decide.
    expiry_seconds:
        Lifetime of a request.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        store: StateStore,
        ledger: RunLedger,
        *,
        authorized_approvers: Iterable[str] = (),
        expiry_seconds: float = 86400.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self.authorized_approvers = frozenset(authorized_approvers)
        self.expiry_seconds = expiry_seconds
        self._clock = clock

    def request_approval(
        self, record: PromotionRecord, *, required_approvals: int = 1
    ) -> ApprovalRequest:
        """Open a request for the promotion described by *record*."""
        now = self._clock()
        request = ApprovalRequest(
            promotion_record_id=record.record_id,
            run_id=record.run_id,
            tag=record.tag,
            source_env=record.source_env,
            target_env=record.target_env,
            required_approvals=max(1, required_approvals),
            created_at=now,
            expires_at=now + timedelta(seconds=self.expiry_seconds),
        )
        self._store.save_approval(request)
        self._ledger.record(
            request.run_id,
            f"approval:{request.request_id}",
            "approval.requested",
            details={
                "target_env": request.target_env,
                "required_approvals": request.required_approvals,
                "expires_at": request.expires_at.isoformat(),
            },
            artifact_references=[request.tag],
        )
        logger.info(
            "Approval %s requested: %s -> %s (%d approval(s) required)",
            request.request_id,
            request.tag,
            request.target_env,
            request.required_approvals,
        )
        return request

    def status(self, request_id: str) -> ApprovalRequest:
        request = self._store.load_approval(request_id)
        if request is None:
            raise ValidationError(f"Unknown approval request: {request_id!r}")
        return request

    def decide(self, request_id: str, approve: bool, approver: str) -> ApprovalRequest:
        """Record one approver's decision.

        Returns the updated request.  A request past its expiry is expired
        instead, and the decision is ignored.

        Raises
        ------
        ValidationError
            Unknown request, empty approver, or a request already decided.
        AuthenticationError
            *approver* is not on the authorized list.
        """
        request = self.status(request_id)
        approver = approver.strip()
        if not approver:
            raise ValidationError("An approver identity is required")
        if not request.is_open:
            raise ValidationError(
                f"Approval {request_id} is already {request.state.value}"
            )
        if self._clock() >= request.expires_at:
            return self._expire(request)

        subject = f"approval:{request_id}"
        if self.authorized_approvers and approver not in self.authorized_approvers:
            self._ledger.record(
                request.run_id, subject, "approval.unauthorized", details={"approver": approver}
            )
            raise AuthenticationError(
                f"{approver!r} is not an authorized approver for {request.target_env}"
            )

        if not approve:
            updated = request.model_copy(
                update={
                    "state": ApprovalState.REJECTED,
                    "decided_by": approver,
                    "decided_at": self._clock(),
                }
            )
            event = "approval.rejected"
        elif approver in request.approvals:
            logger.info("%s already approved %s", approver, request_id)
            return request
        else:
            approvals = [*request.approvals, approver]
            done = len(approvals) >= request.required_approvals
            updated = request.model_copy(
                update={
                    "approvals": approvals,
                    "state": ApprovalState.APPROVED if done else ApprovalState.REQUESTED,
                    "decided_by": approver if done else None,
                    "decided_at": self._clock() if done else None,
                }
            )
            event = "approval.approved" if done else "approval.recorded"

        self._store.save_approval(updated)
        self._ledger.record(
            request.run_id,
            subject,
            event,
            details={"approver": approver, "approvals": updated.approvals},
            artifact_references=[request.tag],
        )
        logger.info("Approval %s: %s by %s", request_id, event, approver)
        return updated

    def expire_due(self) -> list[ApprovalRequest]:
        """Expire every open request whose deadline has passed."""
        now = self._clock()
        return [
            self._expire(request)
            for request in self._store.list_approvals(ApprovalState.REQUESTED)
            if now >= request.expires_at
        ]

    def withdraw(self, request_id: str, *, reason: str) -> ApprovalRequest:
        """Close an open request because its run no longer needs it.

        The request ends ``expired`` so it drops out of ``open_requests``
        and any later decision is refused.  Closed requests are returned
        unchanged.
        """
        request = self.status(request_id)
        if not request.is_open:
            return request
        return self._expire(request, event="approval.withdrawn", reason=reason)

    def open_requests(self) -> list[ApprovalRequest]:
        return self._store.list_approvals(ApprovalState.REQUESTED)

    def _expire(
        self,
        request: ApprovalRequest,
        *,
        event: str = "approval.expired",
        reason: str | None = None,
    ) -> ApprovalRequest:
        expired = request.model_copy(
            update={"state": ApprovalState.EXPIRED, "decided_at": self._clock()}
        )
        self._store.save_approval(expired)
        self._ledger.record(
            request.run_id,
            f"approval:{request.request_id}",
            event,
            details={"reason": reason} if reason else None,
            artifact_references=[request.tag],
        )
        logger.warning("Approval %s closed: %s", request.request_id, reason or "expired")
        return expired
