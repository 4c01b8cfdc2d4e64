"""Approval queue -- durable store of deferred actions awaiting a human.

Requests are always created pending and resolved at most once, to approved
or rejected. Expiry is never written: a pending request whose expires_at
has passed is reported as expired at read time and can no longer be
resolved.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import structlog

from src.carsearch.deals.schemas import (
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalStats,
    ApprovalStatus,
    AuditEntry,
    NewApprovalRequest,
    TriggeredBy,
    utcnow,
)
from src.carsearch.governance.errors import (
    ApprovalAlreadyResolvedError,
    ApprovalExpiredError,
    ApprovalNotFoundError,
)

logger = structlog.get_logger(__name__)


class ApprovalQueue:
    """Enqueue, list, and resolve human-approval requests.

    Args:
        repository: Storage providing the approval and audit methods.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        repository: Any,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock

    def enqueue(
        self,
        request: NewApprovalRequest,
        triggered_by: TriggeredBy = TriggeredBy.SYSTEM,
    ) -> int:
        """Park an action for approval and return the new request id.

        The request and its ``approval_queued`` audit entry are written
        together.
        """
        now = self._clock()
        audit = AuditEntry(
            deal_id=request.deal_id,
            action="approval_queued",
            description=(
                f"Action '{request.action_type}' queued for approval: "
                f"{request.description}"
            ),
            reasoning=request.reasoning,
            context={
                "checkpoint_type": (
                    request.checkpoint_type.value if request.checkpoint_type else None
                ),
                "threshold_value": request.threshold_value,
            },
            triggered_by=triggered_by,
            created_at=now,
        )
        stored = self._repository.append_approval(request, now, audit)
        logger.info(
            "approvals.queued",
            approval_id=stored.id,
            deal_id=request.deal_id,
            action_type=request.action_type,
            checkpoint_type=audit.context["checkpoint_type"],
        )
        return stored.id

    def get(self, approval_id: int) -> ApprovalRequest:
        request = self._repository.get_approval(approval_id)
        if request is None:
            raise ApprovalNotFoundError(approval_id)
        return request

    def list_pending(
        self,
        exclude_expired: bool = True,
        deal_id: int | None = None,
        action_type: str | None = None,
        limit: int | None = None,
    ) -> list[ApprovalRequest]:
        """Pending requests, oldest first.

        Args:
            exclude_expired: Drop requests whose expires_at has passed
                (evaluated now, not stored).
            deal_id: Only requests for this deal.
            action_type: Only requests of this action type.
            limit: Maximum number of requests to return.
        """
        now = self._clock()
        pending = self._repository.list_approvals(
            status=ApprovalStatus.PENDING,
            deal_id=deal_id,
            action_type=action_type,
        )
        if exclude_expired:
            pending = [r for r in pending if not r.is_expired(now)]
        if limit is not None:
            pending = pending[:limit]
        return pending

    def resolve(
        self,
        approval_id: int,
        outcome: ApprovalOutcome,
        notes: str | None = None,
        resolved_by: str = "user",
    ) -> ApprovalRequest:
        """Resolve a pending request exactly once.

        Returns:
            The resolved request; its payload is the replay snapshot of the
            approved (or rejected) action.

        Raises:
            ApprovalNotFoundError: No request with this id.
            ApprovalAlreadyResolvedError: The request is not pending.
            ApprovalExpiredError: The request is pending but past expires_at.
        """
        outcome = ApprovalOutcome(outcome)
        request = self.get(approval_id)

        if request.status != ApprovalStatus.PENDING:
            raise ApprovalAlreadyResolvedError(approval_id, request.status.value)

        now = self._clock()
        if request.is_expired(now):
            logger.info("approvals.expired_resolution_refused", approval_id=approval_id)
            raise ApprovalExpiredError(approval_id)

        status = ApprovalStatus(outcome.value)
        audit = AuditEntry(
            deal_id=request.deal_id,
            action=f"approval_{outcome.value}",
            description=(
                f"Action '{request.action_type}' {outcome.value}: {request.description}"
            ),
            reasoning=notes,
            context={"approval_id": approval_id},
            triggered_by=TriggeredBy.USER,
            created_at=now,
        )
        resolved = self._repository.resolve_approval(
            approval_id, status, resolved_by, now, notes, audit
        )
        if resolved is None:
            # Lost a race with another resolver
            current = self.get(approval_id)
            raise ApprovalAlreadyResolvedError(approval_id, current.status.value)

        logger.info(
            "approvals.resolved",
            approval_id=approval_id,
            outcome=outcome.value,
            resolved_by=resolved_by,
        )
        return resolved

    def stats(self) -> ApprovalStats:
        """Counts by effective status (expiry computed now)."""
        now = self._clock()
        stats = ApprovalStats()
        for request in self._repository.list_approvals():
            status = request.effective_status(now)
            setattr(stats, status.value, getattr(stats, status.value) + 1)
        return stats
