"""Governance error taxonomy.

Every failure is local and reported to the calling orchestrator, which
decides whether to retry, skip, or escalate. Governance being disabled is
not an error and never raises.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from src.carsearch.deals.schemas import DealStatus


class GovernanceError(Exception):
    """Base class for all governance failures."""


class InvalidTransitionError(GovernanceError, ValueError):
    """Raised when a deal status transition is not in the transition table."""

    def __init__(
        self,
        deal_id: int,
        from_state: DealStatus,
        to_state: DealStatus,
        allowed: Iterable[DealStatus] = (),
    ) -> None:
        self.deal_id = deal_id
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = sorted(s.value for s in allowed)
        allowed_text = ", ".join(self.allowed) or "none (terminal)"
        super().__init__(
            f"Invalid transition for deal {deal_id}: "
            f"{from_state.value} -> {to_state.value}. "
            f"Allowed from {from_state.value}: {allowed_text}"
        )


class DealNotFoundError(GovernanceError, LookupError):
    """Raised when a deal id does not exist."""

    def __init__(self, deal_id: int) -> None:
        self.deal_id = deal_id
        super().__init__(f"Deal {deal_id} not found")


class ApprovalNotFoundError(GovernanceError, LookupError):
    """Raised when resolving an approval id that does not exist."""

    def __init__(self, approval_id: int) -> None:
        self.approval_id = approval_id
        super().__init__(f"Approval {approval_id} not found")


class ApprovalAlreadyResolvedError(GovernanceError):
    """Raised when resolving an approval that is no longer pending."""

    def __init__(self, approval_id: int, status: str) -> None:
        self.approval_id = approval_id
        self.status = status
        super().__init__(f"Approval {approval_id} already {status}")


class ApprovalExpiredError(ApprovalAlreadyResolvedError):
    """Raised when resolving a pending approval whose expires_at has passed."""

    def __init__(self, approval_id: int) -> None:
        super().__init__(approval_id, "expired")


class StorageUnavailableError(GovernanceError):
    """Raised when an audit, queue, or deal write/read fails in storage."""
