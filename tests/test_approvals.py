"""Tests for ApprovalQueue -- enqueue, listing, single resolution, expiry on read.

All tests use the in-memory repository double. No database dependency.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.carsearch.deals.schemas import (
    ApprovalOutcome,
    ApprovalStatus,
    CheckpointType,
    GenericPayload,
    NewApprovalRequest,
    SendEmailPayload,
    TriggeredBy,
)
from src.carsearch.governance.approvals import ApprovalQueue
from src.carsearch.governance.errors import (
    ApprovalAlreadyResolvedError,
    ApprovalExpiredError,
    ApprovalNotFoundError,
    GovernanceError,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _request(deal_id: int | None = 1, expires_at=None, action_type: str = "send_email"):
    return NewApprovalRequest(
        deal_id=deal_id,
        action_type=action_type,
        description="Email seller about service history",
        reasoning="First contact",
        payload=SendEmailPayload(recipient="seller@example.com", body="Hi, is it available?"),
        expires_at=expires_at,
    )


@pytest.fixture
def queue(repo, clock) -> ApprovalQueue:
    return ApprovalQueue(repo, clock=clock)


# ══════════════════════════════════════════════════════════════════════════════
# ENQUEUE AND LIST
# ══════════════════════════════════════════════════════════════════════════════


class TestEnqueue:
    def test_enqueue_creates_pending_request(self, repo, queue) -> None:
        approval_id = queue.enqueue(_request())
        request = queue.get(approval_id)
        assert request.status == ApprovalStatus.PENDING
        assert request.resolved_at is None
        assert request.payload["recipient"] == "seller@example.com"

    def test_enqueue_audits(self, repo, queue) -> None:
        approval_id = queue.enqueue(_request(), triggered_by=TriggeredBy.AGENT)
        [entry] = repo.audit_rows
        assert entry.action == "approval_queued"
        assert entry.triggered_by == TriggeredBy.AGENT
        assert entry.context["approval_id"] == approval_id
        assert entry.context["checkpoint_type"] is None

    def test_list_pending_oldest_first(self, queue, clock) -> None:
        first = queue.enqueue(_request())
        clock.advance(minutes=5)
        second = queue.enqueue(_request())
        assert [r.id for r in queue.list_pending()] == [first, second]

    def test_list_pending_filters(self, queue) -> None:
        queue.enqueue(_request(deal_id=1))
        wanted = queue.enqueue(_request(deal_id=2, action_type="follow_up_call"))
        queue.enqueue(_request(deal_id=2))

        assert [r.id for r in queue.list_pending(deal_id=2, action_type="follow_up_call")] == [
            wanted
        ]
        assert len(queue.list_pending(limit=2)) == 2

    def test_list_pending_excludes_resolved(self, queue) -> None:
        resolved = queue.enqueue(_request())
        open_id = queue.enqueue(_request())
        queue.resolve(resolved, ApprovalOutcome.APPROVED)
        assert [r.id for r in queue.list_pending()] == [open_id]

    def test_unknown_action_type_parses_generic(self, queue) -> None:
        approval_id = queue.enqueue(
            NewApprovalRequest(
                action_type="call_seller",
                description="Call the seller",
                payload=GenericPayload(action_type="call_seller", phone="555-0100"),
            )
        )
        payload = queue.get(approval_id).action_payload
        assert isinstance(payload, GenericPayload)
        assert payload.model_dump()["phone"] == "555-0100"


# ══════════════════════════════════════════════════════════════════════════════
# RESOLVE
# ══════════════════════════════════════════════════════════════════════════════


class TestResolve:
    def test_approve(self, repo, queue, clock) -> None:
        approval_id = queue.enqueue(_request())
        resolved = queue.resolve(approval_id, ApprovalOutcome.APPROVED, notes="Go ahead")

        assert resolved.status == ApprovalStatus.APPROVED
        assert resolved.resolved_by == "user"
        assert resolved.resolved_at == clock.now
        assert resolved.resolution_notes == "Go ahead"
        assert resolved.action_payload.body == "Hi, is it available?"

        entry = repo.list_audit(action="approval_approved")[0]
        assert entry.triggered_by == TriggeredBy.USER
        assert entry.reasoning == "Go ahead"
        assert entry.context == {"approval_id": approval_id}

    def test_reject_with_string_outcome(self, repo, queue) -> None:
        approval_id = queue.enqueue(_request())
        resolved = queue.resolve(approval_id, "rejected")
        assert resolved.status == ApprovalStatus.REJECTED
        assert len(repo.list_audit(action="approval_rejected")) == 1

    def test_second_resolution_fails_without_mutation(self, repo, queue) -> None:
        approval_id = queue.enqueue(_request())
        queue.resolve(approval_id, ApprovalOutcome.APPROVED)
        audit_count = len(repo.audit_rows)

        with pytest.raises(ApprovalAlreadyResolvedError) as exc_info:
            queue.resolve(approval_id, ApprovalOutcome.REJECTED)

        assert exc_info.value.status == "approved"
        assert queue.get(approval_id).status == ApprovalStatus.APPROVED
        assert len(repo.audit_rows) == audit_count

    def test_not_found(self, queue) -> None:
        with pytest.raises(ApprovalNotFoundError):
            queue.resolve(42, ApprovalOutcome.APPROVED)
        with pytest.raises(LookupError):
            queue.get(42)

    def test_invalid_outcome(self, queue) -> None:
        approval_id = queue.enqueue(_request())
        with pytest.raises(ValueError):
            queue.resolve(approval_id, "expired")
        assert queue.get(approval_id).status == ApprovalStatus.PENDING

    def test_lost_race_reports_already_resolved(self, repo, queue) -> None:
        approval_id = queue.enqueue(_request())
        original = repo.resolve_approval

        def racing_resolve(approval_id, status, *args):
            original(approval_id, ApprovalStatus.REJECTED, *args)
            return original(approval_id, status, *args)

        repo.resolve_approval = racing_resolve
        with pytest.raises(ApprovalAlreadyResolvedError) as exc_info:
            queue.resolve(approval_id, ApprovalOutcome.APPROVED)
        assert exc_info.value.status == "rejected"


# ══════════════════════════════════════════════════════════════════════════════
# EXPIRY
# ══════════════════════════════════════════════════════════════════════════════


class TestExpiry:
    def test_expired_request_hidden_and_unresolvable(self, repo, queue, clock) -> None:
        approval_id = queue.enqueue(_request(expires_at=clock.now + timedelta(hours=1)))
        assert [r.id for r in queue.list_pending()] == [approval_id]

        clock.advance(hours=1)
        assert queue.list_pending() == []
        assert [r.id for r in queue.list_pending(exclude_expired=False)] == [approval_id]

        with pytest.raises(ApprovalExpiredError):
            queue.resolve(approval_id, ApprovalOutcome.APPROVED)

        # Expiry is never persisted
        stored = repo.get_approval(approval_id)
        assert stored.status == ApprovalStatus.PENDING
        assert stored.effective_status(clock.now) == ApprovalStatus.EXPIRED

    def test_expired_error_is_already_resolved(self) -> None:
        err = ApprovalExpiredError(7)
        assert isinstance(err, ApprovalAlreadyResolvedError)
        assert isinstance(err, GovernanceError)
        assert err.status == "expired"

    def test_resolved_request_never_reports_expired(self, queue, clock) -> None:
        approval_id = queue.enqueue(_request(expires_at=clock.now + timedelta(minutes=1)))
        resolved = queue.resolve(approval_id, ApprovalOutcome.APPROVED)
        clock.advance(days=2)
        assert resolved.effective_status(clock.now) == ApprovalStatus.APPROVED


# ══════════════════════════════════════════════════════════════════════════════
# STATS
# ══════════════════════════════════════════════════════════════════════════════


class TestStats:
    def test_counts_by_effective_status(self, queue, clock) -> None:
        queue.enqueue(_request())
        approved = queue.enqueue(_request())
        rejected = queue.enqueue(_request())
        queue.enqueue(_request(expires_at=clock.now + timedelta(minutes=30)))

        queue.resolve(approved, ApprovalOutcome.APPROVED)
        queue.resolve(rejected, ApprovalOutcome.REJECTED)
        clock.advance(hours=1)

        stats = queue.stats()
        assert stats.pending == 1
        assert stats.approved == 1
        assert stats.rejected == 1
        assert stats.expired == 1

    def test_checkpoint_type_round_trips(self, queue) -> None:
        approval_id = queue.enqueue(
            _request().model_copy(
                update={"checkpoint_type": CheckpointType.UNUSUAL_BEHAVIOR}
            )
        )
        assert queue.get(approval_id).checkpoint_type == CheckpointType.UNUSUAL_BEHAVIOR
