"""Governance service -- the orchestrator-facing facade.

Wires the lifecycle state machine, checkpoint evaluator, approval queue,
audit ledger, and negotiation guard over one repository and one immutable
GovernanceConfig.

Every mutating operation accepts an optional ``event_id``. When the id has
already been processed the stored result is returned and nothing is
re-applied, so an orchestrator retrying after a crash cannot produce a
second transition or a second approval request. The event record is
written in the same transaction as the change it guards.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel

from src.carsearch.config import GovernanceConfig, Settings, get_settings
from src.carsearch.core.database import create_db_engine, init_db, make_session_factory
from src.carsearch.deals.lifecycle import KeyedLock, LifecycleStateMachine
from src.carsearch.deals.repository import SqlGovernanceRepository
from src.carsearch.deals.schemas import (
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalStats,
    AuditEntry,
    CheckpointResult,
    DealStatus,
    TransitionRecord,
    TriggeredBy,
    ViewingDetails,
    utcnow,
)
from src.carsearch.governance.approvals import ApprovalQueue
from src.carsearch.governance.audit import AuditLedger
from src.carsearch.governance.checkpoints import CheckpointEvaluator
from src.carsearch.governance.negotiation import (
    AutoSendDecision,
    DraftMessage,
    NegotiationContext,
    NegotiationContextGuard,
    NegotiationLimits,
)

logger = structlog.get_logger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)


class GovernanceService:
    """Single entry point for the orchestrator.

    Args:
        config: Immutable governance configuration.
        repository: Storage implementation (SqlGovernanceRepository in
            production, an in-memory double in tests). Must provide
            ``unit_of_work()`` for event-id deduplication.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        config: GovernanceConfig,
        repository: Any,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self._repository = repository
        self.audit = AuditLedger(repository)
        self.approvals = ApprovalQueue(repository, clock=clock)
        self.lifecycle = LifecycleStateMachine(repository, clock=clock)
        self.checkpoints = CheckpointEvaluator(config, repository, self.approvals, clock=clock)
        self.guard = NegotiationContextGuard(audit=self.audit, clock=clock)
        self._event_locks = KeyedLock()

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def attempt_transition(
        self,
        deal_id: int,
        target_state: DealStatus,
        *,
        triggered_by: TriggeredBy = TriggeredBy.SYSTEM,
        reasoning: str | None = None,
        context: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> TransitionRecord:
        return self._once(
            event_id,
            "attempt_transition",
            deal_id,
            TransitionRecord,
            lambda: self.lifecycle.attempt_transition(
                deal_id,
                target_state,
                triggered_by=triggered_by,
                reasoning=reasoning,
                context=context,
            ),
        )

    # ── Checkpoints ─────────────────────────────────────────────────────────

    def evaluate_offer_threshold(
        self,
        deal_id: int,
        offer_amount: float,
        payload: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> CheckpointResult:
        return self._once(
            event_id,
            "evaluate_offer_threshold",
            deal_id,
            CheckpointResult,
            lambda: self.checkpoints.evaluate_offer_threshold(deal_id, offer_amount, payload),
        )

    def evaluate_viewing_approval(
        self,
        deal_id: int,
        viewing: ViewingDetails | dict[str, Any],
        payload: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> CheckpointResult:
        return self._once(
            event_id,
            "evaluate_viewing_approval",
            deal_id,
            CheckpointResult,
            lambda: self.checkpoints.evaluate_viewing_approval(deal_id, viewing, payload),
        )

    def evaluate_max_followups(
        self,
        deal_id: int,
        follow_up_count: int,
        payload: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> CheckpointResult:
        return self._once(
            event_id,
            "evaluate_max_followups",
            deal_id,
            CheckpointResult,
            lambda: self.checkpoints.evaluate_max_followups(deal_id, follow_up_count, payload),
        )

    def evaluate_portfolio_exposure(
        self,
        new_deal_amount: float,
        payload: dict[str, Any] | None = None,
        deal_id: int | None = None,
        active_statuses: Iterable[DealStatus] | None = None,
        event_id: str | None = None,
    ) -> CheckpointResult:
        return self._once(
            event_id,
            "evaluate_portfolio_exposure",
            deal_id,
            CheckpointResult,
            lambda: self.checkpoints.evaluate_portfolio_exposure(
                new_deal_amount, payload, deal_id=deal_id, active_statuses=active_statuses
            ),
        )

    def flag_unusual_behavior(
        self,
        deal_id: int,
        behavior_description: str,
        payload: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> CheckpointResult:
        return self._once(
            event_id,
            "flag_unusual_behavior",
            deal_id,
            CheckpointResult,
            lambda: self.checkpoints.flag_unusual_behavior(deal_id, behavior_description, payload),
        )

    # ── Negotiation ─────────────────────────────────────────────────────────

    def negotiation_limits(
        self, walk_away_price: float, max_offer_override: float | None = None
    ) -> NegotiationLimits:
        """Default auto-send limits for a deal with the given walk-away price."""
        return NegotiationLimits.from_config(self.config, walk_away_price, max_offer_override)

    def may_auto_send(
        self,
        draft: DraftMessage,
        proposed_offer: float | None,
        context: NegotiationContext,
        limits: NegotiationLimits,
        deal_id: int | None = None,
        event_id: str | None = None,
    ) -> AutoSendDecision:
        return self._once(
            event_id,
            "may_auto_send",
            deal_id,
            AutoSendDecision,
            lambda: self.guard.may_auto_send(
                draft, proposed_offer, context, limits, deal_id=deal_id
            ),
        )

    # ── Approvals ───────────────────────────────────────────────────────────

    def list_pending_approvals(
        self,
        exclude_expired: bool = True,
        deal_id: int | None = None,
        action_type: str | None = None,
        limit: int | None = None,
    ) -> list[ApprovalRequest]:
        return self.approvals.list_pending(
            exclude_expired=exclude_expired,
            deal_id=deal_id,
            action_type=action_type,
            limit=limit,
        )

    def resolve_approval(
        self,
        approval_id: int,
        outcome: ApprovalOutcome,
        notes: str | None = None,
        resolved_by: str = "user",
        event_id: str | None = None,
    ) -> ApprovalRequest:
        return self._once(
            event_id,
            "resolve_approval",
            None,
            ApprovalRequest,
            lambda: self.approvals.resolve(approval_id, outcome, notes, resolved_by),
        )

    def approval_stats(self) -> ApprovalStats:
        return self.approvals.stats()

    def audit_trail(
        self,
        deal_id: int | None = None,
        action: str | None = None,
        limit: int | None = 50,
    ) -> list[AuditEntry]:
        """Audit entries newest first, for one deal or across all deals."""
        if deal_id is None:
            return self.audit.recent(limit=limit, action=action)
        return self.audit.list_for_deal(deal_id, action=action, limit=limit)

    # ── Idempotency ─────────────────────────────────────────────────────────

    def _once(
        self,
        event_id: str | None,
        operation: str,
        deal_id: int | None,
        result_type: type[ResultT],
        apply: Callable[[], ResultT],
    ) -> ResultT:
        """Apply ``apply`` at most once per ``event_id``.

        The lookup, the guarded write and the processed-event record share
        one storage transaction. If any of them fails nothing is committed,
        so the event may be retried.
        """
        if event_id is None:
            return apply()

        with self._event_locks.hold(event_id), self._repository.unit_of_work():
            stored = self._repository.get_processed_event(event_id)
            if stored is not None:
                logger.info(
                    "governance.event_replayed",
                    event_id=event_id,
                    operation=operation,
                )
                return result_type.model_validate(stored)

            result = apply()
            self._repository.record_processed_event(
                event_id,
                operation,
                result.model_dump(mode="json"),
                deal_id=deal_id,
            )
            return result


def build_governance_service(settings: Settings | None = None) -> GovernanceService:
    """Create a GovernanceService backed by the configured database."""
    settings = settings or get_settings()
    engine = create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    repository = SqlGovernanceRepository(make_session_factory(engine))
    logger.info(
        "governance.service_built",
        environment=settings.ENVIRONMENT.value,
        checkpoints_enabled=settings.CHECKPOINTS_ENABLED,
    )
    return GovernanceService(settings.governance_config(), repository)
