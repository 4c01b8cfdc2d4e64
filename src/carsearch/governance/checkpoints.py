"""Checkpoint evaluator -- policy checks gating agent-proposed actions.

Five independent checks decide whether an action the agent wants to take
must be deferred to a human:

1. offer_threshold: offer amount at or above the configured threshold
2. viewing_approval: scheduling a viewing while viewings require approval
3. max_followups: automatic follow-up budget exhausted
4. portfolio_exposure: total cost across active deals plus the new deal
   exceeds the alert threshold
5. unusual_behavior: always deferred when invoked

Every check reads the global enabled flag first. When governance is
disabled a check returns requires_approval=False and writes nothing.
A triggered check enqueues exactly one pending ApprovalRequest whose
payload is a replay snapshot of what the caller proposed.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from src.carsearch.config import GovernanceConfig
from src.carsearch.deals.schemas import (
    ACTIVE_STATUSES,
    CheckpointResult,
    CheckpointType,
    DealStatus,
    FollowUpPayload,
    NewApprovalRequest,
    PortfolioExposurePayload,
    ScheduleViewingPayload,
    SendOfferPayload,
    UnusualBehaviorPayload,
    ViewingDetails,
    utcnow,
)
from src.carsearch.governance.approvals import ApprovalQueue

logger = structlog.get_logger(__name__)

_NOT_REQUIRED = CheckpointResult(requires_approval=False)


def format_money(amount: float) -> str:
    return f"${amount:,.0f}"


class CheckpointEvaluator:
    """Runs the five governance checkpoints.

    Args:
        config: Immutable governance configuration.
        repository: Storage providing ``get_deal``, ``list_deals`` and
            ``get_estimated_cost`` (read-only here).
        approvals: ApprovalQueue that triggered checks enqueue into.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        config: GovernanceConfig,
        repository: Any,
        approvals: ApprovalQueue,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._repository = repository
        self._approvals = approvals
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    # ── Checks ──────────────────────────────────────────────────────────────

    def evaluate_offer_threshold(
        self,
        deal_id: int,
        offer_amount: float,
        payload: dict[str, Any] | None = None,
    ) -> CheckpointResult:
        """Defer offers at or above the configured threshold (inclusive)."""
        if not self._config.enabled:
            return _NOT_REQUIRED

        threshold = self._config.offer_approval_threshold
        if offer_amount < threshold:
            return _NOT_REQUIRED

        vehicle = self._vehicle_label(deal_id)
        reason = (
            f"Offer of {format_money(offer_amount)} exceeds threshold of "
            f"{format_money(threshold)}"
        )
        approval_id = self._enqueue(
            deal_id=deal_id,
            checkpoint=CheckpointType.OFFER_THRESHOLD,
            description=f"Send offer of {format_money(offer_amount)} for {vehicle}",
            reasoning=(
                f"Offer amount ({format_money(offer_amount)}) meets or exceeds "
                f"approval threshold ({format_money(threshold)})"
            ),
            payload=SendOfferPayload(**_merge(payload, offer_amount=offer_amount)),
            threshold_value=threshold,
        )
        return CheckpointResult(requires_approval=True, approval_id=approval_id, reason=reason)

    def evaluate_viewing_approval(
        self,
        deal_id: int,
        viewing: ViewingDetails | dict[str, Any],
        payload: dict[str, Any] | None = None,
    ) -> CheckpointResult:
        """Defer viewing scheduling when viewings require approval."""
        if not self._config.enabled or not self._config.viewing_requires_approval:
            return _NOT_REQUIRED

        viewing = ViewingDetails.model_validate(viewing)
        vehicle = self._vehicle_label(deal_id)
        approval_id = self._enqueue(
            deal_id=deal_id,
            checkpoint=CheckpointType.VIEWING_APPROVAL,
            description=f"Schedule viewing for {vehicle} {viewing.describe()}",
            reasoning="Viewing requires human approval per configuration",
            payload=ScheduleViewingPayload(**_merge(payload, viewing=viewing)),
        )
        return CheckpointResult(
            requires_approval=True,
            approval_id=approval_id,
            reason="Viewing scheduling requires approval",
        )

    def evaluate_max_followups(
        self,
        deal_id: int,
        follow_up_count: int,
        payload: dict[str, Any] | None = None,
    ) -> CheckpointResult:
        """Defer follow-ups once ``follow_up_count`` reaches the configured max."""
        if not self._config.enabled:
            return _NOT_REQUIRED

        max_followups = self._config.max_auto_followups
        if follow_up_count < max_followups:
            return _NOT_REQUIRED

        next_number = follow_up_count + 1
        vehicle = self._vehicle_label(deal_id)
        approval_id = self._enqueue(
            deal_id=deal_id,
            checkpoint=CheckpointType.MAX_FOLLOWUPS,
            description=f"Send follow-up #{next_number} for {vehicle}",
            reasoning=(
                f"Reached max auto follow-ups ({max_followups}). "
                "Human decision required to continue."
            ),
            payload=FollowUpPayload(**_merge(payload, follow_up_number=next_number)),
            threshold_value=max_followups,
        )
        return CheckpointResult(
            requires_approval=True,
            approval_id=approval_id,
            reason=f"Max auto follow-ups ({max_followups}) reached",
        )

    def evaluate_portfolio_exposure(
        self,
        new_deal_amount: float,
        payload: dict[str, Any] | None = None,
        deal_id: int | None = None,
        active_statuses: Iterable[DealStatus] | None = None,
    ) -> CheckpointResult:
        """Defer a new commitment that pushes total exposure over the alert.

        Exposure is ``new_deal_amount`` plus, for every deal in an active
        status, its computed total estimated cost, falling back to its
        listed price. The check is a no-op when no alert threshold is set.
        """
        threshold = self._config.portfolio_exposure_alert
        if not self._config.enabled or threshold is None:
            return _NOT_REQUIRED

        statuses = frozenset(active_statuses) if active_statuses is not None else ACTIVE_STATUSES
        active_deals = self._repository.list_deals(statuses)
        total_exposure = self.compute_exposure(new_deal_amount, active_deals)

        if total_exposure <= threshold:
            logger.debug(
                "checkpoints.exposure_within_limit",
                total_exposure=total_exposure,
                threshold=threshold,
            )
            return _NOT_REQUIRED

        approval_id = self._enqueue(
            deal_id=deal_id,
            checkpoint=CheckpointType.PORTFOLIO_EXPOSURE,
            description=(
                f"Total portfolio exposure ({format_money(total_exposure)}) "
                "exceeds alert threshold"
            ),
            reasoning=(
                f"Adding this deal would bring total exposure to "
                f"{format_money(total_exposure)}, exceeding the "
                f"{format_money(threshold)} threshold"
            ),
            payload=PortfolioExposurePayload(
                **_merge(
                    payload,
                    new_deal_amount=new_deal_amount,
                    total_exposure=total_exposure,
                    threshold=threshold,
                    active_deals=len(active_deals),
                )
            ),
            threshold_value=threshold,
        )
        return CheckpointResult(
            requires_approval=True,
            approval_id=approval_id,
            reason=f"Portfolio exposure ({format_money(total_exposure)}) exceeds threshold",
        )

    def flag_unusual_behavior(
        self,
        deal_id: int,
        behavior_description: str,
        payload: dict[str, Any] | None = None,
    ) -> CheckpointResult:
        """Always defer; the caller's description is recorded verbatim."""
        if not self._config.enabled:
            return _NOT_REQUIRED

        vehicle = self._vehicle_label(deal_id)
        approval_id = self._enqueue(
            deal_id=deal_id,
            checkpoint=CheckpointType.UNUSUAL_BEHAVIOR,
            description=f"Unusual seller behavior detected for {vehicle}",
            reasoning=behavior_description,
            payload=UnusualBehaviorPayload(**_merge(payload, behavior=behavior_description)),
        )
        return CheckpointResult(
            requires_approval=True,
            approval_id=approval_id,
            reason=behavior_description,
        )

    # ── Helpers ─────────────────────────────────────────────────────────────

    def compute_exposure(self, new_deal_amount: float, active_deals: list) -> float:
        """Sum estimated-or-listed cost of ``active_deals`` plus the new amount."""
        total = new_deal_amount
        for deal in active_deals:
            cost = self._repository.get_estimated_cost(deal.id)
            if cost:
                total += cost
            elif deal.price:
                total += deal.price
        return total

    def _vehicle_label(self, deal_id: int) -> str:
        deal = self._repository.get_deal(deal_id)
        return deal.vehicle_label if deal else f"Listing #{deal_id}"

    def _enqueue(
        self,
        *,
        deal_id: int | None,
        checkpoint: CheckpointType,
        description: str,
        reasoning: str,
        payload: Any,
        threshold_value: float | None = None,
    ) -> int:
        expires_at = None
        if self._config.approval_ttl_hours is not None:
            expires_at = self._clock() + timedelta(hours=self._config.approval_ttl_hours)

        approval_id = self._approvals.enqueue(
            NewApprovalRequest(
                deal_id=deal_id,
                action_type=payload.action_type,
                description=description,
                reasoning=reasoning,
                payload=payload,
                checkpoint_type=checkpoint,
                threshold_value=threshold_value,
                expires_at=expires_at,
            )
        )
        logger.info(
            "checkpoints.approval_required",
            checkpoint=checkpoint.value,
            deal_id=deal_id,
            approval_id=approval_id,
        )
        return approval_id


def _merge(payload: dict[str, Any] | None, **fields: Any) -> dict[str, Any]:
    """Caller's payload snapshot with the checkpoint's own fields on top."""
    merged = dict(payload or {})
    merged.pop("action_type", None)
    merged.update(fields)
    return merged
