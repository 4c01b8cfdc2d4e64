"""Negotiation context guard -- the auto-send safety gate.

Decides whether a message drafted by the external negotiation strategy may
be transmitted without a human. Checks run in priority order and the first
one that fires blocks the draft:

1. escalation: the generator itself asked for a human
2. max_exchanges: the conversation history, blocked drafts included, has
   reached the exchange limit
3. max_offer: the proposed offer exceeds the safety ceiling, by default
   walk_away_price * max_offer_fraction rounded half up
4. stage: the negotiation is final or accepted

A blocked draft is appended to the conversation history as a labelled,
unsent draft so a human can review and release it; blocking never drops
the message.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Literal

import structlog
from pydantic import BaseModel, Field

from src.carsearch.config import GovernanceConfig
from src.carsearch.deals.schemas import AuditEntry, TriggeredBy, utcnow

logger = structlog.get_logger(__name__)


# ── Negotiation State ───────────────────────────────────────────────────────


class NegotiationStage(str, Enum):
    """Coarse marker of negotiation progress, set by the caller."""

    INITIAL = "initial"
    COUNTERING = "countering"
    FINAL = "final"
    ACCEPTED = "accepted"


# Stages in which every outgoing message needs a human.
HUMAN_ONLY_STAGES: frozenset[NegotiationStage] = frozenset(
    {NegotiationStage.FINAL, NegotiationStage.ACCEPTED}
)


class ConversationMessage(BaseModel):
    role: Literal["buyer", "seller"]
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    draft: bool = Field(default=False, description="True for blocked, unsent drafts")
    label: str | None = None


class NegotiationContext(BaseModel):
    """Working negotiation state for one deal, persisted by the orchestrator."""

    stage: NegotiationStage = NegotiationStage.INITIAL
    conversation_history: list[ConversationMessage] = Field(default_factory=list)
    current_offer: float | None = Field(default=None, description="Seller's current offer")
    our_last_offer: float | None = None
    dealer_concessions: list[str] = Field(default_factory=list)

    @property
    def exchange_count(self) -> int:
        """Length of the conversation history, blocked drafts included."""
        return len(self.conversation_history)

    @property
    def pending_drafts(self) -> list[ConversationMessage]:
        return [m for m in self.conversation_history if m.draft]


class DraftMessage(BaseModel):
    """A message proposed by the negotiation strategy."""

    message: str
    tactic: str | None = None
    reasoning: str | None = None
    suggested_offer: float | None = None
    should_escalate_to_human: bool = False
    escalation_reason: str | None = None


class NegotiationLimits(BaseModel):
    """Per-deal auto-send limits."""

    walk_away_price: float = Field(..., gt=0, description="Maximum the buyer will pay")
    max_exchanges: int = Field(default=6, ge=1)
    max_offer_fraction: float = Field(default=0.95, gt=0.0, le=1.0)
    max_offer_override: float | None = Field(
        default=None, description="Explicit ceiling replacing the walk-away fraction"
    )

    @property
    def max_offer(self) -> float:
        if self.max_offer_override is not None:
            return self.max_offer_override
        ceiling = Decimal(str(self.walk_away_price)) * Decimal(str(self.max_offer_fraction))
        return float(ceiling.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def from_config(
        cls,
        config: GovernanceConfig,
        walk_away_price: float,
        max_offer_override: float | None = None,
    ) -> NegotiationLimits:
        return cls(
            walk_away_price=walk_away_price,
            max_exchanges=config.max_exchanges,
            max_offer_fraction=config.max_offer_fraction,
            max_offer_override=max_offer_override,
        )


class AutoSendCheck(str, Enum):
    ESCALATION = "escalation"
    MAX_EXCHANGES = "max_exchanges"
    MAX_OFFER = "max_offer"
    STAGE = "stage"


class AutoSendDecision(BaseModel):
    allowed: bool
    reason: str | None = None
    check: AutoSendCheck | None = None


# ── Context Helpers ─────────────────────────────────────────────────────────


def record_message(
    context: NegotiationContext,
    role: Literal["buyer", "seller"],
    message: str,
    timestamp: datetime | None = None,
) -> ConversationMessage:
    """Append a sent/received message to the conversation history."""
    entry = ConversationMessage(role=role, message=message, timestamp=timestamp or utcnow())
    context.conversation_history.append(entry)
    return entry


def release_draft(context: NegotiationContext, index: int) -> ConversationMessage:
    """Mark a blocked draft as sent after a human has released it.

    Raises:
        ValueError: If the entry at ``index`` is not an unsent draft.
    """
    entry = context.conversation_history[index]
    if not entry.draft:
        raise ValueError(f"Conversation entry {index} is not an unsent draft")
    entry.draft = False
    entry.label = None
    return entry


# ── Guard ───────────────────────────────────────────────────────────────────


class NegotiationContextGuard:
    """Enforces the auto-send gate on drafted negotiation messages.

    Args:
        audit: Optional AuditLedger; blocked drafts are audited when given.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        audit: Any | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._audit = audit
        self._clock = clock

    def may_auto_send(
        self,
        draft: DraftMessage,
        proposed_offer: float | None,
        context: NegotiationContext,
        limits: NegotiationLimits,
        deal_id: int | None = None,
    ) -> AutoSendDecision:
        """Decide whether ``draft`` may be sent without a human.

        On block the draft is appended to ``context.conversation_history``
        as an unsent draft. On allow nothing is recorded; the caller sends
        the message, records it, and advances the deal's lifecycle.
        """
        exchanges = context.exchange_count
        decision = self._evaluate(draft, proposed_offer, context, limits)
        if decision.allowed:
            logger.info("negotiation.auto_send_allowed", deal_id=deal_id)
            return decision

        context.conversation_history.append(
            ConversationMessage(
                role="buyer",
                message=draft.message,
                timestamp=self._clock(),
                draft=True,
                label=f"UNSENT DRAFT (blocked: {decision.reason})",
            )
        )
        logger.info(
            "negotiation.auto_send_blocked",
            deal_id=deal_id,
            check=decision.check.value,
            reason=decision.reason,
        )
        if self._audit is not None:
            self._audit.append(
                AuditEntry(
                    deal_id=deal_id,
                    action="auto_send_blocked",
                    description=f"Auto-send blocked ({decision.check.value})",
                    reasoning=decision.reason,
                    context={
                        "proposed_offer": proposed_offer,
                        "stage": context.stage.value,
                        "exchange_count": exchanges,
                    },
                    triggered_by=TriggeredBy.SYSTEM,
                    created_at=self._clock(),
                )
            )
        return decision

    def _evaluate(
        self,
        draft: DraftMessage,
        proposed_offer: float | None,
        context: NegotiationContext,
        limits: NegotiationLimits,
    ) -> AutoSendDecision:
        if draft.should_escalate_to_human:
            return AutoSendDecision(
                allowed=False,
                check=AutoSendCheck.ESCALATION,
                reason=draft.escalation_reason or "Escalation requested by message generator",
            )

        if context.exchange_count >= limits.max_exchanges:
            return AutoSendDecision(
                allowed=False,
                check=AutoSendCheck.MAX_EXCHANGES,
                reason=(
                    f"Conversation reached {context.exchange_count} exchanges "
                    f"(limit {limits.max_exchanges})"
                ),
            )

        if proposed_offer is not None and proposed_offer > limits.max_offer:
            return AutoSendDecision(
                allowed=False,
                check=AutoSendCheck.MAX_OFFER,
                reason=(
                    f"Proposed offer ${proposed_offer:,.0f} exceeds auto-send "
                    f"ceiling ${limits.max_offer:,.0f}"
                ),
            )

        if context.stage in HUMAN_ONLY_STAGES:
            return AutoSendDecision(
                allowed=False,
                check=AutoSendCheck.STAGE,
                reason=f"Negotiation stage '{context.stage.value}' requires a human",
            )

        return AutoSendDecision(allowed=True)
