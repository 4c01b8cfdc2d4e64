"""Pydantic data models for deals and their governance records.

Defines the lifecycle status enum, the deal snapshot the governance core
reads, audit entries, approval requests, the typed action payloads carried
by approval requests, and the results returned to the orchestrator.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Enums ───────────────────────────────────────────────────────────────────


class DealStatus(str, Enum):
    """Lifecycle status of a deal (one vehicle listing)."""

    DISCOVERED = "discovered"
    ANALYZED = "analyzed"
    CONTACTED = "contacted"
    AWAITING_RESPONSE = "awaiting_response"
    NEGOTIATING = "negotiating"
    VIEWING_SCHEDULED = "viewing_scheduled"
    INSPECTED = "inspected"
    OFFER_MADE = "offer_made"
    PURCHASED = "purchased"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"

    @property
    def description(self) -> str:
        return _STATUS_DESCRIPTIONS[self]


_STATUS_DESCRIPTIONS: dict[DealStatus, str] = {
    DealStatus.DISCOVERED: "Found in search",
    DealStatus.ANALYZED: "AI analysis complete",
    DealStatus.CONTACTED: "Initial outreach sent",
    DealStatus.AWAITING_RESPONSE: "Waiting for seller reply",
    DealStatus.NEGOTIATING: "Active negotiation",
    DealStatus.VIEWING_SCHEDULED: "Viewing booked",
    DealStatus.INSPECTED: "Seen in person",
    DealStatus.OFFER_MADE: "Offer submitted",
    DealStatus.PURCHASED: "Purchased",
    DealStatus.REJECTED: "Not pursuing",
    DealStatus.WITHDRAWN: "No longer available",
}

# Statuses whose deals count toward portfolio exposure.
ACTIVE_STATUSES: frozenset[DealStatus] = frozenset(
    {
        DealStatus.NEGOTIATING,
        DealStatus.VIEWING_SCHEDULED,
        DealStatus.OFFER_MADE,
    }
)


class TriggeredBy(str, Enum):
    """Who caused an audited action."""

    SYSTEM = "system"
    USER = "user"
    AGENT = "agent"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalOutcome(str, Enum):
    """Outcomes a human may resolve a pending approval to."""

    APPROVED = "approved"
    REJECTED = "rejected"


class CheckpointType(str, Enum):
    OFFER_THRESHOLD = "offer_threshold"
    VIEWING_APPROVAL = "viewing_approval"
    MAX_FOLLOWUPS = "max_followups"
    PORTFOLIO_EXPOSURE = "portfolio_exposure"
    UNUSUAL_BEHAVIOR = "unusual_behavior"


# ── Deal Snapshot ───────────────────────────────────────────────────────────


class Deal(BaseModel):
    """Read-only snapshot of a deal as seen by the governance core."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    year: int | None = None
    make: str | None = None
    model: str | None = None
    price: float | None = Field(default=None, description="Listed price")
    negotiated_price: float | None = None
    status: DealStatus = DealStatus.DISCOVERED
    discovered_at: datetime | None = None
    analyzed_at: datetime | None = None
    contacted_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def vehicle_label(self) -> str:
        """'2016 Dodge Grand Caravan', or 'Listing #12' when unknown."""
        parts = [str(p) for p in (self.year, self.make, self.model) if p]
        if not parts:
            return f"Listing #{self.id}"
        return " ".join(parts)


# ── Audit ───────────────────────────────────────────────────────────────────


class AuditEntry(BaseModel):
    """One immutable row of the audit ledger."""

    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    deal_id: int | None = None
    action: str
    from_state: DealStatus | None = None
    to_state: DealStatus | None = None
    description: str
    reasoning: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    triggered_by: TriggeredBy = TriggeredBy.SYSTEM
    session_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ── Action Payloads ─────────────────────────────────────────────────────────


class ActionPayload(BaseModel):
    """Replay snapshot of a deferred action, keyed by action_type.

    Extra keys supplied by the caller are kept so an approved action can be
    executed later exactly as proposed.
    """

    model_config = ConfigDict(extra="allow")

    action_type: str


class SendOfferPayload(ActionPayload):
    action_type: Literal["send_offer"] = "send_offer"
    offer_amount: float
    recipient: str | None = None
    message: str | None = None


class ViewingDetails(BaseModel):
    date: str
    time: str | None = None
    location: str | None = None
    seller_name: str | None = None

    def describe(self) -> str:
        text = f"on {self.date}"
        if self.time:
            text += f" at {self.time}"
        if self.location:
            text += f" at {self.location}"
        return text


class ScheduleViewingPayload(ActionPayload):
    action_type: Literal["schedule_viewing"] = "schedule_viewing"
    viewing: ViewingDetails


class FollowUpPayload(ActionPayload):
    action_type: Literal["follow_up"] = "follow_up"
    follow_up_number: int
    recipient: str | None = None
    message: str | None = None


class SendEmailPayload(ActionPayload):
    action_type: Literal["send_email"] = "send_email"
    recipient: str
    subject: str | None = None
    body: str


class PortfolioExposurePayload(ActionPayload):
    action_type: Literal["portfolio_exposure"] = "portfolio_exposure"
    new_deal_amount: float
    total_exposure: float
    threshold: float
    active_deals: int


class UnusualBehaviorPayload(ActionPayload):
    action_type: Literal["unusual_behavior"] = "unusual_behavior"
    behavior: str


class GenericPayload(ActionPayload):
    """Fallback for action types without a dedicated payload variant."""


PAYLOAD_TYPES: dict[str, type[ActionPayload]] = {
    "send_offer": SendOfferPayload,
    "schedule_viewing": ScheduleViewingPayload,
    "follow_up": FollowUpPayload,
    "send_email": SendEmailPayload,
    "portfolio_exposure": PortfolioExposurePayload,
    "unusual_behavior": UnusualBehaviorPayload,
}


def parse_payload(data: dict[str, Any] | ActionPayload) -> ActionPayload:
    """Parse a stored payload map into its typed variant.

    Unknown action types parse as GenericPayload rather than failing, so rows
    written by newer orchestrators stay readable.
    """
    if isinstance(data, ActionPayload):
        return data
    model = PAYLOAD_TYPES.get(str(data.get("action_type")), GenericPayload)
    return model.model_validate(data)


# ── Approvals ───────────────────────────────────────────────────────────────


class NewApprovalRequest(BaseModel):
    """An action to park in the approval queue (always enqueued pending)."""

    deal_id: int | None = None
    action_type: str
    description: str
    reasoning: str | None = None
    payload: ActionPayload
    checkpoint_type: CheckpointType | None = None
    threshold_value: float | None = None
    expires_at: datetime | None = None


class ApprovalRequest(BaseModel):
    """A persisted approval request.

    ``status`` is the stored status and only ever holds pending, approved,
    or rejected. Expiry is derived from ``expires_at`` at read time via
    effective_status().
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: int | None = None
    action_type: str
    description: str
    reasoning: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    checkpoint_type: CheckpointType | None = None
    threshold_value: float | None = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None

    @property
    def action_payload(self) -> ActionPayload:
        return parse_payload(self.payload)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.status != ApprovalStatus.PENDING or self.expires_at is None:
            return False
        return as_utc(self.expires_at) <= (now or utcnow())

    def effective_status(self, now: datetime | None = None) -> ApprovalStatus:
        if self.is_expired(now):
            return ApprovalStatus.EXPIRED
        return self.status


class ApprovalStats(BaseModel):
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    expired: int = 0


# ── Results ─────────────────────────────────────────────────────────────────


class CheckpointResult(BaseModel):
    """Outcome of one checkpoint evaluation."""

    requires_approval: bool
    approval_id: int | None = None
    reason: str | None = None


class TransitionRecord(BaseModel):
    """An accepted lifecycle transition and the audit entry written with it."""

    deal_id: int
    from_state: DealStatus
    to_state: DealStatus
    audit_id: int
    transitioned_at: datetime
