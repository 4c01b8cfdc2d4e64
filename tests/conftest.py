"""Shared fixtures for governance tests.

Provides:
- InMemoryGovernanceRepository: test double for SqlGovernanceRepository
- FrozenClock: controllable UTC clock injected into components
- Pre-built governance components over the in-memory repository
- An in-memory SQLite repository for storage-level tests
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from src.carsearch.config import GovernanceConfig
from src.carsearch.core.database import create_db_engine, init_db, make_session_factory
from src.carsearch.deals.repository import SqlGovernanceRepository
from src.carsearch.deals.schemas import (
    ApprovalRequest,
    ApprovalStatus,
    AuditEntry,
    Deal,
    DealStatus,
    NewApprovalRequest,
)
from src.carsearch.governance.errors import StorageUnavailableError
from src.carsearch.governance.service import GovernanceService

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


# ── Test Doubles ─────────────────────────────────────────────────────────────


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class InMemoryGovernanceRepository:
    """In-memory test double for SqlGovernanceRepository.

    Implements the same method surface with dicts and lists. Pydantic
    objects are copied on the way in and out so tests cannot mutate
    stored rows by accident.
    """

    def __init__(self) -> None:
        self._deals: Dict[int, Deal] = {}
        self._costs: Dict[int, float] = {}
        self._approvals: Dict[int, ApprovalRequest] = {}
        self._audit: List[AuditEntry] = []
        self._events: Dict[str, Dict[str, Any]] = {}
        self._next_deal_id = 1
        self._in_unit = False

    # Seeding helpers (not part of the repository surface)

    def add_deal(
        self,
        status: DealStatus = DealStatus.DISCOVERED,
        price: Optional[float] = None,
        year: Optional[int] = 2016,
        make: Optional[str] = "Dodge",
        model: Optional[str] = "Grand Caravan",
        estimated_cost: Optional[float] = None,
    ) -> Deal:
        deal = Deal(
            id=self._next_deal_id,
            year=year,
            make=make,
            model=model,
            price=price,
            status=status,
            discovered_at=NOW,
        )
        self._deals[deal.id] = deal
        self._next_deal_id += 1
        if estimated_cost is not None:
            self._costs[deal.id] = estimated_cost
        return deal.model_copy()

    @property
    def audit_rows(self) -> List[AuditEntry]:
        return [e.model_copy() for e in self._audit]

    @property
    def approval_rows(self) -> List[ApprovalRequest]:
        return [a.model_copy() for a in self._approvals.values()]

    # Transactions

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        """Restore every table if the block raises, like a rolled-back transaction."""
        if self._in_unit:
            yield
            return
        snapshot = (
            dict(self._deals),
            dict(self._approvals),
            list(self._audit),
            dict(self._events),
        )
        self._in_unit = True
        try:
            yield
        except Exception:
            self._deals, self._approvals, self._audit, self._events = snapshot
            raise
        finally:
            self._in_unit = False

    # Deals

    def get_deal(self, deal_id: int) -> Optional[Deal]:
        deal = self._deals.get(deal_id)
        return deal.model_copy() if deal else None

    def list_deals(self, statuses: Iterable[DealStatus]) -> List[Deal]:
        wanted = set(statuses)
        return [d.model_copy() for d in self._deals.values() if d.status in wanted]

    def get_estimated_cost(self, deal_id: int) -> Optional[float]:
        return self._costs.get(deal_id)

    def apply_transition(
        self,
        deal_id: int,
        from_state: DealStatus,
        to_state: DealStatus,
        audit: AuditEntry,
        timestamps: Dict[str, datetime],
    ) -> Optional[int]:
        deal = self._deals.get(deal_id)
        if deal is None or deal.status != from_state:
            return None
        self._deals[deal_id] = deal.model_copy(update={"status": to_state, **timestamps})
        return self.append_audit(audit)

    # Audit

    def append_audit(self, entry: AuditEntry) -> int:
        entry_id = len(self._audit) + 1
        self._audit.append(entry.model_copy(update={"id": entry_id}))
        return entry_id

    def list_audit(
        self,
        deal_id: Optional[int] = None,
        action: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        rows = [
            e
            for e in self._audit
            if (deal_id is None or e.deal_id == deal_id)
            and (action is None or e.action == action)
        ]
        rows.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [e.model_copy() for e in rows]

    # Approvals

    def append_approval(
        self,
        request: NewApprovalRequest,
        created_at: datetime,
        audit: AuditEntry,
    ) -> ApprovalRequest:
        approval_id = len(self._approvals) + 1
        stored = ApprovalRequest(
            id=approval_id,
            deal_id=request.deal_id,
            action_type=request.action_type,
            description=request.description,
            reasoning=request.reasoning,
            payload=request.payload.model_dump(mode="json"),
            checkpoint_type=request.checkpoint_type,
            threshold_value=request.threshold_value,
            status=ApprovalStatus.PENDING,
            created_at=created_at,
            expires_at=request.expires_at,
        )
        self._approvals[approval_id] = stored
        self.append_audit(
            audit.model_copy(update={"context": {**audit.context, "approval_id": approval_id}})
        )
        return stored.model_copy()

    def get_approval(self, approval_id: int) -> Optional[ApprovalRequest]:
        request = self._approvals.get(approval_id)
        return request.model_copy() if request else None

    def list_approvals(
        self,
        status: Optional[ApprovalStatus] = None,
        deal_id: Optional[int] = None,
        action_type: Optional[str] = None,
    ) -> List[ApprovalRequest]:
        return [
            a.model_copy()
            for a in sorted(self._approvals.values(), key=lambda a: (a.created_at, a.id))
            if (status is None or a.status == status)
            and (deal_id is None or a.deal_id == deal_id)
            and (action_type is None or a.action_type == action_type)
        ]

    def resolve_approval(
        self,
        approval_id: int,
        status: ApprovalStatus,
        resolved_by: str,
        resolved_at: datetime,
        notes: Optional[str],
        audit: AuditEntry,
    ) -> Optional[ApprovalRequest]:
        request = self._approvals.get(approval_id)
        if request is None or request.status != ApprovalStatus.PENDING:
            return None
        resolved = request.model_copy(
            update={
                "status": status,
                "resolved_by": resolved_by,
                "resolved_at": resolved_at,
                "resolution_notes": notes,
            }
        )
        self._approvals[approval_id] = resolved
        self.append_audit(audit)
        return resolved.model_copy()

    # Processed events

    def get_processed_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        result = self._events.get(event_id)
        return dict(result) if result is not None else None

    def record_processed_event(
        self,
        event_id: str,
        operation: str,
        result: Dict[str, Any],
        deal_id: Optional[int] = None,
    ) -> None:
        if event_id in self._events:
            raise StorageUnavailableError(f"Duplicate processed event {event_id}")
        self._events[event_id] = dict(result)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def repo() -> InMemoryGovernanceRepository:
    return InMemoryGovernanceRepository()


@pytest.fixture
def config() -> GovernanceConfig:
    """Governance configuration with the documented defaults plus an exposure alert."""
    return GovernanceConfig(portfolio_exposure_alert=20000)


@pytest.fixture
def service(
    config: GovernanceConfig,
    repo: InMemoryGovernanceRepository,
    clock: FrozenClock,
) -> GovernanceService:
    return GovernanceService(config, repo, clock=clock)


@pytest.fixture
def sql_session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def sql_repo(sql_session_factory) -> SqlGovernanceRepository:
    return SqlGovernanceRepository(sql_session_factory)
