"""Governance repository -- synchronous persistence for deals, approvals, and audit.

Provides SqlGovernanceRepository with the session_factory callable pattern.
Handles serialization between Pydantic schemas and SQLAlchemy models and is
the only place that touches the database. Every SQLAlchemy failure is
translated to StorageUnavailableError so callers never see driver errors.

Writes that must be observed together (a status change and its audit entry,
an approval request and its audit entry, a resolution and its audit entry)
are committed in one transaction. ``unit_of_work`` widens that transaction
so a processed-event record commits together with the write it guards.
"""

from __future__ import annotations

import contextvars
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.carsearch.deals.models import (
    ApprovalQueueModel,
    AuditLogModel,
    CostBreakdownModel,
    DealModel,
    ProcessedEventModel,
)
from src.carsearch.deals.schemas import (
    ApprovalRequest,
    ApprovalStatus,
    AuditEntry,
    Deal,
    DealStatus,
    NewApprovalRequest,
)
from src.carsearch.governance.errors import StorageUnavailableError

logger = structlog.get_logger(__name__)


class SqlGovernanceRepository:
    """SQLAlchemy-backed storage for the governance core.

    Args:
        session_factory: Callable returning a new Session (a sessionmaker).
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._active_session: contextvars.ContextVar[Session | None] = contextvars.ContextVar(
            f"governance_session_{id(self)}", default=None
        )

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        """Run every repository call in the block inside one transaction.

        Nothing written in the block is committed unless the whole block
        succeeds. Nested blocks join the outer transaction.
        """
        if self._active_session.get() is not None:
            yield
            return
        try:
            with self._session_factory() as session, session.begin():
                token = self._active_session.set(session)
                try:
                    yield
                finally:
                    self._active_session.reset(token)
        except SQLAlchemyError as exc:
            logger.error("repository.storage_unavailable", operation="unit_of_work", error=str(exc))
            raise StorageUnavailableError(f"Storage unavailable during unit_of_work: {exc}") from exc

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        """Open a session + transaction, translating storage failures.

        Inside ``unit_of_work`` the active session is reused.
        """
        active = self._active_session.get()
        try:
            if active is not None:
                yield active
            else:
                with self._session_factory() as session, session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error(
                "repository.storage_unavailable",
                operation=operation,
                error=str(exc),
            )
            raise StorageUnavailableError(
                f"Storage unavailable during {operation}: {exc}"
            ) from exc

    # ── Deals ───────────────────────────────────────────────────────────────

    def get_deal(self, deal_id: int) -> Deal | None:
        with self._transaction("get_deal") as session:
            model = session.get(DealModel, deal_id, populate_existing=True)
            if model is None:
                return None
            return Deal.model_validate(model)

    def list_deals(self, statuses: Iterable[DealStatus]) -> list[Deal]:
        """List deals whose status is in ``statuses``."""
        values = [s.value for s in statuses]
        with self._transaction("list_deals") as session:
            stmt = select(DealModel).where(DealModel.status.in_(values))
            models = session.execute(stmt).scalars().all()
            return [Deal.model_validate(m) for m in models]

    def get_estimated_cost(self, deal_id: int) -> float | None:
        """Return the computed total estimated cost for a deal, if any."""
        with self._transaction("get_estimated_cost") as session:
            stmt = select(CostBreakdownModel.total_estimated_cost).where(
                CostBreakdownModel.deal_id == deal_id
            )
            return session.execute(stmt).scalar_one_or_none()

    def apply_transition(
        self,
        deal_id: int,
        from_state: DealStatus,
        to_state: DealStatus,
        audit: AuditEntry,
        timestamps: dict[str, datetime],
    ) -> int | None:
        """Persist a status change and its audit entry atomically.

        The update only matches while the deal is still in ``from_state``.
        Returns the audit entry id, or None (and writes nothing) when the
        deal's status changed underneath the caller.
        """
        with self._transaction("apply_transition") as session:
            result = session.execute(
                update(DealModel)
                .where(
                    DealModel.id == deal_id,
                    DealModel.status == from_state.value,
                )
                .values(status=to_state.value, **timestamps)
            )
            if result.rowcount != 1:
                return None
            audit_model = _audit_to_model(audit)
            session.add(audit_model)
            session.flush()
            return audit_model.id

    # ── Audit Log ───────────────────────────────────────────────────────────

    def append_audit(self, entry: AuditEntry) -> int:
        with self._transaction("append_audit") as session:
            model = _audit_to_model(entry)
            session.add(model)
            session.flush()
            return model.id

    def list_audit(
        self,
        deal_id: int | None = None,
        action: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """List audit entries, newest first."""
        with self._transaction("list_audit") as session:
            stmt = select(AuditLogModel)
            if deal_id is not None:
                stmt = stmt.where(AuditLogModel.deal_id == deal_id)
            if action is not None:
                stmt = stmt.where(AuditLogModel.action == action)
            stmt = stmt.order_by(AuditLogModel.created_at.desc(), AuditLogModel.id.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            models = session.execute(stmt).scalars().all()
            return [AuditEntry.model_validate(m) for m in models]

    # ── Approval Queue ──────────────────────────────────────────────────────

    def append_approval(
        self,
        request: NewApprovalRequest,
        created_at: datetime,
        audit: AuditEntry,
    ) -> ApprovalRequest:
        """Insert a pending approval request together with its audit entry."""
        with self._transaction("append_approval") as session:
            model = ApprovalQueueModel(
                deal_id=request.deal_id,
                action_type=request.action_type,
                description=request.description,
                reasoning=request.reasoning,
                payload=request.payload.model_dump(mode="json"),
                checkpoint_type=(
                    request.checkpoint_type.value if request.checkpoint_type else None
                ),
                threshold_value=request.threshold_value,
                status=ApprovalStatus.PENDING.value,
                created_at=created_at,
                expires_at=request.expires_at,
            )
            session.add(model)
            session.flush()
            audit = audit.model_copy(
                update={"context": {**audit.context, "approval_id": model.id}}
            )
            session.add(_audit_to_model(audit))
            return ApprovalRequest.model_validate(model)

    def get_approval(self, approval_id: int) -> ApprovalRequest | None:
        with self._transaction("get_approval") as session:
            model = session.get(ApprovalQueueModel, approval_id, populate_existing=True)
            if model is None:
                return None
            return ApprovalRequest.model_validate(model)

    def list_approvals(
        self,
        status: ApprovalStatus | None = None,
        deal_id: int | None = None,
        action_type: str | None = None,
    ) -> list[ApprovalRequest]:
        """List approval requests by stored status, oldest first."""
        with self._transaction("list_approvals") as session:
            stmt = select(ApprovalQueueModel)
            if status is not None:
                stmt = stmt.where(ApprovalQueueModel.status == status.value)
            if deal_id is not None:
                stmt = stmt.where(ApprovalQueueModel.deal_id == deal_id)
            if action_type is not None:
                stmt = stmt.where(ApprovalQueueModel.action_type == action_type)
            stmt = stmt.order_by(ApprovalQueueModel.created_at.asc(), ApprovalQueueModel.id.asc())
            models = session.execute(stmt).scalars().all()
            return [ApprovalRequest.model_validate(m) for m in models]

    def resolve_approval(
        self,
        approval_id: int,
        status: ApprovalStatus,
        resolved_by: str,
        resolved_at: datetime,
        notes: str | None,
        audit: AuditEntry,
    ) -> ApprovalRequest | None:
        """Move a pending request to ``status`` together with its audit entry.

        Returns None (and writes nothing) if the request is no longer pending.
        """
        with self._transaction("resolve_approval") as session:
            result = session.execute(
                update(ApprovalQueueModel)
                .where(
                    ApprovalQueueModel.id == approval_id,
                    ApprovalQueueModel.status == ApprovalStatus.PENDING.value,
                )
                .values(
                    status=status.value,
                    resolved_by=resolved_by,
                    resolved_at=resolved_at,
                    resolution_notes=notes,
                )
            )
            if result.rowcount != 1:
                return None
            session.add(_audit_to_model(audit))
            model = session.get(ApprovalQueueModel, approval_id)
            session.refresh(model)
            return ApprovalRequest.model_validate(model)

    # ── Processed Events ────────────────────────────────────────────────────

    def get_processed_event(self, event_id: str) -> dict[str, Any] | None:
        """Return the stored result for an already-applied event id."""
        with self._transaction("get_processed_event") as session:
            stmt = select(ProcessedEventModel.result).where(
                ProcessedEventModel.event_id == event_id
            )
            return session.execute(stmt).scalar_one_or_none()

    def record_processed_event(
        self,
        event_id: str,
        operation: str,
        result: dict[str, Any],
        deal_id: int | None = None,
    ) -> None:
        """Store the result of an applied event.

        Called inside ``unit_of_work`` so the record commits or rolls back
        together with the write it guards. A duplicate ``event_id`` violates
        the unique constraint and raises StorageUnavailableError.
        """
        with self._transaction("record_processed_event") as session:
            session.add(
                ProcessedEventModel(
                    event_id=event_id,
                    operation=operation,
                    deal_id=deal_id,
                    result=result,
                )
            )
            session.flush()


# ── Serialization Helpers ─────────────────────────────────────────────────


def _audit_to_model(entry: AuditEntry) -> AuditLogModel:
    """Convert a Pydantic AuditEntry to a new AuditLogModel row."""
    return AuditLogModel(
        deal_id=entry.deal_id,
        action=entry.action,
        from_state=entry.from_state.value if entry.from_state else None,
        to_state=entry.to_state.value if entry.to_state else None,
        description=entry.description,
        reasoning=entry.reasoning,
        context=entry.model_dump(mode="json", include={"context"})["context"],
        triggered_by=entry.triggered_by.value,
        session_id=entry.session_id,
        created_at=entry.created_at,
    )
