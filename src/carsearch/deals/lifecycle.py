"""Deal lifecycle state machine.

Validates deal status transitions against VALID_TRANSITIONS and applies
accepted ones through the repository, which commits the status change and
its ``state_change`` audit entry in a single transaction.

State flow:
    discovered -> analyzed -> contacted -> awaiting_response -> negotiating ->
    viewing_scheduled -> inspected -> offer_made -> purchased
                                                 \\-> rejected / withdrawn

IMPORTANT: Self-transitions are not listed in the table and are rejected
like any other illegal jump. A no-op "transition" would leave no audit
entry, so callers must not rely on re-applying the current status.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable

import structlog

from src.carsearch.deals.schemas import (
    AuditEntry,
    DealStatus,
    TransitionRecord,
    TriggeredBy,
    utcnow,
)
from src.carsearch.governance.errors import DealNotFoundError, InvalidTransitionError

logger = structlog.get_logger(__name__)

# ── Transition Rules ────────────────────────────────────────────────────────

# Maps each status to the set of statuses it can transition TO.
VALID_TRANSITIONS: dict[DealStatus, frozenset[DealStatus]] = {
    DealStatus.DISCOVERED: frozenset({DealStatus.ANALYZED, DealStatus.REJECTED}),
    DealStatus.ANALYZED: frozenset({DealStatus.CONTACTED, DealStatus.REJECTED}),
    DealStatus.CONTACTED: frozenset(
        {DealStatus.AWAITING_RESPONSE, DealStatus.REJECTED, DealStatus.WITHDRAWN}
    ),
    DealStatus.AWAITING_RESPONSE: frozenset(
        {DealStatus.NEGOTIATING, DealStatus.REJECTED, DealStatus.WITHDRAWN}
    ),
    DealStatus.NEGOTIATING: frozenset(
        {
            DealStatus.VIEWING_SCHEDULED,
            DealStatus.OFFER_MADE,
            DealStatus.REJECTED,
            DealStatus.WITHDRAWN,
        }
    ),
    DealStatus.VIEWING_SCHEDULED: frozenset(
        {DealStatus.INSPECTED, DealStatus.REJECTED, DealStatus.WITHDRAWN}
    ),
    DealStatus.INSPECTED: frozenset({DealStatus.OFFER_MADE, DealStatus.REJECTED}),
    DealStatus.OFFER_MADE: frozenset(
        {
            DealStatus.PURCHASED,
            DealStatus.NEGOTIATING,
            DealStatus.REJECTED,
            DealStatus.WITHDRAWN,
        }
    ),
    DealStatus.PURCHASED: frozenset(),  # Terminal
    DealStatus.REJECTED: frozenset(),  # Terminal
    DealStatus.WITHDRAWN: frozenset(),  # Terminal
}

# Timestamp column stamped when a deal enters the given status.
_STATUS_TIMESTAMPS: dict[DealStatus, str] = {
    DealStatus.ANALYZED: "analyzed_at",
    DealStatus.CONTACTED: "contacted_at",
}


def allowed_transitions(state: DealStatus) -> frozenset[DealStatus]:
    return VALID_TRANSITIONS.get(state, frozenset())


def is_valid_transition(from_state: DealStatus, to_state: DealStatus) -> bool:
    return to_state in allowed_transitions(from_state)


def is_terminal(state: DealStatus) -> bool:
    return not allowed_transitions(state)


# ── Per-deal Locking ────────────────────────────────────────────────────────


class KeyedLock:
    """Short-lived mutex per key, so unrelated deals never serialize."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Any, threading.Lock] = {}
        self._waiters: dict[Any, int] = {}

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]


# ── State Machine ───────────────────────────────────────────────────────────


class LifecycleStateMachine:
    """Validates and applies deal status transitions.

    Args:
        repository: Storage providing ``get_deal`` and ``apply_transition``.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        repository: Any,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._locks = KeyedLock()

    def attempt_transition(
        self,
        deal_id: int,
        target_state: DealStatus,
        *,
        triggered_by: TriggeredBy = TriggeredBy.SYSTEM,
        reasoning: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> TransitionRecord:
        """Move a deal to ``target_state`` if the transition table allows it.

        Args:
            deal_id: Deal to transition.
            target_state: Requested next status.
            triggered_by: Who requested the change (system, user, agent).
            reasoning: Optional explanation recorded on the audit entry.
            context: Optional snapshot recorded on the audit entry.

        Returns:
            TransitionRecord describing the accepted transition.

        Raises:
            DealNotFoundError: If the deal does not exist.
            InvalidTransitionError: If the transition is not allowed. The
                deal's status is unchanged and nothing is audited.
        """
        target_state = DealStatus(target_state)
        triggered_by = TriggeredBy(triggered_by)

        with self._locks.hold(deal_id):
            deal = self._repository.get_deal(deal_id)
            if deal is None:
                raise DealNotFoundError(deal_id)

            current = deal.status
            if not is_valid_transition(current, target_state):
                logger.info(
                    "lifecycle.transition_rejected",
                    deal_id=deal_id,
                    from_state=current.value,
                    to_state=target_state.value,
                )
                raise InvalidTransitionError(
                    deal_id, current, target_state, allowed_transitions(current)
                )

            now = self._clock()
            timestamps = {"updated_at": now}
            stamp = _STATUS_TIMESTAMPS.get(target_state)
            if stamp is not None:
                timestamps[stamp] = now

            audit = AuditEntry(
                deal_id=deal_id,
                action="state_change",
                from_state=current,
                to_state=target_state,
                description=f"State changed from '{current.value}' to '{target_state.value}'",
                reasoning=reasoning,
                context=context or {},
                triggered_by=triggered_by,
                created_at=now,
            )
            audit_id = self._repository.apply_transition(
                deal_id, current, target_state, audit, timestamps
            )
            if audit_id is None:
                # Another writer moved the deal after we read it
                fresh = self._repository.get_deal(deal_id)
                fresh_state = fresh.status if fresh else current
                logger.warning(
                    "lifecycle.concurrent_transition",
                    deal_id=deal_id,
                    expected_state=current.value,
                    actual_state=fresh_state.value,
                )
                raise InvalidTransitionError(
                    deal_id, fresh_state, target_state, allowed_transitions(fresh_state)
                )

        logger.info(
            "lifecycle.transition_applied",
            deal_id=deal_id,
            from_state=current.value,
            to_state=target_state.value,
            triggered_by=triggered_by.value,
        )
        return TransitionRecord(
            deal_id=deal_id,
            from_state=current,
            to_state=target_state,
            audit_id=audit_id,
            transitioned_at=now,
        )
