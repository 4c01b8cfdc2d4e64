"""Audit ledger -- append-only record of transitions and governance decisions.

Exposes append and read operations only; there is no update or delete.
Readers use the ledger for display, reconciliation, and debugging, never
to drive a governance decision.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.carsearch.deals.schemas import AuditEntry

logger = structlog.get_logger(__name__)


class AuditLedger:
    """Append-only writer/reader for the audit log.

    Args:
        repository: Storage providing ``append_audit`` and ``list_audit``.
    """

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    def append(self, entry: AuditEntry) -> int:
        """Write an entry and return its id.

        Raises:
            StorageUnavailableError: If the write fails. Never swallowed.
        """
        entry_id = self._repository.append_audit(entry)
        logger.debug(
            "audit.appended",
            audit_id=entry_id,
            deal_id=entry.deal_id,
            action=entry.action,
        )
        return entry_id

    def list_for_deal(
        self,
        deal_id: int,
        action: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Audit trail for one deal, newest first."""
        return self._repository.list_audit(deal_id=deal_id, action=action, limit=limit)

    def recent(self, limit: int | None = 50, action: str | None = None) -> list[AuditEntry]:
        return self._repository.list_audit(action=action, limit=limit)
