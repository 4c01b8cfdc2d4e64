"""Deal module -- persistence models, schemas, repository, and lifecycle state machine.

Provides SQLAlchemy models (DealModel, CostBreakdownModel, ApprovalQueueModel,
AuditLogModel, ProcessedEventModel), Pydantic schemas (Deal, AuditEntry,
ApprovalRequest, action payloads), SqlGovernanceRepository for synchronous
storage, and LifecycleStateMachine for validated status transitions.
"""
