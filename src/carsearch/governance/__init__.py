"""Governance module -- checkpoints, approvals, audit, and the auto-send gate.

Provides the CheckpointEvaluator policy checks, the human ApprovalQueue,
the append-only AuditLedger, the NegotiationContextGuard, and the
GovernanceService facade the orchestrator calls.
"""
