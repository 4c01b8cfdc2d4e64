"""Operator CLI for reviewing and resolving governance approvals.

Usage:
    carsearch approvals [--deal 12] [--include-expired] [--limit 20]
    carsearch approve 7 --notes "Go ahead"
    carsearch reject 7 --notes "Too high"
    carsearch stats
    carsearch audit [--deal 12] [--limit 20]
    carsearch checkpoints

Reads DATABASE_URL and the governance settings from environment or .env file.
"""

from __future__ import annotations

import argparse
import sys

import structlog

from src.carsearch.config import get_settings
from src.carsearch.core.logging_config import configure_structlog
from src.carsearch.deals.schemas import ApprovalOutcome, ApprovalRequest
from src.carsearch.governance.checkpoints import format_money
from src.carsearch.governance.errors import GovernanceError
from src.carsearch.governance.service import GovernanceService, build_governance_service

logger = structlog.get_logger(__name__)


def _print_approval(request: ApprovalRequest) -> None:
    deal = f"deal {request.deal_id}" if request.deal_id is not None else "portfolio"
    print(f"  #{request.id:<5} {request.action_type:20s} {deal}")
    print(f"         {request.description}")
    if request.reasoning:
        print(f"         reason: {request.reasoning}")
    if request.expires_at:
        print(f"         expires: {request.expires_at.isoformat()}")


def cmd_approvals(service: GovernanceService, args: argparse.Namespace) -> int:
    pending = service.list_pending_approvals(
        exclude_expired=not args.include_expired,
        deal_id=args.deal,
        limit=args.limit,
    )
    if not pending:
        print("No pending approvals.")
        return 0
    print(f"Pending approvals: {len(pending)}")
    for request in pending:
        _print_approval(request)
    return 0


def cmd_resolve(service: GovernanceService, args: argparse.Namespace) -> int:
    outcome = ApprovalOutcome.APPROVED if args.command == "approve" else ApprovalOutcome.REJECTED
    resolved = service.resolve_approval(
        args.approval_id,
        outcome,
        notes=args.notes,
        resolved_by=args.resolved_by,
    )
    print(f"Approval #{resolved.id} {resolved.status.value}: {resolved.description}")
    return 0


def cmd_stats(service: GovernanceService, args: argparse.Namespace) -> int:
    stats = service.approval_stats()
    for name, count in stats.model_dump().items():
        print(f"  {name:10s} {count}")
    return 0


def cmd_audit(service: GovernanceService, args: argparse.Namespace) -> int:
    entries = service.audit_trail(deal_id=args.deal, limit=args.limit)
    if not entries:
        print("No audit entries.")
        return 0
    for entry in entries:
        deal = f"deal {entry.deal_id}" if entry.deal_id is not None else "-"
        print(
            f"  {entry.created_at:%Y-%m-%d %H:%M:%S}  {entry.action:20s} "
            f"{deal:10s} [{entry.triggered_by.value}] {entry.description}"
        )
    return 0


def cmd_checkpoints(service: GovernanceService, args: argparse.Namespace) -> int:
    config = service.config
    exposure = config.portfolio_exposure_alert
    ttl = config.approval_ttl_hours
    print(f"  Governance enabled:        {'yes' if config.enabled else 'no'}")
    print(f"  Offer approval threshold:  {format_money(config.offer_approval_threshold)}")
    print(f"  Viewing requires approval: {'yes' if config.viewing_requires_approval else 'no'}")
    print(f"  Max auto follow-ups:       {config.max_auto_followups}")
    print(f"  Portfolio exposure alert:  {format_money(exposure) if exposure is not None else 'off'}")
    print(f"  Max exchanges:             {config.max_exchanges}")
    print(f"  Max offer fraction:        {config.max_offer_fraction:.0%}")
    print(f"  Approval TTL:              {f'{ttl}h' if ttl is not None else 'none'}")
    return 0


COMMANDS = {
    "approvals": cmd_approvals,
    "approve": cmd_resolve,
    "reject": cmd_resolve,
    "stats": cmd_stats,
    "audit": cmd_audit,
    "checkpoints": cmd_checkpoints,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="carsearch", description="Governance operator CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    approvals = sub.add_parser("approvals", help="List pending approvals")
    approvals.add_argument("--deal", type=int, help="Only approvals for this deal id")
    approvals.add_argument(
        "--include-expired", action="store_true", help="Also list expired requests"
    )
    approvals.add_argument("--limit", type=int, help="Maximum number to list")

    for name, verb in (("approve", "Approve"), ("reject", "Reject")):
        resolve = sub.add_parser(name, help=f"{verb} a pending approval")
        resolve.add_argument("approval_id", type=int)
        resolve.add_argument("--notes", help="Resolution notes recorded in the audit log")
        resolve.add_argument("--resolved-by", default="user", help="Who resolved it")

    sub.add_parser("stats", help="Approval counts by status")

    audit = sub.add_parser("audit", help="Show the audit trail")
    audit.add_argument("--deal", type=int, help="Only entries for this deal id")
    audit.add_argument("--limit", type=int, default=50)

    sub.add_parser("checkpoints", help="Show governance configuration")
    return parser


def main(argv: list[str] | None = None, service: GovernanceService | None = None) -> int:
    args = build_parser().parse_args(argv)

    if service is None:
        settings = get_settings()
        configure_structlog(settings)
        service = build_governance_service(settings)

    try:
        return COMMANDS[args.command](service, args)
    except GovernanceError as exc:
        logger.warning("cli.command_failed", command=args.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
