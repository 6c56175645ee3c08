"""
Command line entry point for operators.

    membership-billing reconciliation:run --sync --gateway-file paystack.json
    membership-billing renewals:run

Exit status is 0 on success and 1 on any unrecoverable failure.
"""
import argparse
import json
import sys
from typing import List, Optional

from dateutil import parser as date_parser
from dotenv import load_dotenv

from .core.database import SessionLocal
from .core.exceptions import BillingServiceError, ReconciliationDataError
from .core.logging_config import setup_logging, get_logger
from .jobs import renewal_jobs
from .models.reconciliation import RunStatus
from .services.audit_service import ActorContext
from .services.reconciliation_queue import reconciliation_queue
from .services.reconciliation_service import ReconciliationEngine, load_ledger_file

logger = get_logger("cli")

CLI_ACTOR = ActorContext(actor_id="cli", actor_type="system")


def _day(value: str):
    try:
        return date_parser.isoparse(value).date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date: {value!r} (expected YYYY-MM-DD)")


def run_reconciliation(args: argparse.Namespace) -> int:
    """reconciliation:run"""
    try:
        gateway_records = load_ledger_file(args.gateway_file) if args.gateway_file else []
        app_records = load_ledger_file(args.app_file) if args.app_file else None
    except ReconciliationDataError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    period_start = args.period_start.isoformat() if args.period_start else None
    period_end = args.period_end.isoformat() if args.period_end else None

    # Dry runs report back to the operator, so they always run inline
    if not args.sync and not args.dry_run:
        if reconciliation_queue.publish_run_request(
            gateway_records=gateway_records,
            app_records=app_records,
            period_start=period_start,
            period_end=period_end,
            notes=args.notes,
            requested_by=CLI_ACTOR.actor_id,
        ):
            print("Reconciliation run queued")
            return 0
        print("Error: could not publish reconciliation request", file=sys.stderr)
        return 1

    db = SessionLocal()
    try:
        engine = ReconciliationEngine(db)
        if app_records is None:
            run = engine.run_for_period(gateway_records, args.period_start, args.period_end,
                                        actor=CLI_ACTOR, dry_run=args.dry_run, notes=args.notes)
        else:
            run = engine.run_from_data(app_records, gateway_records, args.period_start, args.period_end,
                                       actor=CLI_ACTOR, dry_run=args.dry_run, notes=args.notes)
        print(json.dumps({"dry_run": args.dry_run, **run.to_dict()}, indent=2))
        return 1 if run.status == RunStatus.FAILED else 0
    except BillingServiceError as e:
        logger.error(f"Reconciliation failed: {e}")
        db.rollback()
        return 1
    finally:
        db.close()


def run_renewals(args: argparse.Namespace) -> int:
    """renewals:run"""
    summary = renewal_jobs.run_auto_renewals()
    if summary is None:
        print("Auto-renewal pass already running")
        return 0
    print(json.dumps(summary, indent=2))
    return 1 if summary.get("errors") else 0


def run_grace_sweep(args: argparse.Namespace) -> int:
    """grace:sweep"""
    suspended = renewal_jobs.sweep_grace_periods()
    print(f"Suspended {suspended or 0} subscriptions")
    return 0


def run_payment_reaper(args: argparse.Namespace) -> int:
    """payments:expire"""
    expired = renewal_jobs.expire_pending_payments()
    print(f"Expired {expired or 0} pending payments")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="membership-billing", description="Membership billing operations")
    commands = parser.add_subparsers(dest="command", required=True)

    reconcile = commands.add_parser("reconciliation:run", help="Reconcile the app ledger against a gateway ledger")
    reconcile.add_argument("--gateway-file", help="JSON array of gateway transactions (default: empty ledger)")
    reconcile.add_argument("--app-file", help="JSON array of app transactions (default: recorded payments)")
    reconcile.add_argument("--dry-run", action="store_true", help="Compute the run without persisting it")
    reconcile.add_argument("--sync", action="store_true", help="Run inline instead of queueing")
    reconcile.add_argument("--period-start", type=_day, help="First day of the period (YYYY-MM-DD)")
    reconcile.add_argument("--period-end", type=_day, help="Last day of the period (YYYY-MM-DD)")
    reconcile.add_argument("--notes", help="Free text stored on the run")
    reconcile.set_defaults(handler=run_reconciliation)

    renewals = commands.add_parser("renewals:run", help="Attempt every due renewal and retry")
    renewals.set_defaults(handler=run_renewals)

    grace = commands.add_parser("grace:sweep", help="Suspend subscriptions whose grace period ended")
    grace.set_defaults(handler=run_grace_sweep)

    expire = commands.add_parser("payments:expire", help="Expire pending payments past their expiry")
    expire.set_defaults(handler=run_payment_reaper)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    setup_logging()

    args = build_parser().parse_args(argv)
    try:
        return args.handler(args)
    except Exception as e:
        logger.exception(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
