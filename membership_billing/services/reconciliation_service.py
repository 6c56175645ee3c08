"""
Reconciliation engine.

Diffs the application ledger (payments we recorded) against the gateway ledger
(payments the provider reports) for a period and persists the classification
as a ReconciliationRun with one ReconciliationItem per ledger row.

Matching is keyed on ``reference`` with exact Decimal amount comparison. Both
ledgers are sorted before matching, so the same two inputs always produce the
same items and totals regardless of the order they were supplied in.
"""
import csv
import json
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, TextIO

from dateutil import parser as date_parser
from sqlalchemy.orm import Session

from ..core.exceptions import ReconciliationDataError
from ..core.logging_config import get_logger, log_reconciliation_run
from ..models.payment import Payment
from ..models.reconciliation import (
    ItemSource,
    ItemStatus,
    ReconciliationItem,
    ReconciliationRun,
    RunStatus,
)
from .audit_service import ActorContext, AuditService, SYSTEM_ACTOR

logger = get_logger("reconciliation")

CSV_HEADERS = [
    "source",
    "transaction_id",
    "reference",
    "amount",
    "transaction_date",
    "reconciliation_status",
    "match_reference",
    "discrepancy_amount",
]


@dataclass(frozen=True)
class LedgerRecord:
    """One normalised ledger row"""
    transaction_id: Optional[str]
    reference: Optional[str]
    amount: Decimal
    date: Optional[datetime]

    def sort_key(self):
        return (
            self.reference or "",
            self.amount,
            self.transaction_id or "",
            self.date.isoformat() if self.date else "",
        )


def _parse_amount(value: Any, source: str, index: int) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ReconciliationDataError(f"{source} record {index}: missing or invalid amount {value!r}")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ReconciliationDataError(f"{source} record {index}: invalid amount {value!r}")
    if not amount.is_finite():
        raise ReconciliationDataError(f"{source} record {index}: invalid amount {value!r}")
    return amount


def _parse_date(value: Any, source: str, index: int) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        try:
            parsed = date_parser.isoparse(value)
        except ValueError:
            try:
                parsed = date_parser.parse(value)
            except (ValueError, OverflowError):
                raise ReconciliationDataError(f"{source} record {index}: invalid date {value!r}")
    else:
        raise ReconciliationDataError(f"{source} record {index}: invalid date {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def normalize_records(records: Any, source: str) -> List[LedgerRecord]:
    """
    Validate and normalise raw ledger rows ({transaction_id, reference, amount, date}).

    Raises:
        ReconciliationDataError: the ledger is not a list of objects, or a row
            has an unparsable amount or date
    """
    if records is None:
        return []
    if not isinstance(records, (list, tuple)):
        raise ReconciliationDataError(f"{source} ledger must be a list of records, got {type(records).__name__}")

    normalized = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ReconciliationDataError(f"{source} record {index} is not an object")
        normalized.append(LedgerRecord(
            transaction_id=_optional_str(record.get("transaction_id")),
            reference=_optional_str(record.get("reference")),
            amount=_parse_amount(record.get("amount"), source, index),
            date=_parse_date(record.get("date"), source, index),
        ))
    return normalized


def load_ledger_file(path: str) -> Any:
    """Read a JSON ledger file"""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        raise ReconciliationDataError(f"Ledger file not found: {path}")
    except (ValueError, UnicodeDecodeError) as e:
        raise ReconciliationDataError(f"Ledger file {path} is not valid JSON: {e}")


def _item(record: LedgerRecord, source: ItemSource, status: ItemStatus,
          match_reference: Optional[str] = None, discrepancy: Optional[Decimal] = None,
          notes: Optional[str] = None) -> ReconciliationItem:
    return ReconciliationItem(
        source=source,
        transaction_id=record.transaction_id,
        reference=record.reference,
        amount=record.amount,
        transaction_date=record.date,
        reconciliation_status=status,
        match_reference=match_reference,
        discrepancy_amount=discrepancy,
        notes=notes,
    )


def match_ledgers(app: List[LedgerRecord], gateway: List[LedgerRecord]) -> List[ReconciliationItem]:
    """
    Classify every record of both ledgers.

    For each app record (in sorted order) the gateway records with the same
    reference are candidates; an unconsumed candidate with the exact amount is
    preferred, otherwise the first unconsumed candidate is paired as an amount
    mismatch. Records without a reference never match.
    """
    candidates: Dict[str, List[int]] = defaultdict(list)
    ordered_gateway = sorted(gateway, key=LedgerRecord.sort_key)
    for idx, record in enumerate(ordered_gateway):
        if record.reference:
            candidates[record.reference].append(idx)

    consumed = set()
    items: List[ReconciliationItem] = []

    for record in sorted(app, key=LedgerRecord.sort_key):
        open_candidates = [idx for idx in candidates.get(record.reference or "", []) if idx not in consumed]
        if not record.reference or not open_candidates:
            items.append(_item(record, ItemSource.APP, ItemStatus.UNMATCHED_APP))
            continue

        exact = [idx for idx in open_candidates if ordered_gateway[idx].amount == record.amount]
        chosen = exact[0] if exact else open_candidates[0]
        consumed.add(chosen)
        counterpart = ordered_gateway[chosen]
        match_reference = record.transaction_id or record.reference

        if exact:
            items.append(_item(record, ItemSource.APP, ItemStatus.MATCHED, match_reference))
            items.append(_item(counterpart, ItemSource.GATEWAY, ItemStatus.MATCHED, match_reference))
        else:
            discrepancy = record.amount - counterpart.amount
            items.append(_item(record, ItemSource.APP, ItemStatus.AMOUNT_MISMATCH, match_reference, discrepancy,
                               notes=f"Gateway reported {counterpart.amount}"))
            items.append(_item(counterpart, ItemSource.GATEWAY, ItemStatus.AMOUNT_MISMATCH, match_reference,
                               discrepancy, notes=f"Application recorded {record.amount}"))

    for idx, record in enumerate(ordered_gateway):
        if idx not in consumed:
            items.append(_item(record, ItemSource.GATEWAY, ItemStatus.UNMATCHED_GATEWAY))

    return items


class ReconciliationEngine:
    """Runs, stores and exports ledger reconciliations"""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    def run_from_data(
        self,
        app_records: Any,
        gateway_records: Any,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        actor: ActorContext = SYSTEM_ACTOR,
        dry_run: bool = False,
        notes: Optional[str] = None
    ) -> ReconciliationRun:
        """
        Reconcile two ledgers.

        Malformed input produces a run with status=failed, the error message
        and zero totals, and no items. With ``dry_run`` the run is computed
        but nothing is written to the database.
        """
        run = ReconciliationRun(
            started_at=datetime.now(timezone.utc),
            period_start=period_start,
            period_end=period_end,
            notes=notes,
            created_by=actor.actor_id,
            run_metadata={"dry_run": dry_run},
        )

        try:
            app = normalize_records(app_records, "app")
            gateway = normalize_records(gateway_records, "gateway")
        except ReconciliationDataError as e:
            run.mark_completed(RunStatus.FAILED, error_message=str(e))
            logger.error(f"Reconciliation run {run.run_id} aborted: {e}")
            if not dry_run:
                self._persist(run, actor)
            log_reconciliation_run(run.run_id, run.status.value, dry_run=dry_run)
            return run

        items = match_ledgers(app, gateway)
        run.run_metadata = {**run.run_metadata, "app_records": len(app), "gateway_records": len(gateway)}
        run.recompute_totals(items)
        run.mark_completed(RunStatus.SUCCESS)

        run.items = items
        if not dry_run:
            self._persist(run, actor)

        log_reconciliation_run(run.run_id, run.status.value, dry_run=dry_run, **run.totals())
        return run

    def run_for_period(
        self,
        gateway_records: Any,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        actor: ActorContext = SYSTEM_ACTOR,
        dry_run: bool = False,
        notes: Optional[str] = None
    ) -> ReconciliationRun:
        """Reconcile a gateway ledger against the payments recorded for the period"""
        app_records = self.load_app_ledger_from_payments(period_start, period_end)
        return self.run_from_data(app_records, gateway_records, period_start, period_end, actor, dry_run, notes)

    def _persist(self, run: ReconciliationRun, actor: ActorContext) -> None:
        self.db.add(run)
        self.db.flush()
        self.audit.log_action(
            actor=actor,
            action=f"reconciliation.{run.status.value}",
            target_type="reconciliation_run",
            target_id=run.run_id,
            after_state=run.totals(),
            reason=run.error_message,
        )
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def load_app_ledger_from_payments(
        self,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None
    ) -> List[Dict[str, Any]]:
        query = self.db.query(Payment)
        if period_start:
            query = query.filter(Payment.paid_at >= datetime.combine(period_start, time.min, tzinfo=timezone.utc))
        if period_end:
            end = datetime.combine(period_end, time.min, tzinfo=timezone.utc) + timedelta(days=1)
            query = query.filter(Payment.paid_at < end)
        return [payment.to_ledger_record() for payment in query.order_by(Payment.paid_at, Payment.reference).all()]

    def get_run(self, run_id: str) -> Optional[ReconciliationRun]:
        return self.db.query(ReconciliationRun).filter(ReconciliationRun.run_id == run_id).first()

    def list_runs(self, status: Optional[RunStatus] = None, limit: int = 50, offset: int = 0) -> List[ReconciliationRun]:
        query = self.db.query(ReconciliationRun)
        if status:
            query = query.filter(ReconciliationRun.status == status)
        return query.order_by(ReconciliationRun.started_at.desc(), ReconciliationRun.id.desc()) \
            .offset(offset).limit(limit).all()

    @staticmethod
    def export_items_csv(items: Iterable[ReconciliationItem], stream: TextIO) -> int:
        """Write run items as CSV; returns the number of rows written"""
        writer = csv.writer(stream)
        writer.writerow(CSV_HEADERS)
        count = 0
        for item in items:
            row = item.to_dict()
            writer.writerow([row.get(header) if row.get(header) is not None else "" for header in CSV_HEADERS])
            count += 1
        return count
