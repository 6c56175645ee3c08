"""
Tests for the reconciliation engine.

Covers classification of matched, unmatched and mismatched rows, the derived
run totals, failed runs on malformed input, dry runs, the payments-backed app
ledger and CSV export.
"""

import io
import csv
import json
import pytest
from datetime import date, timedelta
from decimal import Decimal

from membership_billing.core.exceptions import ReconciliationDataError
from membership_billing.models import (
    ItemSource,
    ItemStatus,
    Payment,
    ReconciliationItem,
    ReconciliationRun,
    RunStatus,
)
from membership_billing.services.audit_service import ActorContext, AuditLog
from membership_billing.services.reconciliation_service import (
    ReconciliationEngine,
    load_ledger_file,
    match_ledgers,
    normalize_records,
)

FINANCE = ActorContext(actor_id="finance-1", actor_type="admin")


@pytest.fixture
def engine_service(db):
    return ReconciliationEngine(db)


def statuses(run):
    return sorted((item.source.value, item.reconciliation_status.value) for item in run.items)


class TestClassification:
    """Test how ledger rows are paired and classified"""

    def test_exact_match(self, engine_service):
        run = engine_service.run_from_data(
            [{"reference": "REF1", "amount": 100}],
            [{"reference": "REF1", "amount": 100}],
        )

        assert run.status == RunStatus.SUCCESS
        assert run.total_matched == 1
        assert run.total_unmatched_app == 0
        assert run.total_unmatched_gateway == 0
        assert statuses(run) == [("app", "matched"), ("gateway", "matched")]

    def test_missing_from_gateway(self, engine_service):
        run = engine_service.run_from_data([{"reference": "REF1", "amount": 100}], [])

        assert run.total_unmatched_app == 1
        assert run.total_unmatched_gateway == 0
        assert run.total_matched == 0
        assert statuses(run) == [("app", "unmatched_app")]

    def test_amount_mismatch(self, engine_service):
        run = engine_service.run_from_data(
            [{"reference": "REF1", "amount": 100}],
            [{"reference": "REF1", "amount": 90}],
        )

        assert run.total_amount_mismatch == 1
        assert run.total_discrepancy == Decimal("10")
        assert run.total_matched == 0
        for item in run.items:
            assert item.reconciliation_status == ItemStatus.AMOUNT_MISMATCH
            assert item.discrepancy_amount == Decimal("10")

    def test_missing_from_app(self, engine_service):
        run = engine_service.run_from_data([], [{"reference": "REF9", "transaction_id": "TXN9", "amount": "25.50"}])

        assert run.total_unmatched_gateway == 1
        assert run.total_gateway_amount == Decimal("25.50")
        assert statuses(run) == [("gateway", "unmatched_gateway")]

    def test_rows_without_reference_never_match(self):
        app = normalize_records([{"amount": 100}], "app")
        gateway = normalize_records([{"amount": 100}], "gateway")

        items = match_ledgers(app, gateway)

        assert [i.reconciliation_status for i in items] == [ItemStatus.UNMATCHED_APP, ItemStatus.UNMATCHED_GATEWAY]

    def test_exact_amount_preferred_among_duplicates(self):
        app = normalize_records([{"reference": "REF1", "amount": 100}], "app")
        gateway = normalize_records(
            [{"reference": "REF1", "amount": 90}, {"reference": "REF1", "amount": 100}], "gateway"
        )

        items = match_ledgers(app, gateway)

        assert [(i.source, i.reconciliation_status, i.amount) for i in items] == [
            (ItemSource.APP, ItemStatus.MATCHED, Decimal("100")),
            (ItemSource.GATEWAY, ItemStatus.MATCHED, Decimal("100")),
            (ItemSource.GATEWAY, ItemStatus.UNMATCHED_GATEWAY, Decimal("90")),
        ]

    def test_match_reference_prefers_transaction_id(self):
        app = normalize_records([{"reference": "REF1", "transaction_id": "TXN1", "amount": 5}], "app")
        gateway = normalize_records([{"reference": "REF1", "amount": 5}], "gateway")

        items = match_ledgers(app, gateway)

        assert {i.match_reference for i in items} == {"TXN1"}


class TestRunTotals:
    """Test properties that hold for every run"""

    APP = [
        {"reference": "REF1", "amount": 100, "date": "2026-10-01"},
        {"reference": "REF2", "amount": "50.00"},
        {"reference": "REF3", "amount": 75},
    ]
    GATEWAY = [
        {"reference": "REF3", "amount": 70},
        {"reference": "REF1", "amount": 100},
        {"reference": "REF4", "amount": 12},
    ]

    def test_every_row_classified_once(self, engine_service):
        run = engine_service.run_from_data(self.APP, self.GATEWAY)

        assert len([i for i in run.items if i.source == ItemSource.APP]) == len(self.APP)
        assert len([i for i in run.items if i.source == ItemSource.GATEWAY]) == len(self.GATEWAY)
        assert run.total_matched + run.total_unmatched_app + run.total_amount_mismatch == len(self.APP)

    def test_totals_match_items(self, engine_service):
        run = engine_service.run_from_data(self.APP, self.GATEWAY)

        assert run.total_matched == 1
        assert run.total_unmatched_app == 1
        assert run.total_unmatched_gateway == 1
        assert run.total_amount_mismatch == 1
        assert run.total_discrepancy == Decimal("5")
        assert run.total_app_amount == Decimal("225")
        assert run.total_gateway_amount == Decimal("182")

    def test_same_input_gives_same_totals(self, engine_service):
        first = engine_service.run_from_data(self.APP, self.GATEWAY)
        second = engine_service.run_from_data(list(reversed(self.APP)), list(reversed(self.GATEWAY)))

        assert first.totals() == second.totals()
        assert [i.to_dict() for i in first.items] == [i.to_dict() for i in second.items]
        assert first.run_id != second.run_id

    def test_swapping_ledgers_swaps_unmatched_counts(self, engine_service):
        forward = engine_service.run_from_data(self.APP, self.GATEWAY)
        backward = engine_service.run_from_data(self.GATEWAY, self.APP)

        assert forward.total_unmatched_app == backward.total_unmatched_gateway
        assert forward.total_unmatched_gateway == backward.total_unmatched_app
        assert forward.total_matched == backward.total_matched


class TestPersistence:
    """Test what runs write to the database"""

    def test_run_and_items_persisted(self, db, engine_service):
        run = engine_service.run_from_data(
            [{"reference": "REF1", "amount": 100}],
            [{"reference": "REF1", "amount": 90}],
            period_start=date(2026, 10, 1),
            period_end=date(2026, 10, 31),
            actor=FINANCE,
            notes="October close",
        )

        stored = engine_service.get_run(run.run_id)
        assert stored is not None
        assert stored.created_by == "finance-1"
        assert stored.notes == "October close"
        assert stored.period_end == date(2026, 10, 31)
        assert db.query(ReconciliationItem).count() == 2

        entry = db.query(AuditLog).filter(AuditLog.target_id == run.run_id).one()
        assert entry.action == "reconciliation.success"
        assert entry.after_state["total_amount_mismatch"] == 1

    def test_dry_run_writes_nothing(self, db, engine_service):
        run = engine_service.run_from_data(
            [{"reference": "REF1", "amount": 100}],
            [{"reference": "REF1", "amount": 90}, {"reference": "REF2", "amount": 5}],
            dry_run=True,
        )

        assert run.total_amount_mismatch == 1
        assert run.total_unmatched_gateway == 1
        assert db.query(ReconciliationRun).count() == 0
        assert db.query(ReconciliationItem).count() == 0
        assert db.query(AuditLog).count() == 0

    def test_malformed_input_gives_failed_run(self, db, engine_service):
        run = engine_service.run_from_data([{"reference": "REF1", "amount": "abc"}], [])

        assert run.status == RunStatus.FAILED
        assert "invalid amount" in run.error_message
        assert (run.total_matched, run.total_unmatched_app, run.total_unmatched_gateway, run.total_amount_mismatch) == (0, 0, 0, 0)
        assert run.total_discrepancy == run.total_app_amount == run.total_gateway_amount == Decimal("0")
        stored = engine_service.get_run(run.run_id)
        assert stored.status == RunStatus.FAILED
        assert stored.items == []

    def test_malformed_dry_run_writes_nothing(self, db, engine_service):
        run = engine_service.run_from_data({"reference": "REF1"}, [], dry_run=True)

        assert run.status == RunStatus.FAILED
        assert db.query(ReconciliationRun).count() == 0

    def test_list_runs_filters_by_status(self, engine_service):
        engine_service.run_from_data([], [])
        engine_service.run_from_data([{"amount": None}], [])

        assert len(engine_service.list_runs()) == 2
        assert [r.status for r in engine_service.list_runs(status=RunStatus.FAILED)] == [RunStatus.FAILED]


class TestPaymentsLedger:
    """Test reconciling against recorded payments"""

    def _payment(self, db, reference, amount, paid_at):
        db.add(Payment(user_id="member-001", reference=reference, transaction_id=f"TXN-{reference}",
                       amount=Decimal(amount), paid_at=paid_at))
        db.commit()

    def test_period_selects_payments(self, db, engine_service, now):
        self._payment(db, "REF1", "100.00", now - timedelta(days=3))
        self._payment(db, "REF2", "40.00", now - timedelta(days=40))

        run = engine_service.run_for_period(
            [{"reference": "REF1", "amount": "100.00"}],
            period_start=(now - timedelta(days=10)).date(),
            period_end=now.date(),
        )

        assert run.total_matched == 1
        assert run.total_unmatched_app == 0
        assert run.run_metadata["app_records"] == 1


class TestInputHandling:
    """Test ledger parsing"""

    @pytest.mark.parametrize("records", [
        "not a list",
        [42],
        [{"reference": "REF1"}],
        [{"reference": "REF1", "amount": True}],
        [{"reference": "REF1", "amount": "NaN"}],
        [{"reference": "REF1", "amount": 1, "date": "yesterday-ish"}],
    ])
    def test_invalid_records_rejected(self, records):
        with pytest.raises(ReconciliationDataError):
            normalize_records(records, "gateway")

    def test_dates_normalised_to_utc(self):
        record = normalize_records([{"reference": "R", "amount": "1.5", "date": "2026-10-01T08:00:00"}], "app")[0]

        assert record.amount == Decimal("1.5")
        assert record.date.tzinfo is not None
        assert record.date.hour == 8

    def test_load_ledger_file(self, tmp_path):
        path = tmp_path / "gateway.json"
        path.write_text(json.dumps([{"reference": "REF1", "amount": 1}]))

        assert load_ledger_file(str(path)) == [{"reference": "REF1", "amount": 1}]

    def test_load_ledger_file_errors(self, tmp_path):
        broken = tmp_path / "broken.json"
        broken.write_text("[{")

        with pytest.raises(ReconciliationDataError):
            load_ledger_file(str(broken))
        with pytest.raises(ReconciliationDataError):
            load_ledger_file(str(tmp_path / "missing.json"))


class TestExport:
    """Test CSV export of run items"""

    def test_export_items_csv(self, engine_service):
        run = engine_service.run_from_data(
            [{"reference": "REF1", "amount": 100}],
            [{"reference": "REF1", "amount": 90}],
        )
        stream = io.StringIO()

        count = ReconciliationEngine.export_items_csv(run.items, stream)

        rows = list(csv.DictReader(io.StringIO(stream.getvalue())))
        assert count == 2
        assert [row["reconciliation_status"] for row in rows] == ["amount_mismatch", "amount_mismatch"]
        assert rows[0]["source"] == "app"
        assert Decimal(rows[0]["discrepancy_amount"]) == Decimal("10")
        assert rows[0]["transaction_date"] == ""
