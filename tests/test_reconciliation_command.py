"""
Tests for the operator CLI (reconciliation:run and the batch job commands).
"""

import json
import pytest
from unittest.mock import patch

from membership_billing import cli
from membership_billing.models import ReconciliationItem, ReconciliationRun, RunStatus


@pytest.fixture(autouse=True)
def cli_session(session_factory, monkeypatch):
    """Point the CLI at the test database and keep its output plain"""
    monkeypatch.setattr(cli, "SessionLocal", session_factory)
    monkeypatch.setattr(cli, "setup_logging", lambda: None)


def write_ledger(tmp_path, name, records):
    path = tmp_path / name
    path.write_text(json.dumps(records))
    return str(path)


@pytest.fixture
def ledgers(tmp_path):
    app = write_ledger(tmp_path, "app.json", [{"reference": "REF1", "amount": 100}])
    gateway = write_ledger(tmp_path, "gateway.json", [{"reference": "REF1", "amount": 90}])
    return app, gateway


class TestReconciliationRun:
    """Test reconciliation:run"""

    def test_sync_run_persists_and_prints_totals(self, db, ledgers, capsys):
        app, gateway = ledgers

        code = cli.main(["reconciliation:run", "--sync", "--app-file", app, "--gateway-file", gateway,
                         "--period-start", "2026-10-01", "--period-end", "2026-10-31", "--notes", "October"])

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["dry_run"] is False
        assert output["status"] == "success"
        assert output["total_amount_mismatch"] == 1
        assert output["period_start"] == "2026-10-01"

        run = db.query(ReconciliationRun).one()
        assert run.run_id == output["run_id"]
        assert run.created_by == "cli"
        assert run.notes == "October"
        assert db.query(ReconciliationItem).count() == 2

    def test_dry_run_persists_nothing(self, db, ledgers, capsys):
        app, gateway = ledgers

        with patch.object(cli.reconciliation_queue, "publish_run_request") as publish:
            code = cli.main(["reconciliation:run", "--dry-run", "--app-file", app, "--gateway-file", gateway])

        assert code == 0
        publish.assert_not_called()
        output = json.loads(capsys.readouterr().out)
        assert output["dry_run"] is True
        assert output["total_discrepancy"] == "10"
        assert db.query(ReconciliationRun).count() == 0
        assert db.query(ReconciliationItem).count() == 0

    def test_without_app_file_uses_recorded_payments(self, db, tmp_path, capsys):
        gateway = write_ledger(tmp_path, "gateway.json", [{"reference": "REF7", "amount": 12}])

        code = cli.main(["reconciliation:run", "--sync", "--gateway-file", gateway])

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["total_unmatched_gateway"] == 1
        assert output["total_unmatched_app"] == 0

    def test_without_gateway_file_reconciles_against_empty_ledger(self, db, tmp_path, capsys):
        app = write_ledger(tmp_path, "app.json", [{"reference": "REF3", "amount": 40}])

        code = cli.main(["reconciliation:run", "--sync", "--app-file", app])

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "success"
        assert output["total_unmatched_app"] == 1
        assert output["total_unmatched_gateway"] == 0
        assert db.query(ReconciliationItem).count() == 1

    def test_malformed_rows_fail_the_run(self, db, tmp_path, capsys):
        gateway = write_ledger(tmp_path, "gateway.json", [{"reference": "REF1", "amount": "lots"}])

        code = cli.main(["reconciliation:run", "--sync", "--gateway-file", gateway])

        assert code == 1
        run = db.query(ReconciliationRun).one()
        assert run.status == RunStatus.FAILED
        assert "invalid amount" in run.error_message

    def test_unreadable_file_exits_without_run(self, db, tmp_path, capsys):
        broken = tmp_path / "gateway.json"
        broken.write_text("{not json")

        code = cli.main(["reconciliation:run", "--sync", "--gateway-file", str(broken)])

        assert code == 1
        assert "not valid JSON" in capsys.readouterr().err
        assert db.query(ReconciliationRun).count() == 0

    def test_missing_file_exits_with_error(self, db, tmp_path, capsys):
        code = cli.main(["reconciliation:run", "--sync", "--gateway-file", str(tmp_path / "nope.json")])

        assert code == 1
        assert "not found" in capsys.readouterr().err

    def test_default_mode_queues_the_run(self, db, ledgers, capsys):
        app, gateway = ledgers

        with patch.object(cli.reconciliation_queue, "publish_run_request", return_value=True) as publish:
            code = cli.main(["reconciliation:run", "--app-file", app, "--gateway-file", gateway,
                             "--period-start", "2026-10-01"])

        assert code == 0
        kwargs = publish.call_args.kwargs
        assert kwargs["gateway_records"] == [{"reference": "REF1", "amount": 90}]
        assert kwargs["app_records"] == [{"reference": "REF1", "amount": 100}]
        assert kwargs["period_start"] == "2026-10-01"
        assert kwargs["requested_by"] == "cli"
        assert db.query(ReconciliationRun).count() == 0

    def test_queue_unavailable_exits_with_error(self, db, ledgers, capsys):
        app, gateway = ledgers

        with patch.object(cli.reconciliation_queue, "publish_run_request", return_value=False):
            code = cli.main(["reconciliation:run", "--gateway-file", gateway])

        assert code == 1
        assert "could not publish" in capsys.readouterr().err

    def test_invalid_period_rejected_by_parser(self, ledgers):
        _, gateway = ledgers

        with pytest.raises(SystemExit) as exc:
            cli.main(["reconciliation:run", "--gateway-file", gateway, "--period-start", "October"])

        assert exc.value.code == 2


class TestBatchCommands:
    """Test the commands that wrap scheduled jobs"""

    def test_renewals_run_prints_summary(self, capsys):
        summary = {"due": 2, "succeeded": 2, "failed": 0, "pending": 0, "skipped": 0, "errors": 0}
        with patch.object(cli.renewal_jobs, "run_auto_renewals", return_value=summary):
            assert cli.main(["renewals:run"]) == 0

        assert json.loads(capsys.readouterr().out) == summary

    def test_renewals_run_with_errors_exits_nonzero(self):
        summary = {"due": 1, "succeeded": 0, "failed": 0, "pending": 0, "skipped": 0, "errors": 1}
        with patch.object(cli.renewal_jobs, "run_auto_renewals", return_value=summary):
            assert cli.main(["renewals:run"]) == 1

    def test_renewals_already_running(self, capsys):
        with patch.object(cli.renewal_jobs, "run_auto_renewals", return_value=None):
            assert cli.main(["renewals:run"]) == 0

        assert "already running" in capsys.readouterr().out

    def test_job_exception_exits_nonzero(self):
        with patch.object(cli.renewal_jobs, "sweep_grace_periods", side_effect=RuntimeError("db down")):
            assert cli.main(["grace:sweep"]) == 1

    def test_payments_expire(self, capsys):
        with patch.object(cli.renewal_jobs, "expire_pending_payments", return_value=3):
            assert cli.main(["payments:expire"]) == 0

        assert "Expired 3 pending payments" in capsys.readouterr().out
