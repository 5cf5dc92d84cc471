"""
Integration tests through the LendingSystem facade and the CLI
"""

import json
import pytest
from datetime import date
from unittest.mock import Mock

from emi_engine.cli import main
from emi_engine.clock import FixedClock
from emi_engine.config import EMIEngineConfig
from emi_engine.events import EventDispatcher, EventRecorder
from emi_engine.exceptions import StoreError
from emi_engine.models import EMIStatus, LoanStatus
from emi_engine.storage import InMemoryStorage, SQLiteStorage
from emi_engine.system import LendingSystem


def make_config(**overrides) -> EMIEngineConfig:
    settings = dict(use_sqlite=False, sweep_interval_seconds=3600, log_format="text")
    settings.update(overrides)
    return EMIEngineConfig(_env_file=None, **settings)


class TestLendingSystem:
    """End-to-end loan lifecycle"""

    def setup_method(self):
        self.clock = FixedClock(date(2025, 2, 12))
        self.dispatcher = EventDispatcher()
        self.recorder = EventRecorder()
        self.dispatcher.subscribe_all(self.recorder)
        self.system = LendingSystem(
            config=make_config(), storage=InMemoryStorage(),
            clock=self.clock, dispatcher=self.dispatcher
        )

    def teardown_method(self):
        self.system.close()

    def test_full_lifecycle(self):
        loan = self.system.loan_service.apply("user-1", 1000, 10)
        loan = self.system.loan_service.approve(loan.id)
        emi_ids = [emi.id for emi in self.system.emi_store.for_loan(loan.id)]

        # 13 and 14 Feb are missed
        self.clock.set(date(2025, 2, 16))
        stats = self.system.loan_stats(loan.id)
        assert stats.overdue_emis == 3
        assert stats.total_penalty == 50 * 3 + 50 * 2 + 50 * 1

        self.system.accrual_engine.clear_overdue_penalty(emi_ids[0])
        for emi_id in emi_ids:
            self.system.payment_service.mark_paid(emi_id)

        loan = self.system.loan_store.get(loan.id)
        assert loan.status == LoanStatus.COMPLETED
        assert loan.penalty_amount == 50 * 2 + 50 * 1
        assert loan.remaining_balance == 0
        assert loan.total_paid == 1200 + 150

    def test_reads_sweep_first(self):
        loan = self.system.loan_service.approve(self.system.loan_service.apply("user-1", 1000, 10).id)
        self.clock.set(date(2025, 2, 14))

        page = self.system.loan_emis(loan.id, status=EMIStatus.OVERDUE)

        assert page.total == 1
        assert self.system.portfolio_stats().overdue_emis == 1
        assert self.system.due_on().summary.pending == 1

    def test_search_emis_sweeps_first(self):
        loan = self.system.loan_service.approve(self.system.loan_service.apply("user-1", 1000, 10).id)
        self.clock.set(date(2025, 2, 16))

        result = self.system.search_emis(statuses="overdue")

        assert result.page.total == 3
        assert result.summary.overdue == 3
        assert [emi.day_number for emi in result.page.items] == [3, 2, 1]
        assert all(emi.loan_id == loan.id for emi in result.page.items)

    def test_failed_sweep_still_serves_read(self, monkeypatch):
        loan = self.system.loan_service.approve(self.system.loan_service.apply("user-1", 1000, 10).id)
        self.clock.set(date(2025, 2, 16))
        monkeypatch.setattr(
            self.system.accrual_engine, "process_overdues",
            Mock(side_effect=StoreError("database is locked"))
        )

        stats = self.system.loan_stats(loan.id)

        assert stats.total_emis == 10
        assert stats.overdue_emis == 0
        assert self.system.search_emis().page.total == 10

    def test_reads_without_sweep(self):
        system = LendingSystem(
            config=make_config(sweep_on_read=False), storage=InMemoryStorage(),
            clock=self.clock, dispatcher=self.dispatcher
        )
        loan = system.loan_service.approve(system.loan_service.apply("user-1", 1000, 10).id)
        self.clock.set(date(2025, 2, 20))

        assert system.loan_stats(loan.id).overdue_emis == 0

    def test_sqlite_backend_from_config(self, tmp_path):
        system = LendingSystem(
            config=make_config(use_sqlite=True, database_path=str(tmp_path / "emi.db")),
            clock=self.clock, dispatcher=self.dispatcher
        )
        assert isinstance(system.storage, SQLiteStorage)
        loan = system.loan_service.approve(system.loan_service.apply("user-1", 2000, 5).id)
        assert len(system.emi_store.for_loan(loan.id)) == 5
        system.close()


class TestCLI:
    """Test the emi-engine command"""

    def _seed(self, db_path):
        system = LendingSystem(
            config=make_config(use_sqlite=True, database_path=str(db_path)),
            clock=FixedClock(date(2025, 2, 12)), dispatcher=EventDispatcher()
        )
        loan = system.loan_service.approve(system.loan_service.apply("user-1", 1000, 10).id)
        system.close()
        return loan.id

    def test_process_overdues(self, tmp_path, capsys):
        db_path = tmp_path / "cli.db"
        self._seed(db_path)

        code = main(["--db", str(db_path), "--today", "2025-02-16", "process-overdues"])

        assert code == 0
        assert "Processed 3 overdue EMIs" in capsys.readouterr().out

    def test_fix_overdues(self, tmp_path, capsys):
        db_path = tmp_path / "cli.db"
        self._seed(db_path)
        main(["--db", str(db_path), "--today", "2025-02-16", "process-overdues"])
        capsys.readouterr()

        # Running as of an earlier day resets what is not yet due then
        code = main(["--db", str(db_path), "--today", "2025-02-14", "fix-overdues"])

        assert code == 0
        output = capsys.readouterr().out
        assert "reset 2" in output
        assert "recalculated 1" in output

    def test_stats(self, tmp_path, capsys):
        db_path = tmp_path / "cli.db"
        loan_id = self._seed(db_path)

        code = main(["--db", str(db_path), "--today", "2025-02-16", "stats", loan_id])

        assert code == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["total_emis"] == 10
        assert stats["overdue_emis"] == 3

    def test_portfolio(self, tmp_path, capsys):
        db_path = tmp_path / "cli.db"
        self._seed(db_path)

        assert main(["--db", str(db_path), "--today", "2025-02-12", "portfolio"]) == 0
        assert json.loads(capsys.readouterr().out)["total_disbursed"] == 1000

    def test_emis(self, tmp_path, capsys):
        db_path = tmp_path / "cli.db"
        self._seed(db_path)

        code = main([
            "--db", str(db_path), "--today", "2025-02-16",
            "emis", "--status", "overdue", "--from", "2025-02-13", "--to", "2025-02-14",
        ])

        assert code == 0
        result = json.loads(capsys.readouterr().out)
        assert result["total"] == 2
        assert [item["due_date"] for item in result["items"]] == ["2025-02-14", "2025-02-13"]
        assert result["summary"]["overdue"] == 2

    def test_unknown_loan_exits_with_error(self, tmp_path, capsys):
        code = main(["--db", str(tmp_path / "empty.db"), "stats", "nope"])

        assert code == 1
        assert "not found" in capsys.readouterr().err

    def test_bad_date_is_a_usage_error(self):
        with pytest.raises(SystemExit) as excinfo:
            main(["--today", "16/02/2025", "process-overdues"])
        assert excinfo.value.code == 2
