"""
Tests for loan stats, daily collection and portfolio read models
"""

import pytest
from datetime import date, datetime, timedelta

from emi_engine.exceptions import NotFoundError, ValidationError
from emi_engine.models import EMI, EMIStatus, Loan, LoanStatus
from emi_engine.repositories import EMIStore, LoanStore
from emi_engine.stats import StatsService, collection_summary, loan_stats
from emi_engine.storage import InMemoryStorage


NOW = datetime(2025, 2, 16, 9, 0)


def emi(day, status=EMIStatus.PENDING, penalty=0, loan_id="loan-1", due=None, principal=100, interest=20,
        user_id="user-1"):
    record = EMI(
        id=EMI.make_id(loan_id, day), created_at=NOW, updated_at=NOW,
        loan_id=loan_id, user_id=user_id, day_number=day,
        principal_amount=principal, interest_amount=interest,
        due_date=due or date(2025, 2, 12 + day), status=status,
    )
    record.set_penalty(penalty)
    return record


class TestLoanStats:
    def test_buckets(self):
        emis = [
            emi(1, EMIStatus.PAID, penalty=50),
            emi(2, EMIStatus.OVERDUE, penalty=100),
            emi(3, EMIStatus.OVERDUE, penalty=50),
            emi(4),
            emi(5),
        ]

        stats = loan_stats(emis)

        assert stats.total_emis == 5
        assert stats.paid_emis == 1
        assert stats.overdue_emis == 2
        assert stats.pending_emis == 2
        assert stats.total_paid == 170
        assert stats.total_pending == 220 + 170 + 120 + 120
        # Penalty on the paid EMI is not counted
        assert stats.total_penalty == 150

    def test_empty(self):
        assert loan_stats([]).to_dict() == {
            "total_emis": 0, "paid_emis": 0, "pending_emis": 0, "overdue_emis": 0,
            "total_paid": 0, "total_pending": 0, "total_penalty": 0,
        }


class TestCollectionSummary:
    def test_summary(self):
        summary = collection_summary([
            emi(1, EMIStatus.PAID),
            emi(2, EMIStatus.OVERDUE, penalty=50),
            emi(3),
        ])

        assert summary.total == 3
        assert summary.paid == 1
        assert summary.overdue == 1
        assert summary.pending == 1
        assert summary.total_amount == 120 + 170 + 120
        assert summary.collected_amount == 120


class TestStatsService:
    """Test read models over the stores"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.loan_store = LoanStore(self.storage)
        self.emi_store = EMIStore(self.storage)
        self.service = StatsService(self.loan_store, self.emi_store)

        for loan_id, status, amount in [
            ("loan-1", LoanStatus.APPROVED, 1000),
            ("loan-2", LoanStatus.COMPLETED, 2000),
            ("loan-3", LoanStatus.PENDING, 3000),
            ("loan-4", LoanStatus.REJECTED, 4000),
        ]:
            self.loan_store.save(Loan(
                id=loan_id, created_at=NOW, updated_at=NOW, user_id="user-1",
                amount=amount, total_days=10, status=status,
            ))

        self.emi_store.bulk_insert([
            emi(1, EMIStatus.OVERDUE, penalty=150),
            emi(2, EMIStatus.OVERDUE, penalty=100),
            emi(3),
            emi(1, EMIStatus.PAID, penalty=50, loan_id="loan-2"),
            emi(2, EMIStatus.PAID, loan_id="loan-2"),
        ])

    def test_loan_stats(self):
        stats = self.service.loan_stats("loan-1")
        assert stats.total_emis == 3
        assert stats.overdue_emis == 2
        assert stats.total_penalty == 250

    def test_loan_stats_missing_loan(self):
        with pytest.raises(NotFoundError):
            self.service.loan_stats("nope")

    def test_due_on(self):
        collection = self.service.due_on(date(2025, 2, 13))

        assert [e.id for e in collection.emis] == ["loan-1_1", "loan-2_1"]
        assert collection.summary.paid == 1
        assert collection.summary.overdue == 1
        assert collection.to_dict()["day"] == "2025-02-13"

    def test_portfolio_stats(self):
        stats = self.service.portfolio_stats()

        assert stats.total_emis == 5
        assert stats.paid_emis == 2
        assert stats.overdue_emis == 2
        assert stats.pending_emis == 1
        assert stats.paid_amount == 170 + 120
        assert stats.pending_amount == 270 + 220 + 120
        assert stats.total_amount == stats.paid_amount + stats.pending_amount
        assert stats.total_penalty == 300
        assert stats.total_loans == 4
        assert stats.approved_loans == 1
        assert stats.pending_loans == 1
        assert stats.total_disbursed == 3000


class TestEMISearch:
    """Test the filtered, paginated admin EMI listing"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.service = StatsService(LoanStore(self.storage), EMIStore(self.storage))

        first_due = date(2025, 2, 13)
        records = []
        for day in range(1, 26):
            if day <= 5:
                status = EMIStatus.PAID
            elif day <= 8:
                status = EMIStatus.OVERDUE
            else:
                status = EMIStatus.PENDING
            records.append(emi(day, status, due=first_due + timedelta(days=day - 1)))
        for day in range(1, 4):
            records.append(emi(day, loan_id="loan-5", user_id="user-2",
                               due=first_due + timedelta(days=day - 1)))
        EMIStore(self.storage).bulk_insert(records)

    def test_summary_covers_every_page(self):
        first = self.service.search_emis(limit=10)
        last = self.service.search_emis(page=3, limit=10)

        assert first.page.total == 28
        assert first.page.pages == 3
        assert len(first.page.items) == 10
        assert len(last.page.items) == 8
        assert first.page.items[0].due_date == date(2025, 3, 9)
        assert last.page.items[-1].due_date == date(2025, 2, 13)
        for result in (first, last):
            assert result.summary.total == 28
            assert result.summary.paid == 5
            assert result.summary.overdue == 3
            assert result.summary.pending == 20
            assert result.summary.collected_amount == 5 * 120
            assert result.summary.total_amount == 28 * 120

    def test_due_date_range_includes_both_ends(self):
        result = self.service.search_emis(start=date(2025, 2, 14), end=date(2025, 2, 15))

        assert [e.id for e in result.page.items] == ["loan-5_3", "loan-1_3", "loan-5_2", "loan-1_2"]
        assert self.service.search_emis(start=date(2025, 3, 9)).page.total == 1
        assert self.service.search_emis(end=date(2025, 2, 13)).page.total == 2

    def test_status_filter_takes_one_or_many(self):
        assert self.service.search_emis(statuses="overdue").page.total == 3
        assert self.service.search_emis(statuses=EMIStatus.PAID).summary.paid == 5
        both = self.service.search_emis(statuses=[EMIStatus.PAID, "overdue"], limit=50)
        assert both.page.total == 8
        assert {e.status for e in both.page.items} == {EMIStatus.PAID, EMIStatus.OVERDUE}
        assert self.service.search_emis(statuses=[]).page.total == 28

    def test_user_filter(self):
        assert self.service.search_emis(user_ids="user-2").page.total == 3
        assert self.service.search_emis(user_ids="user-1, user-2").page.total == 28
        assert self.service.search_emis(user_ids=["user-1"], statuses="pending").summary.total == 17
        assert self.service.search_emis(user_ids="").page.total == 28

    def test_rejects_bad_input(self):
        with pytest.raises(ValidationError):
            self.service.search_emis(page=0)
        with pytest.raises(ValidationError):
            self.service.search_emis(statuses="late")

    def test_to_dict(self):
        data = self.service.search_emis(statuses="overdue").to_dict()

        assert data["total"] == 3
        assert data["pages"] == 1
        assert data["summary"]["overdue"] == 3
        assert len(data["items"]) == 3
