"""
Stats and read models over EMIs and loans
"""

from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Union

from .exceptions import ValidationError
from .models import EMI, EMIStatus, LoanStatus
from .payments import Page
from .repositories import EMIStore, LoanStore


@dataclass
class LoanStats:
    total_emis: int = 0
    paid_emis: int = 0
    pending_emis: int = 0
    overdue_emis: int = 0
    total_paid: int = 0
    total_pending: int = 0
    total_penalty: int = 0    # Penalty on EMIs still overdue

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CollectionSummary:
    total: int = 0
    paid: int = 0
    pending: int = 0
    overdue: int = 0
    total_amount: int = 0
    collected_amount: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DayCollection:
    """EMIs due on one day and their summary"""
    day: date
    emis: List[EMI] = field(default_factory=list)
    summary: CollectionSummary = field(default_factory=CollectionSummary)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day.isoformat(),
            "emis": [emi.to_dict() for emi in self.emis],
            "summary": self.summary.to_dict(),
        }


@dataclass
class EMISearch:
    """One page of an admin EMI search; the summary covers every match"""
    page: Page
    summary: CollectionSummary

    def to_dict(self) -> Dict[str, Any]:
        data = self.page.to_dict()
        data["summary"] = self.summary.to_dict()
        return data


@dataclass
class PortfolioStats:
    total_emis: int = 0
    paid_emis: int = 0
    pending_emis: int = 0
    overdue_emis: int = 0
    total_amount: int = 0
    paid_amount: int = 0
    pending_amount: int = 0
    total_penalty: int = 0    # Across all EMIs, paid ones included
    total_loans: int = 0
    approved_loans: int = 0
    pending_loans: int = 0
    total_disbursed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def loan_stats(emis: Iterable[EMI]) -> LoanStats:
    """
    Aggregate the EMIs of one loan.

    Paid EMIs add to total_paid, pending and overdue ones to total_pending;
    only overdue EMIs add to total_penalty.
    """
    stats = LoanStats()
    for emi in emis:
        stats.total_emis += 1
        if emi.status == EMIStatus.PAID:
            stats.paid_emis += 1
            stats.total_paid += emi.total_amount
        elif emi.status == EMIStatus.OVERDUE:
            stats.overdue_emis += 1
            stats.total_pending += emi.total_amount
            stats.total_penalty += emi.penalty_amount
        else:
            stats.pending_emis += 1
            stats.total_pending += emi.total_amount
    return stats


def collection_summary(emis: Iterable[EMI]) -> CollectionSummary:
    summary = CollectionSummary()
    for emi in emis:
        summary.total += 1
        summary.total_amount += emi.total_amount
        if emi.status == EMIStatus.PAID:
            summary.paid += 1
            summary.collected_amount += emi.total_amount
        elif emi.status == EMIStatus.OVERDUE:
            summary.overdue += 1
        else:
            summary.pending += 1
    return summary


class StatsService:
    """Read models for borrower and admin views"""

    def __init__(self, loan_store: LoanStore, emi_store: EMIStore):
        self.loan_store = loan_store
        self.emi_store = emi_store

    def loan_stats(self, loan_id: str) -> LoanStats:
        """Stats for one loan; NotFoundError if it does not exist"""
        self.loan_store.require(loan_id)
        return loan_stats(self.emi_store.for_loan(loan_id))

    def due_on(self, day: date) -> DayCollection:
        emis = self.emi_store.find({"due_date": day.isoformat()})
        emis.sort(key=lambda emi: (emi.user_id, emi.loan_id, emi.day_number))
        return DayCollection(day=day, emis=emis, summary=collection_summary(emis))

    def search_emis(
        self,
        statuses: Union[EMIStatus, str, Iterable[Union[EMIStatus, str]], None] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        user_ids: Union[str, Iterable[str], None] = None,
        page: int = 1,
        limit: int = 20
    ) -> EMISearch:
        """
        Filter EMIs for the admin listing, latest due date first

        Args:
            statuses: One status or several
            start: Earliest due date, inclusive
            end: Latest due date, inclusive
            user_ids: Borrower ids, as an iterable or a comma-separated string
            page: 1-based page number
            limit: Page size

        Returns:
            EMISearch with the requested page and a summary over all matches

        Raises:
            ValidationError: page or limit below 1, or an unknown status
        """
        if page < 1 or limit < 1:
            raise ValidationError(f"page and limit must be positive, got page={page} limit={limit}")

        filters: Dict[str, Any] = {}
        if statuses is not None:
            if isinstance(statuses, (EMIStatus, str)):
                statuses = [statuses]
            try:
                wanted = [EMIStatus(status).value for status in statuses]
            except ValueError as e:
                raise ValidationError(str(e)) from e
            if wanted:
                filters["status"] = wanted
        if user_ids is not None:
            if isinstance(user_ids, str):
                user_ids = user_ids.split(",")
            ids = [user_id.strip() for user_id in user_ids if user_id and user_id.strip()]
            if ids:
                filters["user_id"] = ids

        def in_range(emi: EMI) -> bool:
            if start is not None and emi.due_date < start:
                return False
            if end is not None and emi.due_date > end:
                return False
            return True

        emis = self.emi_store.find(filters, where=in_range if start or end else None)
        emis.sort(key=lambda emi: (emi.due_date, emi.loan_id, emi.day_number), reverse=True)

        offset = (page - 1) * limit
        return EMISearch(
            page=Page(items=emis[offset:offset + limit], page=page, limit=limit, total=len(emis)),
            summary=collection_summary(emis),
        )

    def portfolio_stats(self) -> PortfolioStats:
        stats = PortfolioStats()

        for emi in self.emi_store.find():
            stats.total_emis += 1
            stats.total_amount += emi.total_amount
            stats.total_penalty += emi.penalty_amount
            if emi.status == EMIStatus.PAID:
                stats.paid_emis += 1
                stats.paid_amount += emi.total_amount
            else:
                stats.pending_amount += emi.total_amount
                if emi.status == EMIStatus.OVERDUE:
                    stats.overdue_emis += 1
                else:
                    stats.pending_emis += 1

        for loan in self.loan_store.find():
            stats.total_loans += 1
            if loan.status == LoanStatus.APPROVED:
                stats.approved_loans += 1
            elif loan.status == LoanStatus.PENDING:
                stats.pending_loans += 1
            if loan.status in (LoanStatus.APPROVED, LoanStatus.COMPLETED):
                stats.total_disbursed += loan.amount

        return stats
