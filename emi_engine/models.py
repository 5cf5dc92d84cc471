"""
Loan and EMI Models

A loan is repaid through one EMI per day. All amounts are whole currency
units (int); due dates are calendar days.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application awaiting a decision
    APPROVED = "approved"      # Schedule generated, repayment running
    REJECTED = "rejected"      # Terminal
    COMPLETED = "completed"    # Every EMI paid


class EMIStatus(Enum):
    """Installment lifecycle states"""
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"


UNPAID_STATUSES = (EMIStatus.PENDING.value, EMIStatus.OVERDUE.value)


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer ceiling division (exact for ints, unlike math.ceil on floats)"""
    return -(-numerator // denominator)


def days_overdue(due_date: date, today: date) -> int:
    """
    Whole days between the due date and today.

    An EMI due on day D is not overdue on D itself (0); it is 1 day overdue
    on D+1. Negative for due dates in the future.
    """
    return (today - due_date).days


def penalty_per_day(principal_amount: int) -> int:
    """Daily penalty: half the EMI principal, rounded up"""
    return ceil_div(principal_amount, 2)


def penalty_for(principal_amount: int, days: int) -> int:
    """Total penalty for an EMI that is `days` overdue"""
    if days <= 0:
        return 0
    return penalty_per_day(principal_amount) * days


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Loan(StorageRecord):
    """Borrower's loan with running repayment totals"""
    user_id: str
    amount: int                          # Principal
    total_days: int                      # Number of daily EMIs
    interest_rate: int = 20              # Percent, flat on the principal
    status: LoanStatus = LoanStatus.PENDING
    applicant_name: Optional[str] = None

    start_date: Optional[date] = None    # Due date of day 1
    end_date: Optional[date] = None      # Due date of the last day
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    completed_at: Optional[datetime] = None

    total_paid: int = 0
    remaining_balance: int = 0
    penalty_amount: int = 0              # Sum of the EMIs' penalties

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.APPROVED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['status'] = LoanStatus(data['status'])
        for key in ('start_date', 'end_date'):
            data[key] = _parse_date(data.get(key))
        for key in ('approved_at', 'rejected_at', 'completed_at'):
            data[key] = _parse_datetime(data.get(key))
        return super().from_dict(data)


@dataclass
class EMI(StorageRecord):
    """One day's repayment obligation within a loan"""
    loan_id: str
    user_id: str
    day_number: int
    principal_amount: int
    interest_amount: int
    due_date: date
    penalty_amount: int = 0
    total_amount: int = 0
    status: EMIStatus = EMIStatus.PENDING

    # Payment verification request sub-state
    payment_requested: bool = False
    payment_requested_at: Optional[datetime] = None
    request_canceled: bool = False
    request_canceled_at: Optional[datetime] = None

    paid_at: Optional[datetime] = None
    paid_via_request: bool = False
    payment_reference: Optional[str] = None

    def __post_init__(self):
        if not self.total_amount:
            self.total_amount = self.base_amount + self.penalty_amount

    @staticmethod
    def make_id(loan_id: str, day_number: int) -> str:
        return f"{loan_id}_{day_number}"

    @property
    def base_amount(self) -> int:
        """Principal plus interest, without penalty"""
        return self.principal_amount + self.interest_amount

    @property
    def is_paid(self) -> bool:
        return self.status == EMIStatus.PAID

    def days_overdue(self, today: date) -> int:
        return days_overdue(self.due_date, today)

    def set_penalty(self, penalty: int) -> None:
        """Overwrite the penalty and keep total_amount in step"""
        self.penalty_amount = penalty
        self.total_amount = self.base_amount + penalty

    def day_label(self) -> str:
        return f"Day {self.day_number} ({self.due_date.strftime('%d %b %Y')})"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EMI':
        data = dict(data)
        data['status'] = EMIStatus(data['status'])
        data['due_date'] = _parse_date(data['due_date'])
        for key in ('payment_requested_at', 'request_canceled_at', 'paid_at'):
            data[key] = _parse_datetime(data.get(key))
        return super().from_dict(data)


def schedule_end(start_date: date, total_days: int) -> date:
    return start_date + timedelta(days=total_days - 1)
