"""
Record Stores

LoanStore and EMIStore are the two collaborators the engine works against.
Both sit on a StorageInterface table and convert to and from the models.
"""

from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Any

from .exceptions import NotFoundError
from .models import EMI, EMIStatus, Loan, LoanStatus
from .storage import StorageInterface


class LoanStore:
    """Loan records keyed by loan id"""

    table = "loans"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def get(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID, None if it does not exist"""
        data = self.storage.load(self.table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require(self, loan_id: str) -> Loan:
        loan = self.get(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def save(self, loan: Loan) -> None:
        self.storage.save(self.table, loan.id, loan.to_dict())

    def delete(self, loan_id: str) -> bool:
        return self.storage.delete(self.table, loan_id)

    def find(self, filters: Optional[Dict[str, Any]] = None,
             where: Optional[Callable[[Loan], bool]] = None) -> List[Loan]:
        loans = [Loan.from_dict(data) for data in self.storage.find(self.table, filters or {})]
        if where is not None:
            loans = [loan for loan in loans if where(loan)]
        return loans

    def with_status(self, status: LoanStatus) -> List[Loan]:
        return self.find({"status": status.value})

    def for_user(self, user_id: str) -> List[Loan]:
        loans = self.find({"user_id": user_id})
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def increment_penalty(self, loan_id: str, delta: int, floor: Optional[int] = None) -> int:
        """
        Atomically add delta to the loan's penalty total.

        Deltas from concurrent sweeps commute, so no read-modify-write of the
        whole loan is needed.
        """
        value = self.storage.increment(self.table, loan_id, "penalty_amount", delta, floor=floor)
        if value is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return value

    def record_payment(self, loan_id: str, paid: int, scheduled: int) -> None:
        """Move total_paid up by paid and remaining_balance down by scheduled"""
        with self.storage.atomic():
            if self.storage.increment(self.table, loan_id, "total_paid", paid) is None:
                raise NotFoundError(f"Loan {loan_id} not found")
            self.storage.increment(self.table, loan_id, "remaining_balance", -scheduled)

    def set_penalty(self, loan_id: str, penalty: int, updated_at: Optional[datetime] = None) -> None:
        """Overwrite the penalty total (reconciliation only)"""
        loan = self.require(loan_id)
        loan.penalty_amount = penalty
        if updated_at is not None:
            loan.updated_at = updated_at
        self.save(loan)


class EMIStore:
    """EMI records keyed by '<loan id>_<day number>'"""

    table = "emis"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    @staticmethod
    def _adapt(where: Optional[Callable[[EMI], bool]]):
        if where is None:
            return None
        return lambda data: where(EMI.from_dict(data))

    def bulk_insert(self, emis: Iterable[EMI]) -> None:
        """Persist a batch of EMIs as one unit"""
        self.storage.save_many(self.table, {emi.id: emi.to_dict() for emi in emis})

    def get(self, emi_id: str) -> Optional[EMI]:
        data = self.storage.load(self.table, emi_id)
        if data:
            return EMI.from_dict(data)
        return None

    def require(self, emi_id: str) -> EMI:
        emi = self.get(emi_id)
        if emi is None:
            raise NotFoundError(f"EMI {emi_id} not found")
        return emi

    def save(self, emi: EMI) -> None:
        self.storage.save(self.table, emi.id, emi.to_dict())

    def find(self, filters: Optional[Dict[str, Any]] = None,
             where: Optional[Callable[[EMI], bool]] = None) -> List[EMI]:
        """
        Find EMIs by stored-field equality filters and an optional predicate.

        Filter values use the stored form (enum values, ISO dates); a list
        value matches any member.
        """
        found = self.storage.find(self.table, filters or {}, self._adapt(where))
        return [EMI.from_dict(data) for data in found]

    def count_where(self, filters: Optional[Dict[str, Any]] = None,
                    where: Optional[Callable[[EMI], bool]] = None) -> int:
        return self.storage.count(self.table, filters or {}, self._adapt(where))

    def for_loan(self, loan_id: str) -> List[EMI]:
        """All EMIs of a loan ordered by day number"""
        emis = self.find({"loan_id": loan_id})
        emis.sort(key=lambda emi: emi.day_number)
        return emis

    def unpaid_for_loan(self, loan_id: str) -> int:
        return self.count_where({"loan_id": loan_id}, where=lambda emi: emi.status != EMIStatus.PAID)

    def delete_for_loan(self, loan_id: str) -> int:
        return self.storage.delete_where(self.table, {"loan_id": loan_id})
