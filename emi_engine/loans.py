"""
Loan Lifecycle Module

Application, approval (with schedule generation), rejection and deletion of
loans. Approval is the only way EMIs come into existence.
"""

from typing import List, Optional
import uuid

from .clock import Clock, SystemClock
from .config import EMIEngineConfig
from .events import DomainEvent, EventDispatcher, EventPublisherMixin, create_loan_event
from .exceptions import InvalidStateError
from .logging_config import get_logger, log_action
from .models import Loan, LoanStatus
from .repositories import EMIStore, LoanStore
from .schedule import DEFAULT_INTEREST_RATE, ScheduleGenerator, daily_split
from .schemas import LoanApplication, LoanApproval, describe, parse


logger = get_logger("emi_engine.loans")


class LoanService(EventPublisherMixin):
    """
    Loan manager for the daily-installment product
    """

    def __init__(
        self,
        loan_store: LoanStore,
        emi_store: EMIStore,
        clock: Optional[Clock] = None,
        interest_rate: float = DEFAULT_INTEREST_RATE,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[EMIEngineConfig] = None
    ):
        self.loan_store = loan_store
        self.emi_store = emi_store
        self.clock = clock or SystemClock()
        self.interest_rate = interest_rate
        self.config = config  # Product limits; None reads the global configuration
        self.set_event_dispatcher(dispatcher)
        self.generator = ScheduleGenerator(
            loan_store, emi_store, self.clock,
            interest_rate=interest_rate, dispatcher=dispatcher
        )

    def apply(
        self,
        user_id: str,
        amount: int,
        total_days: int,
        applicant_name: Optional[str] = None
    ) -> Loan:
        """
        Create a pending loan application

        Args:
            user_id: Borrower
            amount: Requested principal
            total_days: Requested number of daily installments
            applicant_name: Display name, not used in any calculation

        Returns:
            Created Loan in pending status

        Raises:
            ValidationError: amount or total_days outside the product limits
        """
        application = parse(
            LoanApplication, config=self.config, user_id=user_id, amount=amount,
            total_days=total_days, applicant_name=applicant_name
        )
        now = self.clock.now()

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=application.user_id,
            amount=application.amount,
            total_days=application.total_days,
            interest_rate=self._rate_percent(),
            applicant_name=application.applicant_name,
        )
        self.loan_store.save(loan)

        log_action(
            logger, "info",
            f"Loan application {loan.id} for {loan.amount} over {loan.total_days} days",
            action="apply",
            resource=f"loan:{loan.id}",
            extra=describe(application)
        )
        self.publish_event(create_loan_event(DomainEvent.LOAN_APPLIED, loan))
        return loan

    def approve(
        self,
        loan_id: str,
        amount: Optional[int] = None,
        total_days: Optional[int] = None
    ) -> Loan:
        """
        Approve a pending loan and generate its EMI schedule

        Args:
            loan_id: Loan to approve
            amount: Admin override of the principal
            total_days: Admin override of the installment count

        Returns:
            Approved Loan with start_date, end_date and remaining_balance set

        Raises:
            NotFoundError: Loan does not exist
            InvalidStateError: Loan is not pending
            ValidationError: Override outside the product limits
        """
        loan = self.loan_store.require(loan_id)
        if loan.status != LoanStatus.PENDING:
            raise InvalidStateError(f"Loan {loan_id} is {loan.status.value}, only pending loans can be approved")

        overrides = parse(LoanApproval, config=self.config, amount=amount, total_days=total_days)
        if overrides.amount is not None:
            loan.amount = overrides.amount
        if overrides.total_days is not None:
            loan.total_days = overrides.total_days

        daily_principal, daily_interest = daily_split(loan.amount, loan.total_days, self.interest_rate)
        loan.status = LoanStatus.APPROVED
        loan.interest_rate = self._rate_percent()
        loan.total_paid = 0
        loan.penalty_amount = 0
        loan.remaining_balance = (daily_principal + daily_interest) * loan.total_days

        # Persists the loan together with its schedule
        self.generator.generate(loan)

        log_action(
            logger, "info",
            f"Approved loan {loan.id}: {loan.amount} over {loan.total_days} days, "
            f"first EMI due {loan.start_date.isoformat()}",
            action="approve",
            resource=f"loan:{loan.id}",
            extra=describe(overrides) or None
        )
        self.publish_event(create_loan_event(
            DomainEvent.LOAN_APPROVED, loan,
            start_date=loan.start_date.isoformat(),
            end_date=loan.end_date.isoformat(),
        ))
        return loan

    def reject(self, loan_id: str, reason: Optional[str] = None) -> Loan:
        """Reject a pending loan (terminal)"""
        loan = self.loan_store.require(loan_id)
        if loan.status != LoanStatus.PENDING:
            raise InvalidStateError(f"Loan {loan_id} is {loan.status.value}, only pending loans can be rejected")

        now = self.clock.now()
        loan.status = LoanStatus.REJECTED
        loan.rejected_at = now
        loan.rejection_reason = reason
        loan.updated_at = now
        self.loan_store.save(loan)

        log_action(
            logger, "info", f"Rejected loan {loan.id}",
            action="reject", resource=f"loan:{loan.id}",
            extra={"reason": reason} if reason else None
        )
        self.publish_event(create_loan_event(DomainEvent.LOAN_REJECTED, loan, reason=reason))
        return loan

    def delete(self, loan_id: str) -> int:
        """
        Delete a loan and all of its EMIs

        Returns:
            Number of EMIs removed
        """
        loan = self.loan_store.require(loan_id)
        with self.loan_store.storage.atomic():
            removed = self.emi_store.delete_for_loan(loan_id)
            self.loan_store.delete(loan_id)

        log_action(
            logger, "info", f"Deleted loan {loan_id} and {removed} EMIs",
            action="delete", resource=f"loan:{loan_id}"
        )
        self.publish_event(create_loan_event(DomainEvent.LOAN_DELETED, loan, emis_removed=removed))
        return removed

    def get(self, loan_id: str) -> Optional[Loan]:
        return self.loan_store.get(loan_id)

    def user_loans(self, user_id: str) -> List[Loan]:
        """Loans of one borrower, newest first"""
        return self.loan_store.for_user(user_id)

    def loans_with_status(self, status: LoanStatus) -> List[Loan]:
        loans = self.loan_store.with_status(status)
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def _rate_percent(self) -> int:
        return int(round(self.interest_rate * 100))
