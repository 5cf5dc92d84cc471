"""
Payment Module

Borrower payment-verification requests and admin payment confirmation.
A paid EMI is terminal; the loan completes once no unpaid EMI remains.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from .accrual import OverdueAccrualEngine
from .clock import Clock, SystemClock
from .events import (
    DomainEvent, EventDispatcher, EventPublisherMixin,
    create_emi_event, create_loan_event
)
from .exceptions import InvalidStateError, ValidationError
from .logging_config import get_logger, log_action
from .models import EMI, EMIStatus, LoanStatus, UNPAID_STATUSES
from .repositories import EMIStore, LoanStore


logger = get_logger("emi_engine.payments")


@dataclass
class Page:
    """One page of a paginated EMI listing"""
    items: List[EMI] = field(default_factory=list)
    page: int = 1
    limit: int = 20
    total: int = 0

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [emi.to_dict() for emi in self.items],
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "pages": self.pages,
        }


class PaymentService(EventPublisherMixin):
    """Payment requests and confirmations for EMIs"""

    def __init__(
        self,
        loan_store: LoanStore,
        emi_store: EMIStore,
        accrual_engine: OverdueAccrualEngine,
        clock: Optional[Clock] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.loan_store = loan_store
        self.emi_store = emi_store
        self.accrual_engine = accrual_engine
        self.clock = clock or SystemClock()
        self.set_event_dispatcher(dispatcher)

    def request_payment(self, emi_id: str) -> EMI:
        """
        Borrower claims to have paid an EMI; an admin verifies later

        Raises:
            NotFoundError: EMI does not exist
            InvalidStateError: EMI is paid or already has an open request
        """
        emi = self.emi_store.require(emi_id)
        if emi.is_paid:
            raise InvalidStateError(f"EMI {emi_id} already paid")
        if emi.payment_requested:
            raise InvalidStateError(f"Payment already requested for EMI {emi_id}")

        now = self.clock.now()
        emi.payment_requested = True
        emi.payment_requested_at = now
        emi.request_canceled = False
        emi.request_canceled_at = None
        emi.updated_at = now
        self.emi_store.save(emi)

        log_action(
            logger, "info", f"Payment requested for {emi.day_label()}",
            action="request_payment", resource=f"emi:{emi.id}",
            extra={"loan_id": emi.loan_id, "user_id": emi.user_id}
        )
        self.publish_event(create_emi_event(DomainEvent.EMI_PAYMENT_REQUESTED, emi))
        return emi

    def cancel_request(self, emi_id: str) -> EMI:
        """
        Withdraw an open payment request

        A late EMI is brought up to date right away rather than waiting
        for the next sweep.

        Raises:
            NotFoundError: EMI does not exist
            InvalidStateError: EMI is paid or has no open request
        """
        emi = self.emi_store.require(emi_id)
        if emi.is_paid:
            raise InvalidStateError(f"EMI {emi_id} already paid")
        if not emi.payment_requested:
            raise InvalidStateError(f"No payment request to cancel for EMI {emi_id}")

        now = self.clock.now()
        today = self.clock.today()
        emi.payment_requested = False
        emi.payment_requested_at = None
        emi.request_canceled = True
        emi.request_canceled_at = now
        emi.updated_at = now
        self.emi_store.save(emi)

        self.publish_event(create_emi_event(DomainEvent.EMI_PAYMENT_REQUEST_CANCELED, emi))

        became_late = False
        if emi.due_date < today:
            became_late = self.accrual_engine.apply_overdue(emi, today)

        log_action(
            logger, "info", f"Payment request canceled for {emi.day_label()}",
            action="cancel_request", resource=f"emi:{emi.id}",
            extra={"status": emi.status.value, "penalty_amount": emi.penalty_amount,
                   "overdue_applied": became_late}
        )
        return emi

    def mark_paid(self, emi_id: str, reference: Optional[str] = None) -> EMI:
        """
        Confirm payment of an EMI

        Penalty already accrued stays on the EMI and counts toward the
        loan's total_paid.

        Args:
            emi_id: EMI being paid
            reference: External payment reference

        Returns:
            The paid EMI

        Raises:
            NotFoundError: EMI or its loan does not exist
            InvalidStateError: EMI already paid
        """
        emi = self.emi_store.require(emi_id)
        if emi.is_paid:
            raise InvalidStateError(f"EMI {emi_id} already paid")

        now = self.clock.now()
        emi.paid_via_request = emi.payment_requested
        emi.status = EMIStatus.PAID
        emi.paid_at = now
        emi.payment_requested = False
        emi.request_canceled = False
        emi.request_canceled_at = None
        emi.payment_reference = reference
        emi.updated_at = now

        with self.emi_store.storage.atomic():
            self.emi_store.save(emi)
            self.loan_store.record_payment(emi.loan_id, emi.total_amount, emi.base_amount)

        log_action(
            logger, "info", f"Marked {emi.day_label()} paid: {emi.total_amount}",
            action="mark_paid", resource=f"emi:{emi.id}",
            extra={"loan_id": emi.loan_id, "penalty_amount": emi.penalty_amount,
                   "via_request": emi.paid_via_request, "reference": reference}
        )
        self.publish_event(create_emi_event(DomainEvent.EMI_PAID, emi, reference=reference))

        self._complete_if_settled(emi.loan_id)
        return emi

    def _complete_if_settled(self, loan_id: str) -> None:
        if self.emi_store.unpaid_for_loan(loan_id) > 0:
            return

        loan = self.loan_store.require(loan_id)
        if loan.status != LoanStatus.APPROVED:
            return

        now = self.clock.now()
        loan.status = LoanStatus.COMPLETED
        loan.completed_at = now
        loan.updated_at = now
        self.loan_store.save(loan)

        log_action(
            logger, "info", f"Loan {loan_id} completed, total paid {loan.total_paid}",
            action="complete_loan", resource=f"loan:{loan_id}"
        )
        self.publish_event(create_loan_event(DomainEvent.LOAN_COMPLETED, loan))

    # Queries

    def pending_for_user(self, user_id: str) -> List[EMI]:
        """Unpaid EMIs of a borrower, earliest due first"""
        emis = self.emi_store.find({"user_id": user_id, "status": list(UNPAID_STATUSES)})
        emis.sort(key=lambda emi: (emi.due_date, emi.loan_id, emi.day_number))
        return emis

    def due_for_user_on(self, user_id: str, day: date) -> List[EMI]:
        emis = self.emi_store.find({"user_id": user_id, "due_date": day.isoformat()})
        emis.sort(key=lambda emi: (emi.loan_id, emi.day_number))
        return emis

    def requested(self, user_id: Optional[str] = None) -> List[EMI]:
        """EMIs with an open payment request, newest request first"""
        filters: Dict[str, Any] = {"payment_requested": True, "status": list(UNPAID_STATUSES)}
        if user_id:
            filters["user_id"] = user_id
        emis = self.emi_store.find(filters)
        emis.sort(key=lambda emi: emi.payment_requested_at or emi.updated_at, reverse=True)
        return emis

    def recently_completed(self, user_id: Optional[str] = None, limit: Optional[int] = None) -> List[EMI]:
        """
        Most recently paid EMIs that went through a payment request

        Payments an admin recorded without a request are left out. The limit
        defaults to 20 for one borrower and 50 across all borrowers.
        """
        if limit is None:
            limit = 20 if user_id else 50
        if limit < 1:
            raise ValidationError(f"limit must be positive, got {limit}")

        filters: Dict[str, Any] = {"status": EMIStatus.PAID.value, "paid_via_request": True}
        if user_id:
            filters["user_id"] = user_id
        emis = self.emi_store.find(filters)
        emis.sort(key=lambda emi: emi.paid_at or emi.updated_at, reverse=True)
        return emis[:limit]

    def loan_emis(
        self,
        loan_id: str,
        status: Optional[EMIStatus] = None,
        page: int = 1,
        limit: int = 20
    ) -> Page:
        """
        Paginated EMIs of a loan ordered by day number

        Raises:
            ValidationError: page or limit below 1
        """
        if page < 1 or limit < 1:
            raise ValidationError(f"page and limit must be positive, got page={page} limit={limit}")

        filters: Dict[str, Any] = {"loan_id": loan_id}
        if status is not None:
            filters["status"] = status.value
        emis = self.emi_store.find(filters)
        emis.sort(key=lambda emi: emi.day_number)

        start = (page - 1) * limit
        return Page(items=emis[start:start + limit], page=page, limit=limit, total=len(emis))
