"""
Schedule Generator

Materializes the daily EMI schedule of an approved loan. Principal and
interest are split evenly with ceiling division, so the schedule collects at
least the loan amount plus interest; the last day is not reconciled and the
rounding surplus (at most total_days - 1 per component) stays with the lender.
"""

from datetime import date, timedelta
from decimal import Decimal, ROUND_CEILING
from typing import List, Optional

from .clock import Clock, SystemClock
from .events import DomainEvent, EventDispatcher, EventPublisherMixin, create_loan_event
from .exceptions import ValidationError
from .logging_config import get_logger, log_action
from .models import EMI, EMIStatus, Loan, ceil_div, schedule_end
from .repositories import EMIStore, LoanStore


logger = get_logger("emi_engine.schedule")

DEFAULT_INTEREST_RATE = 0.20


def daily_split(amount: int, total_days: int, interest_rate: float = DEFAULT_INTEREST_RATE):
    """
    Per-day principal and interest for a loan.

    Args:
        amount: Loan principal
        total_days: Number of daily installments
        interest_rate: Flat rate on the whole principal (0.20 = 20%)

    Returns:
        (daily_principal, daily_interest), both rounded up

    Raises:
        ValidationError: total_days < 1 or amount < 0
    """
    if total_days < 1:
        raise ValidationError(f"total_days must be at least 1, got {total_days}")
    if amount < 0:
        raise ValidationError(f"amount must not be negative, got {amount}")

    # Whole-unit interest; rounding up here first does not change the daily ceiling
    interest = Decimal(amount) * Decimal(str(interest_rate))
    total_interest = int(interest.to_integral_value(rounding=ROUND_CEILING))
    return ceil_div(amount, total_days), ceil_div(total_interest, total_days)


def build_schedule(loan: Loan, start_date: date,
                   interest_rate: float = DEFAULT_INTEREST_RATE,
                   now=None) -> List[EMI]:
    """Build (without persisting) the EMIs of a loan starting on start_date"""
    daily_principal, daily_interest = daily_split(loan.amount, loan.total_days, interest_rate)
    created = now or loan.updated_at

    return [
        EMI(
            id=EMI.make_id(loan.id, day),
            created_at=created,
            updated_at=created,
            loan_id=loan.id,
            user_id=loan.user_id,
            day_number=day,
            principal_amount=daily_principal,
            interest_amount=daily_interest,
            penalty_amount=0,
            total_amount=daily_principal + daily_interest,
            due_date=start_date + timedelta(days=day - 1),
            status=EMIStatus.PENDING,
        )
        for day in range(1, loan.total_days + 1)
    ]


class ScheduleGenerator(EventPublisherMixin):
    """Creates and persists the EMI schedule for a loan being approved"""

    def __init__(
        self,
        loan_store: LoanStore,
        emi_store: EMIStore,
        clock: Optional[Clock] = None,
        interest_rate: float = DEFAULT_INTEREST_RATE,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.loan_store = loan_store
        self.emi_store = emi_store
        self.clock = clock or SystemClock()
        self.interest_rate = interest_rate
        self.set_event_dispatcher(dispatcher)

    def generate(self, loan: Loan) -> List[EMI]:
        """
        Generate EMI schedule for a loan being approved

        The first EMI is due tomorrow, never on the approval day. EMIs and the
        updated loan are written in one atomic block.

        Args:
            loan: Loan whose amount and total_days are final

        Returns:
            EMIs ordered by day number
        """
        now = self.clock.now()
        start_date = self.clock.tomorrow()

        emis = build_schedule(loan, start_date, self.interest_rate, now=now)

        loan.start_date = start_date
        loan.end_date = schedule_end(start_date, loan.total_days)
        loan.approved_at = now
        loan.updated_at = now

        with self.emi_store.storage.atomic():
            self.emi_store.bulk_insert(emis)
            self.loan_store.save(loan)

        log_action(
            logger, "info",
            f"Generated {len(emis)} EMIs for loan {loan.id}",
            action="generate_schedule",
            resource=f"loan:{loan.id}",
            extra={
                "start_date": loan.start_date.isoformat(),
                "end_date": loan.end_date.isoformat(),
                "daily_principal": emis[0].principal_amount,
                "daily_interest": emis[0].interest_amount,
            }
        )
        self.publish_event(create_loan_event(
            DomainEvent.SCHEDULE_GENERATED, loan,
            emi_count=len(emis),
            start_date=loan.start_date.isoformat(),
            end_date=loan.end_date.isoformat(),
        ))
        return emis
