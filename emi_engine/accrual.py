"""
Overdue Accrual Engine

Marks unpaid EMIs whose due date has passed as overdue and keeps their
penalty at ceil(principal / 2) per day overdue. Penalties are re-derived from
the due date on every run, so sweeps are idempotent and may overlap; loan
penalty totals move only by atomic deltas.

The correction run is the separate, authoritative path: it repairs EMIs
that drifted (clock changes, manual edits) and re-sums each loan's penalty
total from its EMIs.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Set

from .clock import Clock, SystemClock
from .events import (
    DomainEvent, EventDispatcher, EventPublisherMixin,
    create_emi_event, create_loan_penalty_event
)
from .exceptions import InvalidStateError
from .logging_config import get_logger, log_action, new_correlation_id
from .models import EMI, EMIStatus, UNPAID_STATUSES, penalty_for
from .repositories import EMIStore, LoanStore


logger = get_logger("emi_engine.accrual")


@dataclass
class CorrectionReport:
    """Outcome of a correction run"""
    checked: int = 0
    reset_to_pending: int = 0
    recalculated: int = 0
    loans_reconciled: int = 0
    loan_penalties: Dict[str, int] = field(default_factory=dict)

    @property
    def fixed(self) -> int:
        return self.reset_to_pending + self.recalculated


class OverdueAccrualEngine(EventPublisherMixin):
    """
    Applies overdue status and daily penalties to unpaid EMIs
    """

    def __init__(
        self,
        loan_store: LoanStore,
        emi_store: EMIStore,
        clock: Optional[Clock] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.loan_store = loan_store
        self.emi_store = emi_store
        self.clock = clock or SystemClock()
        self.set_event_dispatcher(dispatcher)

    def process_overdues(self, today: Optional[date] = None) -> int:
        """
        Run one overdue sweep

        Only EMIs due strictly before today are touched: an EMI due on the
        16th becomes overdue on the 17th with one day of penalty.

        Args:
            today: Reference day (defaults to the clock's today)

        Returns:
            Number of EMIs whose status or amounts changed
        """
        today = today or self.clock.today()
        sweep_id = new_correlation_id()
        cutoff = today.isoformat()

        late_emis = self.emi_store.find(
            {"status": list(UNPAID_STATUSES)},
            where=lambda emi: emi.due_date < today
        )

        processed = 0
        for emi in late_emis:
            if self.apply_overdue(emi, today, correlation_id=sweep_id):
                processed += 1

        log_action(
            logger, "info",
            f"Processed {processed} late EMIs. Checked {len(late_emis)} total.",
            action="process_overdues",
            correlation_id=sweep_id,
            extra={"today": cutoff, "checked": len(late_emis), "processed": processed}
        )
        return processed

    def apply_overdue(self, emi: EMI, today: date,
                      correlation_id: Optional[str] = None) -> bool:
        """
        Bring one EMI's overdue status and penalty up to date

        The delta is taken against the stored EMI inside one atomic block,
        so a sweep running alongside this one sees the new penalty and adds
        nothing. A failed save leaves both records untouched and the next
        sweep retries.

        Args:
            emi: Unpaid EMI (modified in place)
            today: Reference day
            correlation_id: Sweep identifier for logs

        Returns:
            True if the EMI changed
        """
        if emi.is_paid or emi.days_overdue(today) <= 0:
            return False
        if self._up_to_date(emi, today):
            return False

        with self.emi_store.storage.atomic():
            current = self.emi_store.get(emi.id)
            if (current is None or current.is_paid or current.days_overdue(today) <= 0
                    or self._up_to_date(current, today)):
                return False

            days = current.days_overdue(today)
            new_penalty = penalty_for(current.principal_amount, days)
            became_overdue = current.status != EMIStatus.OVERDUE
            old_penalty = current.penalty_amount or 0
            delta = new_penalty - old_penalty

            current.status = EMIStatus.OVERDUE
            current.set_penalty(new_penalty)
            current.updated_at = self.clock.now()
            self.emi_store.save(current)
            loan_total = self.loan_store.increment_penalty(current.loan_id, delta) if delta else None

        emi.status = current.status
        emi.set_penalty(new_penalty)
        emi.updated_at = current.updated_at
        new_total = emi.total_amount
        if delta:
            self.publish_event(create_loan_penalty_event(emi.loan_id, delta, loan_total, "accrual"))

        log_action(
            logger, "debug",
            f"{emi.day_label()}: {days} days overdue, penalty {old_penalty} -> {new_penalty}, total {new_total}",
            action="apply_overdue",
            resource=f"emi:{emi.id}",
            correlation_id=correlation_id,
            extra={"loan_id": emi.loan_id, "delta": delta, "loan_penalty": loan_total}
        )
        if became_overdue:
            self.publish_event(create_emi_event(DomainEvent.EMI_OVERDUE, emi, days_overdue=days))
        if delta:
            self.publish_event(create_emi_event(
                DomainEvent.EMI_PENALTY_CHANGED, emi,
                days_overdue=days, old_penalty=old_penalty
            ))
        return True

    @staticmethod
    def _up_to_date(emi: EMI, today: date) -> bool:
        penalty = penalty_for(emi.principal_amount, emi.days_overdue(today))
        return (emi.status == EMIStatus.OVERDUE
                and emi.penalty_amount == penalty
                and emi.total_amount == emi.base_amount + penalty)

    def _move_loan_penalty(self, loan_id: str, delta: int, reason: str,
                           floor: Optional[int] = None) -> None:
        if not delta:
            return
        total = self.loan_store.increment_penalty(loan_id, delta, floor=floor)
        self.publish_event(create_loan_penalty_event(loan_id, delta, total, reason))

    def correct_overdue_state(self, today: Optional[date] = None) -> CorrectionReport:
        """
        Repair drifted EMIs and re-sum loan penalty totals

        EMIs not yet overdue lose any overdue status or penalty; overdue EMIs
        get the exact penalty for their days overdue. Each loan with an unpaid
        EMI then has its penalty total overwritten with the sum over all of
        its EMIs, healing drift the incremental path cannot see.

        Args:
            today: Reference day (defaults to the clock's today)

        Returns:
            CorrectionReport with counts and the reconciled loan totals
        """
        today = today or self.clock.today()
        run_id = new_correlation_id()
        report = CorrectionReport()
        now = self.clock.now()

        unpaid = self.emi_store.find({"status": list(UNPAID_STATUSES)})
        report.checked = len(unpaid)
        affected_loans: Set[str] = set()

        for emi in unpaid:
            affected_loans.add(emi.loan_id)
            days = emi.days_overdue(today)

            if days <= 0:
                if emi.status == EMIStatus.OVERDUE or emi.penalty_amount > 0:
                    old_status, old_penalty = emi.status, emi.penalty_amount
                    emi.status = EMIStatus.PENDING
                    emi.set_penalty(0)
                    emi.updated_at = now
                    self.emi_store.save(emi)
                    report.reset_to_pending += 1
                    log_action(
                        logger, "info",
                        f"RESET {emi.day_label()}: {old_status.value} -> pending, penalty {old_penalty} -> 0",
                        action="correct_overdue_state",
                        resource=f"emi:{emi.id}",
                        correlation_id=run_id
                    )
                    self.publish_event(create_emi_event(
                        DomainEvent.EMI_RESET, emi, old_status=old_status.value, old_penalty=old_penalty
                    ))
                continue

            correct_penalty = penalty_for(emi.principal_amount, days)
            correct_total = emi.base_amount + correct_penalty
            if (emi.status != EMIStatus.OVERDUE
                    or emi.penalty_amount != correct_penalty
                    or emi.total_amount != correct_total):
                old_penalty = emi.penalty_amount
                emi.status = EMIStatus.OVERDUE
                emi.set_penalty(correct_penalty)
                emi.updated_at = now
                self.emi_store.save(emi)
                report.recalculated += 1
                log_action(
                    logger, "info",
                    f"FIX {emi.day_label()}: {days} days overdue, penalty {old_penalty} -> {correct_penalty}",
                    action="correct_overdue_state",
                    resource=f"emi:{emi.id}",
                    correlation_id=run_id
                )
                self.publish_event(create_emi_event(
                    DomainEvent.EMI_PENALTY_CHANGED, emi, days_overdue=days, old_penalty=old_penalty
                ))

        for loan_id in sorted(affected_loans):
            self._reconcile_loan(loan_id, report, run_id)

        log_action(
            logger, "info",
            f"Correction checked {report.checked} unpaid EMIs, reset {report.reset_to_pending}, "
            f"recalculated {report.recalculated}, reconciled {report.loans_reconciled} loans",
            action="correct_overdue_state",
            correlation_id=run_id,
            extra={"today": today.isoformat()}
        )
        return report

    def _reconcile_loan(self, loan_id: str, report: CorrectionReport, run_id: str) -> None:
        loan = self.loan_store.get(loan_id)
        if loan is None:
            logger.warning(f"Loan {loan_id} referenced by unpaid EMIs does not exist")
            return

        correct = sum(emi.penalty_amount for emi in self.emi_store.for_loan(loan_id))
        report.loan_penalties[loan_id] = correct
        if loan.penalty_amount == correct:
            return

        old = loan.penalty_amount
        self.loan_store.set_penalty(loan_id, correct, updated_at=self.clock.now())
        report.loans_reconciled += 1
        log_action(
            logger, "info",
            f"Loan {loan_id}: penalty {old} -> {correct}",
            action="reconcile_loan_penalty",
            resource=f"loan:{loan_id}",
            correlation_id=run_id
        )
        self.publish_event(create_loan_penalty_event(loan_id, correct - old, correct, "reconciliation"))

    def clear_overdue_penalty(self, emi_id: str) -> EMI:
        """
        Waive the penalty of an unpaid EMI

        The status is left as it is, so an EMI can stay overdue with no
        penalty. The loan total drops by the waived amount, never below 0.

        Raises:
            NotFoundError: EMI does not exist
            InvalidStateError: EMI is paid or carries no penalty
        """
        emi = self.emi_store.require(emi_id)
        if emi.is_paid:
            raise InvalidStateError(f"EMI {emi_id} already paid")
        old_penalty = emi.penalty_amount or 0
        if old_penalty <= 0:
            raise InvalidStateError(f"EMI {emi_id} has no overdue charges to clear")

        emi.set_penalty(0)
        emi.updated_at = self.clock.now()
        self.emi_store.save(emi)
        self._move_loan_penalty(emi.loan_id, -old_penalty, reason="waiver", floor=0)

        log_action(
            logger, "info",
            f"Waived penalty {old_penalty} on {emi.day_label()}",
            action="clear_overdue_penalty",
            resource=f"emi:{emi.id}",
            extra={"loan_id": emi.loan_id, "waived": old_penalty}
        )
        self.publish_event(create_emi_event(DomainEvent.EMI_PENALTY_WAIVED, emi, waived=old_penalty))
        return emi

    def overdue_emis(self, user_id: Optional[str] = None) -> List[EMI]:
        """Overdue EMIs, oldest due date first"""
        filters = {"status": EMIStatus.OVERDUE.value}
        if user_id:
            filters["user_id"] = user_id
        emis = self.emi_store.find(filters)
        emis.sort(key=lambda emi: (emi.due_date, emi.day_number))
        return emis
