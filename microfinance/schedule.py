"""
Repayment Schedule Module

Builds the amortization schedule of a disbursed loan: one installment per
month for the loan's period, each for the loan's EMI amount.
"""

import calendar
import logging
from datetime import datetime, timezone, date
from typing import List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import NotReadyError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .installments import Installment, InstallmentRepository, InstallmentStatus
from .loans import Loan
from .locks import LoanLockRegistry
from .money import ZERO

logger = logging.getLogger("microfinance.schedule")


def add_months(start_date: date, months: int) -> date:
    """
    Add calendar months, keeping the day of month. When the target month is
    shorter the date is clamped to its last day (Jan 31 + 1 month = Feb 28/29).
    """
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class ScheduleGenerator(EventPublisherMixin):
    """Generates and (re)writes loan repayment schedules"""

    def __init__(
        self,
        repository: InstallmentRepository,
        audit_trail: Optional[AuditTrail] = None,
        locks: Optional[LoanLockRegistry] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.repository = repository
        self.audit_trail = audit_trail
        self.locks = locks or LoanLockRegistry()
        if event_dispatcher is not None:
            self.set_event_dispatcher(event_dispatcher)

    def preview(self, loan: Loan) -> List[Installment]:
        """
        Build the schedule for a loan without saving it

        Raises:
            NotReadyError: If the loan has no approved amount or disbursement date
            ValidationError: If the period or EMI amount is unusable
        """
        if loan.approved_amount is None or loan.disbursed_date is None:
            raise NotReadyError(f"Loan {loan.id} must be approved and disbursed to generate schedule")
        if loan.period is None or loan.period < 1:
            raise ValidationError(f"Loan {loan.id} has invalid period {loan.period}")
        if loan.emi_amount is None or loan.emi_amount <= ZERO:
            raise ValidationError(f"Loan {loan.id} has invalid EMI amount {loan.emi_amount}")

        now = datetime.now(timezone.utc)
        return [
            Installment(
                id=Installment.make_id(loan.id, emi_no),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                emi_no=emi_no,
                due_date=add_months(loan.disbursed_date, emi_no),
                amount=loan.emi_amount,
                balance=loan.emi_amount,
                status=InstallmentStatus.PENDING
            )
            for emi_no in range(1, loan.period + 1)
        ]

    def generate(self, loan: Loan, generated_by: Optional[str] = None) -> List[Installment]:
        """
        Generate the schedule and replace whatever schedule the loan had.

        Any payments recorded against the previous schedule are discarded, so
        this must not run while payments for the loan are being applied; the
        loan lock enforces that within this process.

        Returns:
            Installments ordered by emi_no
        """
        installments = self.preview(loan)

        with self.locks.hold(loan.id):
            previous = len(self.repository.list_by_loan(loan.id))
            self.repository.replace_schedule(loan.id, installments)

        logger.info(
            f"Generated {len(installments)} installments for loan {loan.id} "
            f"(replaced {previous})"
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "installments": len(installments),
                    "replaced": previous,
                    "emi_amount": loan.emi_amount,
                    "first_due_date": installments[0].due_date,
                    "last_due_date": installments[-1].due_date
                },
                user_id=generated_by
            )
        self.publish_event(DomainEvent.SCHEDULE_GENERATED, "loan", loan.id, {
            "installments": len(installments),
            "emi_amount": str(loan.emi_amount)
        })
        return installments
