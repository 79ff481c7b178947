"""
Loan Module

Loan records and their lifecycle (application, approval, disbursement,
completion). The repayment engine only reads a loan's terms and asks for
the transition to COMPLETED, which arrives as an ALL_INSTALLMENTS_SETTLED
event.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import logging

from .audit import AuditTrail, AuditEventType
from .emi import InterestModel, calculate_emi
from .errors import NotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload, EventPublisherMixin
from .money import to_amount
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("microfinance.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application received
    APPROVED = "approved"      # Approved, awaiting disbursement
    REJECTED = "rejected"      # Application declined
    DISBURSED = "disbursed"    # Funds released to the borrower
    ACTIVE = "active"          # In repayment
    COMPLETED = "completed"    # Every installment settled


ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.DISBURSED, LoanStatus.REJECTED},
    LoanStatus.DISBURSED: {LoanStatus.ACTIVE, LoanStatus.COMPLETED},
    LoanStatus.ACTIVE: {LoanStatus.COMPLETED},
    LoanStatus.REJECTED: set(),
    LoanStatus.COMPLETED: set(),
}


@dataclass
class Loan(StorageRecord):
    """Loan with its repayment terms"""
    principal: Decimal
    interest_rate: Decimal              # percentage, e.g. 2 for 2% per month
    period: int                         # number of monthly installments
    emi_amount: Decimal
    status: LoanStatus = LoanStatus.PENDING
    interest_model: InterestModel = InterestModel.FLAT
    approved_amount: Optional[Decimal] = None
    approved_date: Optional[date] = None
    disbursed_date: Optional[date] = None
    completed_date: Optional[date] = None
    customer_id: Optional[str] = None
    borrower_name: Optional[str] = None
    borrower_phone: Optional[str] = None
    borrower_email: Optional[str] = None

    @property
    def is_disbursed(self) -> bool:
        """Check if funds have been released"""
        return self.disbursed_date is not None

    @property
    def is_completed(self) -> bool:
        return self.status == LoanStatus.COMPLETED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        for key in ('principal', 'interest_rate', 'emi_amount', 'approved_amount'):
            if data.get(key) is not None:
                data[key] = Decimal(data[key])
        for key in ('approved_date', 'disbursed_date', 'completed_date'):
            if data.get(key):
                data[key] = date.fromisoformat(data[key])
        data['status'] = LoanStatus(data['status'])
        data['interest_model'] = InterestModel(data['interest_model'])
        return super().from_dict(data)


class LoanManager(EventPublisherMixin):
    """
    Manages loan records from application through completion
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        id_prefix: str = "L"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.id_prefix = id_prefix
        self.loans_table = "loans"

        if event_dispatcher is not None:
            self.set_event_dispatcher(event_dispatcher)
            event_dispatcher.subscribe(
                DomainEvent.ALL_INSTALLMENTS_SETTLED, self.handle_all_installments_settled
            )

    def _next_loan_id(self) -> str:
        """Sequential ids such as L001, L002"""
        sequence = self.storage.count(self.loans_table) + 1
        loan_id = f"{self.id_prefix}{sequence:03d}"
        while self.storage.exists(self.loans_table, loan_id):
            sequence += 1
            loan_id = f"{self.id_prefix}{sequence:03d}"
        return loan_id

    def create_loan(
        self,
        principal: Any,
        interest_rate: Any,
        period: int,
        interest_model: InterestModel = InterestModel.FLAT,
        customer_id: Optional[str] = None,
        borrower_name: Optional[str] = None,
        borrower_phone: Optional[str] = None,
        borrower_email: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Loan:
        """
        Record a loan application with its EMI

        Args:
            principal: Requested amount
            interest_rate: Rate in percent (per month for FLAT, per year for REDUCING_BALANCE)
            period: Number of monthly installments
            interest_model: How interest is charged

        Returns:
            Created Loan in PENDING status
        """
        emi = calculate_emi(principal, interest_rate, period, interest_model)
        now = datetime.now(timezone.utc)

        loan = Loan(
            id=self._next_loan_id(),
            created_at=now,
            updated_at=now,
            principal=to_amount(principal, "principal"),
            interest_rate=to_amount(interest_rate, "interest_rate"),
            period=period,
            emi_amount=emi.emi,
            interest_model=interest_model,
            customer_id=customer_id,
            borrower_name=borrower_name,
            borrower_phone=borrower_phone,
            borrower_email=borrower_email
        )
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "principal": loan.principal,
                "interest_rate": loan.interest_rate,
                "period": loan.period,
                "emi_amount": loan.emi_amount,
                "interest_model": interest_model.value
            },
            user_id=created_by
        )
        logger.info(f"Loan {loan.id} created: principal={loan.principal} emi={loan.emi_amount}")
        return loan

    def approve_loan(self, loan_id: str, approved_amount: Any = None,
                     approved_by: Optional[str] = None) -> Loan:
        """
        Approve a pending loan. When the approved amount differs from the
        request, the EMI is recalculated on the approved amount.
        """
        loan = self.require_loan(loan_id)
        self._transition(loan, LoanStatus.APPROVED)

        amount = to_amount(approved_amount, "approved_amount") if approved_amount is not None else loan.principal
        if amount != loan.principal:
            loan.emi_amount = calculate_emi(
                amount, loan.interest_rate, loan.period, loan.interest_model
            ).emi
        loan.approved_amount = amount
        loan.approved_date = datetime.now(timezone.utc).date()
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPROVED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"approved_amount": amount, "emi_amount": loan.emi_amount},
            user_id=approved_by
        )
        return loan

    def reject_loan(self, loan_id: str, reason: Optional[str] = None,
                    rejected_by: Optional[str] = None) -> Loan:
        """Reject a pending or approved loan"""
        loan = self.require_loan(loan_id)
        self._transition(loan, LoanStatus.REJECTED)
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_REJECTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"reason": reason},
            user_id=rejected_by
        )
        return loan

    def disburse_loan(self, loan_id: str, disbursed_date: Optional[date] = None,
                      disbursed_by: Optional[str] = None) -> Loan:
        """Release funds for an approved loan"""
        loan = self.require_loan(loan_id)
        self._transition(loan, LoanStatus.DISBURSED)
        loan.disbursed_date = disbursed_date or datetime.now(timezone.utc).date()
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DISBURSED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"disbursed_date": loan.disbursed_date, "amount": loan.approved_amount},
            user_id=disbursed_by
        )
        self.publish_event(DomainEvent.LOAN_DISBURSED, "loan", loan.id, {
            "disbursed_date": loan.disbursed_date.isoformat(),
            "amount": str(loan.approved_amount)
        })
        return loan

    def mark_completed(self, loan_id: str) -> Loan:
        """Close a loan whose installments are all paid. Completing twice is a no-op."""
        loan = self.require_loan(loan_id)
        if loan.is_completed:
            return loan

        self._transition(loan, LoanStatus.COMPLETED)
        loan.completed_date = datetime.now(timezone.utc).date()
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_COMPLETED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"completed_date": loan.completed_date}
        )
        self.publish_event(DomainEvent.LOAN_COMPLETED, "loan", loan.id, {
            "completed_date": loan.completed_date.isoformat()
        })
        logger.info(f"Loan {loan.id} completed")
        return loan

    def handle_all_installments_settled(self, event: EventPayload) -> None:
        """Event handler: every installment of the loan is paid"""
        self.mark_completed(event.entity_id)

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return Loan.from_dict(loan_dict)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        """Get loan by ID or raise NotFoundError"""
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        """All loans, optionally filtered by status"""
        filters = {"status": status.value} if status else {}
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.id)
        return loans

    def _transition(self, loan: Loan, new_status: LoanStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[loan.status]:
            raise ValidationError(
                f"Loan {loan.id} cannot move from {loan.status.value} to {new_status.value}"
            )
        loan.status = new_status
        loan.updated_at = datetime.now(timezone.utc)

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
