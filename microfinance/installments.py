"""
Installment Module

Installment records (one per EMI) and the repository the engine persists
them through. Rows are keyed by ``<loan_id>_<emi_no>`` so a schedule is
naturally unique per (loan, emi number).
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .money import ZERO
from .storage import StorageInterface, StorageRecord


class InstallmentStatus(Enum):
    """Installment settlement states. Overdue is derived, never stored."""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentMode(Enum):
    """Accepted payment modes"""
    CASH = "cash"
    ONLINE = "online"
    CHEQUE = "cheque"


@dataclass
class Installment(StorageRecord):
    """One scheduled EMI of a loan"""
    loan_id: str
    emi_no: int
    due_date: date
    amount: Decimal
    balance: Decimal
    paid_amount: Decimal = ZERO
    penalty: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING
    payment_date: Optional[date] = None
    payment_mode: Optional[PaymentMode] = None
    receipt_number: Optional[str] = None
    remarks: Optional[str] = None
    processed_by: Optional[str] = None

    @staticmethod
    def make_id(loan_id: str, emi_no: int) -> str:
        return f"{loan_id}_{emi_no}"

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def is_outstanding(self) -> bool:
        """Pending or partially paid"""
        return self.status != InstallmentStatus.PAID

    def is_overdue(self, today: Optional[date] = None) -> bool:
        """Overdue means still pending after the due date"""
        if today is None:
            today = datetime.now(timezone.utc).date()
        return self.status == InstallmentStatus.PENDING and self.due_date < today

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        data = dict(data)
        for key in ('amount', 'balance', 'paid_amount', 'penalty'):
            if data.get(key) is not None:
                data[key] = Decimal(data[key])
        data['due_date'] = date.fromisoformat(data['due_date'])
        if data.get('payment_date'):
            data['payment_date'] = date.fromisoformat(data['payment_date'])
        data['status'] = InstallmentStatus(data['status'])
        if data.get('payment_mode'):
            data['payment_mode'] = PaymentMode(data['payment_mode'])
        return super().from_dict(data)


class InstallmentRepository:
    """
    Persistence for installments. Multi-row operations run inside
    ``storage.atomic()`` so callers see either the old rows or the new ones.
    """

    def __init__(self, storage: StorageInterface, table: str = "installments"):
        self.storage = storage
        self.table = table

    def find_by_loan_and_emi_no(self, loan_id: str, emi_no: int) -> Optional[Installment]:
        """Get one installment, or None"""
        data = self.storage.load(self.table, Installment.make_id(loan_id, emi_no))
        if data:
            return Installment.from_dict(data)
        return None

    def list_by_loan(self, loan_id: str) -> List[Installment]:
        """All installments of a loan ordered by emi_no"""
        rows = self.storage.find(self.table, {"loan_id": loan_id})
        installments = [Installment.from_dict(data) for data in rows]
        installments.sort(key=lambda i: i.emi_no)
        return installments

    def list_all(self) -> List[Installment]:
        installments = [Installment.from_dict(data) for data in self.storage.load_all(self.table)]
        installments.sort(key=lambda i: (i.loan_id, i.emi_no))
        return installments

    def create_batch(self, installments: List[Installment]) -> None:
        """Insert several installments in one transaction"""
        with self.storage.atomic():
            for installment in installments:
                self.storage.save(self.table, installment.id, installment.to_dict())

    def delete_all_for_loan(self, loan_id: str) -> int:
        """Delete every installment of a loan, returning how many were removed"""
        with self.storage.atomic():
            removed = 0
            for data in self.storage.find(self.table, {"loan_id": loan_id}):
                if self.storage.delete(self.table, data['id']):
                    removed += 1
            return removed

    def replace_schedule(self, loan_id: str, installments: List[Installment]) -> None:
        """
        Swap a loan's schedule for a new one in a single transaction.

        Rows are upserted by (loan_id, emi_no) and rows beyond the new
        schedule's length are removed, so a concurrent reader sees either
        the complete old schedule or the complete new one.
        """
        keep = {installment.id for installment in installments}
        with self.storage.atomic():
            for installment in installments:
                self.storage.save(self.table, installment.id, installment.to_dict())
            for data in self.storage.find(self.table, {"loan_id": loan_id}):
                if data['id'] not in keep:
                    self.storage.delete(self.table, data['id'])

    def update(self, installment: Installment) -> Installment:
        """Persist changes to an installment"""
        installment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table, installment.id, installment.to_dict())
        return installment
