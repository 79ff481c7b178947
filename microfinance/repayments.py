"""
Repayment Module

Applies payments to installments. ``RepaymentStateMachine`` owns the
lifecycle of a single installment (pending -> partial -> paid) and
``RepaymentManager`` wraps it with persistence, per-loan locking, penalty
derivation, loan completion and receipt notifications. The manager also
serves the read paths used by collection staff (schedule, overdue list,
daily due list, outstanding balance).
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone, date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .errors import AlreadyPaidError, AmountExceedsBalanceError, NotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload, EventPublisherMixin
from .installments import Installment, InstallmentRepository, InstallmentStatus, PaymentMode
from .loans import Loan, LoanManager
from .locks import LoanLockRegistry
from .money import ZERO, to_amount, format_amount
from .notifications import NotificationChannel, NotificationService, NotificationType
from .penalties import PenaltySettings, PenaltySettingsProvider, calculate_penalty, days_overdue

logger = logging.getLogger("microfinance.repayments")


def _parse_payment_mode(value: Union[PaymentMode, str, None]) -> PaymentMode:
    if isinstance(value, PaymentMode):
        return value
    try:
        return PaymentMode(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(mode.value for mode in PaymentMode)
        raise ValidationError(f"Invalid payment mode {value!r}, expected one of: {allowed}")


def _parse_payment_date(value: Union[date, datetime, str, None]) -> date:
    if value is None or value == "":
        raise ValidationError("Payment date is required")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Payment date must be an ISO date, got {value!r}")


class ReceiptNumberGenerator:
    """
    Issues receipt numbers of the form ``<prefix>-<epoch ms>-<emi_no>``.
    The millisecond part never repeats within a process, so numbers issued
    for the same EMI number in one batch stay distinct.
    """

    def __init__(self, prefix: str = "RCP"):
        self.prefix = prefix
        self._last_ms = 0
        self._lock = threading.Lock()

    def next(self, emi_no: int) -> str:
        with self._lock:
            ms = max(int(time.time() * 1000), self._last_ms + 1)
            self._last_ms = ms
        return f"{self.prefix}-{ms}-{emi_no}"


class RepaymentStateMachine:
    """State transitions for one installment"""

    def __init__(self, enforce_amount_ceiling: bool = True, receipt_prefix: str = "RCP"):
        self.enforce_amount_ceiling = enforce_amount_ceiling
        self.receipts = ReceiptNumberGenerator(receipt_prefix)

    def apply_payment(
        self,
        installment: Installment,
        amount: Any,
        payment_date: Union[date, str],
        payment_mode: Union[PaymentMode, str],
        remarks: Optional[str] = None,
        receipt_number: Optional[str] = None,
        current_penalty: Decimal = ZERO
    ) -> Installment:
        """
        Record a payment on an installment, mutating it in place.

        ``amount`` is the total paid so far, not an increment: resubmitting
        the full EMI after a partial payment settles the installment.

        Raises:
            AlreadyPaidError: If the installment is already paid
            ValidationError: If amount, mode or date is missing or malformed
            AmountExceedsBalanceError: If the ceiling is enforced and the
                amount is above the EMI plus the current penalty
        """
        if installment.status == InstallmentStatus.PAID:
            raise AlreadyPaidError(
                f"Installment {installment.emi_no} of loan {installment.loan_id} is already paid"
            )

        paid = to_amount(amount, "amount")
        if paid <= ZERO:
            raise ValidationError("Payment amount must be greater than zero")
        mode = _parse_payment_mode(payment_mode)
        paid_on = _parse_payment_date(payment_date)
        penalty = to_amount(current_penalty, "penalty") if current_penalty else ZERO

        if self.enforce_amount_ceiling and paid > installment.amount + penalty:
            raise AmountExceedsBalanceError(
                f"Payment {paid} exceeds installment amount {installment.amount} "
                f"plus penalty {penalty}"
            )

        installment.paid_amount = paid
        installment.balance = max(ZERO, installment.amount - paid)
        installment.status = InstallmentStatus.PAID if paid >= installment.amount else InstallmentStatus.PARTIAL
        installment.payment_date = paid_on
        installment.payment_mode = mode
        installment.remarks = remarks
        installment.penalty = penalty

        if receipt_number:
            installment.receipt_number = receipt_number
        elif installment.status == InstallmentStatus.PAID and not installment.receipt_number:
            installment.receipt_number = self.receipts.next(installment.emi_no)

        return installment


@dataclass
class OverdueInstallment:
    """Overdue installment with the penalty accrued as of the report day"""
    installment: Installment
    days_overdue: int
    penalty: Decimal


@dataclass
class DueInstallment:
    """Installment due on a given day, as shown on the daily collection sheet"""
    installment: Installment
    is_overdue: bool
    days_overdue: int
    next_due_date: Optional[date]


class RepaymentManager(EventPublisherMixin):
    """
    Applies payments through the state machine and keeps loans consistent
    with their installments.
    """

    def __init__(
        self,
        repository: InstallmentRepository,
        loan_manager: LoanManager,
        penalty_provider: PenaltySettingsProvider,
        locks: Optional[LoanLockRegistry] = None,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        notification_service: Optional[NotificationService] = None,
        state_machine: Optional[RepaymentStateMachine] = None,
        notify_on_payment_received: bool = True,
        sms_enabled: bool = False
    ):
        self.repository = repository
        self.loan_manager = loan_manager
        self.penalty_provider = penalty_provider
        self.locks = locks or LoanLockRegistry()
        self.audit_trail = audit_trail
        self.notification_service = notification_service
        self.state_machine = state_machine or RepaymentStateMachine()
        self.notify_on_payment_received = notify_on_payment_received
        self.sms_enabled = sms_enabled
        if event_dispatcher is not None:
            self.set_event_dispatcher(event_dispatcher)
            event_dispatcher.subscribe(DomainEvent.LOAN_COMPLETED, self.handle_loan_completed)

    def apply_payment(
        self,
        loan_id: str,
        emi_no: int,
        amount: Any,
        payment_date: Union[date, str],
        payment_mode: Union[PaymentMode, str],
        remarks: Optional[str] = None,
        receipt_number: Optional[str] = None,
        processed_by: Optional[str] = None
    ) -> Installment:
        """
        Apply a payment to installment ``emi_no`` of a loan.

        The update and the "is every installment paid?" check run under the
        loan's lock, so two payments on the same loan cannot both miss the
        completion.

        Raises:
            NotFoundError: If the installment does not exist
            plus any error raised by RepaymentStateMachine.apply_payment
        """
        with self.locks.hold(loan_id):
            with self.repository.storage.atomic():
                installment = self.repository.find_by_loan_and_emi_no(loan_id, emi_no)
                if installment is None:
                    raise NotFoundError(f"Installment {emi_no} of loan {loan_id} not found")
                if installment.is_paid:
                    raise AlreadyPaidError(f"Installment {emi_no} of loan {loan_id} is already paid")

                paid_on = _parse_payment_date(payment_date)
                penalty = self.current_penalty(installment, paid_on)

                self.state_machine.apply_payment(
                    installment, amount, paid_on, payment_mode,
                    remarks=remarks, receipt_number=receipt_number, current_penalty=penalty
                )
                installment.processed_by = processed_by
                self.repository.update(installment)

                settled = installment.is_paid and all(
                    i.is_paid for i in self.repository.list_by_loan(loan_id)
                )

            event_type = DomainEvent.INSTALLMENT_PAID if installment.is_paid else DomainEvent.INSTALLMENT_PARTIAL
            self.publish_event(event_type, "installment", installment.id, {
                "loan_id": loan_id,
                "emi_no": emi_no,
                "paid_amount": str(installment.paid_amount),
                "balance": str(installment.balance)
            })
            if settled:
                self.publish_event(DomainEvent.ALL_INSTALLMENTS_SETTLED, "loan", loan_id, {
                    "last_emi_no": emi_no
                })

        logger.info(
            f"Payment applied: loan={loan_id} emi={emi_no} paid={installment.paid_amount} "
            f"status={installment.status.value}"
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_APPLIED,
                entity_type="installment",
                entity_id=installment.id,
                metadata={
                    "loan_id": loan_id,
                    "emi_no": emi_no,
                    "paid_amount": installment.paid_amount,
                    "balance": installment.balance,
                    "penalty": installment.penalty,
                    "status": installment.status.value,
                    "payment_mode": installment.payment_mode.value,
                    "receipt_number": installment.receipt_number
                },
                user_id=processed_by
            )

        self._send_receipt(installment)
        return installment

    def current_penalty(self, installment: Installment, as_of: date,
                        settings: Optional[PenaltySettings] = None) -> Decimal:
        """Penalty accrued on an installment as of a day"""
        settings = settings or self.penalty_provider.get_settings(as_of)
        return calculate_penalty(installment.amount, days_overdue(installment.due_date, as_of), settings)

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """All installments of a loan ordered by emi_no"""
        return self.repository.list_by_loan(loan_id)

    def get_outstanding_balance(self, loan_id: str) -> Decimal:
        """Sum of balances still owed on the loan"""
        return sum(
            (i.balance for i in self.repository.list_by_loan(loan_id) if i.is_outstanding),
            ZERO
        )

    def get_overdue_installments(
        self,
        today: Optional[date] = None,
        settings: Optional[PenaltySettings] = None,
        include_partial: bool = False
    ) -> List[OverdueInstallment]:
        """
        Installments past their due date, oldest first.

        Only pending installments count as overdue unless ``include_partial``
        is set, in which case partially paid ones are listed as well.
        """
        if today is None:
            today = datetime.now(timezone.utc).date()
        settings = settings or self.penalty_provider.get_settings(today)

        overdue = []
        for installment in self.repository.list_all():
            if installment.is_paid or installment.due_date >= today:
                continue
            if installment.status == InstallmentStatus.PARTIAL and not include_partial:
                continue
            days = days_overdue(installment.due_date, today)
            overdue.append(OverdueInstallment(
                installment=installment,
                days_overdue=days,
                penalty=calculate_penalty(installment.amount, days, settings)
            ))
        overdue.sort(key=lambda o: (o.installment.due_date, o.installment.loan_id, o.installment.emi_no))
        return overdue

    def get_installments_due_on(self, day: date, today: Optional[date] = None) -> List[DueInstallment]:
        """Installments due on ``day`` with their overdue state as of ``today``"""
        if today is None:
            today = datetime.now(timezone.utc).date()

        due = []
        for installment in self.repository.list_all():
            if installment.due_date != day:
                continue
            is_overdue = installment.is_outstanding and installment.due_date < today
            following = self.repository.find_by_loan_and_emi_no(installment.loan_id, installment.emi_no + 1)
            due.append(DueInstallment(
                installment=installment,
                is_overdue=is_overdue,
                days_overdue=days_overdue(installment.due_date, today) if is_overdue else 0,
                next_due_date=following.due_date if following else None
            ))
        return due

    def send_overdue_reminders(self, today: Optional[date] = None) -> int:
        """
        Queue an overdue reminder for every overdue installment whose
        borrower can be reached. Returns the number of reminders queued.
        """
        if self.notification_service is None:
            return 0
        if today is None:
            today = datetime.now(timezone.utc).date()

        queued = 0
        for overdue in self.get_overdue_installments(today, include_partial=True):
            installment = overdue.installment
            loan = self.loan_manager.get_loan(installment.loan_id)
            if loan is None:
                continue
            if self._notify_borrower(loan, NotificationType.PAYMENT_OVERDUE, {
                "name": loan.borrower_name or "Customer",
                "loan_id": loan.id,
                "emi_no": installment.emi_no,
                "due_date": installment.due_date.isoformat(),
                "days_overdue": overdue.days_overdue,
                "penalty": format_amount(overdue.penalty)
            }):
                queued += 1
        logger.info(f"Queued {queued} overdue reminders for {today}")
        return queued

    def handle_loan_completed(self, event: EventPayload) -> None:
        """Event handler: tell the borrower their loan is closed"""
        if self.notification_service is None:
            return
        loan = self.loan_manager.get_loan(event.entity_id)
        if loan is None:
            return
        self._notify_borrower(loan, NotificationType.LOAN_COMPLETED, {
            "name": loan.borrower_name or "Customer",
            "loan_id": loan.id
        })

    def _send_receipt(self, installment: Installment) -> None:
        if self.notification_service is None or not self.notify_on_payment_received:
            return

        loan = self.loan_manager.get_loan(installment.loan_id)
        if loan is None:
            return

        self._notify_borrower(loan, NotificationType.PAYMENT_RECEIVED, {
            "name": loan.borrower_name or "Customer",
            "amount": format_amount(installment.paid_amount),
            "date": installment.payment_date.isoformat(),
            "balance": format_amount(self.get_outstanding_balance(loan.id)),
            "receipt_number": installment.receipt_number or "-",
            "loan_id": loan.id,
            "emi_no": installment.emi_no
        })

    def _notify_borrower(self, loan: Loan, notification_type: NotificationType,
                         data: Dict[str, Any]) -> bool:
        """Queue a notification on every channel the borrower can be reached on"""
        targets = []
        if self.sms_enabled and loan.borrower_phone:
            targets.append((NotificationChannel.SMS, loan.borrower_phone))
        elif loan.borrower_email:
            targets.append((NotificationChannel.EMAIL, loan.borrower_email))
        if NotificationChannel.WEBHOOK in self.notification_service.providers:
            targets.append((NotificationChannel.WEBHOOK, loan.customer_id or loan.id))

        if not targets:
            logger.debug(f"No reachable contact for loan {loan.id}, {notification_type.value} not sent")
            return False

        queued = 0
        for channel, address in targets:
            if self.notification_service.notify(
                notification_type, channel, address, data, recipient_id=loan.customer_id
            ) is not None:
                queued += 1
        return queued > 0
