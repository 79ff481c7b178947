"""
Test suite for payment application

Covers the installment state machine (partial/paid transitions, overwrite
semantics, guards), the repayment manager (penalties, persistence, loan
completion under concurrency, rollback) and the collection read paths.
"""

import re
import threading
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

from microfinance.audit import AuditTrail, AuditEventType
from microfinance.errors import (
    AlreadyPaidError, AmountExceedsBalanceError, NotFoundError, ValidationError
)
from microfinance.events import DomainEvent, EventDispatcher
from microfinance.installments import (
    Installment, InstallmentRepository, InstallmentStatus, PaymentMode
)
from microfinance.loans import LoanManager, LoanStatus
from microfinance.locks import LoanLockRegistry
from microfinance.notifications import NotificationChannel, NotificationType
from microfinance.penalties import PenaltySettings, PenaltySettingsProvider, PenaltyType
from microfinance.repayments import (
    RepaymentManager, RepaymentStateMachine, ReceiptNumberGenerator
)
from microfinance.schedule import ScheduleGenerator
from microfinance.storage import InMemoryStorage


def make_installment(amount=Decimal('12000'), emi_no=1, due_date=date(2024, 2, 15)):
    now = datetime.now(timezone.utc)
    return Installment(
        id=Installment.make_id("L001", emi_no),
        created_at=now,
        updated_at=now,
        loan_id="L001",
        emi_no=emi_no,
        due_date=due_date,
        amount=amount,
        balance=amount
    )


class TestReceiptNumberGenerator:
    """Test receipt numbers"""

    def test_format(self):
        """Test the prefix-millis-emi layout"""
        number = ReceiptNumberGenerator("RCP").next(4)
        assert re.fullmatch(r"RCP-\d{13}-4", number)

    def test_unique_within_burst(self):
        """Test that rapid calls for the same EMI number never collide"""
        generator = ReceiptNumberGenerator()
        numbers = [generator.next(1) for _ in range(500)]
        assert len(set(numbers)) == 500


class TestRepaymentStateMachine:
    """Test installment state transitions"""

    def setup_method(self):
        """Set up test fixtures"""
        self.machine = RepaymentStateMachine()

    def test_full_payment(self):
        """Test pending -> paid"""
        installment = make_installment()
        self.machine.apply_payment(installment, 12000, date(2024, 2, 15), "cash", remarks="On time")

        assert installment.status == InstallmentStatus.PAID
        assert installment.paid_amount == Decimal('12000')
        assert installment.balance == Decimal('0')
        assert installment.payment_mode == PaymentMode.CASH
        assert installment.payment_date == date(2024, 2, 15)
        assert installment.remarks == "On time"
        assert installment.receipt_number.startswith("RCP-")

    def test_partial_payment(self):
        """Test pending -> partial without a receipt"""
        installment = make_installment()
        self.machine.apply_payment(installment, 5000, date(2024, 2, 15), PaymentMode.ONLINE)

        assert installment.status == InstallmentStatus.PARTIAL
        assert installment.balance == Decimal('7000')
        assert installment.receipt_number is None

    def test_paid_amount_is_overwritten(self):
        """Test that a second payment replaces the recorded total instead of adding to it"""
        installment = make_installment()
        self.machine.apply_payment(installment, 5000, date(2024, 2, 15), "cash")
        self.machine.apply_payment(installment, 12000, date(2024, 2, 16), "cash")

        assert installment.paid_amount == Decimal('12000')
        assert installment.status == InstallmentStatus.PAID

    def test_correction_downwards(self):
        """Test resubmitting a smaller total after a partial payment"""
        installment = make_installment()
        self.machine.apply_payment(installment, 5000, date(2024, 2, 15), "cash")
        self.machine.apply_payment(installment, 3000, date(2024, 2, 15), "cash")

        assert installment.paid_amount == Decimal('3000')
        assert installment.balance == Decimal('9000')
        assert installment.status == InstallmentStatus.PARTIAL

    def test_already_paid(self):
        """Test that a paid installment is terminal"""
        installment = make_installment()
        self.machine.apply_payment(installment, 12000, date(2024, 2, 15), "cash")
        receipt = installment.receipt_number

        with pytest.raises(AlreadyPaidError):
            self.machine.apply_payment(installment, 12000, date(2024, 2, 16), "cash")
        assert installment.receipt_number == receipt

    @pytest.mark.parametrize("amount", [0, -100, None, "ten"])
    def test_invalid_amount(self, amount):
        """Test that the amount must be a positive number"""
        with pytest.raises(ValidationError):
            self.machine.apply_payment(make_installment(), amount, date(2024, 2, 15), "cash")

    @pytest.mark.parametrize("mode", ["card", "", None])
    def test_invalid_mode(self, mode):
        """Test that only cash, online and cheque are accepted"""
        with pytest.raises(ValidationError):
            self.machine.apply_payment(make_installment(), 1000, date(2024, 2, 15), mode)

    def test_mode_case_insensitive(self):
        """Test mode normalisation"""
        installment = make_installment()
        self.machine.apply_payment(installment, 1000, date(2024, 2, 15), " Cheque ")
        assert installment.payment_mode == PaymentMode.CHEQUE

    @pytest.mark.parametrize("payment_date", [None, "", "15/02/2024"])
    def test_invalid_date(self, payment_date):
        """Test that a payment date is required"""
        with pytest.raises(ValidationError):
            self.machine.apply_payment(make_installment(), 1000, payment_date, "cash")

    def test_iso_date_string(self):
        """Test a payment date given as an ISO string"""
        installment = make_installment()
        self.machine.apply_payment(installment, 1000, "2024-02-15", "cash")
        assert installment.payment_date == date(2024, 2, 15)

    def test_failed_guard_leaves_installment_untouched(self):
        """Test that a rejected payment mutates nothing"""
        installment = make_installment()
        with pytest.raises(ValidationError):
            self.machine.apply_payment(installment, 5000, date(2024, 2, 15), "card")

        assert installment.status == InstallmentStatus.PENDING
        assert installment.paid_amount == Decimal('0')
        assert installment.balance == Decimal('12000')

    def test_ceiling(self):
        """Test rejection of amounts above EMI plus penalty"""
        with pytest.raises(AmountExceedsBalanceError):
            self.machine.apply_payment(make_installment(), 12001, date(2024, 2, 15), "cash")

    def test_ceiling_includes_penalty(self):
        """Test that the current penalty raises the ceiling"""
        installment = make_installment()
        self.machine.apply_payment(
            installment, 13200, date(2024, 2, 20), "cash", current_penalty=Decimal('1200')
        )

        assert installment.status == InstallmentStatus.PAID
        assert installment.balance == Decimal('0')
        assert installment.penalty == Decimal('1200')

    def test_ceiling_disabled(self):
        """Test that overpayment is allowed when the ceiling is off, with balance floored at zero"""
        machine = RepaymentStateMachine(enforce_amount_ceiling=False)
        installment = make_installment()
        machine.apply_payment(installment, 20000, date(2024, 2, 15), "cash")

        assert installment.status == InstallmentStatus.PAID
        assert installment.balance == Decimal('0')

    def test_supplied_receipt_number_kept(self):
        """Test that a caller supplied receipt number is used"""
        installment = make_installment()
        self.machine.apply_payment(installment, 12000, date(2024, 2, 15), "cash", receipt_number="R-77")
        assert installment.receipt_number == "R-77"

    def test_balance_never_negative(self):
        """Test the balance floor over a range of amounts"""
        machine = RepaymentStateMachine(enforce_amount_ceiling=False)
        for amount in (1, 11999, 12000, 12001, 50000):
            installment = make_installment()
            machine.apply_payment(installment, amount, date(2024, 2, 15), "cash")
            assert installment.balance >= Decimal('0')
            assert installment.balance == max(Decimal('0'), installment.amount - Decimal(amount))


class TestRepaymentManager:
    """Test payment application against stored installments"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.locks = LoanLockRegistry()
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.dispatcher)
        self.repository = InstallmentRepository(self.storage)
        self.generator = ScheduleGenerator(self.repository, self.audit_trail, self.locks, self.dispatcher)
        self.penalty_provider = PenaltySettingsProvider(self.storage)
        self.notifications = MagicMock()
        self.manager = RepaymentManager(
            self.repository,
            self.loan_manager,
            self.penalty_provider,
            locks=self.locks,
            audit_trail=self.audit_trail,
            event_dispatcher=self.dispatcher,
            notification_service=self.notifications
        )
        self.loan = self._disbursed_loan(period=3)

    def _disbursed_loan(self, period, **borrower):
        # Interest free, so the three-month loan has an EMI of 12000
        loan = self.loan_manager.create_loan(36000, 0, period, **borrower)
        self.loan_manager.approve_loan(loan.id)
        loan = self.loan_manager.disburse_loan(loan.id, date(2024, 1, 15))
        self.generator.generate(loan)
        return loan

    def test_on_time_payment(self):
        """Test a full payment on the due date"""
        installment = self.manager.apply_payment(
            self.loan.id, 1, self.loan.emi_amount, date(2024, 2, 15), "cash", processed_by="officer"
        )

        stored = self.repository.find_by_loan_and_emi_no(self.loan.id, 1)
        assert stored.status == InstallmentStatus.PAID
        assert stored.penalty == Decimal('0')
        assert stored.processed_by == "officer"
        assert stored.receipt_number == installment.receipt_number

    def test_unknown_installment(self):
        """Test payments against missing loans or EMI numbers"""
        with pytest.raises(NotFoundError):
            self.manager.apply_payment(self.loan.id, 4, 1000, date(2024, 2, 15), "cash")
        with pytest.raises(NotFoundError):
            self.manager.apply_payment("L999", 1, 1000, date(2024, 2, 15), "cash")

    def test_late_payment_records_penalty(self):
        """Test that a late payment records the penalty in force on the payment date"""
        installment = self.manager.apply_payment(
            self.loan.id, 1, 13200, date(2024, 2, 20), "cash"
        )

        assert installment.penalty == Decimal('1200')
        assert installment.status == InstallmentStatus.PAID

    def test_penalty_settings_by_payment_date(self):
        """Test that stored penalty settings are resolved for the payment date"""
        self.penalty_provider.set_settings(PenaltySettings(
            penalty_rate=1, penalty_type=PenaltyType.FIXED_TOTAL, effective_from=date(2024, 2, 1)
        ))

        installment = self.manager.apply_payment(self.loan.id, 1, 5000, date(2024, 2, 25), "cash")
        assert installment.penalty == Decimal('120')

    def test_ceiling_uses_current_penalty(self):
        """Test the ceiling against the penalty accrued at payment time"""
        with pytest.raises(AmountExceedsBalanceError):
            self.manager.apply_payment(self.loan.id, 1, 13201, date(2024, 2, 20), "cash")

    def test_already_paid(self):
        """Test that re-applying a payment fails"""
        self.manager.apply_payment(self.loan.id, 1, 12000, date(2024, 2, 15), "cash")
        with pytest.raises(AlreadyPaidError):
            self.manager.apply_payment(self.loan.id, 1, 12000, date(2024, 2, 15), "cash")

    def test_already_paid_checked_before_date(self):
        """Test that a resubmission with a missing or bad date still reports AlreadyPaidError"""
        self.manager.apply_payment(self.loan.id, 1, 12000, date(2024, 2, 15), "cash")

        for bad_date in (None, "15/02/2024"):
            with pytest.raises(AlreadyPaidError):
                self.manager.apply_payment(self.loan.id, 1, 12000, bad_date, "cash")

    def test_partial_then_full(self):
        """Test settling a partially paid installment by resubmitting the full total"""
        self.manager.apply_payment(self.loan.id, 1, 4000, date(2024, 2, 15), "cash")
        assert self.repository.find_by_loan_and_emi_no(self.loan.id, 1).status == InstallmentStatus.PARTIAL

        self.manager.apply_payment(self.loan.id, 1, 12000, date(2024, 2, 15), "cash")
        stored = self.repository.find_by_loan_and_emi_no(self.loan.id, 1)
        assert stored.status == InstallmentStatus.PAID
        assert stored.paid_amount == Decimal('12000')

    def test_loan_completed_when_all_paid(self):
        """Test that paying the last installment completes the loan"""
        settled = []
        self.dispatcher.subscribe(DomainEvent.ALL_INSTALLMENTS_SETTLED, settled.append)

        for emi_no in (1, 2):
            self.manager.apply_payment(self.loan.id, emi_no, 12000, date(2024, 2, 15), "cash")
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.DISBURSED
        assert settled == []

        self.manager.apply_payment(self.loan.id, 3, 12000, date(2024, 2, 15), "cash")
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.COMPLETED
        assert len(settled) == 1

    def test_partial_does_not_complete(self):
        """Test that a partial last payment leaves the loan open"""
        self.manager.apply_payment(self.loan.id, 1, 12000, date(2024, 2, 15), "cash")
        self.manager.apply_payment(self.loan.id, 2, 12000, date(2024, 2, 15), "cash")
        self.manager.apply_payment(self.loan.id, 3, 11999, date(2024, 2, 15), "cash")

        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.DISBURSED

    def test_concurrent_payments_complete_loan_once(self):
        """Test that racing payments on one loan complete it exactly once"""
        loan = self._disbursed_loan(period=12)
        completed = []
        self.dispatcher.subscribe(DomainEvent.LOAN_COMPLETED, completed.append)
        barrier = threading.Barrier(12)
        errors = []

        def pay(emi_no):
            barrier.wait()
            try:
                self.manager.apply_payment(loan.id, emi_no, loan.emi_amount, date(2024, 1, 15), "cash")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay, args=(n,)) for n in range(1, 13)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert self.loan_manager.get_loan(loan.id).status == LoanStatus.COMPLETED
        assert len(completed) == 1

    def test_failure_rolls_back_installment(self):
        """Test that an error inside the transaction leaves the stored installment unchanged"""
        with patch.object(self.repository, "list_by_loan", side_effect=RuntimeError("storage down")):
            with pytest.raises(RuntimeError):
                self.manager.apply_payment(self.loan.id, 1, 12000, date(2024, 2, 15), "cash")

        stored = self.repository.find_by_loan_and_emi_no(self.loan.id, 1)
        assert stored.status == InstallmentStatus.PENDING
        assert stored.paid_amount == Decimal('0')

    def test_events_and_audit(self):
        """Test partial/paid events and the payment audit record"""
        partial, paid = [], []
        self.dispatcher.subscribe(DomainEvent.INSTALLMENT_PARTIAL, partial.append)
        self.dispatcher.subscribe(DomainEvent.INSTALLMENT_PAID, paid.append)

        self.manager.apply_payment(self.loan.id, 1, 5000, date(2024, 2, 15), "cash")
        self.manager.apply_payment(self.loan.id, 1, 12000, date(2024, 2, 15), "cash", processed_by="officer")

        assert len(partial) == 1
        assert len(paid) == 1
        assert paid[0].data["balance"] == "0"

        audits = self.audit_trail.get_events_by_type(AuditEventType.PAYMENT_APPLIED)
        assert [a.metadata["status"] for a in audits] == ["partial", "paid"]
        assert audits[-1].user_id == "officer"

    def test_get_schedule(self):
        """Test the schedule read path"""
        schedule = self.manager.get_schedule(self.loan.id)
        assert [i.emi_no for i in schedule] == [1, 2, 3]

    def test_outstanding_balance(self):
        """Test the remaining balance across pending and partial installments"""
        self.manager.apply_payment(self.loan.id, 1, 12000, date(2024, 2, 15), "cash")
        self.manager.apply_payment(self.loan.id, 2, 5000, date(2024, 3, 15), "cash")

        assert self.manager.get_outstanding_balance(self.loan.id) == Decimal('19000')

    def test_overdue_installments(self):
        """Test the overdue list with days overdue and accrued penalty"""
        overdue = self.manager.get_overdue_installments(today=date(2024, 3, 20))

        assert [(o.installment.emi_no, o.days_overdue) for o in overdue] == [(1, 34), (2, 5)]
        assert overdue[1].penalty == Decimal('1200')

    def test_overdue_excludes_partial_by_default(self):
        """Test that partially paid installments are only listed on request"""
        self.manager.apply_payment(self.loan.id, 1, 5000, date(2024, 2, 15), "cash")

        default = self.manager.get_overdue_installments(today=date(2024, 3, 20))
        assert [o.installment.emi_no for o in default] == [2]

        with_partial = self.manager.get_overdue_installments(today=date(2024, 3, 20), include_partial=True)
        assert [o.installment.emi_no for o in with_partial] == [1, 2]

    def test_overdue_with_explicit_settings(self):
        """Test overdue penalties under caller supplied settings"""
        settings = PenaltySettings(penalty_rate=2, penalty_type=PenaltyType.PER_WEEK)
        overdue = self.manager.get_overdue_installments(today=date(2024, 3, 20), settings=settings)
        # 5 days late is one started week
        assert overdue[1].penalty == Decimal('240')

    def test_installments_due_on(self):
        """Test the daily collection sheet"""
        due = self.manager.get_installments_due_on(date(2024, 3, 15), today=date(2024, 3, 20))

        assert len(due) == 1
        assert due[0].installment.emi_no == 2
        assert due[0].is_overdue
        assert due[0].days_overdue == 5
        assert due[0].next_due_date == date(2024, 4, 15)

        last = self.manager.get_installments_due_on(date(2024, 4, 15), today=date(2024, 4, 1))
        assert not last[0].is_overdue
        assert last[0].days_overdue == 0
        assert last[0].next_due_date is None

    def test_receipt_notification(self):
        """Test that a payment queues a receipt with the remaining loan balance"""
        loan = self._disbursed_loan(period=3, borrower_name="Asha", borrower_email="asha@example.com")
        self.manager.apply_payment(loan.id, 1, 12000, date(2024, 2, 15), "cash")

        args = self.notifications.notify.call_args[0]
        assert args[0] == NotificationType.PAYMENT_RECEIVED
        assert args[1] == NotificationChannel.EMAIL
        assert args[2] == "asha@example.com"
        assert args[3]["name"] == "Asha"
        assert args[3]["amount"] == "12,000"
        assert args[3]["date"] == "2024-02-15"
        assert args[3]["balance"] == "24,000"

    def test_sms_preferred_when_enabled(self):
        """Test that SMS is used when enabled and a phone number is known"""
        self.manager.sms_enabled = True
        loan = self._disbursed_loan(period=3, borrower_phone="+911234567890", borrower_email="a@example.com")
        self.manager.apply_payment(loan.id, 1, 12000, date(2024, 2, 15), "cash")

        assert self.notifications.notify.call_args[0][1] == NotificationChannel.SMS

    def test_receipts_can_be_switched_off(self):
        """Test the payment receipt setting"""
        self.manager.notify_on_payment_received = False
        loan = self._disbursed_loan(period=3, borrower_email="asha@example.com")
        self.manager.apply_payment(loan.id, 1, 12000, date(2024, 2, 15), "cash")

        self.notifications.notify.assert_not_called()

    def test_unreachable_borrower_skipped(self):
        """Test that a borrower without contact details gets no receipt"""
        installment = self.manager.apply_payment(self.loan.id, 1, 12000, date(2024, 2, 15), "cash")

        self.notifications.notify.assert_not_called()
        assert installment.status == InstallmentStatus.PAID

    def test_completion_notification(self):
        """Test that completing a loan notifies the borrower"""
        loan = self._disbursed_loan(period=1, borrower_email="asha@example.com")
        self.manager.notify_on_payment_received = False
        self.manager.apply_payment(loan.id, 1, loan.emi_amount, date(2024, 2, 15), "cash")

        types = [c[0][0] for c in self.notifications.notify.call_args_list]
        assert types == [NotificationType.LOAN_COMPLETED]

    def test_overdue_reminders(self):
        """Test reminders for reachable borrowers with overdue installments"""
        loan = self._disbursed_loan(period=3, borrower_email="asha@example.com")

        queued = self.manager.send_overdue_reminders(today=date(2024, 3, 20))

        # Only the reachable loan's two overdue installments
        assert queued == 2
        calls = self.notifications.notify.call_args_list
        assert all(c[0][0] == NotificationType.PAYMENT_OVERDUE for c in calls)
        assert {c[0][3]["loan_id"] for c in calls} == {loan.id}
