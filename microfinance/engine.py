"""
Repayment Engine

Composition root: builds every component of the engine from configuration
and wires them to a shared storage, audit trail, event dispatcher and lock
registry.
"""

from datetime import date
from typing import List, Optional

from .audit import AuditTrail
from .batch import BatchPaymentProcessor
from .collection_days import LeaveDayCalendar
from .config import MicrofinanceConfig, get_config
from .events import EventDispatcher
from .installments import Installment, InstallmentRepository
from .loans import LoanManager
from .locks import LoanLockRegistry
from .logging_config import get_logger, setup_logging, log_action
from .notifications import NotificationChannel, NotificationService, WebhookChannelProvider
from .errors import ConfigurationError
from .penalties import DEFAULT_PENALTY_SETTINGS, PenaltySettings, PenaltySettingsProvider
from .repayments import RepaymentManager, RepaymentStateMachine
from .schedule import ScheduleGenerator
from .storage import StorageInterface, create_storage


class RepaymentEngine:
    """Repayment engine with all components initialized"""

    def __init__(self, config: Optional[MicrofinanceConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 configure_logging: bool = True):
        self.config = config or get_config()
        if configure_logging:
            self.logger = setup_logging(self.config.log_level, log_format=self.config.log_format)
        else:
            self.logger = get_logger()

        # Shared infrastructure
        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage)
        self.event_dispatcher = EventDispatcher()
        self.locks = LoanLockRegistry()

        # Collaborators
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.event_dispatcher,
            id_prefix=self.config.loan_id_prefix
        )
        self.installments = InstallmentRepository(self.storage)
        self.penalty_settings = PenaltySettingsProvider(
            self.storage,
            default=self._default_penalty_settings(),
            audit_trail=self.audit_trail
        )
        self.leave_calendar = LeaveDayCalendar(
            self.storage, self.audit_trail, exclude_saturdays=self.config.exclude_saturdays
        )
        self.notification_service = self._create_notification_service()

        # Engine components
        self.schedule_generator = ScheduleGenerator(
            self.installments, self.audit_trail, self.locks, self.event_dispatcher
        )
        self.repayment_manager = RepaymentManager(
            self.installments,
            self.loan_manager,
            self.penalty_settings,
            locks=self.locks,
            audit_trail=self.audit_trail,
            event_dispatcher=self.event_dispatcher,
            notification_service=self.notification_service,
            state_machine=RepaymentStateMachine(
                enforce_amount_ceiling=self.config.enforce_amount_ceiling,
                receipt_prefix=self.config.receipt_prefix
            ),
            notify_on_payment_received=self.config.notify_on_payment_received,
            sms_enabled=self.config.sms_enabled
        )
        self.batch_processor = BatchPaymentProcessor(
            self.repayment_manager,
            max_workers=self.config.batch_max_workers,
            audit_trail=self.audit_trail,
            event_dispatcher=self.event_dispatcher
        )

    def _default_penalty_settings(self) -> PenaltySettings:
        """Penalty policy from configuration, or the built-in one if it is invalid"""
        try:
            return PenaltySettings.from_dict({
                "penalty_rate": self.config.default_penalty_rate,
                "penalty_type": self.config.default_penalty_type
            })
        except ConfigurationError as e:
            self.logger.warning(f"Invalid default penalty configuration, using built-in defaults: {e}")
            return DEFAULT_PENALTY_SETTINGS

    def _create_notification_service(self) -> NotificationService:
        """Create the notification service based on configuration"""
        service = NotificationService(self.storage)

        # Only register the webhook channel if a URL is configured
        if self.config.notification_webhook_url:
            service.register_provider(
                NotificationChannel.WEBHOOK,
                WebhookChannelProvider(
                    url=self.config.notification_webhook_url,
                    timeout=self.config.notification_timeout
                )
            )
        return service

    def disburse_and_schedule(self, loan_id: str, disbursed_date: Optional[date] = None,
                              user_id: Optional[str] = None) -> List[Installment]:
        """Disburse an approved loan and generate its repayment schedule"""
        loan = self.loan_manager.disburse_loan(loan_id, disbursed_date, disbursed_by=user_id)
        installments = self.schedule_generator.generate(loan, generated_by=user_id)
        log_action(
            self.logger, "info", f"Loan {loan_id} disbursed with {len(installments)} installments",
            user_id=user_id, action="disburse", resource=f"loan:{loan_id}"
        )
        return installments

    def close(self) -> None:
        """Stop background workers and release storage"""
        self.notification_service.shutdown(wait=True)
        self.storage.close()
