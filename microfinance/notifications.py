"""
Notification Module

Sends borrower alerts (payment receipts, loan completion) over SMS, email or
webhook. Delivery is fire-and-forget: ``notify`` hands the work to a
background executor and returns immediately, and a failed delivery is only
recorded on the notification record. It never changes repayment state.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any

import requests

from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("microfinance.notifications")


class NotificationChannel(Enum):
    """Available notification channels"""
    SMS = "sms"
    EMAIL = "email"
    WEBHOOK = "webhook"
    LOG = "log"


class NotificationType(Enum):
    """Types of notifications"""
    PAYMENT_RECEIVED = "payment_received"
    LOAN_COMPLETED = "loan_completed"
    PAYMENT_OVERDUE = "payment_overdue"


class NotificationStatus(Enum):
    """Status of notifications"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# Bodies use str.format placeholders filled from the notification data
DEFAULT_TEMPLATES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.PAYMENT_RECEIVED: {
        "subject": "Payment received",
        "body": (
            "Dear {name}, we received your payment of {amount} on {date}. "
            "Remaining balance: {balance}. Receipt: {receipt_number}."
        ),
    },
    NotificationType.LOAN_COMPLETED: {
        "subject": "Loan completed",
        "body": "Dear {name}, all installments of loan {loan_id} are paid. Thank you.",
    },
    NotificationType.PAYMENT_OVERDUE: {
        "subject": "Payment overdue",
        "body": (
            "Dear {name}, installment {emi_no} of loan {loan_id} due on {due_date} "
            "is {days_overdue} days overdue. Penalty: {penalty}."
        ),
    },
}


@dataclass
class Notification(StorageRecord):
    """Individual notification instance"""
    notification_type: NotificationType
    channel: NotificationChannel
    recipient_address: str
    subject: str
    body: str
    recipient_id: Optional[str] = None
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the log instead of delivering them"""

    async def send(self, notification: Notification) -> bool:
        logger.info(
            f"{notification.channel.value.upper()} to {notification.recipient_address}: "
            f"{notification.subject} | {notification.body[:100]}"
        )
        return True


class SMSChannelProvider(LogChannelProvider):
    """SMS channel (gateway integration pending; logs the message)"""


class EmailChannelProvider(LogChannelProvider):
    """Email channel (SMTP integration pending; logs the message)"""


class WebhookChannelProvider(ChannelProvider):
    """Posts notifications as JSON to an HTTP endpoint"""

    def __init__(self, url: Optional[str] = None, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    async def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        url = self.url or notification.recipient_address
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient_id,
            "recipient": notification.recipient_address,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        response = requests.post(
            url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return 200 <= response.status_code < 300


class NotificationService:
    """Renders and dispatches notifications on a background worker"""

    def __init__(self, storage: StorageInterface, enabled: bool = True, max_workers: int = 1):
        self.storage = storage
        self.enabled = enabled
        self.notifications_table = "notifications"
        self.templates: Dict[NotificationType, Dict[str, str]] = dict(DEFAULT_TEMPLATES)
        self.providers: Dict[NotificationChannel, ChannelProvider] = {
            NotificationChannel.SMS: SMSChannelProvider(),
            NotificationChannel.EMAIL: EmailChannelProvider(),
            NotificationChannel.LOG: LogChannelProvider(),
        }
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider) -> None:
        """Register a channel provider"""
        self.providers[channel] = provider

    def set_template(self, notification_type: NotificationType, subject: str, body: str) -> None:
        """Override the template for a notification type"""
        self.templates[notification_type] = {"subject": subject, "body": body}

    def notify(
        self,
        notification_type: NotificationType,
        channel: NotificationChannel,
        recipient_address: Optional[str],
        data: Dict[str, Any],
        recipient_id: Optional[str] = None
    ) -> Optional[Future]:
        """
        Queue a notification for delivery and return at once.

        Returns:
            Future resolving to the stored Notification, or None when
            notifications are disabled or there is nobody to send to
        """
        if not self.enabled:
            return None
        if not recipient_address:
            logger.debug(f"No recipient address for {notification_type.value}, skipping")
            return None

        try:
            return self._executor.submit(
                self._deliver, notification_type, channel, recipient_address, data, recipient_id
            )
        except RuntimeError as e:
            # Executor already shut down
            logger.warning(f"Notification {notification_type.value} not queued: {e}")
            return None

    def render(self, notification_type: NotificationType, data: Dict[str, Any]) -> Dict[str, str]:
        """Fill the template for a notification type"""
        template = self.templates[notification_type]
        return {
            "subject": template["subject"].format(**data),
            "body": template["body"].format(**data),
        }

    def _deliver(
        self,
        notification_type: NotificationType,
        channel: NotificationChannel,
        recipient_address: str,
        data: Dict[str, Any],
        recipient_id: Optional[str]
    ) -> Notification:
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            channel=channel,
            recipient_address=recipient_address,
            recipient_id=recipient_id,
            subject="",
            body="",
            metadata=data
        )

        try:
            rendered = self.render(notification_type, data)
            notification.subject = rendered["subject"]
            notification.body = rendered["body"]

            provider = self.providers.get(channel)
            if provider is None:
                raise LookupError(f"No provider registered for channel: {channel.value}")

            if asyncio.run(provider.send(notification)):
                notification.status = NotificationStatus.SENT
                notification.sent_at = datetime.now(timezone.utc)
            else:
                notification.status = NotificationStatus.FAILED
                notification.failed_reason = "Provider send failed"
        except Exception as e:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = str(e)
            logger.warning(f"Notification {notification.id} ({notification_type.value}) failed: {e}")

        notification.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.notifications_table, notification.id, notification.to_dict())
        return notification

    def list_notifications(self, status: Optional[NotificationStatus] = None) -> List[Dict[str, Any]]:
        """Stored notification records, optionally filtered by status"""
        filters = {"status": status.value} if status else {}
        return self.storage.find(self.notifications_table, filters)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background worker"""
        self._executor.shutdown(wait=wait)
