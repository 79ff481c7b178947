"""
Penalty Module

Late-payment surcharges for overdue installments. Settings are passed in
explicitly; when none are configured the engine falls back to 2% per day.
"""

import logging
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .errors import ConfigurationError, ValidationError
from .money import to_amount, round_amount, ZERO
from .storage import StorageInterface

logger = logging.getLogger("microfinance.penalties")

HUNDRED = Decimal('100')


class PenaltyType(Enum):
    """How a penalty grows with lateness"""
    PER_DAY = "per_day"          # rate applied once per day overdue
    PER_WEEK = "per_week"        # rate applied once per started week
    FIXED_TOTAL = "fixed_total"  # rate applied once, however late

    @classmethod
    def parse(cls, value: Any) -> 'PenaltyType':
        """Resolve a stored value, treating unknown or missing types as PER_DAY"""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            logger.warning(f"Unknown penalty type {value!r}, falling back to per_day")
            return cls.PER_DAY


@dataclass(frozen=True)
class PenaltySettings:
    """Penalty policy in force from a given date"""
    penalty_rate: Decimal = Decimal('2.0')  # percent of the EMI
    penalty_type: PenaltyType = PenaltyType.PER_DAY
    effective_from: Optional[date] = None

    def __post_init__(self):
        if not isinstance(self.penalty_rate, Decimal):
            object.__setattr__(self, 'penalty_rate', Decimal(str(self.penalty_rate)))
        if not isinstance(self.penalty_type, PenaltyType):
            object.__setattr__(self, 'penalty_type', PenaltyType.parse(self.penalty_type))
        if self.penalty_rate < ZERO:
            raise ConfigurationError(f"penalty_rate cannot be negative, got {self.penalty_rate}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'penalty_rate': str(self.penalty_rate),
            'penalty_type': self.penalty_type.value,
            'effective_from': self.effective_from.isoformat() if self.effective_from else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PenaltySettings':
        """
        Build settings from stored or user supplied values.

        Raises:
            ConfigurationError: If the rate or effective date is malformed
        """
        try:
            rate = to_amount(data.get('penalty_rate'), "penalty_rate")
        except ValidationError as e:
            raise ConfigurationError(str(e))

        effective_from = data.get('effective_from')
        if isinstance(effective_from, str):
            try:
                effective_from = date.fromisoformat(effective_from)
            except ValueError:
                raise ConfigurationError(f"effective_from must be an ISO date, got {effective_from!r}")

        return cls(
            penalty_rate=rate,
            penalty_type=PenaltyType.parse(data.get('penalty_type')),
            effective_from=effective_from
        )


DEFAULT_PENALTY_SETTINGS = PenaltySettings()


def days_overdue(due_date: Union[date, datetime], today: Optional[Union[date, datetime]] = None) -> int:
    """
    Whole days elapsed since the due date, floored. Zero or negative means
    the installment is not late.
    """
    if today is None:
        today = datetime.now(timezone.utc).date()
    if isinstance(due_date, datetime) != isinstance(today, datetime):
        # Compare on calendar days when only one side carries a time
        due_date = due_date.date() if isinstance(due_date, datetime) else due_date
        today = today.date() if isinstance(today, datetime) else today
    return (today - due_date).days


def calculate_penalty(emi_amount: Any, days_late: int,
                      settings: Optional[PenaltySettings] = None) -> Decimal:
    """
    Calculate the penalty owed on an overdue installment.

    Args:
        emi_amount: Scheduled installment amount the rate applies to
        days_late: Days overdue as computed by days_overdue()
        settings: Penalty policy; defaults to 2% per day

    Returns:
        Penalty rounded to whole units, zero when not overdue
    """
    if days_late <= 0:
        return ZERO

    settings = settings or DEFAULT_PENALTY_SETTINGS
    amount = to_amount(emi_amount, "emi_amount")
    rate = settings.penalty_rate / HUNDRED
    penalty_type = PenaltyType.parse(settings.penalty_type)

    if penalty_type == PenaltyType.PER_WEEK:
        weeks = math.ceil(days_late / 7)
        return round_amount(amount * rate * weeks)
    if penalty_type == PenaltyType.FIXED_TOTAL:
        return round_amount(amount * rate)
    return round_amount(amount * rate * days_late)


class PenaltySettingsProvider:
    """
    Stores penalty settings with their effective dates and resolves the
    settings in force on a given day.
    """

    def __init__(self, storage: StorageInterface,
                 default: Optional[PenaltySettings] = None,
                 audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.default = default or DEFAULT_PENALTY_SETTINGS
        self.audit_trail = audit_trail
        self.table = "penalty_settings"

    def set_settings(self, settings: PenaltySettings, user_id: Optional[str] = None) -> PenaltySettings:
        """Store settings; entries are keyed by their effective date"""
        if settings.effective_from is None:
            settings = PenaltySettings(
                penalty_rate=settings.penalty_rate,
                penalty_type=settings.penalty_type,
                effective_from=datetime.now(timezone.utc).date()
            )
        key = settings.effective_from.isoformat()
        self.storage.save(self.table, key, settings.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PENALTY_SETTINGS_CHANGED,
                entity_type="settings",
                entity_id=key,
                metadata=settings.to_dict(),
                user_id=user_id
            )
        logger.info(f"Penalty settings effective {key}: {settings.penalty_rate}% {settings.penalty_type.value}")
        return settings

    def history(self) -> List[PenaltySettings]:
        """All valid stored settings, oldest first"""
        settings = []
        for data in self.storage.load_all(self.table):
            try:
                settings.append(PenaltySettings.from_dict(data))
            except ConfigurationError as e:
                logger.warning(f"Ignoring invalid stored penalty settings {data!r}: {e}")
        settings.sort(key=lambda s: s.effective_from or date.min)
        return settings

    def get_settings(self, as_of: Optional[date] = None) -> PenaltySettings:
        """
        Settings in force on ``as_of`` (today by default). Falls back to the
        default policy when nothing applicable is stored.
        """
        if as_of is None:
            as_of = datetime.now(timezone.utc).date()

        applicable = [
            s for s in self.history()
            if s.effective_from is None or s.effective_from <= as_of
        ]
        if not applicable:
            return self.default
        return applicable[-1]
