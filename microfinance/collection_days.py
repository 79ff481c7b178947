"""
Collection Days Module

Counts the days on which field officers are expected to collect payments
between two dates. Sundays never count, Saturdays optionally don't, and
administrator-configured leave days (holidays, office closures) are removed
on top of that.
"""

import logging
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .errors import InvalidRangeError, NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("microfinance.collection_days")

SATURDAY = 5
SUNDAY = 6


@dataclass
class LeaveDay(StorageRecord):
    """A calendar date excluded from collection"""
    date: date = None
    reason: str = ""
    created_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'LeaveDay':
        data = dict(data)
        data['date'] = date.fromisoformat(data['date'])
        return super().from_dict(data)


@dataclass
class CollectionDayCount:
    """Breakdown of a date range into mutually exclusive buckets"""
    total_days: int
    sundays_count: int
    saturdays_count: int
    leave_days_count: int
    collection_days: int
    leave_dates_in_range: List[date] = field(default_factory=list)


def _as_date(value: Union[date, datetime, str], field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"{field_name} must be an ISO date, got {value!r}")
    raise ValidationError(f"{field_name} is required")


def count_collection_days(
    start_date: Union[date, str],
    end_date: Union[date, str],
    exclude_saturdays: bool = False,
    leave_days: Optional[Iterable[Union[LeaveDay, date]]] = None
) -> CollectionDayCount:
    """
    Count collection days in the inclusive range [start_date, end_date].

    Every day lands in exactly one bucket, checked in order: Sunday,
    Saturday (only when exclude_saturdays), leave day, collection day. A
    leave day that falls on an excluded weekend day is therefore counted as
    the weekend day and not again as leave.

    Args:
        start_date: First day of the range
        end_date: Last day of the range, inclusive
        exclude_saturdays: Treat Saturdays as non-collection days
        leave_days: LeaveDay entries or plain dates to exclude

    Returns:
        CollectionDayCount

    Raises:
        InvalidRangeError: If end_date is before start_date
    """
    start = _as_date(start_date, "start_date")
    end = _as_date(end_date, "end_date")
    if end < start:
        raise InvalidRangeError(f"End date {end} cannot be before start date {start}")

    leave_dates = set()
    for entry in leave_days or []:
        leave_dates.add(entry.date if isinstance(entry, LeaveDay) else _as_date(entry, "leave day"))

    total_days = (end - start).days + 1
    sundays = saturdays = leave = 0
    leave_in_range: List[date] = []

    for offset in range(total_days):
        day = start + timedelta(days=offset)
        weekday = day.weekday()
        if weekday == SUNDAY:
            sundays += 1
        elif weekday == SATURDAY and exclude_saturdays:
            saturdays += 1
        elif day in leave_dates:
            leave += 1
            leave_in_range.append(day)

    collection_days = total_days - sundays - (saturdays if exclude_saturdays else 0) - leave

    return CollectionDayCount(
        total_days=total_days,
        sundays_count=sundays,
        saturdays_count=saturdays,
        leave_days_count=leave,
        collection_days=collection_days,
        leave_dates_in_range=leave_in_range
    )


class LeaveDayCalendar:
    """Administrator-maintained calendar of leave days"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 exclude_saturdays: bool = False):
        self.storage = storage
        self.audit_trail = audit_trail
        self.exclude_saturdays = exclude_saturdays
        self.table = "leave_days"

    def add_leave_day(self, day: Union[date, str], reason: str,
                      created_by: Optional[str] = None) -> LeaveDay:
        """
        Mark a date as a leave day

        Raises:
            ValidationError: If the reason is blank or the date is already marked
        """
        day = _as_date(day, "date")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for a leave day")

        # Leave days are keyed by date, which keeps them unique
        key = day.isoformat()
        if self.storage.exists(self.table, key):
            raise ValidationError(f"{key} is already marked as a leave day")

        now = datetime.now(timezone.utc)
        leave_day = LeaveDay(
            id=key,
            created_at=now,
            updated_at=now,
            date=day,
            reason=reason.strip(),
            created_by=created_by
        )
        self.storage.save(self.table, key, leave_day.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.LEAVE_DAY_ADDED,
                entity_type="leave_day",
                entity_id=key,
                metadata={"reason": leave_day.reason},
                user_id=created_by
            )
        logger.info(f"Leave day added: {key} ({leave_day.reason})")
        return leave_day

    def remove_leave_day(self, day: Union[date, str], removed_by: Optional[str] = None) -> None:
        """Remove a leave day, raising NotFoundError if it is not in the calendar"""
        key = _as_date(day, "date").isoformat()
        if not self.storage.delete(self.table, key):
            raise NotFoundError(f"Leave day not found for {key}")

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.LEAVE_DAY_REMOVED,
                entity_type="leave_day",
                entity_id=key,
                metadata={},
                user_id=removed_by
            )

    def list_leave_days(self) -> List[LeaveDay]:
        """All leave days sorted by date"""
        days = [LeaveDay.from_dict(data) for data in self.storage.load_all(self.table)]
        days.sort(key=lambda d: d.date)
        return days

    def leave_days_between(self, start_date: Union[date, str], end_date: Union[date, str]) -> List[LeaveDay]:
        """Leave days falling inside the inclusive range"""
        start = _as_date(start_date, "start_date")
        end = _as_date(end_date, "end_date")
        return [d for d in self.list_leave_days() if start <= d.date <= end]

    def count(self, start_date: Union[date, str], end_date: Union[date, str],
              exclude_saturdays: Optional[bool] = None) -> CollectionDayCount:
        """Count collection days using this calendar's leave days"""
        if exclude_saturdays is None:
            exclude_saturdays = self.exclude_saturdays
        return count_collection_days(
            start_date, end_date, exclude_saturdays, self.list_leave_days()
        )
