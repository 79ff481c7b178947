"""
Batch Payment Module

Applies many payment records in one call. Every record succeeds or fails on
its own; a failure never rolls back earlier successes. Records for the same
loan are applied one after another in input order, records for different
loans run in parallel.
"""

import logging
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .audit import AuditTrail, AuditEventType
from .errors import MicrofinanceError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .installments import Installment, PaymentMode
from .repayments import RepaymentManager

logger = logging.getLogger("microfinance.batch")


class BatchPaymentRecord(BaseModel):
    """One line of a payment batch"""
    loan_id: str = Field(min_length=1)
    emi_no: int = Field(ge=1)
    amount: Decimal
    payment_date: date
    payment_mode: PaymentMode
    remarks: Optional[str] = None
    receipt_number: Optional[str] = None

    @field_validator("loan_id")
    @classmethod
    def loan_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("loan_id must not be blank")
        return value.strip()

    @field_validator("payment_mode", mode="before")
    @classmethod
    def normalize_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


@dataclass
class BatchFailure:
    """A record that could not be applied"""
    record: Any
    reason: str      # error class name, e.g. NotFoundError
    message: str


@dataclass
class BatchResult:
    """Outcome of a batch, with successes and failures in input order"""
    processed_count: int = 0
    failed_count: int = 0
    successes: List[Installment] = field(default_factory=list)
    failures: List[BatchFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.processed_count + self.failed_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "successes": [
                {"loan_id": i.loan_id, "emi_no": i.emi_no, "receipt_number": i.receipt_number,
                 "status": i.status.value}
                for i in self.successes
            ],
            "failures": [
                {"record": f.record, "reason": f.reason, "message": f.message}
                for f in self.failures
            ]
        }


Outcome = Union[Installment, BatchFailure]


class BatchPaymentProcessor(EventPublisherMixin):
    """Applies payment batches through a RepaymentManager"""

    def __init__(
        self,
        manager: RepaymentManager,
        max_workers: int = 4,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.manager = manager
        self.max_workers = max(1, max_workers)
        self.audit_trail = audit_trail
        if event_dispatcher is not None:
            self.set_event_dispatcher(event_dispatcher)

    def process(self, records: List[Any], processed_by: Optional[str] = None) -> BatchResult:
        """
        Apply every record of a batch.

        Args:
            records: List of dicts (or BatchPaymentRecord) with loan_id,
                emi_no, amount, payment_date, payment_mode and optional
                remarks / receipt_number
            processed_by: User recorded on each installment

        Returns:
            BatchResult where processed_count + failed_count == len(records)

        Raises:
            ValidationError: If records is not a list
        """
        if not isinstance(records, (list, tuple)):
            raise ValidationError(f"Batch records must be a list, got {type(records).__name__}")

        outcomes: Dict[int, Outcome] = {}
        groups: "OrderedDict[str, List[Tuple[int, BatchPaymentRecord, Any]]]" = OrderedDict()

        for index, raw in enumerate(records):
            try:
                record = self._validate(raw)
            except (PydanticValidationError, MicrofinanceError) as e:
                outcomes[index] = BatchFailure(record=raw, reason="ValidationError", message=str(e))
                continue
            groups.setdefault(record.loan_id, []).append((index, record, raw))

        if groups:
            workers = min(self.max_workers, len(groups))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch") as executor:
                for group_outcomes in executor.map(
                    lambda group: self._process_group(group, processed_by), groups.values()
                ):
                    outcomes.update(group_outcomes)

        result = BatchResult()
        for index in range(len(records)):
            outcome = outcomes[index]
            if isinstance(outcome, BatchFailure):
                result.failures.append(outcome)
                result.failed_count += 1
            else:
                result.successes.append(outcome)
                result.processed_count += 1

        logger.info(
            f"Batch processed: {result.processed_count} applied, {result.failed_count} failed "
            f"across {len(groups)} loans"
        )

        batch_id = str(uuid.uuid4())
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.BATCH_PROCESSED,
                entity_type="batch",
                entity_id=batch_id,
                metadata={
                    "records": len(records),
                    "processed_count": result.processed_count,
                    "failed_count": result.failed_count,
                    "failure_reasons": sorted({f.reason for f in result.failures})
                },
                user_id=processed_by
            )
        self.publish_event(DomainEvent.BATCH_PROCESSED, "batch", batch_id, {
            "processed_count": result.processed_count,
            "failed_count": result.failed_count
        })
        return result

    @staticmethod
    def _validate(raw: Any) -> BatchPaymentRecord:
        if isinstance(raw, BatchPaymentRecord):
            return raw
        if not isinstance(raw, dict):
            raise ValidationError(f"Batch record must be an object, got {type(raw).__name__}")
        return BatchPaymentRecord.model_validate(raw)

    def _process_group(
        self,
        group: List[Tuple[int, BatchPaymentRecord, Any]],
        processed_by: Optional[str]
    ) -> Dict[int, Outcome]:
        """Apply one loan's records sequentially"""
        outcomes: Dict[int, Outcome] = {}
        for index, record, raw in group:
            try:
                outcomes[index] = self.manager.apply_payment(
                    loan_id=record.loan_id,
                    emi_no=record.emi_no,
                    amount=record.amount,
                    payment_date=record.payment_date,
                    payment_mode=record.payment_mode,
                    remarks=record.remarks,
                    receipt_number=record.receipt_number or self.manager.state_machine.receipts.next(record.emi_no),
                    processed_by=processed_by
                )
            except MicrofinanceError as e:
                outcomes[index] = BatchFailure(record=raw, reason=type(e).__name__, message=str(e))
            except Exception as e:
                logger.error(
                    f"Unexpected error applying {record.loan_id}/{record.emi_no}: {e}", exc_info=True
                )
                outcomes[index] = BatchFailure(record=raw, reason=type(e).__name__, message=str(e))
        return outcomes
