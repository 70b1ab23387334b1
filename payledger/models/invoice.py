"""
Invoice model - external entity, referenced but not owned by the ledger.

The ledger reads total_cents and client_id, and writes the derived payment
status back through the invoice gateway. It never computes totals.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from payledger.models.base import utcnow


CANCELLED_STATUSES = {"CANCELLED", "VOID"}
CONVERTED_STATUSES = {"CONVERTED"}


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class InvoiceSnapshot(BaseModel):
    """Read view of an invoice as the ledger needs it."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias="_id")
    tenant_id: str
    client_id: str
    total_cents: int = Field(ge=0)
    status: str = "DRAFT"
    doc_type: str = "invoice"
    issued_at: datetime = Field(default_factory=utcnow)
    converted: bool = False

    @property
    def is_cancelled(self) -> bool:
        return self.status.upper() in CANCELLED_STATUSES

    @property
    def is_converted(self) -> bool:
        return self.converted or self.status.upper() in CONVERTED_STATUSES

    @property
    def accepts_payments(self) -> bool:
        return not (self.is_cancelled or self.is_converted)


class PaymentStatusUpdate(BaseModel):
    """Derived payment fields written back to an invoice."""
    total_paid_cents: int
    outstanding_cents: int
    paid: bool
    payment_status: PaymentStatus
    last_payment_date: Optional[datetime] = None
