from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict

from payledger.models.invoice import PaymentStatus
from payledger.models.payment import PaymentRecord


class PaymentCreate(BaseModel):
    """Request body to record money received from a client."""
    client_id: str = Field(..., min_length=1)
    amount_cents: int = Field(..., gt=0)
    invoice_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    payment_method: str = "cash"
    reference: str = ""
    notes: str = ""


class SettlementRequest(BaseModel):
    """Request body to apply client account money to an invoice."""
    invoice_id: str = Field(..., min_length=1)
    amount_cents: int = Field(..., gt=0)


class PaymentResponse(BaseModel):
    id: str
    client_id: str
    document_id: Optional[str] = None
    settled_to_document: bool
    amount_cents: int
    payment_date: datetime
    payment_method: str
    reference: str
    notes: str
    settled_at: Optional[datetime] = None
    split_from: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "PaymentResponse":
        return cls.model_validate(record)


class SettlementResponse(BaseModel):
    client_id: str
    invoice_id: str
    amount_cents: int
    allocated: List[PaymentResponse]
    remainders: List[PaymentResponse]


class ClientBalanceResponse(BaseModel):
    client_id: str
    unallocated_cents: int
    outstanding_cents: int


class InvoicePaymentStatusResponse(BaseModel):
    invoice_id: str
    client_id: str
    total_cents: int
    total_paid_cents: int
    outstanding_cents: int
    paid: bool
    payment_status: PaymentStatus
    last_payment_date: Optional[datetime] = None
