"""
Payment record model - the atomic unit of money movement.

Design principles:
- A record belongs to exactly one client for its whole life
- document_id is the single source of allocation state:
  None means the money sits on the client account (unallocated)
- settled_to_document is derived from document_id, never stored independently
- amount_cents > 0 while the record exists (integer minor units)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field, computed_field

from payledger.models.base import LedgerModel, utcnow


@dataclass(frozen=True)
class Unallocated:
    """Money held on the client account."""


@dataclass(frozen=True)
class AllocatedTo:
    """Money applied to a specific invoice."""
    invoice_id: str


Allocation = Union[Unallocated, AllocatedTo]

NOTE_SEPARATOR = " | "


def append_note(notes: str, text: str) -> str:
    """Notes with an audit line appended."""
    if not notes:
        return text
    return f"{notes}{NOTE_SEPARATOR}{text}"


class PaymentRecord(LedgerModel):
    """
    Money received from a client.

    Invariants:
    - amount_cents > 0
    - settled_to_document iff document_id is set
    - client_id and tenant_id never change after creation
    """

    tenant_id: str
    client_id: str
    document_id: Optional[str] = None

    amount_cents: int = Field(gt=0)

    payment_date: datetime = Field(default_factory=utcnow)
    payment_method: str = ""
    reference: str = ""
    notes: str = ""

    # Lineage / audit trail (advisory only)
    settled_at: Optional[datetime] = None
    split_from: Optional[str] = None
    reconstructed: bool = False

    @computed_field
    @property
    def settled_to_document(self) -> bool:
        return self.document_id is not None

    @property
    def allocation(self) -> Allocation:
        if self.document_id is None:
            return Unallocated()
        return AllocatedTo(self.document_id)

    def is_allocated_to(self, invoice_id: str) -> bool:
        return self.document_id is not None and self.document_id == invoice_id

    def with_note(self, text: str) -> str:
        return append_note(self.notes, text)

    def to_document(self) -> dict:
        """Fields as persisted (id excluded, the store assigns it)."""
        return self.model_dump(exclude={"id"})


class SettlementResult(BaseModel):
    """Outcome of applying client account money to an invoice."""
    client_id: str
    invoice_id: str
    amount_cents: int
    allocated: List[PaymentRecord] = []
    remainders: List[PaymentRecord] = []
