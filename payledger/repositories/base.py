"""
Store interfaces consumed by the payment engine.

Implementations: Mongo (payment_repo, invoice_repo) and in-memory (memory).
"""

from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol

from payledger.models.invoice import InvoiceSnapshot, PaymentStatusUpdate
from payledger.models.payment import PaymentRecord


class LedgerTransaction(Protocol):
    """
    Read-modify-write scope over one client's payment records.

    list() returns the snapshot taken when the scope opened. Writes become
    visible all together when the scope exits cleanly, or not at all. A
    commit is tagged with the operation id the scope was opened with.
    """

    async def list(self) -> List[PaymentRecord]: ...

    async def applied(self, operation_id: str) -> bool:
        """True if a commit tagged with operation_id is already in the store."""
        ...

    async def create(self, record: PaymentRecord) -> str: ...

    async def update(self, record_id: str, fields: Dict[str, Any]) -> None: ...

    async def delete(self, record_id: str) -> None: ...


class PaymentStore(Protocol):
    tenant_id: str

    async def list(self, client_id: str) -> List[PaymentRecord]: ...

    async def get(self, record_id: str) -> Optional[PaymentRecord]: ...

    async def list_for_invoice(self, invoice_id: str) -> List[PaymentRecord]: ...

    def new_id(self) -> str: ...

    def transaction(
        self,
        client_id: str,
        operation_id: Optional[str] = None
    ) -> AsyncContextManager[LedgerTransaction]: ...


class InvoiceGateway(Protocol):
    async def get_invoice(self, invoice_id: str) -> Optional[InvoiceSnapshot]: ...

    async def list_for_client(self, client_id: str) -> List[InvoiceSnapshot]: ...

    async def set_payment_status(self, invoice_id: str, update: PaymentStatusUpdate) -> None: ...
