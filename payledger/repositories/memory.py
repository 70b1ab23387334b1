"""
In-memory payment store and invoice gateway.

Used for STORAGE_BACKEND=memory and by the test suite. Writes are staged per
transaction and applied at commit under a per-client lock, with a version
counter per client so out-of-band writes are detected as conflicts.
"""

import asyncio
import uuid
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple

from payledger.models.base import utcnow
from payledger.models.invoice import InvoiceSnapshot, PaymentStatusUpdate
from payledger.models.payment import PaymentRecord
from payledger.utils.payment_validation import ConcurrentModification, PaymentNotFound

ClientKey = Tuple[str, str]

OPERATION_HISTORY = 50


class MemoryBackend:
    """Shared state behind the in-memory store and gateway."""

    def __init__(self):
        self.payments: Dict[str, PaymentRecord] = {}
        self.invoices: Dict[str, InvoiceSnapshot] = {}
        self.payment_status: Dict[str, PaymentStatusUpdate] = {}
        self.versions: Dict[ClientKey, int] = defaultdict(int)
        self.operations: Dict[ClientKey, deque] = defaultdict(lambda: deque(maxlen=OPERATION_HISTORY))
        self._locks: Dict[ClientKey, asyncio.Lock] = {}

    def lock_for(self, key: ClientKey) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def put_record(self, record: PaymentRecord) -> PaymentRecord:
        """Insert a record directly (seeding, recovery). Bumps the client version."""
        if record.id is None:
            record = record.model_copy(update={"id": uuid.uuid4().hex})
        self.payments[record.id] = record
        self.versions[(record.tenant_id, record.client_id)] += 1
        return record

    def put_invoice(self, invoice: InvoiceSnapshot) -> InvoiceSnapshot:
        self.invoices[invoice.id] = invoice
        return invoice

    def reset(self) -> None:
        self.payments.clear()
        self.invoices.clear()
        self.payment_status.clear()
        self.versions.clear()
        self.operations.clear()
        self._locks.clear()


class InMemoryTransaction:
    def __init__(
        self,
        backend: MemoryBackend,
        tenant_id: str,
        client_id: str,
        operation_id: Optional[str] = None
    ):
        self.backend = backend
        self.key = (tenant_id, client_id)
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.operation_id = operation_id
        self.version = backend.versions[self.key]
        self._operations = set(backend.operations[self.key])
        self._snapshot = {
            r.id: r for r in backend.payments.values()
            if r.tenant_id == tenant_id and r.client_id == client_id
        }
        self._created: Dict[str, PaymentRecord] = {}
        self._updated: Dict[str, Dict[str, Any]] = {}
        self._deleted: set = set()

    async def list(self) -> List[PaymentRecord]:
        return list(self._snapshot.values())

    async def applied(self, operation_id: str) -> bool:
        return operation_id in self._operations

    async def create(self, record: PaymentRecord) -> str:
        record_id = record.id or uuid.uuid4().hex
        self._created[record_id] = record.model_copy(update={"id": record_id})
        return record_id

    async def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        if record_id not in self._snapshot and record_id not in self._created:
            raise PaymentNotFound(f"Payment {record_id} not found")
        self._updated.setdefault(record_id, {}).update(fields)

    async def delete(self, record_id: str) -> None:
        if record_id not in self._snapshot and record_id not in self._created:
            raise PaymentNotFound(f"Payment {record_id} not found")
        self._deleted.add(record_id)

    def commit(self) -> None:
        if self.backend.versions[self.key] != self.version:
            raise ConcurrentModification(
                f"Payments for client {self.client_id} changed during the operation"
            )

        if not (self._created or self._updated or self._deleted):
            return

        # Build the full post-state first so a validation error leaves nothing applied
        staged: Dict[str, PaymentRecord] = {}
        now = utcnow()
        for record_id, record in {**self._snapshot, **self._created}.items():
            if record_id in self._deleted:
                continue
            fields = self._updated.get(record_id)
            if fields:
                data = record.model_dump()
                data.update(fields)
                data["updated_at"] = now
                record = PaymentRecord.model_validate(data)
            staged[record_id] = record

        for record_id in self._deleted:
            self.backend.payments.pop(record_id, None)
        self.backend.payments.update(staged)
        self.backend.versions[self.key] += 1
        if self.operation_id:
            self.backend.operations[self.key].append(self.operation_id)


class InMemoryPaymentStore:
    def __init__(self, backend: MemoryBackend, tenant_id: str):
        self.backend = backend
        self.tenant_id = tenant_id

    async def list(self, client_id: str) -> List[PaymentRecord]:
        return [
            r for r in self.backend.payments.values()
            if r.tenant_id == self.tenant_id and r.client_id == client_id
        ]

    async def get(self, record_id: str) -> Optional[PaymentRecord]:
        record = self.backend.payments.get(record_id)
        if record is None or record.tenant_id != self.tenant_id:
            return None
        return record

    async def list_for_invoice(self, invoice_id: str) -> List[PaymentRecord]:
        return [
            r for r in self.backend.payments.values()
            if r.tenant_id == self.tenant_id and r.document_id == invoice_id
        ]

    def new_id(self) -> str:
        return uuid.uuid4().hex

    @asynccontextmanager
    async def transaction(self, client_id: str, operation_id: Optional[str] = None):
        async with self.backend.lock_for((self.tenant_id, client_id)):
            txn = InMemoryTransaction(self.backend, self.tenant_id, client_id, operation_id)
            yield txn
            txn.commit()


class InMemoryInvoiceGateway:
    def __init__(self, backend: MemoryBackend, tenant_id: str):
        self.backend = backend
        self.tenant_id = tenant_id

    async def get_invoice(self, invoice_id: str) -> Optional[InvoiceSnapshot]:
        invoice = self.backend.invoices.get(invoice_id)
        if invoice is None or invoice.tenant_id != self.tenant_id:
            return None
        return invoice

    async def list_for_client(self, client_id: str) -> List[InvoiceSnapshot]:
        return [
            i for i in self.backend.invoices.values()
            if i.tenant_id == self.tenant_id and i.client_id == client_id
        ]

    async def set_payment_status(self, invoice_id: str, update: PaymentStatusUpdate) -> None:
        self.backend.payment_status[invoice_id] = update


memory_backend = MemoryBackend()
