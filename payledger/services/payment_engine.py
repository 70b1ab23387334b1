"""
PaymentEngine - allocation and settlement of client payments.

Core rules:
1. Money is never created or destroyed by allocation, only moved or split
2. An allocated record never exceeds what its invoice can still take
3. Settlement consumes unallocated money oldest-first (payment_date, created_at)
4. Every mutation runs in one per-client transaction against a snapshot
   taken at its start; conflicts and store outages retry the whole operation.
   Each operation carries an id committed with its writes, so a retry after
   a lost acknowledgement returns the first outcome instead of reapplying it
5. Invoice payment status is recomputed from records after every change
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from payledger.core.config import Settings, settings as default_settings
from payledger.models.base import as_utc, utcnow
from payledger.models.invoice import InvoiceSnapshot, PaymentStatusUpdate
from payledger.models.payment import PaymentRecord, SettlementResult, append_note
from payledger.repositories.base import InvoiceGateway, PaymentStore
from payledger.services import balance_projector as projector
from payledger.utils.payment_validation import (
    InsufficientBalance,
    InvalidAmount,
    InvoiceNotFound,
    LedgerError,
    LedgerInvariantError,
    PaymentNotFound,
    ensure_conserved,
    ensure_positive_amounts,
    ensure_within_outstanding,
    validate_amount,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PaymentEngine:
    """The only writer of payment records. One instance per tenant/request."""

    def __init__(
        self,
        store: PaymentStore,
        invoices: InvoiceGateway,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.invoices = invoices
        self.settings = settings or default_settings
        self.clock = clock or utcnow

    @property
    def tolerance(self) -> int:
        return self.settings.PAID_TOLERANCE_CENTS

    # ===== COMMANDS =====

    async def record_payment(
        self,
        client_id: str,
        amount_cents: int,
        invoice_id: Optional[str] = None,
        *,
        payment_date: Optional[datetime] = None,
        payment_method: str = "",
        reference: str = "",
        notes: str = ""
    ) -> List[PaymentRecord]:
        """
        Record money received from a client.

        Without an invoice the full amount goes to the client account. With an
        invoice, at most its outstanding amount is allocated and any excess
        becomes an unallocated record.
        """
        validate_amount(amount_cents)
        operation_id = uuid.uuid4().hex
        outcome: Optional[Tuple[List[PaymentRecord], int]] = None

        async def operation() -> Tuple[List[PaymentRecord], int]:
            nonlocal outcome
            invoice = await self._get_invoice(invoice_id, client_id) if invoice_id else None
            now = self.clock()

            async with self.store.transaction(client_id, operation_id=operation_id) as txn:
                if outcome is not None and await txn.applied(operation_id):
                    return outcome
                before = await txn.list()

                allocate = 0
                if invoice is not None:
                    allocate = min(amount_cents, projector.allocatable_amount(invoice, before))
                excess = amount_cents - allocate

                base = dict(
                    tenant_id=self.store.tenant_id,
                    client_id=client_id,
                    payment_date=payment_date or now,
                    payment_method=payment_method,
                    reference=reference,
                    created_at=now,
                    updated_at=now
                )
                planned: List[PaymentRecord] = []
                if allocate > 0:
                    planned.append(PaymentRecord(
                        **base,
                        id=self.store.new_id(),
                        document_id=invoice.id,
                        amount_cents=allocate,
                        notes=notes,
                        settled_at=now
                    ))
                if excess > 0:
                    excess_notes = notes
                    if invoice is not None:
                        excess_notes = append_note(
                            notes, f"Excess over invoice {invoice.id} held on client account"
                        )
                    planned.append(PaymentRecord(
                        **base,
                        id=self.store.new_id(),
                        amount_cents=excess,
                        notes=excess_notes
                    ))

                after = before + planned
                ensure_positive_amounts(planned)
                ensure_conserved(before, after, delta=amount_cents)
                if allocate > 0:
                    ensure_within_outstanding(
                        invoice, projector.allocated_total(after, invoice.id), self.tolerance
                    )

                created = []
                for record in planned:
                    record_id = await txn.create(record)
                    created.append(record.model_copy(update={"id": record_id}))
                outcome = (created, allocate)

            return outcome

        created, allocated = await self._run("record_payment", operation)
        logger.info(
            "Recorded payment of %d for client %s: %d allocated to %s, %d records",
            amount_cents, client_id, allocated, invoice_id or "-", len(created)
        )
        if allocated > 0:
            await self._refresh_invoice_status(invoice_id)
        return created

    async def settle_invoice(self, client_id: str, invoice_id: str, amount_cents: int) -> SettlementResult:
        """
        Apply client account money to an invoice, oldest payments first.

        A record that is only partly needed is shrunk to the taken amount and
        allocated; the rest moves to a new unallocated record.
        """
        validate_amount(amount_cents)
        operation_id = uuid.uuid4().hex
        outcome: Optional[SettlementResult] = None

        async def operation() -> SettlementResult:
            nonlocal outcome
            invoice = await self._get_invoice(invoice_id, client_id)
            now = self.clock()

            async with self.store.transaction(client_id, operation_id=operation_id) as txn:
                if outcome is not None and await txn.applied(operation_id):
                    return outcome
                before = await txn.list()

                balance = projector.unallocated_balance(before)
                if amount_cents > balance:
                    raise InsufficientBalance(
                        f"Insufficient client balance. Available: {balance}, required: {amount_cents}"
                    )
                allocatable = projector.allocatable_amount(invoice, before)
                if amount_cents > allocatable:
                    raise InvalidAmount(
                        f"Amount {amount_cents} exceeds what invoice {invoice_id} can take ({allocatable})"
                    )

                remaining = amount_cents
                updates: List[Tuple[PaymentRecord, dict]] = []
                remainders: List[PaymentRecord] = []

                for record in projector.fifo_order(projector.unallocated_records(before)):
                    if remaining == 0:
                        break
                    take = min(record.amount_cents, remaining)
                    fields = {
                        "document_id": invoice_id,
                        "settled_at": now,
                        "reference": record.reference or "Settled to invoice",
                    }
                    if take == record.amount_cents:
                        fields["notes"] = record.with_note(f"Allocated to invoice {invoice_id}")
                    else:
                        fields["amount_cents"] = take
                        fields["notes"] = record.with_note(f"Partially allocated to invoice {invoice_id}")
                        remainders.append(PaymentRecord(
                            id=self.store.new_id(),
                            tenant_id=record.tenant_id,
                            client_id=record.client_id,
                            amount_cents=record.amount_cents - take,
                            payment_date=record.payment_date,
                            payment_method=record.payment_method,
                            reference=record.reference,
                            notes=record.with_note("Split from original payment"),
                            split_from=record.id,
                            created_at=now,
                            updated_at=now
                        ))
                    updates.append((record, fields))
                    remaining -= take

                changed = {record.id: record.model_copy(update=fields) for record, fields in updates}
                after = [changed.get(r.id, r) for r in before] + remainders

                ensure_positive_amounts(after)
                ensure_conserved(before, after)
                ensure_within_outstanding(
                    invoice, projector.allocated_total(after, invoice_id), self.tolerance
                )
                newly_allocated = (
                    projector.allocated_total(after, invoice_id)
                    - projector.allocated_total(before, invoice_id)
                )
                if newly_allocated != amount_cents:
                    raise LedgerInvariantError(
                        f"Settlement allocated {newly_allocated}, expected {amount_cents}"
                    )

                for record, fields in updates:
                    await txn.update(record.id, fields)
                created = []
                for record in remainders:
                    record_id = await txn.create(record)
                    created.append(record.model_copy(update={"id": record_id}))
                outcome = SettlementResult(
                    client_id=client_id,
                    invoice_id=invoice_id,
                    amount_cents=amount_cents,
                    allocated=list(changed.values()),
                    remainders=created
                )

            return outcome

        result = await self._run("settle_invoice", operation)
        logger.info(
            "Settled %d from client %s account to invoice %s using %d payment(s), %d split",
            amount_cents, client_id, invoice_id, len(result.allocated), len(result.remainders)
        )
        await self._refresh_invoice_status(invoice_id)
        return result

    async def cancel_allocation(self, record_id: str) -> PaymentRecord:
        """Return an allocated record's money to the client account. Amount is unchanged."""
        operation_id = uuid.uuid4().hex
        outcome: Optional[Tuple[PaymentRecord, Optional[str]]] = None

        async def operation() -> Tuple[PaymentRecord, Optional[str]]:
            nonlocal outcome
            record = await self._get_record(record_id)

            async with self.store.transaction(record.client_id, operation_id=operation_id) as txn:
                if outcome is not None and await txn.applied(operation_id):
                    return outcome
                current = _find(await txn.list(), record_id)
                if current.document_id is None:
                    return current, None

                former = current.document_id
                fields = {
                    "document_id": None,
                    "settled_at": None,
                    "notes": current.with_note(f"Moved to client account from invoice {former}"),
                }
                await txn.update(record_id, fields)
                outcome = (current.model_copy(update=fields), former)

            return outcome

        record, former = await self._run("cancel_allocation", operation)
        if former is not None:
            logger.info(
                "Payment %s (%d) moved from invoice %s to client %s account",
                record_id, record.amount_cents, former, record.client_id
            )
            await self._refresh_invoice_status(former)
        return record

    async def cancel_invoice_allocations(self, invoice_id: str) -> List[PaymentRecord]:
        """Move every payment allocated to an invoice back to the client account (invoice cancellation)."""
        operation_id = uuid.uuid4().hex
        outcome: Optional[List[PaymentRecord]] = None

        async def operation() -> List[PaymentRecord]:
            nonlocal outcome
            invoice = await self._get_invoice(invoice_id)

            async with self.store.transaction(invoice.client_id, operation_id=operation_id) as txn:
                if outcome is not None and await txn.applied(operation_id):
                    return outcome
                before = await txn.list()
                moved = []
                for record in projector.allocated_records(before, invoice_id):
                    fields = {
                        "document_id": None,
                        "settled_at": None,
                        "notes": record.with_note(
                            "Moved to client account due to invoice cancellation"
                        ),
                    }
                    await txn.update(record.id, fields)
                    moved.append(record.model_copy(update=fields))
                outcome = moved
            return outcome

        moved = await self._run("cancel_invoice_allocations", operation)
        logger.info(
            "Invoice %s: %d payment(s) totalling %d moved to client account",
            invoice_id, len(moved), sum(r.amount_cents for r in moved)
        )
        if moved:
            await self._refresh_invoice_status(invoice_id)
        return moved

    async def delete_payment(self, record_id: str) -> PaymentRecord:
        """Remove a payment entirely. Destructive: the money leaves the ledger."""
        operation_id = uuid.uuid4().hex
        outcome: Optional[PaymentRecord] = None

        async def operation() -> PaymentRecord:
            nonlocal outcome
            # Once deleted the record can no longer be looked up to find its client
            client_id = outcome.client_id if outcome else (await self._get_record(record_id)).client_id
            async with self.store.transaction(client_id, operation_id=operation_id) as txn:
                if outcome is not None and await txn.applied(operation_id):
                    return outcome
                current = _find(await txn.list(), record_id)
                await txn.delete(record_id)
                outcome = current
            return outcome

        deleted = await self._run("delete_payment", operation)
        logger.info(
            "Deleted payment %s (%d) of client %s",
            record_id, deleted.amount_cents, deleted.client_id
        )
        if deleted.document_id is not None:
            await self._refresh_invoice_status(deleted.document_id)
        return deleted

    async def recompute_invoice_totals(self, invoice_id: str) -> PaymentStatusUpdate:
        """Derive total paid / paid / status from records and write them to the invoice."""

        async def operation() -> PaymentStatusUpdate:
            invoice = await self._get_invoice(invoice_id)
            update = await self._status_for(invoice)
            await self.invoices.set_payment_status(invoice_id, update)
            return update

        return await self._run("recompute_invoice_totals", operation)

    # ===== READ PROJECTIONS =====

    async def unallocated_balance(self, client_id: str) -> int:
        records = await self._run("unallocated_balance", lambda: self.store.list(client_id))
        return projector.unallocated_balance(records)

    async def outstanding_for_invoice(self, invoice_id: str) -> int:
        async def operation() -> int:
            invoice = await self._get_invoice(invoice_id)
            records = await self.store.list_for_invoice(invoice_id)
            return projector.outstanding_for_invoice(invoice, records)

        return await self._run("outstanding_for_invoice", operation)

    async def invoice_payment_status(self, invoice_id: str) -> Tuple[InvoiceSnapshot, PaymentStatusUpdate]:
        """Same numbers recompute_invoice_totals would write, without writing them."""

        async def operation():
            invoice = await self._get_invoice(invoice_id)
            return invoice, await self._status_for(invoice)

        return await self._run("invoice_payment_status", operation)

    async def client_outstanding_total(self, client_id: str) -> int:
        async def operation() -> int:
            invoices = await self.invoices.list_for_client(client_id)
            records = await self.store.list(client_id)
            return projector.client_outstanding_total(client_id, invoices, records)

        return await self._run("client_outstanding_total", operation)

    async def list_payments(self, client_id: str) -> List[PaymentRecord]:
        records = await self._run("list_payments", lambda: self.store.list(client_id))
        return sorted(records, key=lambda r: as_utc(r.payment_date), reverse=True)

    # ===== PRIVATE HELPERS =====

    async def _run(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation, retrying the whole of it on retryable ledger errors."""
        attempts = max(1, self.settings.MAX_ALLOCATION_RETRIES)
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except LedgerError as exc:
                if not exc.retryable or attempt == attempts:
                    raise
                logger.warning(
                    "%s failed with %s (attempt %d/%d), retrying: %s",
                    name, exc.code, attempt, attempts, exc.detail
                )
                await asyncio.sleep(self.settings.RETRY_BACKOFF_SECONDS * attempt)

    async def _get_invoice(self, invoice_id: str, client_id: Optional[str] = None) -> InvoiceSnapshot:
        invoice = await self.invoices.get_invoice(invoice_id)
        if invoice is None or (client_id is not None and invoice.client_id != client_id):
            raise InvoiceNotFound(f"Invoice {invoice_id} not found")
        return invoice

    async def _get_record(self, record_id: str) -> PaymentRecord:
        record = await self.store.get(record_id)
        if record is None:
            raise PaymentNotFound(f"Payment {record_id} not found")
        return record

    async def _status_for(self, invoice: InvoiceSnapshot) -> PaymentStatusUpdate:
        records = await self.store.list_for_invoice(invoice.id)
        return projector.status_update(
            invoice,
            records,
            self.clock(),
            overdue_after_days=self.settings.OVERDUE_AFTER_DAYS,
            tolerance_cents=self.tolerance
        )

    async def _refresh_invoice_status(self, invoice_id: str) -> None:
        """
        Recompute after a committed change. A failure here does not undo the
        change: status is derived and the next recompute repairs it.
        """
        try:
            await self.recompute_invoice_totals(invoice_id)
        except LedgerError as exc:
            logger.error(
                "Payment status of invoice %s not updated (%s): %s",
                invoice_id, exc.code, exc.detail
            )
        except Exception:
            logger.exception("Payment status of invoice %s not updated", invoice_id)


def _find(records: List[PaymentRecord], record_id: str) -> PaymentRecord:
    for record in records:
        if record.id == record_id:
            return record
    raise PaymentNotFound(f"Payment {record_id} not found")
