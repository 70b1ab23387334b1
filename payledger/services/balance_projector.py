"""
Balance projections derived from payment records.

Nothing here is stored: the unallocated balance, invoice outstanding amounts
and invoice payment status are recomputed from the record set on every call.
The engine (preconditions) and the API (display) use the same functions.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from payledger.models.base import as_utc
from payledger.models.invoice import InvoiceSnapshot, PaymentStatus, PaymentStatusUpdate
from payledger.models.payment import PaymentRecord


def unallocated_records(
    records: Iterable[PaymentRecord],
    client_id: Optional[str] = None
) -> List[PaymentRecord]:
    return [
        r for r in records
        if r.document_id is None and (client_id is None or r.client_id == client_id)
    ]


def unallocated_balance(records: Iterable[PaymentRecord], client_id: Optional[str] = None) -> int:
    """Client account balance: money received but not applied to any invoice."""
    return sum(r.amount_cents for r in unallocated_records(records, client_id))


def allocated_records(records: Iterable[PaymentRecord], invoice_id: str) -> List[PaymentRecord]:
    return [r for r in records if r.is_allocated_to(invoice_id)]


def allocated_total(records: Iterable[PaymentRecord], invoice_id: str) -> int:
    return sum(r.amount_cents for r in allocated_records(records, invoice_id))


def outstanding_for_invoice(invoice: InvoiceSnapshot, records: Iterable[PaymentRecord]) -> int:
    """max(0, total - paid) for one invoice."""
    return max(0, invoice.total_cents - allocated_total(records, invoice.id))


def allocatable_amount(invoice: InvoiceSnapshot, records: Iterable[PaymentRecord]) -> int:
    """How much new money the invoice can take. Cancelled/converted invoices take none."""
    if not invoice.accepts_payments:
        return 0
    return outstanding_for_invoice(invoice, records)


def client_outstanding_total(
    client_id: str,
    invoices: Iterable[InvoiceSnapshot],
    records: Iterable[PaymentRecord]
) -> int:
    """Sum of outstanding amounts over the client's live (not cancelled/converted) invoices."""
    records = list(records)
    return sum(
        outstanding_for_invoice(invoice, records)
        for invoice in invoices
        if invoice.client_id == client_id and invoice.accepts_payments
    )


def fifo_order(records: Iterable[PaymentRecord]) -> List[PaymentRecord]:
    """Oldest money first: payment_date, then created_at, then id for a stable order."""
    return sorted(
        records,
        key=lambda r: (as_utc(r.payment_date), as_utc(r.created_at), r.id or "")
    )


def is_paid(total_paid_cents: int, total_cents: int, tolerance_cents: int = 0) -> bool:
    return total_paid_cents + tolerance_cents >= total_cents


def payment_status(
    invoice: InvoiceSnapshot,
    total_paid_cents: int,
    now: datetime,
    overdue_after_days: int = 30,
    tolerance_cents: int = 0
) -> PaymentStatus:
    """
    Derived payment state of an invoice.

    UNPAID -> PARTIAL -> PAID, with OVERDUE for an unpaid invoice older than
    overdue_after_days. Always a pure function of (paid, total, age).
    """
    if is_paid(total_paid_cents, invoice.total_cents, tolerance_cents):
        return PaymentStatus.PAID
    if total_paid_cents > 0:
        return PaymentStatus.PARTIAL
    if as_utc(now) - as_utc(invoice.issued_at) > timedelta(days=overdue_after_days):
        return PaymentStatus.OVERDUE
    return PaymentStatus.UNPAID


def status_update(
    invoice: InvoiceSnapshot,
    records: Iterable[PaymentRecord],
    now: datetime,
    overdue_after_days: int = 30,
    tolerance_cents: int = 0
) -> PaymentStatusUpdate:
    """Everything the invoice needs to know about its payments, derived from records."""
    allocated = allocated_records(records, invoice.id)
    total_paid = sum(r.amount_cents for r in allocated)
    last_payment_date = max((as_utc(r.payment_date) for r in allocated), default=None)

    return PaymentStatusUpdate(
        total_paid_cents=total_paid,
        outstanding_cents=max(0, invoice.total_cents - total_paid),
        paid=is_paid(total_paid, invoice.total_cents, tolerance_cents),
        payment_status=payment_status(
            invoice, total_paid, now, overdue_after_days, tolerance_cents
        ),
        last_payment_date=last_payment_date
    )
