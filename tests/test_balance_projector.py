from datetime import datetime, timedelta, timezone

import pytest

from payledger.models.invoice import InvoiceSnapshot, PaymentStatus
from payledger.models.payment import AllocatedTo, PaymentRecord, Unallocated
from payledger.services import balance_projector as projector

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _record(record_id, amount, document_id=None, payment_date=NOW, created_at=NOW, client_id="c1"):
    return PaymentRecord(
        id=record_id,
        tenant_id="t1",
        client_id=client_id,
        document_id=document_id,
        amount_cents=amount,
        payment_date=payment_date,
        created_at=created_at
    )


def _invoice(invoice_id="inv-1", total=10000, status="SENT", issued_at=NOW, client_id="c1"):
    return InvoiceSnapshot(
        id=invoice_id,
        tenant_id="t1",
        client_id=client_id,
        total_cents=total,
        status=status,
        issued_at=issued_at
    )


def test_unallocated_balance_ignores_allocated_records():
    records = [_record("a", 3000), _record("b", 2000, "inv-1"), _record("c", 500)]

    assert projector.unallocated_balance(records) == 3500
    assert [r.id for r in projector.unallocated_records(records)] == ["a", "c"]


def test_unallocated_balance_filters_by_client():
    records = [_record("a", 3000), _record("b", 2000, client_id="c2")]

    assert projector.unallocated_balance(records, "c2") == 2000
    assert projector.unallocated_balance([], "c1") == 0


def test_outstanding_for_invoice():
    invoice = _invoice(total=10000)
    records = [_record("a", 4000, "inv-1"), _record("b", 1000, "inv-2"), _record("c", 700)]

    assert projector.outstanding_for_invoice(invoice, records) == 6000


def test_outstanding_never_negative():
    invoice = _invoice(total=1000)

    assert projector.outstanding_for_invoice(invoice, [_record("a", 1500, "inv-1")]) == 0


def test_cancelled_invoice_accepts_nothing():
    assert projector.allocatable_amount(_invoice(status="CANCELLED"), []) == 0
    assert projector.allocatable_amount(_invoice(status="VOID"), []) == 0
    assert projector.allocatable_amount(_invoice(), []) == 10000


def test_client_outstanding_total_skips_cancelled_and_other_clients():
    invoices = [
        _invoice("inv-1", 10000),
        _invoice("inv-2", 5000),
        _invoice("inv-3", 9999, status="CANCELLED"),
        _invoice("inv-4", 8000, client_id="c2"),
    ]
    records = [_record("a", 2500, "inv-1"), _record("b", 5000, "inv-2")]

    assert projector.client_outstanding_total("c1", invoices, records) == 7500


def test_fifo_order_by_payment_date_then_created_at():
    jan1 = datetime(2025, 1, 1, tzinfo=timezone.utc)
    jan5 = datetime(2025, 1, 5, tzinfo=timezone.utc)
    records = [
        _record("late", 100, payment_date=jan5, created_at=jan5),
        _record("second", 100, payment_date=jan1, created_at=jan1 + timedelta(hours=2)),
        _record("first", 100, payment_date=jan1, created_at=jan1),
    ]

    assert [r.id for r in projector.fifo_order(records)] == ["first", "second", "late"]


def test_fifo_order_handles_naive_dates():
    naive = datetime(2025, 1, 1)
    aware = datetime(2025, 1, 2, tzinfo=timezone.utc)
    records = [_record("b", 100, payment_date=aware), _record("a", 100, payment_date=naive)]

    assert [r.id for r in projector.fifo_order(records)] == ["a", "b"]


@pytest.mark.parametrize("paid,expected", [
    (0, PaymentStatus.UNPAID),
    (1, PaymentStatus.PARTIAL),
    (9998, PaymentStatus.PARTIAL),
    (9999, PaymentStatus.PAID),
    (10000, PaymentStatus.PAID),
])
def test_payment_status_transitions(paid, expected):
    invoice = _invoice(total=10000)

    assert projector.payment_status(invoice, paid, NOW, tolerance_cents=1) == expected


def test_unpaid_invoice_becomes_overdue():
    invoice = _invoice(issued_at=NOW - timedelta(days=31))

    assert projector.payment_status(invoice, 0, NOW, overdue_after_days=30) == PaymentStatus.OVERDUE
    # partial payment wins over age
    assert projector.payment_status(invoice, 100, NOW, overdue_after_days=30) == PaymentStatus.PARTIAL


def test_zero_total_invoice_is_paid():
    assert projector.payment_status(_invoice(total=0), 0, NOW) == PaymentStatus.PAID


def test_status_update_is_derived_from_allocated_records():
    feb = datetime(2025, 2, 10, tzinfo=timezone.utc)
    invoice = _invoice(total=10000)
    records = [
        _record("a", 4000, "inv-1", payment_date=datetime(2025, 1, 3, tzinfo=timezone.utc)),
        _record("b", 1000, "inv-1", payment_date=feb),
        _record("c", 9000),
    ]

    update = projector.status_update(invoice, records, NOW, tolerance_cents=1)

    assert update.total_paid_cents == 5000
    assert update.outstanding_cents == 5000
    assert update.paid is False
    assert update.payment_status == PaymentStatus.PARTIAL
    assert update.last_payment_date == feb


def test_status_update_without_payments():
    update = projector.status_update(_invoice(), [], NOW)

    assert update.total_paid_cents == 0
    assert update.last_payment_date is None
    assert update.payment_status == PaymentStatus.UNPAID


def test_record_allocation_variant():
    assert _record("a", 100).allocation == Unallocated()
    assert _record("a", 100, "inv-9").allocation == AllocatedTo("inv-9")
    assert _record("a", 100, "inv-9").settled_to_document is True
    assert _record("a", 100).settled_to_document is False
