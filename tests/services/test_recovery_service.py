from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bson import ObjectId

from payledger.services.recovery_service import MisattributedPayment, RecoveryService


def _cursor(items):
    """Mock Motor cursor supporting both to_list() and async iteration."""
    cursor = MagicMock()
    cursor.to_list = AsyncMock(return_value=items)

    async def _iter():
        for item in items:
            yield item

    cursor.__aiter__ = lambda self: _iter()
    return cursor


@pytest.fixture
def mock_db():
    db = MagicMock()
    db.payments.update_one = AsyncMock(return_value=MagicMock(modified_count=1))
    db.payments.insert_many = AsyncMock()
    db.payments.count_documents = AsyncMock(return_value=0)
    db.client_ledgers.update_one = AsyncMock()
    return db


@pytest.mark.asyncio
async def test_find_misattributed_payments(mock_db):
    invoice_id = ObjectId()
    stray = {
        "_id": ObjectId(),
        "tenant_id": "tenant-b",
        "client_id": "client-1",
        "document_id": str(invoice_id),
        "amount_cents": 4200,
        "reference": "TRX-1",
    }
    mock_db.documents.find.return_value = _cursor([{"_id": invoice_id}])
    mock_db.payments.find.return_value = _cursor([stray])

    with patch("payledger.services.recovery_service.get_database", return_value=mock_db):
        report = await RecoveryService.find_misattributed_payments("tenant-a")

    query = mock_db.payments.find.call_args[0][0]
    assert query == {"document_id": {"$in": [str(invoice_id)]}, "tenant_id": {"$ne": "tenant-a"}}
    assert report.documents_scanned == 1
    assert report.total_cents == 4200
    assert report.payments[0].current_tenant_id == "tenant-b"
    assert report.payments[0].correct_tenant_id == "tenant-a"


@pytest.mark.asyncio
async def test_find_misattributed_payments_without_documents(mock_db):
    mock_db.documents.find.return_value = _cursor([])

    with patch("payledger.services.recovery_service.get_database", return_value=mock_db):
        report = await RecoveryService.find_misattributed_payments("tenant-a")

    mock_db.payments.find.assert_not_called()
    assert report.payments == []


@pytest.mark.asyncio
async def test_reassign_payments_bumps_both_ledgers(mock_db):
    payment = MisattributedPayment(
        payment_id=str(ObjectId()),
        amount_cents=4200,
        document_id="inv-1",
        client_id="client-1",
        current_tenant_id="tenant-b",
        correct_tenant_id="tenant-a"
    )

    with patch("payledger.services.recovery_service.get_database", return_value=mock_db):
        moved = await RecoveryService.reassign_payments([payment])

    assert moved == 1
    query, change = mock_db.payments.update_one.call_args[0]
    assert query["tenant_id"] == "tenant-b"
    assert change["$set"]["tenant_id"] == "tenant-a"
    bumped = {c[0][0]["_id"] for c in mock_db.client_ledgers.update_one.call_args_list}
    assert bumped == {"tenant-a:client-1", "tenant-b:client-1"}


@pytest.mark.asyncio
async def test_reconstruct_from_embedded_payments(mock_db):
    invoice_id = ObjectId()
    doc = {
        "_id": invoice_id,
        "tenant_id": "tenant-a",
        "client_id": "client-1",
        "document_number": "INV-007",
        "total": 100.0,
        "payments": [
            {"amount": 60.0, "date": datetime(2024, 5, 1, tzinfo=timezone.utc), "method": "cash"},
            {"amount": 55.5, "reference": "CHK-9"},
        ],
    }
    mock_db.documents.find.return_value = _cursor([doc])

    with patch("payledger.services.recovery_service.get_database", return_value=mock_db):
        report = await RecoveryService.reconstruct_payments("tenant-a")

    amounts = [(r.document_id, r.amount_cents) for r in report.restored]
    assert amounts == [(str(invoice_id), 6000), (str(invoice_id), 4000), (None, 1550)]
    assert all(r.reconstructed for r in report.restored)
    assert report.restored[0].payment_method == "cash"
    assert report.restored[1].reference == "CHK-9"
    assert report.restored_cents == 11550
    assert report.document_ids == [str(invoice_id)]
    mock_db.payments.insert_many.assert_awaited_once()
    mock_db.client_ledgers.update_one.assert_awaited_once()


@pytest.mark.asyncio
async def test_reconstruct_from_total_paid_is_marked_partial(mock_db):
    doc = {
        "_id": ObjectId(),
        "tenant_id": "tenant-a",
        "client": {"id": "client-9"},
        "total_cents": 5000,
        "total_paid_cents": 2000,
    }
    mock_db.documents.find.return_value = _cursor([doc])

    with patch("payledger.services.recovery_service.get_database", return_value=mock_db):
        report = await RecoveryService.reconstruct_payments("tenant-a", dry_run=True)

    [record] = report.restored
    assert record.client_id == "client-9"
    assert record.amount_cents == 2000
    assert "Partial history" in record.notes
    mock_db.payments.insert_many.assert_not_called()


@pytest.mark.asyncio
async def test_reconstruct_skips_documents_with_records(mock_db):
    doc = {"_id": ObjectId(), "tenant_id": "tenant-a", "client_id": "c", "total_cents": 100, "total_paid_cents": 100}
    mock_db.documents.find.return_value = _cursor([doc])
    mock_db.payments.count_documents = AsyncMock(return_value=2)

    with patch("payledger.services.recovery_service.get_database", return_value=mock_db):
        report = await RecoveryService.reconstruct_payments("tenant-a")

    assert report.documents_skipped == 1
    assert report.restored == []
    mock_db.payments.insert_many.assert_not_called()
