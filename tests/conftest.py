from datetime import datetime, timezone

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from payledger.api.deps import get_payment_engine
from payledger.core.auth import create_access_token, get_current_tenant
from payledger.core.config import Settings
from payledger.main import app
from payledger.models.invoice import InvoiceSnapshot
from payledger.models.payment import PaymentRecord
from payledger.repositories.memory import (
    InMemoryInvoiceGateway,
    InMemoryPaymentStore,
    MemoryBackend,
)
from payledger.services.payment_engine import PaymentEngine

TENANT_ID = "tenant-1"
CLIENT_ID = "client-1"
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def backend():
    """Fresh in-memory payments/invoices for each test."""
    return MemoryBackend()


@pytest.fixture
def test_settings():
    return Settings(
        RETRY_BACKOFF_SECONDS=0,
        MAX_ALLOCATION_RETRIES=3,
        PAID_TOLERANCE_CENTS=1,
        OVERDUE_AFTER_DAYS=30
    )


@pytest.fixture
def store(backend):
    return InMemoryPaymentStore(backend, TENANT_ID)


@pytest.fixture
def gateway(backend):
    return InMemoryInvoiceGateway(backend, TENANT_ID)


@pytest.fixture
def engine(store, gateway, test_settings):
    return PaymentEngine(store, gateway, settings=test_settings, clock=lambda: NOW)


@pytest.fixture
def make_invoice(backend):
    """Register an invoice with the (external) invoice gateway."""
    def _make(
        invoice_id="inv-1",
        total_cents=10000,
        client_id=CLIENT_ID,
        status="SENT",
        issued_at=NOW,
        tenant_id=TENANT_ID
    ):
        return backend.put_invoice(InvoiceSnapshot(
            id=invoice_id,
            tenant_id=tenant_id,
            client_id=client_id,
            total_cents=total_cents,
            status=status,
            issued_at=issued_at
        ))
    return _make


@pytest.fixture
def seed_payment(backend):
    """Insert a payment record directly, bypassing the engine."""
    def _seed(
        amount_cents,
        payment_date=NOW,
        document_id=None,
        client_id=CLIENT_ID,
        created_at=None,
        tenant_id=TENANT_ID
    ):
        return backend.put_record(PaymentRecord(
            tenant_id=tenant_id,
            client_id=client_id,
            document_id=document_id,
            amount_cents=amount_cents,
            payment_date=payment_date,
            created_at=created_at or payment_date,
            updated_at=created_at or payment_date
        ))
    return _seed


@pytest.fixture
def api_client(backend, test_settings):
    """TestClient whose payment engine runs on the test backend for the token's tenant."""
    def engine_for_tenant(tenant_id: str = Depends(get_current_tenant)):
        return PaymentEngine(
            InMemoryPaymentStore(backend, tenant_id),
            InMemoryInvoiceGateway(backend, tenant_id),
            settings=test_settings,
            clock=lambda: NOW
        )

    app.dependency_overrides[get_payment_engine] = engine_for_tenant
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    token = create_access_token(TENANT_ID)
    return {"Authorization": f"Bearer {token}"}
