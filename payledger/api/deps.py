from fastapi import Depends, HTTPException, status

from payledger.core.auth import get_current_tenant
from payledger.core.config import settings
from payledger.db.mongo import get_db
from payledger.repositories.invoice_repo import MongoInvoiceGateway
from payledger.repositories.memory import (
    InMemoryInvoiceGateway,
    InMemoryPaymentStore,
    memory_backend,
)
from payledger.repositories.payment_repo import MongoPaymentStore
from payledger.services.payment_engine import PaymentEngine


def get_payment_engine(
    tenant_id: str = Depends(get_current_tenant),
    db = Depends(get_db)
) -> PaymentEngine:
    """Payment engine bound to the calling tenant's records."""
    if settings.STORAGE_BACKEND == "memory":
        return PaymentEngine(
            InMemoryPaymentStore(memory_backend, tenant_id),
            InMemoryInvoiceGateway(memory_backend, tenant_id)
        )
    return PaymentEngine(
        MongoPaymentStore(db, tenant_id),
        MongoInvoiceGateway(db, tenant_id)
    )


def require_mongo_backend(db = Depends(get_db)):
    """Recovery jobs work on raw MongoDB collections and have no in-memory counterpart."""
    if settings.STORAGE_BACKEND != "mongo" or db is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Recovery jobs require the MongoDB storage backend"
        )
    return db

