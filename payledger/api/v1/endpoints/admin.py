import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from payledger.api.deps import require_mongo_backend
from payledger.core.auth import require_admin_tenant
from payledger.repositories.invoice_repo import MongoInvoiceGateway
from payledger.repositories.payment_repo import MongoPaymentStore
from payledger.services.payment_engine import PaymentEngine
from payledger.services.recovery_service import (
    MisattributedPayment,
    RecoveryService,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class MisattributionResponse(BaseModel):
    tenant_id: str
    documents_scanned: int
    total_cents: int
    payments: List[MisattributedPayment]


class ReassignResponse(BaseModel):
    tenant_id: str
    reassigned: int
    invoices_recomputed: int


class ReconstructRequest(BaseModel):
    tenant_id: str
    dry_run: bool = True


class ReconstructResponse(BaseModel):
    tenant_id: str
    dry_run: bool
    documents_scanned: int
    documents_skipped: int
    restored_records: int
    restored_cents: int
    invoices_recomputed: int


async def _recompute_all(db, tenant_id: str, invoice_ids: List[str]) -> int:
    engine = PaymentEngine(MongoPaymentStore(db, tenant_id), MongoInvoiceGateway(db, tenant_id))
    for invoice_id in invoice_ids:
        await engine.recompute_invoice_totals(invoice_id)
    return len(invoice_ids)


@router.get("/misattributed-payments", response_model=MisattributionResponse)
async def find_misattributed_payments(
    tenant_id: str,
    admin_id: str = Depends(require_admin_tenant),
    db = Depends(require_mongo_backend)
):
    """Payments pointing at tenant_id's invoices but owned by another tenant."""
    report = await RecoveryService.find_misattributed_payments(tenant_id)
    return MisattributionResponse(
        tenant_id=report.tenant_id,
        documents_scanned=report.documents_scanned,
        total_cents=report.total_cents,
        payments=report.payments
    )


@router.post("/misattributed-payments/reassign", response_model=ReassignResponse)
async def reassign_misattributed_payments(
    tenant_id: str,
    admin_id: str = Depends(require_admin_tenant),
    db = Depends(require_mongo_backend)
):
    report = await RecoveryService.find_misattributed_payments(tenant_id)
    moved = await RecoveryService.reassign_payments(report.payments)
    logger.warning("Admin %s reassigned %d payment(s) to tenant %s", admin_id, moved, tenant_id)

    invoice_ids = sorted({p.document_id for p in report.payments})
    return ReassignResponse(
        tenant_id=tenant_id,
        reassigned=moved,
        invoices_recomputed=await _recompute_all(db, tenant_id, invoice_ids)
    )


@router.post("/reconstruct-payments", response_model=ReconstructResponse)
async def reconstruct_payments(
    payload: ReconstructRequest,
    admin_id: str = Depends(require_admin_tenant),
    db = Depends(require_mongo_backend)
):
    """Rebuild payment records from legacy invoice data. Dry run by default."""
    report = await RecoveryService.reconstruct_payments(payload.tenant_id, dry_run=payload.dry_run)

    recomputed = 0
    if not payload.dry_run:
        logger.warning(
            "Admin %s restored %d payment record(s) for tenant %s",
            admin_id, len(report.restored), payload.tenant_id
        )
        recomputed = await _recompute_all(db, payload.tenant_id, report.document_ids)

    return ReconstructResponse(
        tenant_id=report.tenant_id,
        dry_run=report.dry_run,
        documents_scanned=report.documents_scanned,
        documents_skipped=report.documents_skipped,
        restored_records=len(report.restored),
        restored_cents=report.restored_cents,
        invoices_recomputed=recomputed
    )
