from typing import List
from fastapi import APIRouter, Depends

from payledger.api.deps import get_payment_engine
from payledger.models.invoice import InvoiceSnapshot, PaymentStatusUpdate
from payledger.schemas.payment import InvoicePaymentStatusResponse, PaymentResponse
from payledger.services.payment_engine import PaymentEngine

router = APIRouter()


def _status_response(invoice: InvoiceSnapshot, update: PaymentStatusUpdate) -> InvoicePaymentStatusResponse:
    return InvoicePaymentStatusResponse(
        invoice_id=invoice.id,
        client_id=invoice.client_id,
        total_cents=invoice.total_cents,
        **update.model_dump()
    )


@router.get("/{invoice_id}/outstanding", response_model=InvoicePaymentStatusResponse)
async def get_invoice_outstanding(
    invoice_id: str,
    engine: PaymentEngine = Depends(get_payment_engine)
):
    """Outstanding amount and derived payment status, computed from payment records."""
    invoice, update = await engine.invoice_payment_status(invoice_id)
    return _status_response(invoice, update)


@router.post("/{invoice_id}/recompute", response_model=InvoicePaymentStatusResponse)
async def recompute_invoice(
    invoice_id: str,
    engine: PaymentEngine = Depends(get_payment_engine)
):
    """Rederive and store payment status, e.g. after the invoice total was edited."""
    update = await engine.recompute_invoice_totals(invoice_id)
    invoice, _ = await engine.invoice_payment_status(invoice_id)
    return _status_response(invoice, update)


@router.post("/{invoice_id}/cancel-allocations", response_model=List[PaymentResponse])
async def cancel_invoice_allocations(
    invoice_id: str,
    engine: PaymentEngine = Depends(get_payment_engine)
):
    """Return every payment allocated to a cancelled invoice to the client account."""
    records = await engine.cancel_invoice_allocations(invoice_id)
    return [PaymentResponse.from_record(r) for r in records]
