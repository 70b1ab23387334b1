from typing import List
from fastapi import APIRouter, Depends, status

from payledger.api.deps import get_payment_engine
from payledger.schemas.payment import PaymentCreate, PaymentResponse
from payledger.services.payment_engine import PaymentEngine

router = APIRouter()

@router.post("/", response_model=List[PaymentResponse], status_code=status.HTTP_201_CREATED)
async def record_payment(
    payment_in: PaymentCreate,
    engine: PaymentEngine = Depends(get_payment_engine)
):
    """
    Record a payment. Returns one record, or two when an invoice payment
    exceeds the outstanding amount (the excess stays on the client account).
    """
    records = await engine.record_payment(
        payment_in.client_id,
        payment_in.amount_cents,
        payment_in.invoice_id,
        payment_date=payment_in.payment_date,
        payment_method=payment_in.payment_method,
        reference=payment_in.reference,
        notes=payment_in.notes
    )
    return [PaymentResponse.from_record(r) for r in records]

@router.get("/client/{client_id}", response_model=List[PaymentResponse])
async def list_client_payments(
    client_id: str,
    engine: PaymentEngine = Depends(get_payment_engine)
):
    """All payment records of a client, newest first."""
    records = await engine.list_payments(client_id)
    return [PaymentResponse.from_record(r) for r in records]

@router.post("/{record_id}/cancel-allocation", response_model=PaymentResponse)
async def cancel_allocation(
    record_id: str,
    engine: PaymentEngine = Depends(get_payment_engine)
):
    """Move an allocated payment back to the client account."""
    record = await engine.cancel_allocation(record_id)
    return PaymentResponse.from_record(record)

@router.delete("/{record_id}")
async def delete_payment(
    record_id: str,
    engine: PaymentEngine = Depends(get_payment_engine)
):
    await engine.delete_payment(record_id)
    return {"message": "Payment deleted successfully"}
