from fastapi import APIRouter, Depends

from payledger.api.deps import get_payment_engine
from payledger.schemas.payment import (
    ClientBalanceResponse,
    PaymentResponse,
    SettlementRequest,
    SettlementResponse,
)
from payledger.services.payment_engine import PaymentEngine

router = APIRouter()

@router.get("/{client_id}/balance", response_model=ClientBalanceResponse)
async def get_client_balance(
    client_id: str,
    engine: PaymentEngine = Depends(get_payment_engine)
):
    """Unallocated client account balance and total outstanding on live invoices."""
    return ClientBalanceResponse(
        client_id=client_id,
        unallocated_cents=await engine.unallocated_balance(client_id),
        outstanding_cents=await engine.client_outstanding_total(client_id)
    )

@router.post("/{client_id}/settlements", response_model=SettlementResponse)
async def settle_invoice(
    client_id: str,
    payload: SettlementRequest,
    engine: PaymentEngine = Depends(get_payment_engine)
):
    """Apply client account money to an invoice (oldest payments first)."""
    result = await engine.settle_invoice(client_id, payload.invoice_id, payload.amount_cents)
    return SettlementResponse(
        client_id=result.client_id,
        invoice_id=result.invoice_id,
        amount_cents=result.amount_cents,
        allocated=[PaymentResponse.from_record(r) for r in result.allocated],
        remainders=[PaymentResponse.from_record(r) for r in result.remainders]
    )
