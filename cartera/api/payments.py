"""
Payment endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Response, status

from .schemas import ApplyPaymentRequest, payment_result_to_dict, to_money
from .system import CarteraSystem, get_cartera_system


router = APIRouter()


@router.post("/{invoice_id}/payments", status_code=status.HTTP_201_CREATED)
def apply_payment(
    invoice_id: str,
    request: ApplyPaymentRequest,
    response: Response,
    as_of: Optional[date] = None,
    system: CarteraSystem = Depends(get_cartera_system)
):
    """Record a payment and distribute it over the invoice's installments"""
    currency = system.invoice_store.require_invoice(invoice_id).currency

    result = system.payment_manager.apply_payment(
        invoice_id=invoice_id,
        amount=to_money(request.amount, currency, "amount"),
        method=request.method,
        distribution=request.distribution.to_request(currency),
        reference=request.reference,
        note=request.note,
        recorded_by=request.recorded_by,
        payment_date=request.payment_date,
        idempotency_key=request.idempotency_key,
        as_of=as_of
    )

    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return payment_result_to_dict(result)
