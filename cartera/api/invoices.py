"""
Invoice and financing endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, status

from .schemas import (
    RegisterInvoiceRequest, ConfigureFinancingRequest, parse_currency, to_money,
    invoice_to_dict, installment_to_dict, tracking_to_dict
)
from .system import CarteraSystem, get_cartera_system


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def register_invoice(
    request: RegisterInvoiceRequest,
    system: CarteraSystem = Depends(get_cartera_system)
):
    """Register an invoice issued by billing"""
    currency = parse_currency(request.currency) if request.currency else system.currency

    invoice = system.invoice_store.register_invoice(
        number=request.number,
        total_amount=to_money(request.total_amount, currency, "total_amount"),
        issue_date=request.issue_date,
        due_date=request.due_date,
        client_name=request.client_name,
        case_number=request.case_number,
        recorded_by=request.recorded_by
    )
    return invoice_to_dict(invoice)


@router.get("/{invoice_id}")
def get_invoice(
    invoice_id: str,
    system: CarteraSystem = Depends(get_cartera_system)
):
    """Get invoice details"""
    return invoice_to_dict(system.invoice_store.require_invoice(invoice_id))


@router.put("/{invoice_id}/financing")
def configure_financing(
    invoice_id: str,
    request: ConfigureFinancingRequest,
    system: CarteraSystem = Depends(get_cartera_system)
):
    """Finance an invoice in monthly installments and return the schedule"""
    installments = system.financing_manager.configure_financing(
        invoice_id=invoice_id,
        installment_count=request.installment_count,
        monthly_rate_percent=request.monthly_rate_percent,
        start_date=request.start_date,
        recorded_by=request.recorded_by
    )
    return {
        "invoice_id": invoice_id,
        "schedule": [installment_to_dict(i) for i in installments]
    }


@router.get("/{invoice_id}/schedule")
def get_schedule(
    invoice_id: str,
    system: CarteraSystem = Depends(get_cartera_system)
):
    """Get the persisted installment schedule"""
    installments = system.financing_manager.get_schedule(invoice_id)
    return {
        "invoice_id": invoice_id,
        "schedule": [installment_to_dict(i) for i in installments]
    }


@router.get("/{invoice_id}/tracking")
def get_tracking(
    invoice_id: str,
    as_of: Optional[date] = None,
    system: CarteraSystem = Depends(get_cartera_system)
):
    """Installment states, totals and payment history"""
    return tracking_to_dict(system.payment_manager.get_invoice_tracking(invoice_id, as_of=as_of))
