"""
Portfolio (accounts receivable) endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends

from .schemas import parse_currency, portfolio_entry_to_dict, statistics_to_dict
from .system import CarteraSystem, get_cartera_system
from ..reporting import PortfolioStatus


router = APIRouter()


@router.get("")
def list_portfolio(
    search: Optional[str] = None,
    status: PortfolioStatus = PortfolioStatus.ALL,
    as_of: Optional[date] = None,
    system: CarteraSystem = Depends(get_cartera_system)
):
    """Financed invoices with their outstanding balance"""
    entries = system.portfolio_report.list_portfolio(search=search, status_filter=status, as_of=as_of)
    return {
        "invoices": [portfolio_entry_to_dict(e) for e in entries],
        "count": len(entries)
    }


@router.get("/statistics")
def get_statistics(
    as_of: Optional[date] = None,
    currency: Optional[str] = None,
    system: CarteraSystem = Depends(get_cartera_system)
):
    """Headline portfolio figures for one currency, the configured one by default"""
    stats = system.portfolio_report.portfolio_statistics(
        as_of=as_of, currency=parse_currency(currency) if currency else None
    )
    return statistics_to_dict(stats)
