"""
Reporting endpoints
"""

from fastapi import APIRouter, Depends

from .auth import TellerSystem, get_request_context, get_system
from ..identity import RequestContext
from ..permissions import Operation, require


router = APIRouter()


@router.get("/summary")
def ledger_summary(
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    """Ledger-wide totals"""
    require(ctx.identity, Operation.VIEW_DASHBOARD)
    return system.reporting_engine.get_ledger_summary().to_dict()


@router.get("/dashboard")
def dashboard(
    quote_currency: str = "USD",
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    return system.reporting_engine.dashboard(ctx, quote_currency=quote_currency).to_dict()
