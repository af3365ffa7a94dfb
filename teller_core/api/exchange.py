"""
Exchange rate endpoints
"""

from fastapi import APIRouter, Depends, HTTPException

from .auth import TellerSystem, get_request_context, get_system
from .schemas import SetExchangeRateRequest, rate_to_dict
from ..identity import RequestContext


router = APIRouter()


@router.get("")
def list_rates(
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    return {
        "base_currency": system.rate_book.base_currency,
        "rates": [rate_to_dict(r) for r in system.rate_book.list_rates()]
    }


@router.put("/{currency_code}")
def set_rate(
    currency_code: str,
    request: SetExchangeRateRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    """Create or replace the rate for a currency"""
    rate = system.with_conflict_retry(
        system.rate_book.set_rate, ctx, currency_code, request.currency_name, request.rate_to_base
    )
    return rate_to_dict(rate)


@router.get("/{currency_code}/convert")
def convert(
    currency_code: str,
    amount: str,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    """Convert an amount of the currency into the base currency"""
    converted = system.rate_book.convert(amount, currency_code)
    if converted is None:
        raise HTTPException(status_code=404, detail=f"No exchange rate for {currency_code.upper()}")
    return {
        "currency_code": currency_code.upper(),
        "amount": amount,
        "base_currency": system.rate_book.base_currency,
        "converted_amount": str(converted)
    }
