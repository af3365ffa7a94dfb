"""
Transaction endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status

from .auth import TellerSystem, get_request_context, get_system
from .schemas import TransactionRequestModel, transaction_to_dict
from ..errors import ValidationError
from ..identity import RequestContext
from ..transactions import TransactionRequest, TransactionType


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def submit_transaction(
    request: TransactionRequestModel,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    """Execute a deposit, withdrawal or transfer"""
    transaction = system.with_conflict_retry(
        system.transaction_engine.execute,
        ctx, TransactionRequest(**request.model_dump())
    )
    return transaction_to_dict(transaction)


@router.get("")
def list_transactions(
    account: Optional[str] = None,
    transaction_type: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    """All transactions, or one account's history"""
    if transaction_type:
        try:
            TransactionType(transaction_type)
        except ValueError:
            raise ValidationError(f"Unknown transaction type: {transaction_type}",
                                  field="transaction_type")
    transactions = system.transaction_engine.list_transactions(
        ctx, account_id=account, transaction_type=transaction_type or None, limit=limit
    )
    return {"transactions": [transaction_to_dict(t) for t in transactions], "count": len(transactions)}


@router.get("/{transaction_id}")
def get_transaction(
    transaction_id: str,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    transaction = system.transaction_engine.get_transaction(ctx, transaction_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction_to_dict(transaction)
