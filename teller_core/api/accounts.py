"""
Account management endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import TellerSystem, get_request_context, get_system
from .schemas import (
    AccountActionRequest, CreateAccountRequest, UpdateCustomerRequest, account_to_dict
)
from ..accounts import AccountStatus
from ..errors import ValidationError
from ..identity import RequestContext
from ..permissions import Operation, require_any


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_account(
    request: CreateAccountRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    """Open a customer account"""
    details = request.model_dump(exclude={"name", "account_type", "phone"}, exclude_none=True)
    account = system.with_conflict_retry(
        system.account_manager.create_account,
        ctx, request.name, request.account_type, request.phone, **details
    )
    return account_to_dict(account)


@router.get("")
def list_accounts(
    status_filter: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    """List accounts, optionally filtered by status"""
    account_status = None
    if status_filter:
        try:
            account_status = AccountStatus(status_filter)
        except ValueError:
            raise ValidationError(f"Unknown status: {status_filter}", field="status_filter")
    accounts = system.account_manager.list_accounts(ctx, status=account_status)
    return {"accounts": [account_to_dict(a) for a in accounts], "count": len(accounts)}


@router.get("/{account_ref}")
def get_account(
    account_ref: str,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    """Get an account by id or account number"""
    require_any(ctx.identity, Operation.VIEW_CUSTOMERS, Operation.MANAGE_TRANSACTIONS)
    return account_to_dict(system.account_manager.resolve(account_ref))


@router.patch("/{account_id}")
def update_customer_info(
    account_id: str,
    request: UpdateCustomerRequest,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    """Edit legal/personal information"""
    account = system.with_conflict_retry(
        system.account_manager.update_customer_info,
        ctx, account_id, **request.model_dump(exclude_unset=True)
    )
    return account_to_dict(account)


@router.post("/{account_id}/freeze")
def freeze_account(
    account_id: str,
    request: Optional[AccountActionRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    account = system.with_conflict_retry(
        system.account_manager.freeze_account,
        ctx, account_id, reason=request.reason if request else None
    )
    return account_to_dict(account)


@router.post("/{account_id}/close")
def close_account(
    account_id: str,
    request: Optional[AccountActionRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
    system: TellerSystem = Depends(get_system)
):
    account = system.with_conflict_retry(
        system.account_manager.close_account,
        ctx, account_id, reason=request.reason if request else None
    )
    return account_to_dict(account)
