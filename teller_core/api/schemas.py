"""
Pydantic schemas for API requests and responses
"""

from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field

from ..accounts import Account
from ..currency import ExchangeRate
from ..identity import EmployeeIdentity
from ..transactions import Transaction


# Session schemas
class LoginRequest(BaseModel):
    email: str
    password: str


class IdentityModel(BaseModel):
    employee_id: str
    email: str
    name: str
    role: str
    permissions: List[str]
    branch: Optional[str] = None
    allowed_operations: List[str] = []

    @classmethod
    def from_identity(cls, identity: EmployeeIdentity, allowed: List[str]) -> 'IdentityModel':
        return cls(
            employee_id=identity.employee_id,
            email=identity.email,
            name=identity.name,
            role=identity.role.value,
            permissions=sorted(p.value for p in identity.permissions),
            branch=identity.branch,
            allowed_operations=allowed
        )


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: str
    employee: IdentityModel


# Account schemas
class CreateAccountRequest(BaseModel):
    name: str
    account_type: str = Field(..., description="personal or business")
    phone: str
    email: Optional[str] = None
    address: Optional[str] = None
    birthdate: Optional[str] = None  # ISO date string
    gender: Optional[str] = None
    nationality: Optional[str] = None
    mother_name: Optional[str] = None
    id_type: Optional[str] = None
    id_number: Optional[str] = None
    business_name: Optional[str] = None
    business_registration: Optional[str] = None
    business_address: Optional[str] = None


class UpdateCustomerRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    birthdate: Optional[str] = None
    gender: Optional[str] = None
    nationality: Optional[str] = None
    mother_name: Optional[str] = None
    id_type: Optional[str] = None
    id_number: Optional[str] = None
    business_name: Optional[str] = None
    business_registration: Optional[str] = None
    business_address: Optional[str] = None


class AccountActionRequest(BaseModel):
    reason: Optional[str] = None


def account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "account_number": account.account_number,
        "account_type": account.account_type.value,
        "name": account.name,
        "phone": account.phone,
        "email": account.email,
        "address": account.address,
        "birthdate": account.birthdate,
        "gender": account.gender,
        "nationality": account.nationality,
        "mother_name": account.mother_name,
        "id_type": account.id_type,
        "id_number": account.id_number,
        "business_name": account.business_name,
        "business_registration": account.business_registration,
        "business_address": account.business_address,
        "balance": str(account.balance),
        "status": account.status.value,
        "created_by": account.created_by,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat()
    }


# Transaction schemas
class TransactionRequestModel(BaseModel):
    transaction_type: str = Field(..., description="deposit, withdraw or transfer")
    amount: str = Field(..., description="Decimal amount as string")
    source: Optional[str] = Field(None, description="Source account id or number")
    destination: Optional[str] = Field(None, description="Destination account id or number")
    external_account: Optional[str] = Field(None, description="Counterparty outside the ledger")
    method: Optional[str] = Field(None, description="cash, bank_transfer or check")
    notes: Optional[str] = None


def transaction_to_dict(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "transaction_type": transaction.transaction_type.value,
        "amount": str(transaction.amount),
        "method": transaction.method.value,
        "source_account_id": transaction.source_account_id,
        "destination_account_id": transaction.destination_account_id,
        "external_account": transaction.external_account,
        "performed_by": transaction.performed_by,
        "status": transaction.status.value,
        "rejection_reason": transaction.rejection_reason,
        "notes": transaction.notes,
        "created_at": transaction.created_at.isoformat()
    }


# Exchange rate schemas
class SetExchangeRateRequest(BaseModel):
    currency_name: str
    rate_to_base: str = Field(..., description="Base currency units per one unit, as string")


def rate_to_dict(rate: ExchangeRate) -> Dict[str, Any]:
    return {
        "currency_code": rate.currency_code,
        "currency_name": rate.currency_name,
        "rate_to_base": str(rate.rate_to_base),
        "last_updated_by": rate.last_updated_by,
        "updated_at": rate.updated_at.isoformat()
    }
