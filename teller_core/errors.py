"""
Typed Error Module

Every failure the core reports is a subclass of TellerError carrying a
machine-readable ``code`` and structured attributes, so callers branch on
type rather than on message text.

    TellerError
    +-- ValidationError
    |   +-- AccountBalanceNotZero
    +-- AuthError
    |   +-- InvalidCredentials
    |   +-- IdentityNotProvisioned
    |   +-- SessionInvalid
    +-- PermissionDenied
    +-- AccountNotFound
    +-- AccountNotActive
    +-- InsufficientFunds
    +-- ExchangeRateNotFound
    +-- StoreError
        +-- StoreConflict
        +-- StoreUnavailable

Only StoreConflict is safe to retry: it is raised after the store aborted
the unit of work, so no partial effect remains.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class TellerError(Exception):
    """Base exception for all teller core errors"""

    code: str = "TELLER_ERROR"
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for API responses and logs"""
        return {"code": self.code, "message": str(self)}


class ValidationError(TellerError):
    """Request shape is invalid; the caller must fix the input"""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class AccountBalanceNotZero(ValidationError):
    """Close requested on an account that still holds funds"""

    code: str = "ACCOUNT_BALANCE_NOT_ZERO"

    def __init__(self, account_id: str, balance: Decimal):
        self.account_id = account_id
        self.balance = balance
        super().__init__(
            f"Account {account_id} cannot be closed with non-zero balance {balance}",
            field="balance"
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({"account_id": self.account_id, "balance": str(self.balance)})
        return result


# Authentication

class AuthError(TellerError):
    """Bad credentials or no valid session"""

    code: str = "AUTH_ERROR"


class InvalidCredentials(AuthError):
    """Email/password pair rejected; never says which half was wrong"""

    code: str = "INVALID_CREDENTIALS"

    def __init__(self):
        super().__init__("Invalid email or password")


class IdentityNotProvisioned(AuthError):
    """Credentials verified but no employee record exists for them"""

    code: str = "IDENTITY_NOT_PROVISIONED"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No employee record provisioned for user {user_id}")


class SessionInvalid(AuthError):
    """Token missing, expired, revoked or tampered with"""

    code: str = "SESSION_INVALID"

    def __init__(self, reason: str = "Session is not valid"):
        super().__init__(reason)


# Authorization

class PermissionDenied(TellerError):
    """Authenticated but not authorized for the requested operation"""

    code: str = "PERMISSION_DENIED"

    def __init__(self, operation: str, capability: str, employee_id: Optional[str] = None):
        self.operation = operation
        self.capability = capability
        self.employee_id = employee_id
        super().__init__(f"Operation '{operation}' requires '{capability}'")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({"operation": self.operation, "required_capability": self.capability})
        return result


# Ledger

class AccountNotFound(TellerError):
    """Account id or number does not resolve"""

    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_ref: str):
        self.account_ref = account_ref
        super().__init__(f"Account not found: {account_ref}")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["account"] = self.account_ref
        return result


class AccountNotActive(TellerError):
    """Account is frozen or closed and cannot take part in the operation"""

    code: str = "ACCOUNT_NOT_ACTIVE"

    def __init__(self, account_id: str, status: str):
        self.account_id = account_id
        self.status = status
        super().__init__(f"Account {account_id} is {status}")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({"account_id": self.account_id, "status": self.status})
        return result


class InsufficientFunds(TellerError):
    """Debit would drive the balance below zero"""

    code: str = "INSUFFICIENT_FUNDS"

    def __init__(self, account_id: str, balance: Decimal, requested: Decimal):
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient funds in {account_id}: balance {balance}, requested {requested}"
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({
            "account_id": self.account_id,
            "balance": str(self.balance),
            "requested": str(self.requested)
        })
        return result


class ExchangeRateNotFound(TellerError):
    """No rate is stored for the currency"""

    code: str = "EXCHANGE_RATE_NOT_FOUND"

    def __init__(self, currency_code: str):
        self.currency_code = currency_code
        super().__init__(f"No exchange rate for {currency_code}")


# Store

class StoreError(TellerError):
    """Failure reported by the storage backend"""

    code: str = "STORE_ERROR"


class StoreConflict(StoreError):
    """Concurrent-modification abort; the unit of work was rolled back"""

    code: str = "STORE_CONFLICT"
    retryable: bool = True


class StoreUnavailable(StoreError):
    """Infrastructure failure; fatal to the request"""

    code: str = "STORE_UNAVAILABLE"
