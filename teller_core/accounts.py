"""
Account Management Module

Customer accounts, their lifecycle states and the balance primitives.
Balances are only ever changed by ``credit``/``debit`` inside a storage
unit of work opened by the transaction engine; every whole-record write
(freeze, close, customer edits) reloads the row under its lock so it
never overwrites a concurrent balance change.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import secrets
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import to_amount
from .errors import (
    AccountBalanceNotZero, AccountNotActive, AccountNotFound,
    InsufficientFunds, ValidationError
)
from .logging_config import get_logger, log_action
from .permissions import Operation, require
from .storage import StorageInterface, StorageRecord


class AccountType(Enum):
    """Customer account types"""
    PERSONAL = "personal"
    BUSINESS = "business"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    FROZEN = "frozen"    # No money movement
    CLOSED = "closed"    # Terminal, balance is zero


# Account number prefix by type; eight random digits follow
ACCOUNT_NUMBER_PREFIX = {
    AccountType.PERSONAL: "12",
    AccountType.BUSINESS: "13",
}

BUSINESS_FIELDS = ("business_name", "business_registration", "business_address")

# Legal/personal information editable after creation
CUSTOMER_INFO_FIELDS = (
    "name", "phone", "email", "address", "birthdate", "gender",
    "nationality", "mother_name", "id_type", "id_number",
) + BUSINESS_FIELDS


@dataclass
class Account(StorageRecord):
    """Customer account"""
    account_number: str
    account_type: AccountType
    name: str
    phone: str
    balance: Decimal = Decimal('0')
    status: AccountStatus = AccountStatus.ACTIVE
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
    created_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status == AccountStatus.CLOSED


class AccountManager:
    """
    Account ledger store: creation, lookup, lifecycle and balance primitives
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 amount_precision: int = 2):
        self.storage = storage
        self.audit_trail = audit_trail
        self.amount_precision = amount_precision
        self.accounts_table = "accounts"
        self.logger = get_logger("teller_core.accounts")

    def create_account(
        self,
        ctx,
        name: str,
        account_type: Union[AccountType, str],
        phone: str,
        **details: Any
    ) -> Account:
        """
        Open a new customer account with a zero balance

        Args:
            ctx: RequestContext of the acting employee
            name: Customer name
            account_type: personal or business
            phone: Contact phone number
            **details: Optional customer information (see CUSTOMER_INFO_FIELDS);
                business accounts must include every business field

        Returns:
            Created Account
        """
        require(ctx.identity, Operation.CREATE_CUSTOMER)

        try:
            account_type = AccountType(account_type)
        except ValueError:
            raise ValidationError(f"Unknown account type: {account_type!r}", field="account_type")

        unknown = set(details) - set(CUSTOMER_INFO_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown customer fields: {', '.join(sorted(unknown))}")

        name = (name or "").strip()
        phone = (phone or "").strip()
        if not name:
            raise ValidationError("Customer name is required", field="name")
        if not phone:
            raise ValidationError("Phone number is required", field="phone")

        info = {key: self._clean(value) for key, value in details.items()}
        if account_type == AccountType.BUSINESS:
            self._check_business_fields(info)

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=self._generate_account_number(account_type),
            account_type=account_type,
            name=name,
            phone=phone,
            created_by=ctx.employee_id,
            **info
        )
        self._save_account(account)

        log_action(
            self.logger, "info", f"Account {account.account_number} created",
            employee_id=ctx.employee_id, action="create_account",
            resource=f"account:{account.id}", correlation_id=ctx.correlation_id
        )
        self.audit_trail.log_committed_event(
            AuditEventType.ACCOUNT_CREATED, "account", account.id,
            metadata={
                "account_number": account.account_number,
                "account_type": account.account_type.value,
                "name": account.name
            },
            employee_id=ctx.employee_id, session_id=ctx.session_id
        )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.accounts_table, account_id)
        return self._account_from_dict(data) if data else None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        rows = self.storage.find(self.accounts_table, {"account_number": account_number})
        return self._account_from_dict(rows[0]) if rows else None

    def resolve(self, account_ref: str) -> Account:
        """
        Look up an account by id or account number.

        Raises:
            AccountNotFound: If neither matches
        """
        ref = (account_ref or "").strip()
        account = self.get_account(ref) if ref else None
        if account is None and ref:
            account = self.get_account_by_number(ref)
        if account is None:
            raise AccountNotFound(account_ref)
        return account

    def list_accounts(self, ctx, status: Optional[AccountStatus] = None) -> List[Account]:
        require(ctx.identity, Operation.VIEW_CUSTOMERS)
        accounts = [self._account_from_dict(d) for d in self.storage.load_all(self.accounts_table)]
        if status is not None:
            accounts = [a for a in accounts if a.status == AccountStatus(status)]
        return sorted(accounts, key=lambda a: a.created_at, reverse=True)

    def update_customer_info(self, ctx, account_id: str, **fields: Any) -> Account:
        """Edit legal/personal information; balance and status are not editable here"""
        require(ctx.identity, Operation.EDIT_CUSTOMER)

        unknown = set(fields) - set(CUSTOMER_INFO_FIELDS)
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
        for required_field in ("name", "phone"):
            if required_field in fields and not self._clean(fields[required_field]):
                raise ValidationError(f"{required_field} cannot be empty", field=required_field)

        with self.storage.atomic():
            account = self._locked(account_id)
            if account.is_closed:
                raise AccountNotActive(account.id, account.status.value)

            changes = {}
            for key, value in fields.items():
                value = self._clean(value)
                if getattr(account, key) != value:
                    changes[key] = value
                    setattr(account, key, value)

            if account.account_type == AccountType.BUSINESS:
                self._check_business_fields({f: getattr(account, f) for f in BUSINESS_FIELDS})

            if changes:
                account.updated_at = datetime.now(timezone.utc)
                self._save_account(account)

        if changes:
            self.audit_trail.log_committed_event(
                AuditEventType.ACCOUNT_UPDATED, "account", account.id,
                metadata={"changed_fields": sorted(changes)},
                employee_id=ctx.employee_id, session_id=ctx.session_id
            )
        return account

    def freeze_account(self, ctx, account_id: str, reason: Optional[str] = None) -> Account:
        """Move an active account to frozen"""
        require(ctx.identity, Operation.FREEZE_ACCOUNT)

        with self.storage.atomic():
            account = self._locked(account_id)
            if not account.is_active:
                raise AccountNotActive(account.id, account.status.value)
            account.status = AccountStatus.FROZEN
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

        log_action(
            self.logger, "info", f"Account {account.account_number} frozen",
            employee_id=ctx.employee_id, action="freeze_account",
            resource=f"account:{account.id}", correlation_id=ctx.correlation_id
        )
        self.audit_trail.log_committed_event(
            AuditEventType.ACCOUNT_FROZEN, "account", account.id,
            metadata={"reason": reason},
            employee_id=ctx.employee_id, session_id=ctx.session_id
        )
        return account

    def close_account(self, ctx, account_id: str, reason: Optional[str] = None) -> Account:
        """
        Close an active or frozen account.

        The zero-balance requirement is checked under the row lock, so a
        deposit racing the close either lands first (and the close fails) or
        finds the account closed.
        """
        require(ctx.identity, Operation.CLOSE_ACCOUNT)

        with self.storage.atomic():
            account = self._locked(account_id)
            if account.is_closed:
                raise AccountNotActive(account.id, account.status.value)
            if account.balance != Decimal('0'):
                raise AccountBalanceNotZero(account.id, account.balance)
            previous_status = account.status
            account.status = AccountStatus.CLOSED
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

        log_action(
            self.logger, "info", f"Account {account.account_number} closed",
            employee_id=ctx.employee_id, action="close_account",
            resource=f"account:{account.id}", correlation_id=ctx.correlation_id
        )
        self.audit_trail.log_committed_event(
            AuditEventType.ACCOUNT_CLOSED, "account", account.id,
            metadata={"reason": reason, "previous_status": previous_status.value},
            employee_id=ctx.employee_id, session_id=ctx.session_id
        )
        return account

    def credit(self, account_id: str, amount: Decimal) -> Decimal:
        """
        Add ``amount`` to the balance. Must run inside ``storage.atomic()``.

        Returns:
            New balance
        """
        amount = self._positive(amount)
        self._require_unit("credit")
        try:
            return self.storage.adjust_decimal(self.accounts_table, account_id, "balance", amount)
        except KeyError:
            raise AccountNotFound(account_id)

    def debit(self, account_id: str, amount: Decimal) -> Decimal:
        """
        Subtract ``amount`` from the balance if it stays non-negative.
        Must run inside ``storage.atomic()``.

        Raises:
            InsufficientFunds: Balance is lower than ``amount``; nothing written
        """
        amount = self._positive(amount)
        self._require_unit("debit")
        try:
            new_balance = self.storage.adjust_decimal(
                self.accounts_table, account_id, "balance", -amount, minimum=Decimal('0')
            )
        except KeyError:
            raise AccountNotFound(account_id)
        if new_balance is None:
            current = self.get_account(account_id)
            raise InsufficientFunds(account_id, current.balance, amount)
        return new_balance

    def lock_accounts(self, *account_ids: str) -> None:
        """Lock account rows for the rest of the current unit of work"""
        self.storage.lock_rows(self.accounts_table, [a for a in account_ids if a])

    def _locked(self, account_id: str) -> Account:
        self.lock_accounts(account_id)
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def _require_unit(self, operation: str) -> None:
        if not self.storage.in_transaction():
            raise RuntimeError(
                f"{operation} must run inside the transaction engine's unit of work"
            )

    def _positive(self, amount: Decimal) -> Decimal:
        amount = to_amount(amount, self.amount_precision)
        if amount <= 0:
            raise ValidationError("Amount must be positive", field="amount")
        return amount

    def _check_business_fields(self, info: Dict[str, Any]) -> None:
        missing = [f for f in BUSINESS_FIELDS if not info.get(f)]
        if missing:
            raise ValidationError(
                f"Business accounts require: {', '.join(missing)}", field=missing[0]
            )

    def _clean(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def _generate_account_number(self, account_type: AccountType) -> str:
        """Generate a unique account number"""
        prefix = ACCOUNT_NUMBER_PREFIX[account_type]
        while True:
            account_number = f"{prefix}{secrets.randbelow(10 ** 8):08d}"
            if not self.storage.find(self.accounts_table, {"account_number": account_number}):
                return account_number

    def _save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        data = account.to_dict()
        data['account_type'] = account.account_type.value
        data['status'] = account.status.value
        data['balance'] = str(account.balance)
        return data

    def _account_from_dict(self, data: Dict) -> Account:
        data = dict(data)
        data['account_type'] = AccountType(data['account_type'])
        data['status'] = AccountStatus(data['status'])
        data['balance'] = Decimal(str(data.get('balance') or '0'))
        return Account.from_dict(data)
