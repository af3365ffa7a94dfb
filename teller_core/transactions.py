"""
Transaction Processing Module

Deposits, withdrawals and transfers. A request moves through
Requested -> Validated -> Applied -> Completed, or stops at Rejected.
The Apply step is a single storage unit of work: account rows are locked,
re-read, debited/credited with conditional adjustments and the transaction
record is inserted, all committed together or not at all.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union
from enum import Enum
import uuid

from .accounts import Account, AccountManager
from .audit import AuditTrail, AuditEventType
from .currency import to_amount
from .errors import (
    AccountNotActive, InsufficientFunds, PermissionDenied, TellerError, ValidationError
)
from .logging_config import get_logger, log_action
from .permissions import Operation, require, require_any
from .storage import StorageInterface, StorageRecord


class TransactionType(Enum):
    """Types of money movement"""
    DEPOSIT = "deposit"      # Into one account
    WITHDRAW = "withdraw"    # Out of one account
    TRANSFER = "transfer"    # Account to account, or account to external bank


class TransactionStatus(Enum):
    """Stored transaction status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class TransactionMethod(Enum):
    """How the money moved"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    INTERNAL = "internal"            # Transfer within this ledger
    EXTERNAL_BANK = "external_bank"  # Transfer to an outside counterparty


class RequestState(Enum):
    """Lifecycle of a single execute() call"""
    REQUESTED = "requested"
    VALIDATED = "validated"
    APPLIED = "applied"
    COMPLETED = "completed"
    REJECTED = "rejected"


# Only pending transactions may change status
ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.REJECTED,
    },
}

CASH_DESK_METHODS = (
    TransactionMethod.CASH,
    TransactionMethod.BANK_TRANSFER,
    TransactionMethod.CHECK,
)


@dataclass
class Transaction(StorageRecord):
    """
    Record of one money movement. Immutable once terminal.
    """
    transaction_type: TransactionType
    amount: Decimal
    performed_by: str
    status: TransactionStatus
    method: TransactionMethod
    source_account_id: Optional[str] = None       # None for deposits
    destination_account_id: Optional[str] = None  # None for withdrawals and external transfers
    external_account: Optional[str] = None        # Outside counterparty reference
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_internal_transfer(self) -> bool:
        return self.transaction_type == TransactionType.TRANSFER and self.destination_account_id is not None

    def transition(self, status: TransactionStatus, reason: Optional[str] = None) -> None:
        """
        Move to a terminal status.

        Raises:
            ValueError: If the current status does not allow the move
        """
        if status not in ALLOWED_TRANSITIONS.get(self.status, set()):
            raise ValueError(
                f"Cannot move transaction {self.id} from {self.status.value} to {status.value}"
            )
        self.status = status
        if status in (TransactionStatus.FAILED, TransactionStatus.REJECTED):
            self.rejection_reason = reason
        self.updated_at = datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransactionRequest:
    """A requested money movement; account refs may be ids or account numbers"""
    transaction_type: Union[TransactionType, str]
    amount: Union[Decimal, int, str]
    source: Optional[str] = None
    destination: Optional[str] = None
    external_account: Optional[str] = None
    method: Optional[Union[TransactionMethod, str]] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class _ValidatedRequest:
    transaction_type: TransactionType
    amount: Decimal
    method: TransactionMethod
    source: Optional[str]
    destination: Optional[str]
    external_account: Optional[str]
    notes: Optional[str]


class TransactionEngine:
    """
    Executes money movements against the account ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        audit_trail: AuditTrail,
        amount_precision: int = 2
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.audit_trail = audit_trail
        self.amount_precision = amount_precision
        self.transactions_table = "transactions"
        self.logger = get_logger("teller_core.transactions")

    def execute(self, ctx, request: TransactionRequest) -> Transaction:
        """
        Validate, authorize and apply a money movement.

        Args:
            ctx: RequestContext of the acting employee
            request: Requested movement

        Returns:
            The completed Transaction

        Raises:
            ValidationError, PermissionDenied, AccountNotFound, AccountNotActive,
            InsufficientFunds, StoreConflict, StoreUnavailable. Nothing is
            written when any of these is raised.
        """
        self._log_state(ctx, RequestState.REQUESTED, request)
        try:
            validated = self._validate(ctx, request)
            self._log_state(ctx, RequestState.VALIDATED, request)

            source, destination = self._resolve(validated)
            transaction = self._apply(ctx, validated, source, destination)
            self._log_state(ctx, RequestState.APPLIED, request, transaction.id)
        except TellerError as e:
            self._reject(ctx, request, e)
            raise

        self._log_state(ctx, RequestState.COMPLETED, request, transaction.id)
        self.audit_trail.log_committed_event(
            AuditEventType.TRANSACTION_COMPLETED, "transaction", transaction.id,
            metadata={
                "transaction_type": transaction.transaction_type.value,
                "amount": transaction.amount,
                "method": transaction.method.value,
                "source_account_id": transaction.source_account_id,
                "destination_account_id": transaction.destination_account_id,
                "external_account": transaction.external_account
            },
            employee_id=ctx.employee_id, session_id=ctx.session_id
        )
        return transaction

    def submit_transaction(
        self,
        ctx,
        transaction_type: Union[TransactionType, str],
        amount: Union[Decimal, int, str],
        source: Optional[str] = None,
        destination: Optional[str] = None,
        external_account: Optional[str] = None,
        method: Optional[Union[TransactionMethod, str]] = None,
        notes: Optional[str] = None
    ) -> Transaction:
        """Convenience wrapper building a TransactionRequest"""
        return self.execute(ctx, TransactionRequest(
            transaction_type=transaction_type,
            amount=amount,
            source=source,
            destination=destination,
            external_account=external_account,
            method=method,
            notes=notes
        ))

    def deposit(self, ctx, account_ref: str, amount, method=TransactionMethod.CASH,
                notes: Optional[str] = None) -> Transaction:
        return self.submit_transaction(ctx, TransactionType.DEPOSIT, amount,
                                       destination=account_ref, method=method, notes=notes)

    def withdraw(self, ctx, account_ref: str, amount, method=TransactionMethod.CASH,
                 notes: Optional[str] = None) -> Transaction:
        return self.submit_transaction(ctx, TransactionType.WITHDRAW, amount,
                                       source=account_ref, method=method, notes=notes)

    def transfer(self, ctx, source_ref: str, amount, destination_ref: Optional[str] = None,
                 external_account: Optional[str] = None,
                 notes: Optional[str] = None) -> Transaction:
        return self.submit_transaction(ctx, TransactionType.TRANSFER, amount,
                                       source=source_ref, destination=destination_ref,
                                       external_account=external_account, notes=notes)

    def get_transaction(self, ctx, transaction_id: str) -> Optional[Transaction]:
        self._require_history_access(ctx)
        data = self.storage.load(self.transactions_table, transaction_id)
        return self._transaction_from_dict(data) if data else None

    def list_transactions(
        self,
        ctx,
        account_id: Optional[str] = None,
        transaction_type: Optional[Union[TransactionType, str]] = None,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """
        Transactions newest first. Without ``account_id`` this is the
        all-transactions view and needs manage_transactions; one account's
        history is also open to employees who may view customers.
        """
        if account_id is None:
            require(ctx.identity, Operation.MANAGE_TRANSACTIONS)
            rows = self.storage.load_all(self.transactions_table)
        else:
            self._require_history_access(ctx)
            account = self.account_manager.resolve(account_id)
            rows = [
                row for row in self.storage.load_all(self.transactions_table)
                if account.id in (row.get('source_account_id'), row.get('destination_account_id'))
            ]

        transactions = [self._transaction_from_dict(row) for row in rows]
        if transaction_type is not None:
            wanted = TransactionType(transaction_type)
            transactions = [t for t in transactions if t.transaction_type == wanted]

        transactions.sort(key=lambda t: t.created_at, reverse=True)
        if limit:
            transactions = transactions[:limit]
        return transactions

    def _validate(self, ctx, request: TransactionRequest) -> _ValidatedRequest:
        """Pure shape checks followed by the authorization check"""
        try:
            transaction_type = TransactionType(request.transaction_type)
        except ValueError:
            raise ValidationError(
                f"Unknown transaction type: {request.transaction_type!r}", field="transaction_type"
            )

        amount = to_amount(request.amount, self.amount_precision)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero", field="amount")

        source = self._ref(request.source)
        destination = self._ref(request.destination)
        external_account = self._ref(request.external_account)

        if transaction_type == TransactionType.DEPOSIT:
            if not destination:
                raise ValidationError("Deposit requires a destination account", field="destination")
            if source or external_account:
                raise ValidationError("Deposit takes a destination account only", field="source")
            method = self._desk_method(request.method)
        elif transaction_type == TransactionType.WITHDRAW:
            if not source:
                raise ValidationError("Withdrawal requires a source account", field="source")
            if destination or external_account:
                raise ValidationError("Withdrawal takes a source account only", field="destination")
            method = self._desk_method(request.method)
        else:
            if not source:
                raise ValidationError("Transfer requires a source account", field="source")
            if bool(destination) == bool(external_account):
                raise ValidationError(
                    "Transfer requires exactly one of destination account or external account",
                    field="destination"
                )
            method = TransactionMethod.INTERNAL if destination else TransactionMethod.EXTERNAL_BANK

        # Moving funds and viewing all transactions share one gate
        require(ctx.identity, Operation.MANAGE_TRANSACTIONS)

        return _ValidatedRequest(
            transaction_type=transaction_type,
            amount=amount,
            method=method,
            source=source,
            destination=destination,
            external_account=external_account,
            notes=self._ref(request.notes)
        )

    def _resolve(self, request: _ValidatedRequest) -> Tuple[Optional[Account], Optional[Account]]:
        source = self.account_manager.resolve(request.source) if request.source else None
        destination = self.account_manager.resolve(request.destination) if request.destination else None
        if source and destination and source.id == destination.id:
            raise ValidationError("Cannot transfer to the same account", field="destination")
        for account in (source, destination):
            if account is not None and not account.is_active:
                raise AccountNotActive(account.id, account.status.value)
        return source, destination

    def _apply(self, ctx, request: _ValidatedRequest,
               source: Optional[Account], destination: Optional[Account]) -> Transaction:
        """One unit of work: lock, re-read, debit, credit, insert"""
        with self.storage.atomic():
            self.account_manager.lock_accounts(
                *(account.id for account in (source, destination) if account)
            )
            # Decisions below use the locked rows, never the values read in _resolve
            if source is not None:
                source = self._reload_active(source.id)
                if source.balance < request.amount:
                    raise InsufficientFunds(source.id, source.balance, request.amount)
            if destination is not None:
                destination = self._reload_active(destination.id)

            if source is not None:
                self.account_manager.debit(source.id, request.amount)
            if destination is not None:
                self.account_manager.credit(destination.id, request.amount)

            now = datetime.now(timezone.utc)
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                transaction_type=request.transaction_type,
                amount=request.amount,
                performed_by=ctx.employee_id,
                status=TransactionStatus.COMPLETED,
                method=request.method,
                source_account_id=source.id if source else None,
                destination_account_id=destination.id if destination else None,
                external_account=request.external_account,
                notes=request.notes
            )
            self._save_transaction(transaction)

        return transaction

    def _reload_active(self, account_id: str) -> Account:
        account = self.account_manager.resolve(account_id)
        if not account.is_active:
            raise AccountNotActive(account.id, account.status.value)
        return account

    def _reject(self, ctx, request: TransactionRequest, error: TellerError) -> None:
        self._log_state(ctx, RequestState.REJECTED, request, extra={
            "error_code": error.code,
            "error": str(error),
            "retryable": error.retryable
        })
        event_type = (AuditEventType.PERMISSION_DENIED if isinstance(error, PermissionDenied)
                      else AuditEventType.TRANSACTION_REJECTED)
        self.audit_trail.log_event(
            event_type, "transaction_request", ctx.correlation_id,
            metadata={
                "transaction_type": str(getattr(request.transaction_type, 'value', request.transaction_type)),
                "amount": str(request.amount),
                "source": request.source,
                "destination": request.destination,
                "external_account": request.external_account,
                "error_code": error.code,
                "reason": str(error)
            },
            employee_id=ctx.employee_id, session_id=ctx.session_id
        )

    def _log_state(self, ctx, state: RequestState, request: TransactionRequest,
                   transaction_id: Optional[str] = None, extra: Optional[Dict] = None) -> None:
        level = "warning" if state == RequestState.REJECTED else "info"
        details = {
            "state": state.value,
            "transaction_type": str(getattr(request.transaction_type, 'value', request.transaction_type))
        }
        if transaction_id:
            details["transaction_id"] = transaction_id
        if extra:
            details.update(extra)
        log_action(
            self.logger, level, f"Transaction request {state.value}",
            employee_id=ctx.employee_id, action="execute_transaction",
            resource=f"transaction:{transaction_id}" if transaction_id else None,
            correlation_id=ctx.correlation_id, extra=details
        )

    def _require_history_access(self, ctx) -> None:
        require_any(ctx.identity, Operation.VIEW_CUSTOMERS, Operation.MANAGE_TRANSACTIONS)

    def _desk_method(self, method) -> TransactionMethod:
        if method is None:
            return TransactionMethod.CASH
        try:
            parsed = TransactionMethod(method)
        except ValueError:
            parsed = None
        if parsed not in CASH_DESK_METHODS:
            raise ValidationError(f"Unsupported method: {method!r}", field="method")
        return parsed

    def _ref(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def _save_transaction(self, transaction: Transaction) -> None:
        """Save transaction to storage"""
        self.storage.save(self.transactions_table, transaction.id, self._transaction_to_dict(transaction))

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        data = transaction.to_dict()
        data['transaction_type'] = transaction.transaction_type.value
        data['status'] = transaction.status.value
        data['method'] = transaction.method.value
        data['amount'] = str(transaction.amount)
        return data

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        data = dict(data)
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['status'] = TransactionStatus(data['status'])
        data['method'] = TransactionMethod(data['method'])
        data['amount'] = Decimal(str(data['amount']))
        return Transaction.from_dict(data)
