"""
Reporting Module

Read-only aggregates over committed ledger state: balance totals, sums by
transaction type and the dashboard figures. Each report reads all of its
tables from one storage snapshot so the figures agree with each other.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .accounts import AccountStatus
from .currency import ExchangeRate, ExchangeRateBook, quantize_amount
from .logging_config import get_logger
from .permissions import Operation, require
from .storage import StorageInterface
from .transactions import TransactionMethod, TransactionStatus, TransactionType


@dataclass
class LedgerSummary:
    """Ledger-wide totals"""
    total_balance: Decimal                        # Active accounts only
    total_by_type: Dict[str, Decimal]             # Completed transactions
    active_account_count: int
    account_count_by_status: Dict[str, int]
    transaction_count: int
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_balance": str(self.total_balance),
            "total_by_type": {k: str(v) for k, v in self.total_by_type.items()},
            "active_account_count": self.active_account_count,
            "account_count_by_status": dict(self.account_count_by_status),
            "transaction_count": self.transaction_count,
            "generated_at": self.generated_at.isoformat()
        }


@dataclass
class DashboardView:
    """Figures shown on the employee dashboard"""
    base_currency: str
    total_balance: Decimal
    total_cash_deposits: Decimal
    total_bank_transfers: Decimal
    quote_currency: str
    quote_rate: Optional[Decimal] = None          # None when no rate is stored
    total_balance_in_quote: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        def text(value):
            return str(value) if value is not None else None

        return {
            "base_currency": self.base_currency,
            "total_balance": str(self.total_balance),
            "total_cash_deposits": str(self.total_cash_deposits),
            "total_bank_transfers": str(self.total_bank_transfers),
            "quote_currency": self.quote_currency,
            "quote_rate": text(self.quote_rate),
            "total_balance_in_quote": text(self.total_balance_in_quote)
        }


class ReportingEngine:
    """
    Aggregates over accounts and transactions
    """

    def __init__(self, storage: StorageInterface, rate_book: ExchangeRateBook,
                 amount_precision: int = 2):
        self.storage = storage
        self.rate_book = rate_book
        self.amount_precision = amount_precision
        self.accounts_table = "accounts"
        self.transactions_table = "transactions"
        self.logger = get_logger("teller_core.reporting")

    def get_ledger_summary(self) -> LedgerSummary:
        snapshot = self._snapshot()
        accounts = snapshot[self.accounts_table]
        transactions = self._completed(snapshot[self.transactions_table])

        by_status = {status.value: 0 for status in AccountStatus}
        total_balance = Decimal('0')
        for account in accounts:
            by_status[account['status']] = by_status.get(account['status'], 0) + 1
            if account['status'] == AccountStatus.ACTIVE.value:
                total_balance += Decimal(str(account['balance']))

        total_by_type = {t.value: Decimal('0') for t in TransactionType}
        for transaction in transactions:
            total_by_type[transaction['transaction_type']] += Decimal(str(transaction['amount']))

        return LedgerSummary(
            total_balance=total_balance,
            total_by_type=total_by_type,
            active_account_count=by_status[AccountStatus.ACTIVE.value],
            account_count_by_status=by_status,
            transaction_count=len(transactions)
        )

    def total_cash_deposits(self) -> Decimal:
        transactions = self._completed(self._snapshot()[self.transactions_table])
        return self._sum_cash_deposits(transactions)

    def total_bank_transfers(self) -> Decimal:
        transactions = self._completed(self._snapshot()[self.transactions_table])
        return self._sum_bank_transfers(transactions)

    def dashboard(self, ctx, quote_currency: str = "USD") -> DashboardView:
        """
        Dashboard figures plus the current quote rate.

        A missing rate leaves the quote fields as None.
        """
        require(ctx.identity, Operation.VIEW_DASHBOARD)

        snapshot = self._snapshot()
        transactions = self._completed(snapshot[self.transactions_table])
        total_balance = sum(
            (Decimal(str(a['balance'])) for a in snapshot[self.accounts_table]
             if a['status'] == AccountStatus.ACTIVE.value),
            Decimal('0')
        )

        quote_currency = (quote_currency or "").strip().upper()
        rows = [r for r in snapshot[self.rate_book.table_name]
                if r.get('currency_code') == quote_currency]
        rate = ExchangeRate.from_dict(rows[0]) if rows else None
        quote_rate = rate.rate_to_base if rate else None
        in_quote = (quantize_amount(total_balance / quote_rate, self.amount_precision)
                    if quote_rate else None)
        if rate is None:
            self.logger.debug(f"No exchange rate stored for {quote_currency}")

        return DashboardView(
            base_currency=self.rate_book.base_currency,
            total_balance=total_balance,
            total_cash_deposits=self._sum_cash_deposits(transactions),
            total_bank_transfers=self._sum_bank_transfers(transactions),
            quote_currency=quote_currency,
            quote_rate=quote_rate,
            total_balance_in_quote=in_quote
        )

    def _snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.storage.snapshot(
            [self.accounts_table, self.transactions_table, self.rate_book.table_name]
        )

    def _completed(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [r for r in rows if r.get('status') == TransactionStatus.COMPLETED.value]

    def _sum_cash_deposits(self, transactions: List[Dict[str, Any]]) -> Decimal:
        return sum(
            (Decimal(str(t['amount'])) for t in transactions
             if t['transaction_type'] == TransactionType.DEPOSIT.value
             and t.get('method') == TransactionMethod.CASH.value),
            Decimal('0')
        )

    def _sum_bank_transfers(self, transactions: List[Dict[str, Any]]) -> Decimal:
        bank_methods = (TransactionMethod.BANK_TRANSFER.value, TransactionMethod.EXTERNAL_BANK.value)
        return sum(
            (Decimal(str(t['amount'])) for t in transactions if t.get('method') in bank_methods),
            Decimal('0')
        )
