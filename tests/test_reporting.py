"""
Tests for ledger summaries and dashboard figures
"""

import pytest
from decimal import Decimal

from teller_core.errors import PermissionDenied
from teller_core.identity import EmployeeIdentity, RequestContext
from teller_core.permissions import Role
from teller_core.storage import InMemoryStorage

from support import Ledger, make_context


class TestReportingEngine:

    def setup_method(self):
        self.ledger = Ledger()
        engine = self.ledger.engine
        teller = self.ledger.teller

        self.a = self.ledger.open_account(balance="1000")      # cash deposit
        self.b = self.ledger.open_account()
        engine.deposit(teller, self.b.id, "300", method="bank_transfer")
        engine.transfer(teller, self.a.id, "250", destination_ref=self.b.id)
        engine.transfer(teller, self.a.id, "100", external_account="EXT-77")
        engine.withdraw(teller, self.b.id, "50", method="bank_transfer")

        self.frozen = self.ledger.open_account(balance="40")
        self.ledger.accounts.freeze_account(self.ledger.admin, self.frozen.id)
        self.closed = self.ledger.open_account()
        self.ledger.accounts.close_account(self.ledger.admin, self.closed.id)

    def test_ledger_summary(self):
        summary = self.ledger.reporting.get_ledger_summary()

        # a: 1000 - 250 - 100 = 650; b: 300 + 250 - 50 = 500; frozen excluded
        assert summary.total_balance == Decimal("1150.00")
        assert summary.total_by_type == {
            "deposit": Decimal("1340.00"),
            "withdraw": Decimal("50.00"),
            "transfer": Decimal("350.00"),
        }
        assert summary.active_account_count == 2
        assert summary.account_count_by_status == {"active": 2, "frozen": 1, "closed": 1}
        assert summary.transaction_count == 6

    def test_summary_serializes_amounts_as_strings(self):
        data = self.ledger.reporting.get_ledger_summary().to_dict()
        assert data["total_balance"] == "1150.00"
        assert data["total_by_type"]["transfer"] == "350.00"

    def test_dashboard_totals(self):
        assert self.ledger.reporting.total_cash_deposits() == Decimal("1040.00")
        # bank_transfer deposit + bank_transfer withdrawal + external transfer
        assert self.ledger.reporting.total_bank_transfers() == Decimal("450.00")

    def test_dashboard_with_quote_rate(self):
        self.ledger.rates.set_rate(self.ledger.admin, "USD", "US Dollar", "1000")

        view = self.ledger.reporting.dashboard(make_context(Role.CUSTOMER_SERVICE), "usd")

        assert view.base_currency == "SYP"
        assert view.total_balance == Decimal("1150.00")
        assert view.quote_currency == "USD"
        assert view.quote_rate == Decimal("1000")
        assert view.total_balance_in_quote == Decimal("1.15")

    def test_dashboard_without_rate(self):
        view = self.ledger.reporting.dashboard(self.ledger.teller, "EUR")
        assert view.quote_rate is None
        assert view.total_balance_in_quote is None
        assert view.to_dict()["quote_rate"] is None

    def test_dashboard_is_gated(self):
        retired = RequestContext(identity=EmployeeIdentity(
            employee_id="EMP-OLD", email="old@example.com", name="Old Role",
            role="auditor", permissions=frozenset()
        ))
        with pytest.raises(PermissionDenied):
            self.ledger.reporting.dashboard(retired)

    def test_empty_ledger(self):
        summary = Ledger().reporting.get_ledger_summary()
        assert summary.total_balance == Decimal("0")
        assert summary.transaction_count == 0
        assert summary.total_by_type["deposit"] == Decimal("0")


class RecordingStorage(InMemoryStorage):
    """Remembers snapshot tables and direct lookups of exchange rates"""

    def __init__(self):
        super().__init__(lock_timeout=2.0)
        self.snapshot_tables = []
        self.rate_lookups = 0

    def snapshot(self, tables):
        tables = list(tables)
        self.snapshot_tables.append(tables)
        return super().snapshot(tables)

    def find(self, table, filters):
        if table == "exchange_rates":
            self.rate_lookups += 1
        return super().find(table, filters)


class TestDashboardSnapshot:

    def setup_method(self):
        self.storage = RecordingStorage()
        self.ledger = Ledger(self.storage)
        self.ledger.open_account(balance="2000")
        self.ledger.rates.set_rate(self.ledger.admin, "USD", "US Dollar", "1000")

    def test_rate_is_read_with_balances(self):
        self.storage.snapshot_tables.clear()
        self.storage.rate_lookups = 0

        view = self.ledger.reporting.dashboard(self.ledger.teller, "USD")

        assert view.quote_rate == Decimal("1000")
        assert view.total_balance_in_quote == Decimal("2.00")
        assert self.storage.snapshot_tables == [["accounts", "transactions", "exchange_rates"]]
        assert self.storage.rate_lookups == 0
