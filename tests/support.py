"""
Shared builders for the test suite
"""

import uuid
from decimal import Decimal

from teller_core.accounts import AccountManager
from teller_core.audit import AuditTrail
from teller_core.currency import ExchangeRateBook
from teller_core.identity import EmployeeIdentity, RequestContext
from teller_core.permissions import Role, parse_capabilities
from teller_core.reporting import ReportingEngine
from teller_core.storage import InMemoryStorage
from teller_core.transactions import TransactionEngine


def make_context(role=Role.TELLER, permissions=(), employee_id=None, branch="Damascus"):
    """RequestContext for an employee that never went through login"""
    identity = EmployeeIdentity(
        employee_id=employee_id or f"EMP-{uuid.uuid4().hex[:8]}",
        email=f"{role.value}@example.com",
        name=f"Test {role.value}",
        role=role,
        permissions=parse_capabilities(list(permissions)),
        branch=branch
    )
    return RequestContext(identity=identity)


class Ledger:
    """Account manager, engine, rates and reporting over one store"""

    def __init__(self, storage=None):
        self.storage = storage if storage is not None else InMemoryStorage(lock_timeout=2.0)
        self.audit_trail = AuditTrail(self.storage)
        self.accounts = AccountManager(self.storage, self.audit_trail)
        self.engine = TransactionEngine(self.storage, self.accounts, self.audit_trail)
        self.rates = ExchangeRateBook(self.storage, self.audit_trail)
        self.reporting = ReportingEngine(self.storage, self.rates)
        self.admin = make_context(Role.ADMIN)
        self.teller = make_context(Role.TELLER)

    def open_account(self, balance="0", account_type="personal", name="Test Customer", **details):
        """Create an account and fund it with a cash deposit"""
        if account_type == "business":
            details.setdefault("business_name", "Test Trading LLC")
            details.setdefault("business_registration", "REG-1001")
            details.setdefault("business_address", "Baghdad Street 12")
        account = self.accounts.create_account(
            self.admin, name, account_type, "+963-11-5550000", **details
        )
        if Decimal(balance) > 0:
            self.engine.deposit(self.admin, account.id, balance)
        return self.accounts.get_account(account.id)

    def balance(self, account_id):
        return self.accounts.get_account(account_id).balance
