"""
Teller Core

Ledger and authorization core for a money-services teller console:
atomic balance mutation, role-gated operations, and Decimal-precise
reporting over customer accounts.
"""

__version__ = "1.0.0"
