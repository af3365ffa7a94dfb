"""
System wiring and authentication dependencies
"""

import uuid
from typing import Callable, Optional, TypeVar

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..accounts import AccountManager
from ..audit import AuditTrail
from ..config import TellerConfig, get_config
from ..currency import ExchangeRateBook
from ..errors import SessionInvalid, StoreConflict
from ..identity import CredentialStore, EmployeeDirectory, RequestContext, SessionGate
from ..logging_config import get_logger, log_action
from ..reporting import ReportingEngine
from ..storage import StorageInterface, create_storage
from ..transactions import TransactionEngine


T = TypeVar("T")

logger = get_logger("teller_core.api")


class TellerSystem:
    """Teller core with all components initialized"""

    def __init__(self, config: Optional[TellerConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url,
            lock_timeout=self.config.lock_timeout_seconds,
            pool_size=self.config.database_pool_size
        )

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.credentials = CredentialStore(self.storage)
        self.directory = EmployeeDirectory(
            self.storage, self.credentials, self.audit_trail,
            password_min_length=self.config.password_min_length
        )
        self.sessions = SessionGate(
            self.storage, self.directory, self.audit_trail,
            secret=self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            expiry_hours=self.config.jwt_expiry_hours
        )
        self.account_manager = AccountManager(
            self.storage, self.audit_trail, amount_precision=self.config.amount_precision
        )
        self.transaction_engine = TransactionEngine(
            self.storage, self.account_manager, self.audit_trail,
            amount_precision=self.config.amount_precision
        )
        self.rate_book = ExchangeRateBook(
            self.storage, self.audit_trail,
            base_currency=self.config.base_currency,
            rate_precision=self.config.rate_precision,
            amount_precision=self.config.amount_precision
        )
        self.reporting_engine = ReportingEngine(
            self.storage, self.rate_book, amount_precision=self.config.amount_precision
        )

    def with_conflict_retry(self, operation: Callable[..., T], *args, **kwargs) -> T:
        """
        Run an operation, re-running it when the store aborts on a conflict.

        The store rolls back before raising StoreConflict, so each attempt
        starts from a clean state.
        """
        attempts = max(0, self.config.conflict_retry_attempts)
        for attempt in range(attempts + 1):
            try:
                return operation(*args, **kwargs)
            except StoreConflict as e:
                if attempt == attempts:
                    raise
                log_action(
                    logger, "warning", f"Store conflict, retrying ({attempt + 1}/{attempts})",
                    action=getattr(operation, "__name__", "operation"),
                    extra={"error": str(e)}
                )

    def close(self) -> None:
        self.storage.close()


security = HTTPBearer(auto_error=False)


def get_system(request: Request) -> TellerSystem:
    """Dependency returning the system bound to the application"""
    return request.app.state.system


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    if not credentials or not credentials.credentials:
        raise SessionInvalid("Not authenticated")
    return credentials.credentials


def get_request_context(
    request: Request,
    token: str = Depends(get_bearer_token),
    system: TellerSystem = Depends(get_system),
    x_correlation_id: Optional[str] = Header(default=None)
) -> RequestContext:
    """Dependency that validates the bearer token and builds the RequestContext"""
    ctx = system.sessions.context_for(token, correlation_id=x_correlation_id or str(uuid.uuid4()))
    request.state.ctx = ctx
    return ctx
