"""
Teller Core API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import TellerSystem
from .sessions import router as sessions_router
from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .exchange import router as exchange_router
from .reporting import router as reporting_router
from .. import __version__
from ..errors import (
    AccountNotActive, AccountNotFound, AuthError, ExchangeRateNotFound,
    InsufficientFunds, PermissionDenied, StoreConflict, StoreUnavailable,
    TellerError, ValidationError
)
from ..logging_config import get_logger, log_action, setup_logging
from ..permissions import allowed_operations


logger = get_logger("teller_core.api")

# Most specific first
ERROR_STATUS = (
    (ValidationError, 422),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    (AccountNotFound, status.HTTP_404_NOT_FOUND),
    (ExchangeRateNotFound, status.HTTP_404_NOT_FOUND),
    (AccountNotActive, status.HTTP_409_CONFLICT),
    (InsufficientFunds, status.HTTP_409_CONFLICT),
    (StoreConflict, status.HTTP_409_CONFLICT),
    (StoreUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(error: TellerError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


async def teller_error_handler(request: Request, exc: TellerError) -> JSONResponse:
    """Render typed core errors with their structured fields"""
    status_code = status_for(exc)
    body = {"success": False, "error": exc.to_dict(), "type": exc.__class__.__name__}
    headers = None

    ctx = getattr(request.state, "ctx", None)
    if isinstance(exc, PermissionDenied) and ctx is not None:
        # Lets the caller route back to something the employee may do
        body["allowed_operations"] = [
            op.value for op in allowed_operations(ctx.identity.role, ctx.identity.permissions)
        ]
    if isinstance(exc, AuthError):
        headers = {"WWW-Authenticate": "Bearer"}

    log_action(
        logger, "warning" if status_code < 500 else "error",
        f"Request failed with {exc.code}",
        employee_id=ctx.employee_id if ctx else None,
        action=f"{request.method} {request.url.path}",
        correlation_id=ctx.correlation_id if ctx else None,
        extra={"status_code": status_code, "error": str(exc)}
    )
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def create_app(system: Optional[TellerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or TellerSystem()
    setup_logging(
        level=system.config.log_level,
        log_format=system.config.log_format,
        log_file=system.config.log_file
    )

    app = FastAPI(
        title="Teller Core API",
        description="Account ledger, transaction engine and teller sessions",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(TellerError, teller_error_handler)

    # Include routers
    app.include_router(sessions_router, prefix="/auth", tags=["Sessions"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(exchange_router, prefix="/exchange-rates", tags=["Exchange Rates"])
    app.include_router(reporting_router, prefix="/reports", tags=["Reports"])

    # Health check endpoint
    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "teller_core_api",
            "version": __version__
        }

    return app
