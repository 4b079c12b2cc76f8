"""
LedgerBank API Application Factory
"""

import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .auth import BankingSystem, get_banking_system, shutdown_banking_system
from .responses import register_exception_handlers, respond
from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .loans import router as loans_router
from .admin import router as admin_router
from .notifications import router as notifications_router
from .beneficiaries import router as beneficiaries_router
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging, correlation_context


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Banking system to serve; built from configuration on first
            request when omitted
    """
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("LedgerBank API starting")
        yield
        if system is not None:
            system.close()
        else:
            shutdown_banking_system()
        logger.info("LedgerBank API stopped")

    app = FastAPI(
        title="LedgerBank API",
        description="Banking back end with ledger-consistent fund movement",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
        with correlation_context(correlation_id):
            response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    if system is not None:
        app.dependency_overrides[get_banking_system] = lambda: system

    register_exception_handlers(app)

    app.include_router(accounts_router, prefix="/api/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/api/transactions", tags=["Transactions"])
    app.include_router(loans_router, prefix="/api/loans", tags=["Loans"])
    app.include_router(admin_router, prefix="/api/admin", tags=["Admin"])
    app.include_router(notifications_router, prefix="/api/notifications", tags=["Notifications"])
    app.include_router(beneficiaries_router, prefix="/api/beneficiaries", tags=["Beneficiaries"])

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return respond({
            "status": "healthy",
            "service": "ledgerbank_api",
            "version": __version__
        }, "Service is healthy")

    @app.get("/")
    def get_api_info():
        return respond({
            "name": "LedgerBank API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "accounts": "/api/accounts",
                "transactions": "/api/transactions",
                "loans": "/api/loans",
                "notifications": "/api/notifications",
                "beneficiaries": "/api/beneficiaries",
                "admin": "/api/admin"
            }
        }, "LedgerBank API")

    return app
