"""
Garden Ledger API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .transactions import router as transactions_router
from .balances import router as balances_router
from .admin import router as admin_router
from ..config import LedgerConfig, get_config
from ..logging_config import setup_logging
from ..service import LedgerService


def create_app(service: Optional[LedgerService] = None, settings: Optional[LedgerConfig] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        service: Ready ledger service (tests); built from configuration on
            startup when omitted
        settings: Configuration override
    """
    settings = settings or get_config()
    setup_logging(settings.log_level, settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.ledger is None
        if owned:
            app.state.ledger = await LedgerService.from_config(settings)
        try:
            yield
        finally:
            if owned:
                await app.state.ledger.close()
                app.state.ledger = None

    app = FastAPI(
        title="Garden Ledger API",
        description="Game economy ledger: withdrawals, deposits and balance reconciliation",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.ledger = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(balances_router, prefix="/balances", tags=["Balances"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        if app.state.ledger is None:
            return {"status": "starting", "service": "garden_ledger"}
        result = await app.state.ledger.health()
        result["service"] = "garden_ledger"
        return result

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    settings = get_config()
    uvicorn.run(
        "garden_ledger.api:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level=settings.log_level.lower()
    )
