"""
Interbank Ledger API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .deps import get_system
from .transactions import router as transactions_router, get_jwks
from ..errors import InterbankError
from ..logging_config import get_logger, log_action, setup_logging
from ..system import BankingSystem, get_banking_system
from .. import __version__


logger = get_logger("interbank.api")


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or get_banking_system()
    config = system.config
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        system.start()
        yield
        system.close()

    app = FastAPI(
        title="Interbank Ledger API",
        description="Retail ledger with signed inter-bank settlement",
        version=__version__,
        lifespan=lifespan
    )
    app.state.banking_system = system

    @app.exception_handler(InterbankError)
    async def interbank_error_handler(request: Request, exc: InterbankError):
        log_action(
            logger, "warning" if exc.http_status < 500 else "error",
            f"{request.method} {request.url.path} failed: {exc.message}",
            action="http_error", code=exc.code
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.add_api_route("/.well-known/jwks.json", get_jwks, methods=["GET"], tags=["Keys"])

    @app.get("/health")
    def health_check(request: Request):
        """Health check endpoint"""
        current = get_system(request)
        return {
            "status": "degraded" if current.keystore.degraded else "healthy",
            "service": "interbank_ledger",
            "version": __version__,
            "bank_prefix": current.config.bank_prefix,
            "test_mode": current.config.test_mode,
            "key_storage_degraded": current.keystore.degraded
        }

    return app
