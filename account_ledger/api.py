"""
Account Ledger API

FastAPI application exposing the transaction and statement routes. The
ledger engine is owned by the application (``app.state.engine``): passed
in by the caller, or built from configuration at startup and closed at
shutdown.
"""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .config import LedgerConfig, get_config
from .ledger import LedgerEngine, AccountNotFound, InsufficientFunds, BalanceOutOfRange
from .logging_config import get_logger, setup_logging
from .schemas import TransactionRequest, transaction_response, statement_response
from .storage import create_store


logger = get_logger("account_ledger.api")


def get_ledger_engine(request: Request) -> LedgerEngine:
    """Ledger engine owned by the running application"""
    return request.app.state.engine


def create_app(engine: Optional[LedgerEngine] = None, config: Optional[LedgerConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.engine is None
        if owned:
            app.state.engine = LedgerEngine(create_store(config), config)
        try:
            yield
        finally:
            if owned:
                app.state.engine.close()
                app.state.engine = None

    app = FastAPI(
        title="Account Ledger API",
        description="Credit/debit ledger over a fixed set of accounts",
        version=__version__,
        lifespan=lifespan
    )
    app.state.engine = engine

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error(
            f"Unhandled error on {request.method} {request.url.path}",
            exc_info=(type(exc), exc, exc.__traceback__)
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "account_ledger",
            "version": __version__
        }

    @app.post("/clientes/{account_id}/transacoes")
    def post_transaction(
        account_id: int,
        request: TransactionRequest,
        engine: LedgerEngine = Depends(get_ledger_engine)
    ):
        """Post a credit or debit to an account"""
        result = engine.post_transaction(
            account_id, request.value, request.transaction_kind, request.description
        )

        if isinstance(result, AccountNotFound):
            raise HTTPException(status_code=404, detail="Account not found")
        if isinstance(result, InsufficientFunds):
            raise HTTPException(status_code=422, detail="Insufficient funds")
        if isinstance(result, BalanceOutOfRange):
            raise HTTPException(status_code=422, detail="Balance out of range")

        return transaction_response(result)

    @app.get("/clientes/{account_id}/extrato")
    def get_statement(
        account_id: int,
        engine: LedgerEngine = Depends(get_ledger_engine)
    ):
        """Get the account balance and last transactions"""
        result = engine.get_statement(account_id)

        if isinstance(result, AccountNotFound):
            raise HTTPException(status_code=404, detail="Account not found")

        return statement_response(result)

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, fmt=config.log_format)
    uvicorn.run(
        "account_ledger.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
