from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from pathlib import Path
from typing import Optional
import os
import logging

from database import Database, load_settings, parse_origins
from ledger.errors import LedgerError, NotFoundError, TransactionAbortError, ValidationError
from routes import ledger_router
from services import build_services

ROOT_DIR = Path(__file__).parent
# CORS origins are needed before the lifespan loads Settings
load_dotenv(ROOT_DIR / '.env')

# Configure logging; the level is taken from Settings once they are loaded
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _error_response(status_code: int, exc: LedgerError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.message, "details": exc.details}
    )


def create_app(database: Optional[Database] = None) -> FastAPI:
    """
    Build the API application.

    The Database is created in the lifespan from environment settings unless
    one is passed in; services are built once it is connected.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database(load_settings())
        logging.getLogger().setLevel(db.settings.log_level)
        await db.connect()
        await db.create_indexes()
        app.state.database = db
        app.state.services = build_services(db.client, db.db)
        logger.info("Ledger services ready")
        yield
        db.close()

    app = FastAPI(
        title="Business Ledger API",
        version="1.0.0",
        description="Payments, balances and recalculation for sales, procurement, assets and loans",
        lifespan=lifespan
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error_response(400, exc)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error_response(404, exc)

    @app.exception_handler(TransactionAbortError)
    async def transaction_abort_handler(request: Request, exc: TransactionAbortError):
        return _error_response(409, exc)

    app.include_router(ledger_router)

    # CORS middleware
    origins = database.settings.cors_origins if database else parse_origins(os.environ.get('CORS_ORIGINS', '*'))
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()
