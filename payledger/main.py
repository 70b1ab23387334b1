import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payledger.api.v1.api import api_router
from payledger.core.config import settings
from payledger.core.logging_config import setup_logging
from payledger.db.mongo import close_mongo_connection, connect_to_mongo
from payledger.utils.payment_validation import (
    ConcurrentModification,
    InsufficientBalance,
    InvalidAmount,
    InvoiceNotFound,
    LedgerError,
    LedgerInvariantError,
    PaymentNotFound,
    StoreRejected,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    InsufficientBalance: status.HTTP_400_BAD_REQUEST,
    InvoiceNotFound: status.HTTP_404_NOT_FOUND,
    PaymentNotFound: status.HTTP_404_NOT_FOUND,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    StoreRejected: status.HTTP_500_INTERNAL_SERVER_ERROR,
    LedgerInvariantError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if settings.STORAGE_BACKEND == "mongo":
        await connect_to_mongo()
    else:
        logger.info("Using in-memory payment store")
    yield
    await close_mongo_connection()


app = FastAPI(title=settings.PROJECT_NAME, version=settings.PROJECT_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.detail}
    )


@app.get("/")
async def root():
    return {"message": "Welcome to PayLedger API"}

app.include_router(api_router, prefix=settings.API_V1_STR)
