import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from fiscal_engine.api.deps import Gateway
from fiscal_engine.api.v1.router import api_router
from fiscal_engine.config import settings
from fiscal_engine.core.exceptions import (
    ChainIntegrityError,
    FiscalEngineError,
    NotFoundError,
    SequenceConflictError,
    SigningError,
    StorageError,
    ValidationError,
)
from fiscal_engine.database import get_gateway, init_db

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    SequenceConflictError: status.HTTP_409_CONFLICT,
    ChainIntegrityError: status.HTTP_409_CONFLICT,
    SigningError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    StorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, release the pool on shutdown."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()
    yield
    await get_gateway().dispose()
    logger.info("Shutting down...")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Fiscal document issuance, hash-chain signing and SAF-T AO export.",
    lifespan=lifespan,
)

app.include_router(api_router)


@app.exception_handler(FiscalEngineError)
async def fiscal_engine_exception_handler(request: Request, exc: FiscalEngineError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_class, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_class):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/health", tags=["Health"])
async def health_check(gateway: Gateway):
    """Database connectivity check."""
    await gateway.query("SELECT 1 AS ok")
    return {"status": "healthy", "version": settings.APP_VERSION}
