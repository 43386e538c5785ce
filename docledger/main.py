import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from docledger.api.v1.batch import router as batch_router
from docledger.api.v1.documents import router as documents_router
from docledger.api.v1.entries import router as entries_router
from docledger.api.v1.reports import router as reports_router
from docledger.core.config import get_settings
from docledger.core.errors import DomainError, ExternalServiceError

settings = get_settings()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="DocLedger API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(documents_router, prefix="/api/v1", tags=["documents"])
app.include_router(entries_router, prefix="/api/v1", tags=["entries"])
app.include_router(reports_router, prefix="/api/v1", tags=["reports"])
app.include_router(batch_router, prefix="/api/v1", tags=["batch"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Domain errors carry a safe, structured detail; other 5xx are hidden
    # unless explicitly enabled.
    if isinstance(exc, DomainError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(OperationalError)
async def _storage_exception_handler(request: Request, exc: OperationalError):
    logger.exception("Storage unavailable")
    error = ExternalServiceError(
        "Storage is unavailable; retry later",
        errors=[{"rule": "storage_unavailable"}],
        status_code=503,
    )
    return JSONResponse(status_code=error.status_code, content={"detail": error.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
async def health_check():
    return {"status": "ok"}
