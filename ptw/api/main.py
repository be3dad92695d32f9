from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from ptw import __version__
from ptw.api.deps import get_db
from ptw.api.routers import permits
from ptw.api.schemas.common import ErrorResponse, HealthResponse
from ptw.core.config import Settings, get_settings
from ptw.core.logger import setup_logger
from ptw.core.permit import (
    ConcurrencyConflict,
    InvalidState,
    NotAuthorized,
    NotFound,
    PermitError,
    TooEarly,
)
from ptw.db import session as db_session

# Everything else is a validation error (422)
ERROR_STATUS_CODES = {
    NotFound: 404,
    NotAuthorized: 403,
    InvalidState: 409,
    TooEarly: 409,
    ConcurrencyConflict: 409,
}


def status_code_for(exc: PermitError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 422


async def permit_error_handler(request: Request, exc: PermitError) -> JSONResponse:
    body = ErrorResponse(error=type(exc).__name__, detail=exc.message, code=exc.code)
    return JSONResponse(status_code=status_code_for(exc), content=body.model_dump())


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_session.init_db(db_session.engine)
    yield


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logger(
        "ptw",
        level=settings.log_level,
        log_dir=settings.log_dir if settings.log_to_file else None,
    )

    app = FastAPI(
        title=settings.app_name,
        description="Permit-to-Work lifecycle and approval service",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PermitError, permit_error_handler)
    app.include_router(permits.router, prefix="/api")

    @app.get("/health", response_model=HealthResponse)
    def health_check(db: Session = Depends(get_db)):
        db.execute(text("SELECT 1"))
        return HealthResponse(status="healthy", version=__version__)

    return app


app = create_app()
