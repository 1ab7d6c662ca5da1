"""ReturnFlow: FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from returnflow.api import admin, agent, deps, returns, warehouse
from returnflow.config import get_settings
from returnflow.exceptions import (
    AlreadySettledError, AuthorizationError, ConcurrencyError, InvalidTransitionError, NotFoundError,
    OTPLockedError, OTPMismatchError, ReturnsError, SettlementConsistencyError, ValidationError,
)

logger = logging.getLogger(__name__)

# most specific first
ERROR_STATUS = [
    (AlreadySettledError, 409),
    (InvalidTransitionError, 409),
    (ConcurrencyError, 409),
    (ValidationError, 400),
    (NotFoundError, 404),
    (AuthorizationError, 403),
    (OTPMismatchError, 400),
    (OTPLockedError, 429),
    (SettlementConsistencyError, 500),
]


def status_for(exc: ReturnsError) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    deps.shutdown()


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Reverse-logistics returns: review, pickup, inspection and wallet refund settlement",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReturnsError)
async def returns_error_handler(request: Request, exc: ReturnsError):
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
    headers = None
    if isinstance(exc, OTPLockedError) and exc.lockout_minutes:
        headers = {"Retry-After": str(exc.lockout_minutes * 60)}
    return JSONResponse(status_code=code, content=exc.to_dict(), headers=headers)


# Register routers
app.include_router(returns.router, prefix="/api/v1")
app.include_router(admin.router, prefix="/api/v1")
app.include_router(warehouse.router, prefix="/api/v1")
app.include_router(agent.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "service": settings.app_name, "version": "1.0.0"}
