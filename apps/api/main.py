"""
Coinhost - FastAPI Backend
Wallet economy and game-server provisioning API.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings, validate_security_settings
from database import engine, Base
from logging_config import configure_logging
import models  # noqa: F401
from routers import (
    health,
    auth,
    economy,
    servers,
    store,
    catalog,
)
from routers.rate_limit import close_rate_limit_backend
from services.panel_gateway import close_panel_gateway

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    configure_logging()
    logger.info("Starting Coinhost API")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    yield
    # Shutdown
    await close_panel_gateway()
    await close_rate_limit_backend()
    logger.info("Shutting down API")


app = FastAPI(
    title="Coinhost API",
    description="Spend in-app coins to deploy, renew and boost hosted game servers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render every HTTP failure as {"error": message, ...}."""
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content: Dict[str, Any] = dict(exc.detail)
    else:
        content = {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    in_body = any(error.get("loc", ("",))[0] == "body" for error in errors)
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request body" if in_body else "Invalid request parameters",
            "details": jsonable_encoder(errors),
        },
    )


@app.exception_handler(SQLAlchemyError)
async def persistence_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Unhandled persistence failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal persistence failure"})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, tags=["Authentication"])
app.include_router(economy.router, tags=["Economy"])
app.include_router(servers.router, prefix="/servers", tags=["Servers"])
app.include_router(store.router, prefix="/store", tags=["Store"])
app.include_router(catalog.router, tags=["Catalog"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Coinhost API",
        "version": "0.1.0",
        "status": "running"
    }
