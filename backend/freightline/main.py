"""Freightline - load lifecycle, bidding, documents and geofencing API"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from freightline.core.config import get_settings
from freightline.core.errors import SECURITY_ERRORS, FreightError, NotFoundError, public_status_code
from freightline.core.logging import configure_logging, logger
from freightline.routers import bids, carriers, documents, geofences, history, loads, notifications, users


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Freightline API starting",
        version="0.1.0",
        app_mode=settings.app_mode,
        auth_enabled=settings.auth_enabled,
    )
    if settings.is_production() and not settings.auth_enabled:
        logger.warning("Auth is disabled in production mode; X-User-ID is trusted as-is")
    yield
    # Shutdown
    logger.info("Freightline API shutting down")


app = FastAPI(
    title="Freightline API",
    description="Freight load lifecycle, carrier bidding, documents, geofencing and audit trail",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FreightError)
async def freight_error_handler(request: Request, exc: FreightError):
    status_code = public_status_code(exc)
    concealed = isinstance(exc, NotFoundError) and exc.conceal
    if isinstance(exc, SECURITY_ERRORS) or concealed:
        logger.warning("Request denied", path=request.url.path, kind=exc.kind, detail=exc.message)
    else:
        logger.info("Request failed", path=request.url.path, kind=exc.kind, detail=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Include routers
app.include_router(users.router)
app.include_router(carriers.router)
app.include_router(loads.router)
app.include_router(bids.router)
app.include_router(documents.router)
app.include_router(geofences.router)
app.include_router(history.router)
app.include_router(notifications.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Freightline API",
        "version": "0.1.0",
        "description": "Freight load lifecycle and tracking",
        "endpoints": {
            "users": "/users",
            "carriers": "/carriers",
            "locations": "/locations",
            "loads": "/loads",
            "bids": "/bids",
            "documents": "/documents",
            "geofences": "/geofences",
            "notifications": "/notifications",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
