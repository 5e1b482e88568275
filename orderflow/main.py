import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_quickbooks,  # noqa: F401
)
from .database import Base, engine
from .domain.integrations.quickbooks.errors import (
    IntegrationNotFoundError,
    QuickBooksAPIError,
    QuickBooksError,
    ReconnectRequiredError,
)
from .domain.integrations.quickbooks.router import router as quickbooks_router
from .domain.orders.router import router as orders_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Orderflow API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Convert 422 validation errors from HTTPBearer to 401 authentication errors
    when the issue is with the Authorization header
    """
    for error in exc.errors():
        if error.get("loc") and "authorization" in str(error.get("loc")).lower():
            logger.warning(
                f"Authentication failed for {request.url.path}: Missing or invalid Authorization header"
            )
            return JSONResponse(
                status_code=401,
                content={
                    "detail": "Not authenticated. Please provide a valid Bearer token in the Authorization header."
                },
            )

    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.exception_handler(QuickBooksError)
async def quickbooks_exception_handler(request: Request, exc: QuickBooksError):
    """Translate QuickBooks integration errors into HTTP responses"""
    if isinstance(exc, ReconnectRequiredError):
        logger.warning(f"⚠️ QuickBooks reconnect required for {request.url.path}")
        return JSONResponse(
            status_code=401, content={"detail": str(exc), "status": "reconnect_required"}
        )
    if isinstance(exc, IntegrationNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})
    if isinstance(exc, QuickBooksAPIError):
        logger.error(f"❌ {request.method} {request.url.path} - {exc}")
        return JSONResponse(status_code=502, content={"detail": str(exc)})
    logger.error(f"❌ {request.method} {request.url.path} - {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# CORS Configuration
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

app.include_router(quickbooks_router)
app.include_router(orders_router)


@app.get("/")
def root():
    return {"message": "Orderflow API"}


@app.get("/health")
def health():
    return {"status": "healthy"}
