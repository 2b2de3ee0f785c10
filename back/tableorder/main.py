import logging
from contextlib import asynccontextmanager

import stripe
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .cart_routes import router as cart_router
from .db import check_db_connection, create_db_and_tables
from .errors import TableOrderError
from .order_routes import router as order_router
from .payment_routes import router as payment_router
from .responses import (
    http_exception_handler,
    ok,
    request_validation_handler,
    table_order_error_handler,
)
from .session_routes import router as session_router
from .settings import settings
from .staff_routes import router as staff_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global fallback; individual Stripe calls pass the tenant key via api_key
stripe.api_key = settings.stripe_secret_key or ""

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    create_db_and_tables()
    yield


app = FastAPI(
    title="Table Ordering API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Parse CORS origins from environment (comma-separated)
cors_origins_list = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(TableOrderError, table_order_error_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)

app.include_router(session_router, prefix=API_PREFIX, tags=["Sessions"])
app.include_router(cart_router, prefix=API_PREFIX, tags=["Cart"])
app.include_router(order_router, prefix=API_PREFIX, tags=["Orders"])
app.include_router(payment_router, prefix=API_PREFIX, tags=["Payments"])
app.include_router(staff_router, prefix=f"{API_PREFIX}/staff", tags=["Staff"])


@app.get("/health")
def health() -> dict:
    return ok({"status": "ok"})


@app.get("/health/db")
def health_db() -> dict:
    """Check database connection."""
    try:
        check_db_connection()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        raise HTTPException(status_code=503, detail=f"Database error: {e}")
    return ok({"status": "ok", "database": "connected"})
